"""
tests/test_lockout.py -- Unit tests for the lockout decision in auth/lockout.py.

Pure functions over Account state -- no database.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from auth.lockout import LockoutPolicy, is_locked, retry_after
from auth.models import Account

NOW = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)
POLICY = LockoutPolicy(threshold=5, duration=timedelta(minutes=15))


def _account(failed_logins: int = 0, locked_until: datetime | None = None) -> Account:
    return Account(
        id="acc-1",
        username="alice",
        email="alice@x.com",
        password_hash="x",
        failed_logins=failed_logins,
        locked_until=locked_until,
    )


def test_fresh_account_not_locked() -> None:
    assert not is_locked(_account(), POLICY, NOW)


def test_below_threshold_not_locked() -> None:
    assert not is_locked(_account(failed_logins=4), POLICY, NOW)


def test_future_lock_timestamp_locks() -> None:
    assert is_locked(_account(locked_until=NOW + timedelta(minutes=1)), POLICY, NOW)


def test_counter_at_threshold_locks_without_timestamp() -> None:
    assert is_locked(_account(failed_logins=5), POLICY, NOW)


def test_counter_keeps_lock_after_timer_runs_out() -> None:
    # Counter clause is independent of the timer.
    assert is_locked(_account(failed_logins=5, locked_until=NOW - timedelta(seconds=1)), POLICY, NOW)


def test_expired_timer_with_reset_counter_unlocked() -> None:
    assert not is_locked(_account(failed_logins=0, locked_until=NOW - timedelta(seconds=1)), POLICY, NOW)


def test_threshold_is_configurable() -> None:
    assert is_locked(_account(failed_logins=3), LockoutPolicy(threshold=3), NOW)


def test_retry_after_rounds_up() -> None:
    account = _account(failed_logins=5, locked_until=NOW + timedelta(minutes=14, seconds=59, milliseconds=1))
    assert retry_after(account, NOW) == 900


def test_retry_after_zero_without_running_timer() -> None:
    assert retry_after(_account(failed_logins=5), NOW) == 0
    assert retry_after(_account(locked_until=NOW - timedelta(minutes=1)), NOW) == 0
