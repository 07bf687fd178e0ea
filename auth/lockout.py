"""
auth/lockout.py -- Account lockout decision.

Pure functions over Account state; nothing here touches the database.
The counting side (increment on failure, reset on success) lives in
CredentialStore.record_login_outcome so it happens atomically in SQL.

An account is locked when either
  - locked_until is set and still in the future, or
  - failed_logins has already reached the threshold.

The second clause also covers rows whose lockout timestamp was never set,
for example after the threshold was lowered. A timer that has run out is
cleared together with its counter by CredentialStore.release_expired_lockout
before the login path asks is_locked(), so an expired lockout does not
re-lock the account; see DESIGN.md.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta

from auth.models import Account


@dataclass(frozen=True)
class LockoutPolicy:
    threshold: int = 5
    duration: timedelta = timedelta(minutes=15)


def is_locked(account: Account, policy: LockoutPolicy, now: datetime) -> bool:
    if account.locked_until is not None and account.locked_until > now:
        return True
    return account.failed_logins >= policy.threshold


def retry_after(account: Account, now: datetime) -> int:
    """Seconds until the lockout timer runs out (0 when no timer is running)."""
    if account.locked_until is None or account.locked_until <= now:
        return 0
    return math.ceil((account.locked_until - now).total_seconds())
