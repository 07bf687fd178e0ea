"""
auth/limiter.py -- Per-identity attempt budgets for the auth endpoints.

Built on the `limits` library, the counter engine underneath slowapi. slowapi
keys by remote address only and counts every request; the auth flows need
two things it cannot express:

  - keys made of (client IP, claimed identity), so one attacker hammering
    many accounts and many attackers hammering one account are both caught;
  - budgets that only failed attempts consume, so a user who logs in
    successfully several times in a row is never throttled.

So the façade calls check() before doing any work and record_failure() only
when the attempt fails. Because check and record are separate steps, the
façade runs both inside serialized(identity): attempts on one claimed
identity take turns from the check to the recorded outcome, so a parallel
burst cannot pass check() before the first failure lands. Every budget key
contains the identity, so one lock per identity covers all of its keys.
Counters use a moving window in the thread-safe in-memory storage.

Scopes:
  auth  -- registration and generic auth endpoints (default 5 per 15 minutes)
  login -- login attempts, stricter (default 3 per 15 minutes)
"""

from __future__ import annotations

import math
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager

from limits import RateLimitItem, parse
from limits.storage import MemoryStorage, Storage
from limits.strategies import MovingWindowRateLimiter

from core.config import Settings
from core.errors import RateLimitedError

AUTH_SCOPE = "auth"
LOGIN_SCOPE = "login"


def _normalize_identity(identity: str | None) -> str:
    return (identity or "unknown").strip().lower()


def _key_parts(ip: str | None, identity: str | None) -> tuple[str, str]:
    return (ip or "unknown", _normalize_identity(identity))


class RateLimiter:
    """Moving-window failure budgets keyed by (scope, ip, identity).

    Usage:
        limiter = RateLimiter.from_settings(settings)
        with limiter.serialized(email):
            limiter.check("login", ip, email)    # raises RateLimitedError
            ...
            limiter.record_failure("login", ip, email)
    """

    def __init__(self, limits: dict[str, RateLimitItem], storage: Storage | None = None) -> None:
        self._limits = dict(limits)
        self._storage = storage if storage is not None else MemoryStorage()
        self._strategy = MovingWindowRateLimiter(self._storage)
        self._guard = threading.Lock()
        # identity -> [lock, number of threads holding or waiting on it]
        self._identity_locks: dict[str, list] = {}

    @classmethod
    def from_settings(cls, settings: Settings) -> "RateLimiter":
        return cls(
            {
                AUTH_SCOPE: parse(settings.register_rate_limit),
                LOGIN_SCOPE: parse(settings.login_rate_limit),
            }
        )

    def check(self, scope: str, ip: str | None, identity: str | None) -> None:
        """Raise RateLimitedError when the failure budget for this key is spent."""
        item = self._limit(scope)
        parts = _key_parts(ip, identity)
        if not self._strategy.test(item, scope, *parts):
            raise RateLimitedError(retry_after=self.retry_after(scope, ip, identity))

    def record_failure(self, scope: str, ip: str | None, identity: str | None) -> None:
        self._strategy.hit(self._limit(scope), scope, *_key_parts(ip, identity))

    def remaining(self, scope: str, ip: str | None, identity: str | None) -> int:
        stats = self._strategy.get_window_stats(self._limit(scope), scope, *_key_parts(ip, identity))
        return stats.remaining

    def retry_after(self, scope: str, ip: str | None, identity: str | None) -> int:
        stats = self._strategy.get_window_stats(self._limit(scope), scope, *_key_parts(ip, identity))
        return max(0, math.ceil(stats.reset_time - time.time()))

    def reset(self, scope: str, ip: str | None, identity: str | None) -> None:
        self._strategy.clear(self._limit(scope), scope, *_key_parts(ip, identity))

    @contextmanager
    def serialized(self, identity: str | None) -> Iterator[None]:
        """Hold the per-identity lock for the duration of one attempt.

        Entries are dropped once nobody holds or waits on them, so the map
        only grows with the number of identities under concurrent attack.
        """
        key = _normalize_identity(identity)
        with self._guard:
            entry = self._identity_locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._identity_locks[key]

    def _limit(self, scope: str) -> RateLimitItem:
        try:
            return self._limits[scope]
        except KeyError:
            raise ValueError(f"Unknown rate limit scope {scope!r}") from None
