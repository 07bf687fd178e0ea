"""
auth/session.py -- Session façade: the core boundary of authkeep.

Every authentication intent enters here. The façade
  1. consults the rate limiter and the lockout guard,
  2. re-validates its inputs (the HTTP layer only checks shape),
  3. delegates credential checks and mutations to CredentialStore,
  4. asks TokenService to mint, rotate or revoke tokens,
  5. records a SecurityEvent for every authentication-relevant outcome,
     successful or not.

Errors leave as the typed kinds from core.errors. Validation failures are
counted and logged at debug level but never recorded as security events.
Every recorded event is also written to the "authkeep.security" logger.

Objects are constructed explicitly (see build_session_service) and owned by
whoever built them -- the API lifespan or a test. Nothing here is global.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta

from auth.limiter import AUTH_SCOPE, LOGIN_SCOPE, RateLimiter
from auth.lockout import LockoutPolicy, is_locked, retry_after
from auth.models import (
    AccountView,
    AuthResult,
    ClientContext,
    SecurityEvent,
    SecurityEventKind,
    SweepReport,
    TokenPair,
)
from auth.store import CredentialStore, utcnow
from auth.tokens import TokenService, dummy_hash, hash_password, verify_password
from auth.validation import require_present, validate_email, validate_password, validate_username
from core.config import Settings
from core.errors import (
    AuthenticationError,
    DataError,
    DuplicateError,
    InvalidTokenError,
    LockedAccountError,
    RateLimitedError,
    TokenError,
    ValidationError,
)
from db.access import DataAccess

logger = logging.getLogger("authkeep.auth")
security_log = logging.getLogger("authkeep.security")


def _identity(value) -> str | None:
    return value if isinstance(value, str) else None


class SessionService:
    """register / login / refresh / logout / change_password / me / close_account / sweep."""

    def __init__(
        self,
        settings: Settings,
        store: CredentialStore,
        tokens: TokenService,
        limiter: RateLimiter,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings
        self.store = store
        self.tokens = tokens
        self.limiter = limiter
        self.policy: LockoutPolicy = store.lockout
        self._clock = clock
        self._rounds = settings.bcrypt_rounds
        self._dummy_hash = dummy_hash(settings.bcrypt_rounds)
        self._lock = threading.Lock()
        self._validation_failures = 0

    @property
    def data(self) -> DataAccess:
        return self.store.data

    @property
    def validation_failures(self) -> int:
        with self._lock:
            return self._validation_failures

    # ------------------------------------------------------------------
    # Registration and login
    # ------------------------------------------------------------------

    def register(
        self,
        username: str,
        email: str,
        password: str,
        client: ClientContext | None = None,
    ) -> AuthResult:
        """Create an account and its first token pair in one transaction."""
        client = client or ClientContext()
        identity = _identity(email)
        with self._attempt(AUTH_SCOPE, client, identity):
            try:
                username = validate_username(username)
                email = validate_email(email)
                validate_password(password, self.settings.password_min_length)
            except ValidationError as exc:
                self.limiter.record_failure(AUTH_SCOPE, client.ip, identity)
                self._validation_failed(exc, "register")
                raise

            password_hash = hash_password(password, self._rounds)

            def work(conn):
                account = self.store.create_account(username, email, password_hash, conn=conn)
                return account, self.tokens.issue_pair(account.id, client, conn=conn)

            try:
                account, pair = self.data.run_transaction(work)
            except DuplicateError:
                self.limiter.record_failure(AUTH_SCOPE, client.ip, identity)
                self._event(SecurityEventKind.registration_rejected, None, client, reason="duplicate")
                raise

        self._event(SecurityEventKind.registered, account.id, client, username=account.username)
        return AuthResult(account=account.view(), tokens=pair)

    def login(self, email: str, password: str, client: ClientContext | None = None) -> AuthResult:
        """Verify credentials and issue a token pair.

        Unknown email and wrong password raise the same AuthenticationError,
        and both run bcrypt once, so neither the message nor the timing tells
        them apart. A locked account is rejected before its hash is touched.
        Attempts on one email are serialized, so the budget and the lockout
        state each attempt sees include every earlier failure.
        """
        client = client or ClientContext()
        identity = _identity(email)
        with self._attempt(LOGIN_SCOPE, client, identity):
            return self._login(email, password, client, identity)

    def _login(self, email, password: str, client: ClientContext, identity: str | None) -> AuthResult:
        try:
            email = validate_email(email)
            require_present(password, "password")
        except ValidationError as exc:
            self.limiter.record_failure(LOGIN_SCOPE, client.ip, identity)
            self._validation_failed(exc, "login")
            raise

        self.store.release_expired_lockout(email)
        account = self.store.find_by_email(email)
        now = self._clock()

        if account is None:
            verify_password(password, self._dummy_hash)
            self.limiter.record_failure(LOGIN_SCOPE, client.ip, identity)
            self._event(SecurityEventKind.login_failed, None, client, reason="unknown_email")
            raise AuthenticationError()

        if is_locked(account, self.policy, now):
            wait = retry_after(account, now)
            self._event(SecurityEventKind.login_blocked_locked, account.id, client, retry_after=wait)
            raise LockedAccountError(retry_after=wait)

        if not verify_password(password, account.password_hash):
            self.store.record_login_outcome(email, success=False)
            self.limiter.record_failure(LOGIN_SCOPE, client.ip, identity)
            updated = self.store.find_by_email(email) or account
            self._event(
                SecurityEventKind.login_failed,
                account.id,
                client,
                reason="bad_password",
                failed_logins=updated.failed_logins,
            )
            if is_locked(updated, self.policy, now):
                self._event(
                    SecurityEventKind.account_locked,
                    account.id,
                    client,
                    locked_until=updated.locked_until,
                )
            raise AuthenticationError()

        self.store.record_login_outcome(email, success=True)
        pair = self.tokens.issue_pair(account.id, client)
        self._event(SecurityEventKind.login_succeeded, account.id, client)
        return AuthResult(account=account.view(), tokens=pair)

    # ------------------------------------------------------------------
    # Token lifecycle
    # ------------------------------------------------------------------

    def refresh(self, refresh_secret: str, client: ClientContext | None = None) -> TokenPair:
        client = client or ClientContext()
        try:
            require_present(refresh_secret, "refresh_token")
        except ValidationError as exc:
            self._validation_failed(exc, "refresh")
            raise

        try:
            account_id, pair = self.tokens.rotate(refresh_secret, client)
        except InvalidTokenError:
            # A known-but-spent secret is a replay; attribute it to its owner.
            self._event(
                SecurityEventKind.refresh_token_invalid,
                self.tokens.owner_of(refresh_secret),
                client,
            )
            raise

        self._event(SecurityEventKind.token_refreshed, account_id, client)
        return pair

    def logout(
        self,
        access_token: str,
        refresh_secret: str | None = None,
        revoke_all: bool = False,
        client: ClientContext | None = None,
    ) -> int:
        """Revoke the named refresh secret, or every one of the caller's.

        Idempotent: an unknown or already revoked secret is not an error.
        A secret that belongs to another account is left alone. Returns the
        number of refresh tokens revoked.
        """
        client = client or ClientContext()
        account_id = self._authenticate(access_token, client)

        if revoke_all:
            revoked = self.tokens.revoke_all(account_id)
        elif refresh_secret and self.tokens.owner_of(refresh_secret) == account_id:
            revoked = int(self.tokens.revoke(refresh_secret))
        else:
            revoked = 0

        self._event(SecurityEventKind.logout, account_id, client, revoked=revoked, all_sessions=revoke_all)
        return revoked

    # ------------------------------------------------------------------
    # Account management
    # ------------------------------------------------------------------

    def change_password(
        self,
        access_token: str,
        current_password: str,
        new_password: str,
        client: ClientContext | None = None,
    ) -> int:
        """Replace the password and revoke every refresh token of the account.

        Returns the number of sessions revoked.
        """
        client = client or ClientContext()
        account_id = self._authenticate(access_token, client)
        account = self._live_account(account_id, client)

        try:
            require_present(current_password, "current_password")
            validate_password(new_password, self.settings.password_min_length)
        except ValidationError as exc:
            self._validation_failed(exc, "change_password")
            raise

        if not verify_password(current_password, account.password_hash):
            self._event(SecurityEventKind.password_change_failed, account_id, client, reason="bad_password")
            raise AuthenticationError("Current password is incorrect.")
        if verify_password(new_password, account.password_hash):
            exc = ValidationError("New password must be different from the current password.", field="new_password")
            self._validation_failed(exc, "change_password")
            raise exc

        revoked = self.store.update_password(account_id, hash_password(new_password, self._rounds))
        if revoked is None:
            # Closed between the lookup and the update.
            raise InvalidTokenError()
        self._event(SecurityEventKind.password_changed, account_id, client, sessions_revoked=revoked)
        return revoked

    def me(self, access_token: str, client: ClientContext | None = None) -> AccountView:
        client = client or ClientContext()
        account_id = self._authenticate(access_token, client)
        return self._live_account(account_id, client).view()

    def close_account(self, access_token: str, password: str, client: ClientContext | None = None) -> None:
        """Soft-delete the caller's account after re-checking the password."""
        client = client or ClientContext()
        account_id = self._authenticate(access_token, client)
        account = self._live_account(account_id, client)

        try:
            require_present(password, "password")
        except ValidationError as exc:
            self._validation_failed(exc, "close_account")
            raise

        if not verify_password(password, account.password_hash):
            self._event(SecurityEventKind.account_close_failed, account_id, client, reason="bad_password")
            raise AuthenticationError("Password is incorrect.")
        if not self.store.soft_delete(account_id):
            raise InvalidTokenError()
        self._event(SecurityEventKind.account_closed, account_id, client)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def sweep(self) -> SweepReport:
        """Purge stale refresh tokens and security events past retention."""
        now = self._clock()
        report = SweepReport(
            tokens_removed=self.tokens.purge(now, timedelta(hours=self.settings.token_retention_hours)),
            events_removed=self.store.purge_events(now - timedelta(days=self.settings.event_retention_days)),
        )
        logger.info(
            "Sweep complete: %d refresh token(s), %d security event(s) removed",
            report.tokens_removed,
            report.events_removed,
        )
        return report

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _authenticate(self, access_token: str, client: ClientContext) -> str:
        try:
            return self.tokens.verify_access(access_token)
        except TokenError as exc:
            self._event(SecurityEventKind.access_token_invalid, None, client, reason=exc.code)
            raise

    def _live_account(self, account_id: str, client: ClientContext):
        account = self.store.find_by_id(account_id)
        if account is None:
            self._event(SecurityEventKind.access_token_invalid, account_id, client, reason="account_missing")
            raise InvalidTokenError()
        return account

    @contextmanager
    def _attempt(self, scope: str, client: ClientContext, identity: str | None) -> Iterator[None]:
        with self.limiter.serialized(identity):
            self._check_budget(scope, client, identity)
            yield

    def _check_budget(self, scope: str, client: ClientContext, identity: str | None) -> None:
        try:
            self.limiter.check(scope, client.ip, identity)
        except RateLimitedError as exc:
            self._event(SecurityEventKind.rate_limited, None, client, scope=scope, retry_after=exc.retry_after)
            raise

    def _validation_failed(self, exc: ValidationError, operation: str) -> None:
        with self._lock:
            self._validation_failures += 1
        logger.debug("Validation failed in %s: field=%s", operation, exc.field)

    def _event(self, kind: SecurityEventKind, account_id: str | None, client: ClientContext, **detail) -> None:
        security_log.info(
            "%s account=%s ip=%s %s",
            kind.value,
            account_id or "-",
            client.ip or "-",
            " ".join(f"{k}={v}" for k, v in sorted(detail.items())),
        )
        event = SecurityEvent(
            kind=kind,
            account_id=account_id,
            detail=detail,
            ip_address=client.ip,
            user_agent=client.user_agent,
        )
        try:
            self.store.log_event(event)
        except DataError:
            # The outcome already happened; the log line above is the fallback audit trail.
            logger.error("Could not persist security event %s", kind.value)


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def build_session_service(
    settings: Settings,
    data: DataAccess | None = None,
    clock: Callable[[], datetime] = utcnow,
    limiter: RateLimiter | None = None,
) -> SessionService:
    """Wire DataAccess -> CredentialStore -> TokenService -> SessionService."""
    data = data if data is not None else DataAccess(settings)
    store = CredentialStore(
        data,
        LockoutPolicy(threshold=settings.lockout_threshold, duration=settings.lockout_duration),
        clock=clock,
    )
    tokens = TokenService(store, settings, clock=clock)
    return SessionService(
        settings,
        store,
        tokens,
        limiter if limiter is not None else RateLimiter.from_settings(settings),
        clock=clock,
    )
