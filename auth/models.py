"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, near-zero logic). Stores build
these from rows; the session façade and the API read them. Only AccountView
ever leaves the process -- it carries no hash and no counters.

Timestamps are timezone-aware UTC datetimes. Identifiers are opaque UUID
strings.

Layer rule: no imports from api/ or db/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


@dataclass
class ClientContext:
    """Who is calling: the request's source address and user agent."""

    ip: str | None = None
    user_agent: str | None = None


@dataclass
class AccountView:
    """The sanitized account shape returned to callers."""

    id: str
    username: str
    email: str
    email_verified: bool


@dataclass
class Account:
    """A registered identity.

    failed_logins and locked_until drive the lockout guard: a successful
    login resets both; locked_until is only set when failed_logins reaches
    the configured threshold. deleted_at marks a soft-deleted (closed)
    account, which every lookup treats as absent.
    """

    id: str
    username: str
    email: str
    password_hash: str
    email_verified: bool = False
    failed_logins: int = 0
    locked_until: datetime | None = None
    last_login: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    password_changed_at: datetime | None = None
    deleted_at: datetime | None = None

    def view(self) -> AccountView:
        return AccountView(
            id=self.id,
            username=self.username,
            email=self.email,
            email_verified=self.email_verified,
        )


class TokenState(str, Enum):
    active = "active"
    revoked = "revoked"
    expired = "expired"


@dataclass
class RefreshToken:
    """A stored refresh credential.

    token_hash is HMAC-SHA256(REFRESH_TOKEN_SECRET, secret). The plaintext
    secret is returned to the client once at issue time and never persisted.
    Rows are revoked, never edited back to active, and deleted only by the
    retention sweep.
    """

    id: str
    account_id: str
    token_hash: str
    issued_at: datetime
    expires_at: datetime
    revoked: bool = False
    revoked_at: datetime | None = None
    last_used: datetime | None = None
    user_agent: str | None = None
    ip_address: str | None = None

    def state(self, now: datetime) -> TokenState:
        if self.revoked:
            return TokenState.revoked
        if self.expires_at <= now:
            return TokenState.expired
        return TokenState.active


@dataclass
class TokenPair:
    """Credentials handed to a client after register, login or refresh.

    refresh_token is the plaintext secret -- this is the only place it
    exists outside the client.
    """

    access_token: str
    refresh_token: str
    expires_in: int  # access token lifetime in seconds
    refresh_expires_at: datetime
    token_type: str = "bearer"  # noqa: S105 # nosec B105 -- OAuth token type, not a password


@dataclass
class AuthResult:
    account: AccountView
    tokens: TokenPair


class SecurityEventKind(str, Enum):
    registered = "registered"
    registration_rejected = "registration_rejected"
    login_succeeded = "login_succeeded"
    login_failed = "login_failed"
    login_blocked_locked = "login_blocked_locked"
    account_locked = "account_locked"
    rate_limited = "rate_limited"
    token_refreshed = "token_refreshed"
    refresh_token_invalid = "refresh_token_invalid"
    access_token_invalid = "access_token_invalid"
    logout = "logout"
    password_changed = "password_changed"
    password_change_failed = "password_change_failed"
    account_closed = "account_closed"
    account_close_failed = "account_close_failed"


@dataclass
class SecurityEvent:
    """One append-only audit record."""

    kind: SecurityEventKind
    account_id: str | None = None
    detail: dict = field(default_factory=dict)
    ip_address: str | None = None
    user_agent: str | None = None
    id: str | None = None
    created_at: datetime | None = None


@dataclass
class SweepReport:
    tokens_removed: int = 0
    events_removed: int = 0
