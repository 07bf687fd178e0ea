"""
API request and response models for authkeep REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Request models check shape only (types, presence, generous length caps).
Username, email and password policy is enforced again inside SessionService,
which never trusts its caller. Password fields are never whitespace-stripped.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import AccountView, TokenPair

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register."""

    username: str = Field(min_length=1, max_length=64)
    email: str = Field(min_length=1, max_length=320)
    password: str = Field(min_length=1, max_length=255)


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    email: str = Field(min_length=1, max_length=320)
    password: str = Field(min_length=1, max_length=255)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(min_length=1, max_length=512)


class LogoutRequest(BaseModel):
    """Request body for POST /api/v1/auth/logout.

    With neither field set the call only audits the logout; the access token
    simply runs out.
    """

    refresh_token: Optional[str] = Field(default=None, max_length=512)
    revoke_all: bool = False


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(min_length=1, max_length=255)
    new_password: str = Field(min_length=1, max_length=255)


class CloseAccountRequest(BaseModel):
    password: str = Field(min_length=1, max_length=255)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class AccountResponse(BaseModel):
    """Sanitized account -- no hash, no lockout counters."""

    model_config = ConfigDict(frozen=True)

    id: str
    username: str
    email: str
    email_verified: bool

    @classmethod
    def from_view(cls, view: AccountView) -> "AccountResponse":
        return cls(id=view.id, username=view.username, email=view.email, email_verified=view.email_verified)


class TokenResponse(BaseModel):
    """Token pair returned by register, login and refresh."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"  # noqa: S105 # nosec B105 -- OAuth token type, not a password
    expires_in: int
    refresh_expires_at: str

    @classmethod
    def from_pair(cls, pair: TokenPair) -> "TokenResponse":
        return cls(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            token_type=pair.token_type,
            expires_in=pair.expires_in,
            refresh_expires_at=pair.refresh_expires_at.isoformat(),
        )


class AuthResponse(TokenResponse):
    """Token pair plus the account it was issued for."""

    account: AccountResponse


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    revoked: Optional[int] = None


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class PoolStats(BaseModel):
    model_config = ConfigDict(frozen=True)

    size: Optional[int] = None
    checkedin: Optional[int] = None
    checkedout: Optional[int] = None
    overflow: Optional[int] = None


class DatabaseHealth(BaseModel):
    """Data-access counters as reported by DataAccess.health()."""

    model_config = ConfigDict(frozen=True)

    status: str
    reachable: bool
    total_queries: int
    error_count: int
    retry_count: int
    pool: PoolStats


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    database: Optional[DatabaseHealth] = None
