"""
api/routes/v1/auth.py -- Authentication and session REST endpoints.

Routes:
  POST   /api/v1/auth/register   -- create account; 201 with tokens + account
  POST   /api/v1/auth/login      -- password login; tokens + account
  POST   /api/v1/auth/refresh    -- rotate a refresh secret; new tokens
  POST   /api/v1/auth/logout     -- revoke one refresh secret or all (requires auth)
  PUT    /api/v1/auth/password   -- change password, revoke all sessions (requires auth)
  GET    /api/v1/auth/me         -- current account (requires auth)
  DELETE /api/v1/auth/account    -- close account (requires auth + password)

Handlers are thin: they map request models to SessionService calls and
domain results back to response models. Every domain error propagates to the
exception handlers in api/main.py, which choose the status code.

Handlers are plain `def`, so FastAPI runs them in its thread pool; the
session service and everything beneath it is blocking code.

Security:
  Cache-Control: no-store on every response that carries a token.
  The same 401 message for unknown email and wrong password (set in core).
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Response
from fastapi.responses import JSONResponse

from api.models import (
    AccountResponse,
    AuthResponse,
    CloseAccountRequest,
    LoginRequest,
    LogoutRequest,
    MessageResponse,
    PasswordChangeRequest,
    RefreshRequest,
    RegisterRequest,
    TokenResponse,
)
from auth.dependencies import client_context, get_bearer_token, get_current_account, get_session_service
from auth.models import AccountView, AuthResult, ClientContext
from auth.session import SessionService

# Auth policy:
# - POST   /auth/register, /auth/login, /auth/refresh: public
# - POST   /auth/logout, PUT /auth/password, DELETE /auth/account: Bearer access token
# - GET    /auth/me: Bearer access token (get_current_account)
router = APIRouter()


def _no_store(content: dict, status_code: int = 200) -> JSONResponse:
    resp = JSONResponse(status_code=status_code, content=content)
    resp.headers["Cache-Control"] = "no-store"
    return resp


def _auth_payload(result: AuthResult) -> dict:
    tokens = TokenResponse.from_pair(result.tokens)
    return AuthResponse(account=AccountResponse.from_view(result.account), **tokens.model_dump()).model_dump()


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=AuthResponse, status_code=201)
def register(
    body: RegisterRequest,
    sessions: SessionService = Depends(get_session_service),
    client: ClientContext = Depends(client_context),
) -> JSONResponse:
    """Create an account and return its first token pair."""
    result = sessions.register(body.username, body.email, body.password, client)
    return _no_store(_auth_payload(result), status_code=201)


@router.post("/auth/login", response_model=AuthResponse)
def login(
    body: LoginRequest,
    sessions: SessionService = Depends(get_session_service),
    client: ClientContext = Depends(client_context),
) -> JSONResponse:
    """Authenticate with email and password.

    Returns the same generic error for unknown email and wrong password
    ("bad_credentials") to avoid leaking which emails are registered.
    """
    result = sessions.login(body.email, body.password, client)
    return _no_store(_auth_payload(result))


@router.post("/auth/refresh", response_model=TokenResponse)
def refresh(
    body: RefreshRequest,
    sessions: SessionService = Depends(get_session_service),
    client: ClientContext = Depends(client_context),
) -> JSONResponse:
    """Exchange a refresh secret for a new pair. The old secret stops working."""
    pair = sessions.refresh(body.refresh_token, client)
    return _no_store(TokenResponse.from_pair(pair).model_dump())


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout", response_model=MessageResponse)
def logout(
    body: Optional[LogoutRequest] = None,
    token: str = Depends(get_bearer_token),
    sessions: SessionService = Depends(get_session_service),
    client: ClientContext = Depends(client_context),
) -> MessageResponse:
    body = body or LogoutRequest()
    revoked = sessions.logout(token, body.refresh_token, body.revoke_all, client)
    return MessageResponse(message="Logged out.", revoked=revoked)


@router.put("/auth/password", response_model=MessageResponse)
def change_password(
    body: PasswordChangeRequest,
    token: str = Depends(get_bearer_token),
    sessions: SessionService = Depends(get_session_service),
    client: ClientContext = Depends(client_context),
) -> MessageResponse:
    """Change the password. Every refresh token of the account is revoked."""
    revoked = sessions.change_password(token, body.current_password, body.new_password, client)
    return MessageResponse(message="Password changed. Please log in again.", revoked=revoked)


@router.get("/auth/me", response_model=AccountResponse)
def me(account: AccountView = Depends(get_current_account)) -> AccountResponse:
    return AccountResponse.from_view(account)


@router.delete("/auth/account", status_code=204)
def close_account(
    body: CloseAccountRequest,
    token: str = Depends(get_bearer_token),
    sessions: SessionService = Depends(get_session_service),
    client: ClientContext = Depends(client_context),
) -> Response:
    """Close the caller's account. The password is re-checked first."""
    sessions.close_account(token, body.password, client)
    return Response(status_code=204)
