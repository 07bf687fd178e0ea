"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Access tokens arrive as an Authorization: Bearer <token> header. The
dependencies here only extract request data; verification happens inside
SessionService so every failure is audited the same way.

get_bearer_token() raises HTTP 401 when the header is missing or malformed.
get_current_account() verifies the token and resolves the live account.
client_context() captures the caller's address and user agent for auditing.

Layer rule: may import fastapi (this module is part of the FastAPI
dependency injection system) but nothing from api/.
"""

from __future__ import annotations

from fastapi import Depends, HTTPException, Request

from auth.models import AccountView, ClientContext
from auth.session import SessionService

_BEARER_PREFIX = "bearer "


def get_session_service(request: Request) -> SessionService:
    return request.app.state.sessions


def client_context(request: Request) -> ClientContext:
    return ClientContext(
        ip=request.client.host if request.client else None,
        user_agent=request.headers.get("User-Agent"),
    )


def get_bearer_token(request: Request) -> str:
    """Return the raw token from the Authorization header or raise HTTP 401."""
    header = request.headers.get("Authorization", "")
    if header[: len(_BEARER_PREFIX)].lower() == _BEARER_PREFIX:
        token = header[len(_BEARER_PREFIX) :].strip()
        if token:
            return token
    raise HTTPException(
        status_code=401,
        detail={"code": "unauthorized", "message": "Authentication required."},
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_current_account(
    token: str = Depends(get_bearer_token),
    sessions: SessionService = Depends(get_session_service),
    client: ClientContext = Depends(client_context),
) -> AccountView:
    """Require a valid access token for a live account.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(account: AccountView = Depends(get_current_account)): ...

    Token errors propagate as TokenError and are mapped to 401 by the
    application's exception handlers.
    """
    return sessions.me(token, client)
