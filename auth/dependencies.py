"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

The session token is read from, in priority order:
  1. the "session_token" cookie -- set by POST /api/v1/auth/login (httpOnly).
  2. an Authorization: Bearer <token> header -- API clients.

Both converge on CredentialAuthProvider.validate_session(), which also
enforces origin binding using the client address of this request.

try_get_current_user() is the soft variant (returns None on failure).
get_current_user() wraps it and raises HTTP 401 if unauthenticated.

Layer rule: auth/dependencies.py may import from fastapi (for
HTTPException/Request) because it is part of the dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.models import AuthUser

SESSION_COOKIE = "session_token"


def get_session_token(request: Request) -> str | None:
    token: str | None = request.cookies.get(SESSION_COOKIE)
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:].strip()
    return token or None


def client_address(request: Request) -> str | None:
    return request.client.host if request.client else None


def try_get_current_user(request: Request) -> AuthUser | None:
    """Return the session's user, or None. Never raises for a bad or missing token."""
    token = get_session_token(request)
    if token is None:
        return None
    validation = request.app.state.auth.validate_session(token, client_address(request))
    return validation.user if validation.valid else None


def get_current_user(request: Request) -> AuthUser:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(user: AuthUser = Depends(get_current_user)): ...
    """
    user = try_get_current_user(request)
    if user is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return user
