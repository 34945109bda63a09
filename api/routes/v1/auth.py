"""
api/routes/v1/auth.py -- Account, session and OAuth REST endpoints.

Routes:
  POST   /api/v1/auth/signup                     -- create password account; 201
  POST   /api/v1/auth/login                      -- password login; sets session cookie
  POST   /api/v1/auth/logout                     -- destroy current session; clears cookie
  GET    /api/v1/auth/me                         -- current user and linked providers (requires auth)
  PATCH  /api/v1/auth/me                         -- update name, image or email (requires auth)
  DELETE /api/v1/auth/me                         -- delete the account (requires auth)
  GET    /api/v1/auth/sessions                   -- active sessions (requires auth)
  POST   /api/v1/auth/sessions/revoke-all        -- sign out everywhere (requires auth)
  POST   /api/v1/auth/change-password            -- requires auth; ends all sessions
  POST   /api/v1/auth/password-reset/request     -- always 202
  POST   /api/v1/auth/password-reset/confirm     -- redeem reset token
  POST   /api/v1/auth/verification/send          -- 202, or 409 if already verified
  POST   /api/v1/auth/verification/confirm       -- redeem verification token
  POST   /api/v1/auth/password/check             -- strength score and suggestions
  GET    /api/v1/auth/providers                  -- list enabled OAuth providers
  GET    /api/v1/auth/oauth/{provider}/login     -- redirect to provider
  GET    /api/v1/auth/oauth/{provider}/callback  -- provider callback; sets session cookie

Security:
  [H2] POST /login carries an outer per-IP slowapi limit (LOGIN_RATE_LIMIT)
       on top of the provider's persistent per-account lockout.
  [C1] Handlers that hash or verify passwords are plain `def`, so Starlette
       runs them on its thread pool and bcrypt never blocks the event loop.
  [C2] Reset and verification requests answer identically for unknown emails.
  [M5] Cache-Control: no-store on every response that carries a session token.
"""

from __future__ import annotations

import logging

import httpx
from authlib.integrations.starlette_client import OAuthError
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.concurrency import run_in_threadpool

from api.limiter import limiter, login_rate_limit
from api.models import (
    ChangePasswordRequest,
    DeleteAccountRequest,
    EmailRequest,
    ErrorDetail,
    ErrorResponse,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    OAuthProviderInfo,
    PasswordCheckRequest,
    PasswordCheckResponse,
    ResetPasswordRequest,
    SessionResponse,
    SignupRequest,
    UpdateProfileRequest,
    UserResponse,
    VerifyEmailRequest,
)
from auth.dependencies import SESSION_COOKIE, client_address, get_current_user, get_session_token
from auth.errors import AuthErrorCode, AuthResult
from auth.models import AuthUser
from auth.oauth import get_enabled_providers, get_oauth_identity
from auth.passwords import strength_label
from auth.provider import AuthProvider
from core.config import get_settings

logger = logging.getLogger("gatehouse.api.auth")

# Auth policy:
# - signup, login, logout, providers, password-reset/*, verification/*,
#   password/check, oauth/*:            public
# - me (GET, PATCH, DELETE), sessions,
#   sessions/revoke-all,
#   change-password:                    requires auth (get_current_user)
router = APIRouter()

# One table from result code to HTTP status.
STATUS_FOR_CODE: dict[AuthErrorCode, int] = {
    AuthErrorCode.INVALID_CREDENTIALS: 401,
    AuthErrorCode.INVALID_SESSION: 401,
    AuthErrorCode.RATE_LIMITED: 429,
    AuthErrorCode.WEAK_PASSWORD: 400,
    AuthErrorCode.PASSWORD_REUSED: 400,
    AuthErrorCode.INVALID_EMAIL: 400,
    AuthErrorCode.INVALID_OR_EXPIRED_TOKEN: 400,
    AuthErrorCode.USER_NOT_FOUND: 404,
    AuthErrorCode.DUPLICATE_EMAIL: 409,
    AuthErrorCode.ALREADY_VERIFIED: 409,
    AuthErrorCode.ACCOUNT_LINK_REQUIRED: 409,
    AuthErrorCode.STORE_UNAVAILABLE: 503,
}


def _provider(request: Request) -> AuthProvider:
    return request.app.state.auth


def _user_agent(request: Request) -> str | None:
    return request.headers.get("User-Agent")


def _error_response(result: AuthResult) -> JSONResponse:
    code = result.code or AuthErrorCode.STORE_UNAVAILABLE
    resp = JSONResponse(
        status_code=STATUS_FOR_CODE.get(code, 400),
        content=ErrorResponse(
            error=ErrorDetail(code=code.value, message=result.error or "", errors=result.details or None)
        ).model_dump(exclude_none=True),
    )
    if code is AuthErrorCode.RATE_LIMITED and result.retry_after_seconds:
        resp.headers["Retry-After"] = str(result.retry_after_seconds)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def set_session_cookie(response, session_token: str) -> None:
    """Write the session token as an httpOnly cookie.

    samesite="lax": sent on top-level navigations (OAuth callback redirect
    lands signed in) but not on cross-site POSTs.
    """
    settings = get_settings()
    response.set_cookie(
        SESSION_COOKIE,
        value=session_token,
        httponly=True,
        samesite="lax",
        secure=settings.secure_cookies,
        max_age=settings.session_max_age_seconds,
    )


# ---------------------------------------------------------------------------
# Sign-up and sign-in
# ---------------------------------------------------------------------------


@router.post("/auth/signup", response_model=UserResponse, status_code=201)
def signup(request: Request, body: SignupRequest) -> JSONResponse:
    """Create a password account and email a verification link.

    No session is issued; the client signs in with POST /login.
    """
    provider = _provider(request)
    result = provider.create_user(body.email, body.password, body.name)
    if not result.success:
        return _error_response(result)
    # Secondary effect: the account exists whether or not the email goes out.
    provider.send_email_verification(result.user.email)
    return JSONResponse(status_code=201, content=UserResponse.from_user(result.user).model_dump(mode="json"))


@limiter.limit(login_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; set the session cookie.

    Unknown email, OAuth-only account and wrong password all produce the same
    401 "Invalid credentials" response in the same time [C1].
    """
    result = _provider(request).authenticate(
        body.email,
        body.password,
        ip_address=client_address(request),
        user_agent=_user_agent(request),
    )
    if not result.success:
        return _error_response(result)

    expiry = result.password_expiry
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            session_token=result.session.session_token,
            expires_at=result.session.expires_at,
            user=UserResponse.from_user(result.user),
            password_expired=bool(expiry and expiry.is_expired),
            password_expires_in_days=expiry.days_until_expiration if expiry else None,
        ).model_dump(mode="json"),
    )
    set_session_cookie(resp, result.session.session_token)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request) -> JSONResponse:
    """Destroy the current session server-side and clear the cookie."""
    _provider(request).sign_out(get_session_token(request))
    resp = JSONResponse(content={"message": "Logged out."})
    resp.delete_cookie(SESSION_COOKIE)
    return resp


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=UserResponse)
def me(request: Request, current_user: AuthUser = Depends(get_current_user)) -> UserResponse:
    """Return the currently authenticated user and the OAuth providers linked to it."""
    return UserResponse.from_user(current_user, _provider(request).list_linked_providers(current_user.id))


@router.patch("/auth/me", response_model=UserResponse)
def update_me(
    request: Request,
    body: UpdateProfileRequest,
    current_user: AuthUser = Depends(get_current_user),
) -> JSONResponse:
    """Update name, image or email. A new email must be verified again."""
    result = _provider(request).update_user(current_user.id, name=body.name, image=body.image, email=body.email)
    if not result.success:
        return _error_response(result)
    return JSONResponse(content=UserResponse.from_user(result.user).model_dump(mode="json"))


@router.delete("/auth/me", response_model=MessageResponse)
def delete_me(
    request: Request,
    body: DeleteAccountRequest,
    current_user: AuthUser = Depends(get_current_user),
) -> JSONResponse:
    """Delete the account. Password accounts confirm with the current password."""
    result = _provider(request).delete_user(current_user.id, body.password)
    if not result.success:
        return _error_response(result)
    resp = JSONResponse(content={"message": "Account deleted."})
    resp.delete_cookie(SESSION_COOKIE)
    return resp


@router.get("/auth/sessions", response_model=list[SessionResponse])
def list_sessions(request: Request, current_user: AuthUser = Depends(get_current_user)) -> list[SessionResponse]:
    return [SessionResponse.from_session(s) for s in _provider(request).list_sessions(current_user.id)]


@router.post("/auth/sessions/revoke-all", response_model=MessageResponse)
def revoke_all_sessions(request: Request, current_user: AuthUser = Depends(get_current_user)) -> JSONResponse:
    """Sign out on every device, including this one."""
    result = _provider(request).invalidate_user_sessions(current_user.id, "user_request")
    if not result.success:
        return _error_response(result)
    resp = JSONResponse(content={"message": "All sessions ended."})
    resp.delete_cookie(SESSION_COOKIE)
    return resp


@router.post("/auth/change-password", response_model=MessageResponse)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    current_user: AuthUser = Depends(get_current_user),
) -> JSONResponse:
    """Change the password. Every session of the user, this one included, ends."""
    result = _provider(request).change_password(
        current_user.id,
        body.current_password,
        body.new_password,
        ip_address=client_address(request),
    )
    if not result.success:
        return _error_response(result)
    resp = JSONResponse(content={"message": "Password changed. Please sign in again."})
    resp.delete_cookie(SESSION_COOKIE)
    return resp


# ---------------------------------------------------------------------------
# Password reset and email verification
# ---------------------------------------------------------------------------


@router.post("/auth/password-reset/request", response_model=MessageResponse, status_code=202)
def request_password_reset(request: Request, body: EmailRequest) -> JSONResponse:
    """Email a reset link if the account exists. The response never says which [C2]."""
    result = _provider(request).request_password_reset(body.email)
    if not result.success:
        return _error_response(result)
    return JSONResponse(
        status_code=202,
        content={"message": "If an account exists for that email, a reset link has been sent."},
    )


@router.post("/auth/password-reset/confirm", response_model=MessageResponse)
def confirm_password_reset(request: Request, body: ResetPasswordRequest) -> JSONResponse:
    result = _provider(request).reset_password_with_token(body.token, body.new_password)
    if not result.success:
        return _error_response(result)
    return JSONResponse(content={"message": "Password has been reset. Please sign in."})


@router.post("/auth/verification/send", response_model=MessageResponse, status_code=202)
def send_verification(request: Request, body: EmailRequest) -> JSONResponse:
    result = _provider(request).send_email_verification(body.email)
    if not result.success:
        return _error_response(result)
    return JSONResponse(
        status_code=202,
        content={"message": "If an account exists for that email, a verification link has been sent."},
    )


@router.post("/auth/verification/confirm", response_model=UserResponse)
def confirm_verification(request: Request, body: VerifyEmailRequest) -> JSONResponse:
    result = _provider(request).verify_email_with_token(body.token)
    if not result.success:
        return _error_response(result)
    return JSONResponse(content=UserResponse.from_user(result.user).model_dump(mode="json"))


@router.post("/auth/password/check", response_model=PasswordCheckResponse)
def check_password(request: Request, body: PasswordCheckRequest) -> PasswordCheckResponse:
    """Score a candidate password against the policy. Nothing is stored."""
    provider = _provider(request)
    verdict = provider.check_password(body.password, body.email, body.name)
    return PasswordCheckResponse(
        is_valid=verdict.is_valid,
        score=verdict.score,
        label=strength_label(verdict.score),
        errors=verdict.errors,
        suggestions=provider.policy.get_suggestions(body.password),
    )


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


@router.get("/auth/providers", response_model=list[OAuthProviderInfo])
async def list_providers() -> list[OAuthProviderInfo]:
    """Return the configured OAuth providers (empty when none are set up).

    Public endpoint -- the login page calls this to decide which provider
    buttons to render.
    """
    return [OAuthProviderInfo(**p) for p in get_enabled_providers(get_settings())]


def _require_enabled(provider: str) -> None:
    """Reject provider names that are not configured.

    Validated against the enabled list before touching the registry so a
    spoofed provider name cannot steer the redirect.
    """
    enabled = {p["name"] for p in get_enabled_providers(get_settings())}
    if provider not in enabled:
        raise HTTPException(
            status_code=404,
            detail={"code": "unknown_provider", "message": "OAuth provider is not configured."},
        )


def _login_error_redirect(error: str) -> RedirectResponse:
    return RedirectResponse(f"{get_settings().app_url.rstrip('/')}/login?error={error}", status_code=302)


@router.get("/auth/oauth/{provider}/login")
async def oauth_login(request: Request, provider: str):
    """Redirect the browser to the provider's authorization page."""
    _require_enabled(provider)
    client = request.app.state.oauth.create_client(provider)
    redirect_uri = str(request.url_for("oauth_callback", provider=provider))
    return await client.authorize_redirect(request, redirect_uri)


@router.get("/auth/oauth/{provider}/callback", name="oauth_callback")
async def oauth_callback(request: Request, provider: str) -> RedirectResponse:
    """Handle the provider callback: link or create the user, issue a session.

    Flow:
      1. Exchange the authorization code (Authlib checks the state value).
      2. Extract a provider-verified identity -- ValueError if unverified [H1].
      3. sign_in_with_oauth(): existing link, else link by email, else create.
      4. Set the session cookie and redirect to APP_URL.
    """
    _require_enabled(provider)
    client = request.app.state.oauth.create_client(provider)

    try:
        token = await client.authorize_access_token(request)
    except OAuthError:
        logger.exception("OAuth token exchange failed for provider %r", provider)
        return _login_error_redirect("oauth_failed")

    try:
        identity = await get_oauth_identity(client, provider, token)
    except ValueError:
        logger.warning("OAuth login rejected: unverified or missing email from %r", provider)
        return _login_error_redirect("oauth_failed")
    except (httpx.HTTPError, KeyError):
        # Provider API error response, or a profile without the expected fields.
        logger.exception("OAuth profile lookup failed for provider %r", provider)
        return _login_error_redirect("oauth_failed")

    result = await run_in_threadpool(
        _provider(request).sign_in_with_oauth,
        identity,
        ip_address=client_address(request),
        user_agent=_user_agent(request),
    )
    if not result.success:
        return _login_error_redirect(result.code.value)

    resp = RedirectResponse(get_settings().app_url, status_code=302)
    set_session_cookie(resp, result.session.session_token)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp
