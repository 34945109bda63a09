"""
auth/errors.py -- Result envelope and error taxonomy for the auth core.

Expected failures (wrong password, weak password, expired link...) are
outcomes, not exceptions: every caller-facing operation returns an AuthResult
and never raises for them. Only two exception types exist:

  StoreUnavailableError -- raised by AuthStore when the database cannot be
      reached. The provider catches it, logs the detail server-side, and
      returns a generic STORE_UNAVAILABLE result.

  EmailDeliveryError -- raised by EmailSender implementations. The provider
      catches it and logs it; email dispatch is a best-effort side effect.

Messages are deliberately coarse. INVALID_CREDENTIALS covers unknown user,
OAuth-only account and wrong password; INVALID_OR_EXPIRED_TOKEN covers unknown,
expired, consumed, wrong-identifier and wrong-purpose tokens.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from auth.models import AuthUser, PasswordExpiry
    from auth.sessions import IssuedSession


class StoreUnavailableError(Exception):
    """The persistent store could not complete a request (connectivity, locking)."""


class EmailDeliveryError(Exception):
    """An email could not be handed to the delivery service."""


class AuthErrorCode(str, Enum):
    INVALID_CREDENTIALS = "invalid_credentials"
    RATE_LIMITED = "rate_limited"
    WEAK_PASSWORD = "weak_password"
    PASSWORD_REUSED = "password_reused"
    DUPLICATE_EMAIL = "duplicate_email"
    INVALID_EMAIL = "invalid_email"
    INVALID_OR_EXPIRED_TOKEN = "invalid_or_expired_token"
    ALREADY_VERIFIED = "already_verified"
    USER_NOT_FOUND = "user_not_found"  # internal only -- never surfaced by reset/verify requests
    ACCOUNT_LINK_REQUIRED = "account_link_required"
    INVALID_SESSION = "invalid_session"
    STORE_UNAVAILABLE = "store_unavailable"


MESSAGES: dict[AuthErrorCode, str] = {
    AuthErrorCode.INVALID_CREDENTIALS: "Invalid credentials",
    AuthErrorCode.RATE_LIMITED: "Too many attempts. Please try again later.",
    AuthErrorCode.WEAK_PASSWORD: "Password does not meet the password policy",
    AuthErrorCode.PASSWORD_REUSED: "Password was used recently. Choose a different password.",
    AuthErrorCode.DUPLICATE_EMAIL: "Email already exists",
    AuthErrorCode.INVALID_EMAIL: "Invalid email format",
    AuthErrorCode.INVALID_OR_EXPIRED_TOKEN: "Invalid or expired token",
    AuthErrorCode.ALREADY_VERIFIED: "Email is already verified",
    AuthErrorCode.USER_NOT_FOUND: "User not found",
    AuthErrorCode.ACCOUNT_LINK_REQUIRED: "An account with this email already exists. Sign in to link it.",
    AuthErrorCode.INVALID_SESSION: "Session is invalid or expired",
    AuthErrorCode.STORE_UNAVAILABLE: "Authentication service unavailable",
}


@dataclass(frozen=True)
class AuthResult:
    """Uniform {success, error?} envelope returned by every provider operation.

    details carries the PasswordPolicy error list for WEAK_PASSWORD; for every
    other code it is empty.
    """

    success: bool
    error: str | None = None
    code: AuthErrorCode | None = None
    user: AuthUser | None = None
    session: IssuedSession | None = None
    retry_after_seconds: int | None = None
    details: list[str] = field(default_factory=list)
    password_expiry: PasswordExpiry | None = None

    @classmethod
    def ok(
        cls,
        user: AuthUser | None = None,
        session: IssuedSession | None = None,
        password_expiry: PasswordExpiry | None = None,
    ) -> AuthResult:
        return cls(success=True, user=user, session=session, password_expiry=password_expiry)

    @classmethod
    def fail(cls, code: AuthErrorCode, **kwargs) -> AuthResult:
        return cls(success=False, error=MESSAGES[code], code=code, **kwargs)
