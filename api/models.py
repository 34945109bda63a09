"""
API request and response models for the Gatehouse REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import AuthUser, Session

# Upper bound on password input. bcrypt reads 72 bytes; the cap stops
# multi-megabyte bodies from reaching the hasher at all.
_PASSWORD_MAX = 128


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class SignupRequest(BaseModel):
    """Request body for POST /api/v1/auth/signup.

    Email format and the password policy are checked by the provider, not
    here, so the response carries the provider's full error list.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=320)
    password: str = Field(min_length=1, max_length=_PASSWORD_MAX)
    name: Optional[str] = Field(default=None, max_length=255)


class LoginRequest(BaseModel):
    email: str = Field(min_length=1, max_length=320)
    password: str = Field(min_length=1, max_length=_PASSWORD_MAX)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(min_length=1, max_length=_PASSWORD_MAX)
    new_password: str = Field(min_length=1, max_length=_PASSWORD_MAX)


class UpdateProfileRequest(BaseModel):
    """Body for PATCH /api/v1/auth/me. Omitted fields stay unchanged."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, max_length=255)
    image: Optional[str] = Field(default=None, max_length=2048)
    email: Optional[str] = Field(default=None, min_length=3, max_length=320)


class DeleteAccountRequest(BaseModel):
    """Body for DELETE /api/v1/auth/me. OAuth-only accounts omit the password."""

    password: Optional[str] = Field(default=None, max_length=_PASSWORD_MAX)


class EmailRequest(BaseModel):
    """Body for the reset-request and send-verification endpoints."""

    email: str = Field(min_length=1, max_length=320)


class ResetPasswordRequest(BaseModel):
    token: str = Field(min_length=1, max_length=256)
    new_password: str = Field(min_length=1, max_length=_PASSWORD_MAX)


class VerifyEmailRequest(BaseModel):
    token: str = Field(min_length=1, max_length=256)


class PasswordCheckRequest(BaseModel):
    password: str = Field(min_length=1, max_length=_PASSWORD_MAX)
    email: Optional[str] = Field(default=None, max_length=320)
    name: Optional[str] = Field(default=None, max_length=255)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    """Public view of a user. Never carries a password hash."""

    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    name: Optional[str] = None
    image: Optional[str] = None
    email_verified: bool
    has_password: bool
    created_at: Optional[datetime] = None
    linked_providers: list[str] = Field(default_factory=list)

    @classmethod
    def from_user(cls, user: AuthUser, linked_providers: Optional[list[str]] = None) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            name=user.name,
            image=user.image,
            email_verified=user.email_verified_at is not None,
            has_password=user.has_password,
            created_at=user.created_at,
            linked_providers=linked_providers or [],
        )


class LoginResponse(BaseModel):
    """Response for a successful login. The same token is also set as a cookie."""

    session_token: str
    token_type: str = "bearer"
    expires_at: datetime
    user: UserResponse
    # Only meaningful when PASSWORD_MAX_AGE_DAYS is set.
    password_expired: bool = False
    password_expires_in_days: Optional[int] = None


class SessionResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    created_at: Optional[datetime] = None
    last_validated_at: Optional[datetime] = None
    expires_at: datetime
    user_agent: Optional[str] = None
    origin_bound: bool

    @classmethod
    def from_session(cls, session: Session) -> "SessionResponse":
        return cls(
            created_at=session.created_at,
            last_validated_at=session.last_validated_at,
            expires_at=session.expires_at,
            user_agent=session.user_agent,
            origin_bound=session.origin_address is not None,
        )


class MessageResponse(BaseModel):
    message: str


class PasswordCheckResponse(BaseModel):
    is_valid: bool
    score: int = Field(ge=0, le=100)
    label: str
    errors: list[str]
    suggestions: list[str]


class OAuthProviderInfo(BaseModel):
    name: str
    label: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None
    errors: Optional[list[str]] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
