"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, near-zero logic). Dataclasses own
domain shape; the store and services do the work.

Timestamps are timezone-aware UTC datetimes everywhere in Python. The store
persists them as epoch seconds so SQL comparisons are plain numeric ones.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable


class TokenPurpose(str, Enum):
    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_RESET = "password_reset"


@dataclass
class User:
    """A person who can sign in to the application.

    email is stored normalized (stripped, lower-cased) so the UNIQUE index on
    it makes uniqueness case-insensitive without a functional index.

    hashed_password is None for OAuth-only accounts. It never leaves the
    provider boundary -- results carry AuthUser (see to_public()).
    """

    email: str
    id: str | None = None
    name: str | None = None
    image: str | None = None
    hashed_password: str | None = None  # None = OAuth-only user
    email_verified_at: datetime | None = None
    password_changed_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_email_verified(self) -> bool:
        return self.email_verified_at is not None

    def to_public(self) -> AuthUser:
        return AuthUser(
            id=self.id or "",
            email=self.email,
            name=self.name,
            image=self.image,
            email_verified_at=self.email_verified_at,
            created_at=self.created_at,
            has_password=self.hashed_password is not None,
        )


@dataclass(frozen=True)
class AuthUser:
    """The caller-facing view of a User. Has no password field by construction."""

    id: str
    email: str
    name: str | None = None
    image: str | None = None
    email_verified_at: datetime | None = None
    created_at: datetime | None = None
    has_password: bool = False


@dataclass
class LinkedAccount:
    """An external identity (provider, provider_account_id) bound to a user.

    At most one row per (provider, provider_account_id); a user may have one
    per provider. Never deleted by this core.
    """

    user_id: str
    provider: str  # "github", "google", "oidc"
    provider_account_id: str  # provider's stable subject id
    id: int | None = None
    created_at: datetime | None = None


@dataclass
class Session:
    """A server-side session record.

    session_hash is HMAC-SHA256(SECRET_KEY, raw_token). The raw token lives
    only in the client's cookie; a database leak does not yield live sessions.
    origin_address is None when the session was created without origin binding.
    """

    session_hash: str
    user_id: str
    expires_at: datetime
    origin_address: str | None = None
    user_agent: str | None = None
    id: int | None = None
    created_at: datetime | None = None
    last_validated_at: datetime | None = None


@dataclass
class VerificationToken:
    """A single-use, purpose-scoped secret. Only token_hash is persisted."""

    token_hash: str
    identifier: str  # normalized email
    purpose: TokenPurpose
    expires_at: datetime
    consumed_at: datetime | None = None
    id: int | None = None
    created_at: datetime | None = None


@dataclass
class RateLimitCounter:
    identifier: str
    window_start: datetime
    attempt_count: int = 0
    blocked_until: datetime | None = None


@dataclass
class PasswordHistoryEntry:
    user_id: str
    hashed_password: str
    created_at: datetime | None = None
    id: int | None = None


@dataclass(frozen=True)
class PasswordExpiry:
    """Age of a user's current password against PASSWORD_MAX_AGE_DAYS.

    days_until_expiration is None when expiry is disabled or the account has
    no password. An expired password still signs in; the caller is expected
    to send the user to change it.
    """

    is_expired: bool = False
    is_near_expiration: bool = False
    days_until_expiration: int | None = None


@dataclass(frozen=True)
class OAuthIdentity:
    """Normalized identity extracted from a provider callback (see auth/oauth.py).

    email is only ever populated with a provider-verified address.
    """

    provider: str
    provider_account_id: str
    email: str
    name: str | None = None
    image: str | None = None
    raw_profile: dict = field(default_factory=dict, compare=False)


def utcnow() -> datetime:
    """Default clock for the auth services. Tests inject their own callable."""
    return datetime.now(timezone.utc)


Clock = Callable[[], datetime]
