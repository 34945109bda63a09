"""
auth/provider.py -- CredentialAuthProvider: every user-facing auth flow.

Composes the leaf services:

    PasswordPolicy   auth/passwords.py
    PasswordHasher   auth/hashing.py
    TokenService     auth/token_service.py
    SessionManager   auth/sessions.py
    RateLimiter      auth/rate_limiter.py
    EmailSender      auth/email.py
    AuthStore        auth/store.py

Result contract:
  Operations that change state return AuthResult and never raise for
  expected failures. A StoreUnavailableError anywhere inside one is logged
  with its traceback and turned into a generic STORE_UNAVAILABLE result.
  Read-only lookups (validate_session, get_user, list_sessions,
  list_linked_providers, check_password_expiration) let StoreUnavailableError
  propagate; the API maps it to 503.

Security design decisions:
  [C1] Timing equalization. Unknown email, OAuth-only account, wrong password
       and rate-limited requests each cost exactly one bcrypt comparison.

  [C2] Enumeration defense. Login failures share one message. Password reset
       and verification requests answer identically for known and unknown
       addresses.

  [C3] Ordering. The primary effect (user row, token row, password hash)
       commits first. Secondary effects (session invalidation, email dispatch)
       run afterwards, are logged on failure, and never undo the primary one.

  [C4] Attempt limits. Every operation that compares a password the caller
       typed (authenticate, change_password, delete_user) consults the
       RateLimiter before comparing. Login is keyed per RATE_LIMIT_KEY; the
       signed-in operations are keyed per account.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import functools
import logging
import re
from typing import Protocol
from urllib.parse import quote

from sqlalchemy.exc import IntegrityError

from auth.audit import log_auth_event, log_security_event, mask_email
from auth.email import EmailLink, EmailSender
from auth.errors import AuthErrorCode, AuthResult, EmailDeliveryError, StoreUnavailableError
from auth.hashing import PasswordHasher
from auth.models import (
    AuthUser,
    Clock,
    LinkedAccount,
    OAuthIdentity,
    PasswordExpiry,
    Session,
    TokenPurpose,
    User,
    utcnow,
)
from auth.passwords import PasswordPolicy, PasswordValidationResult
from auth.rate_limiter import RateLimiter
from auth.sessions import SessionManager, SessionValidation
from auth.store import AuthStore, normalize_email
from auth.token_service import TokenService

logger = logging.getLogger("gatehouse.auth")

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_MAX_EMAIL_LENGTH = 320


def is_valid_email(email: str) -> bool:
    return len(email) <= _MAX_EMAIL_LENGTH and bool(_EMAIL_RE.match(email))


def _store_guard(operation: str):
    """Turn StoreUnavailableError into a STORE_UNAVAILABLE AuthResult."""

    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> AuthResult:
            try:
                return func(*args, **kwargs)
            except StoreUnavailableError:
                logger.exception("Auth store unavailable during %s", operation)
                return AuthResult.fail(AuthErrorCode.STORE_UNAVAILABLE)

        return wrapper

    return decorator


class AuthProvider(Protocol):
    """The caller-facing auth surface. The API layer depends on this only."""

    policy: PasswordPolicy

    def authenticate(
        self, email: str, password: str, ip_address: str | None = None, user_agent: str | None = None
    ) -> AuthResult: ...

    def create_user(self, email: str, password: str, name: str | None = None) -> AuthResult: ...

    def change_password(
        self, user_id: str, current_password: str, new_password: str, ip_address: str | None = None
    ) -> AuthResult: ...

    def update_user(
        self, user_id: str, name: str | None = None, image: str | None = None, email: str | None = None
    ) -> AuthResult: ...

    def delete_user(self, user_id: str, current_password: str | None = None) -> AuthResult: ...

    def check_password_expiration(self, user_id: str) -> PasswordExpiry: ...

    def request_password_reset(self, email: str) -> AuthResult: ...

    def reset_password_with_token(self, token: str, new_password: str) -> AuthResult: ...

    def send_email_verification(self, email: str) -> AuthResult: ...

    def verify_email_with_token(self, token: str) -> AuthResult: ...

    def link_or_create_oauth_user(
        self, provider: str, provider_account_id: str, email: str, profile: dict | None = None
    ) -> AuthResult: ...

    def sign_in_with_oauth(
        self, identity: OAuthIdentity, ip_address: str | None = None, user_agent: str | None = None
    ) -> AuthResult: ...

    def validate_session(self, session_token: str | None, origin_address: str | None = None) -> SessionValidation: ...

    def invalidate_user_sessions(self, user_id: str, reason: str = "security") -> AuthResult: ...

    def sign_out(self, session_token: str | None) -> AuthResult: ...

    def get_user(self, user_id: str) -> AuthUser | None: ...

    def list_sessions(self, user_id: str) -> list[Session]: ...

    def list_linked_providers(self, user_id: str) -> list[str]: ...

    def check_password(
        self, password: str, email: str | None = None, name: str | None = None
    ) -> PasswordValidationResult: ...

    def run_maintenance(self) -> dict[str, int]: ...

    def health(self) -> dict: ...


class CredentialAuthProvider:
    """Email/password accounts, verification and reset links, OAuth linking, sessions.

    Usage:
        provider = build_auth_provider(get_settings())   # see auth/factory.py
        result = provider.authenticate("a@example.com", "Str0ng!Pass1", ip_address="203.0.113.7")
        if result.success:
            cookie_value = result.session.session_token
    """

    def __init__(
        self,
        store: AuthStore,
        hasher: PasswordHasher,
        policy: PasswordPolicy,
        tokens: TokenService,
        sessions: SessionManager,
        limiter: RateLimiter,
        email_sender: EmailSender,
        app_url: str = "http://localhost:3000",
        clock: Clock = utcnow,
        password_history_limit: int = 5,
        oauth_link_by_email: bool = True,
        password_max_age_days: int = 0,
        password_expiry_warning_days: int = 7,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.policy = policy
        self.tokens = tokens
        self.sessions = sessions
        self.limiter = limiter
        self.email_sender = email_sender
        self.app_url = app_url.rstrip("/")
        self._clock = clock
        self.password_history_limit = password_history_limit
        self.oauth_link_by_email = oauth_link_by_email
        self.password_max_age_days = password_max_age_days
        self.password_expiry_warning_days = password_expiry_warning_days

    # ------------------------------------------------------------------
    # Sign-in
    # ------------------------------------------------------------------

    @_store_guard("authenticate")
    def authenticate(
        self,
        email: str,
        password: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> AuthResult:
        key = self.limiter.compose_identifier(email, ip_address)
        limited = self._limit_attempt(key, password)
        if limited is not None:
            log_auth_event("login", success=False, email=email, ip_address=ip_address, error="rate_limited")
            log_security_event(
                "login_rate_limited",
                severity="medium",
                email=email,
                ip_address=ip_address,
                action_taken="blocked",
            )
            return limited

        user = self.store.get_user_by_email(email)
        # verify(None) compares against the dummy hash: unknown email and
        # OAuth-only accounts cost the same as a wrong password [C1].
        hashed = user.hashed_password if user is not None else None
        if not self.hasher.verify(password, hashed):
            reason = "unknown_user" if user is None else ("no_password" if hashed is None else "bad_password")
            log_auth_event("login", success=False, email=email, ip_address=ip_address, error=reason)
            return AuthResult.fail(AuthErrorCode.INVALID_CREDENTIALS)

        self.limiter.reset(key)
        issued = self.sessions.create_session(user, origin_address=ip_address, user_agent=user_agent)
        expiry = self._password_expiry(user)
        log_auth_event(
            "login",
            success=True,
            user_id=user.id,
            email=user.email,
            ip_address=ip_address,
            password_expired=expiry.is_expired or None,
        )
        return AuthResult.ok(user=user.to_public(), session=issued, password_expiry=expiry)

    def _limit_attempt(self, key: str, password: str) -> AuthResult | None:
        """Count one password attempt under key. Returns the RATE_LIMITED result when blocked."""
        decision = self.limiter.check_and_increment(key)
        if decision.allowed:
            return None
        self.hasher.burn(password)  # [C1]
        return AuthResult.fail(AuthErrorCode.RATE_LIMITED, retry_after_seconds=decision.retry_after_seconds)

    def _password_expiry(self, user: User) -> PasswordExpiry:
        if self.password_max_age_days <= 0 or user.hashed_password is None:
            return PasswordExpiry()
        changed_at = user.password_changed_at or user.created_at
        if changed_at is None:
            return PasswordExpiry()
        age_days = (self._clock() - changed_at).days
        days_left = self.password_max_age_days - age_days
        return PasswordExpiry(
            is_expired=days_left <= 0,
            is_near_expiration=0 < days_left <= self.password_expiry_warning_days,
            days_until_expiration=max(0, days_left),
        )

    def check_password_expiration(self, user_id: str) -> PasswordExpiry:
        """Age status of the user's password. Inert when PASSWORD_MAX_AGE_DAYS is 0."""
        user = self.store.get_user_by_id(user_id)
        return self._password_expiry(user) if user is not None else PasswordExpiry()

    # ------------------------------------------------------------------
    # Sign-up
    # ------------------------------------------------------------------

    @_store_guard("create_user")
    def create_user(self, email: str, password: str, name: str | None = None) -> AuthResult:
        """Create a password account. No session is issued; the caller signs in explicitly."""
        email = normalize_email(email)
        if not is_valid_email(email):
            return AuthResult.fail(AuthErrorCode.INVALID_EMAIL)

        verdict = self.policy.validate(password, {"email": email, "name": name})
        if not verdict.is_valid:
            return AuthResult.fail(AuthErrorCode.WEAK_PASSWORD, details=verdict.errors)

        if self.store.get_user_by_email(email) is not None:
            log_auth_event("signup", success=False, email=email, error="duplicate_email")
            return AuthResult.fail(AuthErrorCode.DUPLICATE_EMAIL)

        hashed = self.hasher.hash(password)
        try:
            user = self.store.create_user(User(email=email, name=name, hashed_password=hashed), self._clock())
        except IntegrityError:
            # Lost a race with a concurrent signup for the same address.
            log_auth_event("signup", success=False, email=email, error="duplicate_email")
            return AuthResult.fail(AuthErrorCode.DUPLICATE_EMAIL)

        log_auth_event("signup", success=True, user_id=user.id, email=email)
        return AuthResult.ok(user=user.to_public())

    # ------------------------------------------------------------------
    # Password change and reset
    # ------------------------------------------------------------------

    @_store_guard("change_password")
    def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        ip_address: str | None = None,
    ) -> AuthResult:
        key = self.limiter.user_identifier(user_id, "password_change")
        limited = self._limit_attempt(key, current_password)  # [C4]
        if limited is not None:
            log_auth_event(
                "password_change", success=False, user_id=user_id, ip_address=ip_address, error="rate_limited"
            )
            log_security_event(
                "password_change_rate_limited",
                severity="medium",
                user_id=user_id,
                ip_address=ip_address,
                action_taken="blocked",
            )
            return limited

        user = self.store.get_user_by_id(user_id)
        hashed = user.hashed_password if user is not None else None
        if not self.hasher.verify(current_password, hashed):
            log_auth_event(
                "password_change", success=False, user_id=user_id, ip_address=ip_address, error="invalid_credentials"
            )
            return AuthResult.fail(AuthErrorCode.INVALID_CREDENTIALS)
        self.limiter.reset(key)

        failure = self._check_new_password(user, new_password)
        if failure is not None:
            return failure

        self.store.update_password(
            user.id,
            self.hasher.hash(new_password),
            self._clock(),
            previous_hash=user.hashed_password,
            history_limit=self.password_history_limit,
        )
        log_auth_event("password_change", success=True, user_id=user.id, email=user.email)
        self._invalidate_sessions_best_effort(user.id, "password_change")
        return AuthResult.ok(user=user.to_public())

    @_store_guard("request_password_reset")
    def request_password_reset(self, email: str) -> AuthResult:
        """Always succeeds with the same result; a link is sent only to existing accounts [C2]."""
        user = self.store.get_user_by_email(email) if is_valid_email(normalize_email(email)) else None
        if user is None:
            log_auth_event("password_reset_request", success=False, email=email, error="unknown_user")
            return AuthResult.ok()

        issued = self.tokens.create_token(user.email, TokenPurpose.PASSWORD_RESET)
        link = self._link("/auth/reset-password", issued.token, user.name)
        try:
            self.email_sender.send_password_reset_email(user.email, link)
        except EmailDeliveryError:
            logger.exception("Password reset email to user %s could not be sent", user.id)
        log_auth_event("password_reset_request", success=True, user_id=user.id, email=user.email)
        return AuthResult.ok()

    @_store_guard("reset_password_with_token")
    def reset_password_with_token(self, token: str, new_password: str) -> AuthResult:
        # Look the token up without spending it so every password rule runs
        # first; a rejected password leaves the link usable. Consumption
        # below is still the single atomic step.
        live = self.tokens.peek_token(token, TokenPurpose.PASSWORD_RESET)
        if not live.valid:
            log_auth_event("password_reset", success=False, error="invalid_token")
            return AuthResult.fail(AuthErrorCode.INVALID_OR_EXPIRED_TOKEN)

        user = self.store.get_user_by_email(live.identifier)
        if user is None:
            log_auth_event("password_reset", success=False, email=live.identifier, error="user_gone")
            return AuthResult.fail(AuthErrorCode.INVALID_OR_EXPIRED_TOKEN)

        failure = self._check_new_password(user, new_password)
        if failure is not None:
            return failure

        redeemed = self.tokens.verify_token(token, user.email, TokenPurpose.PASSWORD_RESET)
        if not redeemed.valid:
            # Spent or superseded by a concurrent request since the lookup.
            log_auth_event("password_reset", success=False, user_id=user.id, error="invalid_token")
            return AuthResult.fail(AuthErrorCode.INVALID_OR_EXPIRED_TOKEN)

        self.store.update_password(
            user.id,
            self.hasher.hash(new_password),
            self._clock(),
            previous_hash=user.hashed_password,
            history_limit=self.password_history_limit,
        )
        # Following an emailed link proves control of the address.
        self.store.mark_email_verified(user.id, self._clock())
        log_auth_event("password_reset", success=True, user_id=user.id, email=user.email)
        self._invalidate_sessions_best_effort(user.id, "password_reset")
        return AuthResult.ok(user=user.to_public())

    def _check_new_password(self, user: User, new_password: str) -> AuthResult | None:
        verdict = self.policy.validate(new_password, {"email": user.email, "name": user.name})
        if not verdict.is_valid:
            return AuthResult.fail(AuthErrorCode.WEAK_PASSWORD, details=verdict.errors)
        if self._is_recent_password(user, new_password):
            return AuthResult.fail(AuthErrorCode.PASSWORD_REUSED)
        return None

    def _is_recent_password(self, user: User, candidate: str) -> bool:
        """True if candidate matches the current hash or one of the archived ones."""
        if self.password_history_limit <= 0:
            return False
        previous = [user.hashed_password] if user.hashed_password else []
        previous += [
            entry.hashed_password for entry in self.store.get_password_history(user.id, self.password_history_limit)
        ]
        return any(self.hasher.verify(candidate, hashed) for hashed in previous)

    def _invalidate_sessions_best_effort(self, user_id: str, reason: str) -> None:
        try:
            self.sessions.invalidate_user_sessions(user_id, reason)
        except StoreUnavailableError:
            logger.error(
                "Session invalidation failed for user %s (reason=%s); existing sessions remain valid",
                user_id,
                reason,
                exc_info=True,
            )

    # ------------------------------------------------------------------
    # Profile and account
    # ------------------------------------------------------------------

    @_store_guard("update_user")
    def update_user(
        self,
        user_id: str,
        name: str | None = None,
        image: str | None = None,
        email: str | None = None,
    ) -> AuthResult:
        """Change name, image or email. None leaves a field unchanged.

        A new email is unverified until its owner follows the link sent to it.
        """
        user = self.store.get_user_by_id(user_id)
        if user is None:
            return AuthResult.fail(AuthErrorCode.USER_NOT_FOUND)

        new_email = None
        if email is not None and normalize_email(email) != user.email:
            new_email = normalize_email(email)
            if not is_valid_email(new_email):
                return AuthResult.fail(AuthErrorCode.INVALID_EMAIL)
            if self.store.get_user_by_email(new_email) is not None:
                return AuthResult.fail(AuthErrorCode.DUPLICATE_EMAIL)

        try:
            self.store.update_profile(user.id, self._clock(), name=name, image=image, email=new_email)
        except IntegrityError:
            return AuthResult.fail(AuthErrorCode.DUPLICATE_EMAIL)

        if new_email is not None:
            log_security_event(
                "email_changed",
                severity="low",
                user_id=user.id,
                email=new_email,
                previous_email=mask_email(user.email),
                action_taken="verification_reset",
            )
            self.send_email_verification(new_email)
        log_auth_event("profile_update", success=True, user_id=user.id)
        return AuthResult.ok(user=self.store.get_user_by_id(user.id).to_public())

    @_store_guard("delete_user")
    def delete_user(self, user_id: str, current_password: str | None = None) -> AuthResult:
        """Delete the account with its sessions, linked accounts, history and pending links.

        Password accounts confirm with current_password [C4]. OAuth-only
        accounts have nothing to confirm with; the live session is the proof.
        """
        user = self.store.get_user_by_id(user_id)
        if user is None:
            return AuthResult.fail(AuthErrorCode.USER_NOT_FOUND)

        if user.hashed_password is not None:
            key = self.limiter.user_identifier(user.id, "account_delete")
            limited = self._limit_attempt(key, current_password or "")
            if limited is not None:
                log_auth_event("account_delete", success=False, user_id=user.id, error="rate_limited")
                return limited
            if not self.hasher.verify(current_password or "", user.hashed_password):
                log_auth_event("account_delete", success=False, user_id=user.id, error="invalid_credentials")
                return AuthResult.fail(AuthErrorCode.INVALID_CREDENTIALS)
            self.limiter.reset(key)

        self.store.delete_user(user.id)
        log_security_event("account_deleted", severity="low", user_id=user.id, email=user.email, action_taken="deleted")
        return AuthResult.ok()

    # ------------------------------------------------------------------
    # Email verification
    # ------------------------------------------------------------------

    @_store_guard("send_email_verification")
    def send_email_verification(self, email: str) -> AuthResult:
        """Send a verification link. Unknown addresses get the same success result [C2]."""
        user = self.store.get_user_by_email(email) if is_valid_email(normalize_email(email)) else None
        if user is None:
            log_auth_event("email_verification_request", success=False, email=email, error="unknown_user")
            return AuthResult.ok()
        if user.is_email_verified:
            return AuthResult.fail(AuthErrorCode.ALREADY_VERIFIED)

        issued = self.tokens.create_token(user.email, TokenPurpose.EMAIL_VERIFICATION)
        link = self._link("/auth/verify-email", issued.token, user.name)
        try:
            self.email_sender.send_verification_email(user.email, link)
        except EmailDeliveryError:
            logger.exception("Verification email to user %s could not be sent", user.id)
        log_auth_event("email_verification_request", success=True, user_id=user.id, email=user.email)
        return AuthResult.ok()

    @_store_guard("verify_email_with_token")
    def verify_email_with_token(self, token: str) -> AuthResult:
        redeemed = self.tokens.redeem_token(token, TokenPurpose.EMAIL_VERIFICATION)
        if not redeemed.valid:
            log_auth_event("email_verification", success=False, error="invalid_token")
            return AuthResult.fail(AuthErrorCode.INVALID_OR_EXPIRED_TOKEN)

        user = self.store.get_user_by_email(redeemed.identifier)
        if user is None:
            return AuthResult.fail(AuthErrorCode.INVALID_OR_EXPIRED_TOKEN)
        self.store.mark_email_verified(user.id, self._clock())
        log_auth_event("email_verification", success=True, user_id=user.id, email=user.email)
        return AuthResult.ok(user=self.store.get_user_by_id(user.id).to_public())

    def _link(self, path: str, token: str, name: str | None) -> EmailLink:
        return EmailLink(token=token, url=f"{self.app_url}{path}?token={quote(token)}", name=name)

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    @_store_guard("link_or_create_oauth_user")
    def link_or_create_oauth_user(
        self,
        provider: str,
        provider_account_id: str,
        email: str,
        profile: dict | None = None,
    ) -> AuthResult:
        """Resolve a provider identity to a user, linking or creating as needed.

        email must already be verified by the provider (see auth/oauth.py).
        Repeating the call with the same identity returns the same user and
        never creates a second link.
        """
        profile = profile or {}
        email = normalize_email(email)

        user = self._user_for_link(provider, provider_account_id)
        if user is not None:
            return AuthResult.ok(user=user.to_public())

        existing = self.store.get_user_by_email(email)
        if existing is not None:
            if not self.oauth_link_by_email:
                log_security_event(
                    "oauth_link_refused",
                    severity="low",
                    user_id=existing.id,
                    email=email,
                    provider=provider,
                    action_taken="account_link_required",
                )
                return AuthResult.fail(AuthErrorCode.ACCOUNT_LINK_REQUIRED)
            try:
                self.store.create_linked_account(
                    LinkedAccount(user_id=existing.id, provider=provider, provider_account_id=provider_account_id),
                    self._clock(),
                )
            except IntegrityError:
                # A concurrent callback linked this identity first.
                user = self._user_for_link(provider, provider_account_id)
                return AuthResult.ok(user=(user or existing).to_public())
            # Provider-verified email proves control of the address.
            self.store.mark_email_verified(existing.id, self._clock())
            log_security_event(
                "oauth_implicit_link",
                severity="low",
                user_id=existing.id,
                email=email,
                provider=provider,
                action_taken="linked",
            )
            return AuthResult.ok(user=self.store.get_user_by_id(existing.id).to_public())

        now = self._clock()
        new_user = User(
            email=email,
            name=profile.get("name"),
            image=profile.get("image"),
            hashed_password=None,
            email_verified_at=now,
        )
        try:
            created = self.store.create_oauth_user(new_user, provider, provider_account_id, now)
        except IntegrityError:
            # Lost a race: either the identity or the email now exists. Re-read.
            user = self._user_for_link(provider, provider_account_id)
            if user is not None:
                return AuthResult.ok(user=user.to_public())
            return self.link_or_create_oauth_user(provider, provider_account_id, email, profile)
        log_auth_event("oauth_signup", success=True, user_id=created.id, email=email, provider=provider)
        return AuthResult.ok(user=created.to_public())

    def _user_for_link(self, provider: str, provider_account_id: str) -> User | None:
        link = self.store.get_linked_account(provider, provider_account_id)
        return self.store.get_user_by_id(link.user_id) if link is not None else None

    @_store_guard("sign_in_with_oauth")
    def sign_in_with_oauth(
        self,
        identity: OAuthIdentity,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> AuthResult:
        linked = self.link_or_create_oauth_user(
            identity.provider,
            identity.provider_account_id,
            identity.email,
            {"name": identity.name, "image": identity.image},
        )
        if not linked.success:
            log_auth_event("oauth_login", success=False, email=identity.email, ip_address=ip_address, error=linked.code.value)
            return linked
        issued = self.sessions.create_session(linked.user, origin_address=ip_address, user_agent=user_agent)
        log_auth_event(
            "oauth_login",
            success=True,
            user_id=linked.user.id,
            email=linked.user.email,
            ip_address=ip_address,
            provider=identity.provider,
        )
        return AuthResult.ok(user=linked.user, session=issued)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def validate_session(self, session_token: str | None, origin_address: str | None = None) -> SessionValidation:
        return self.sessions.validate_session(session_token, origin_address)

    @_store_guard("invalidate_user_sessions")
    def invalidate_user_sessions(self, user_id: str, reason: str = "security") -> AuthResult:
        self.sessions.invalidate_user_sessions(user_id, reason)
        return AuthResult.ok()

    @_store_guard("sign_out")
    def sign_out(self, session_token: str | None) -> AuthResult:
        if self.sessions.destroy_session(session_token):
            log_auth_event("logout", success=True)
        return AuthResult.ok()

    def get_user(self, user_id: str) -> AuthUser | None:
        user = self.store.get_user_by_id(user_id)
        return user.to_public() if user is not None else None

    def list_sessions(self, user_id: str) -> list[Session]:
        return self.sessions.list_user_sessions(user_id)

    def list_linked_providers(self, user_id: str) -> list[str]:
        """Names of the OAuth providers linked to the user, oldest link first."""
        return [account.provider for account in self.store.list_linked_accounts(user_id)]

    # ------------------------------------------------------------------
    # Utilities
    # ------------------------------------------------------------------

    def check_password(
        self,
        password: str,
        email: str | None = None,
        name: str | None = None,
    ) -> PasswordValidationResult:
        user_info = {"email": email, "name": name} if (email or name) else None
        return self.policy.validate(password, user_info)

    def run_maintenance(self) -> dict[str, int]:
        """Purge expired tokens, dead sessions and stale counters. Safe to repeat."""
        return {
            "tokens": self.tokens.cleanup_expired_tokens(),
            "sessions": self.sessions.cleanup_expired_sessions(),
            "rate_limit_counters": self.limiter.cleanup_stale_counters(),
        }

    def health(self) -> dict:
        try:
            ok = self.store.ping()
        except StoreUnavailableError:
            logger.exception("Auth store health check failed")
            ok = False
        return {"database": "ok" if ok else "unavailable"}
