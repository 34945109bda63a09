"""
auth/token_service.py -- Single-use, time-limited verification tokens.

Used for email verification and password reset links. A token is minted for
an identifier (normalized email) and a purpose, emailed as part of a link,
and redeemed exactly once.

Security design decisions:
  Storage: only HMAC-SHA256(SECRET_KEY, token) is persisted (see
       auth/hashing.py). The raw token exists in the email and the caller's
       memory, nowhere else.

  Single use: redemption is one conditional UPDATE in AuthStore.consume_token().
       Two concurrent redemptions of the same token cannot both succeed.

  Uniform failure: unknown, expired, consumed, wrong-purpose and
       wrong-identifier tokens all yield TokenVerification(valid=False). The
       caller cannot tell which rule failed, and neither can an attacker.

  Superseding: minting a token deletes earlier unconsumed tokens for the same
       identifier and purpose, so only the newest emailed link works.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError

from auth.hashing import digest_token, generate_token
from auth.models import Clock, TokenPurpose, VerificationToken, utcnow
from auth.store import AuthStore, normalize_email

logger = logging.getLogger("gatehouse.auth.tokens")

_MAX_GENERATION_ATTEMPTS = 3


@dataclass(frozen=True)
class IssuedToken:
    token: str  # raw value -- goes into the emailed link, never persisted
    expires_at: datetime


@dataclass(frozen=True)
class TokenVerification:
    valid: bool
    identifier: str | None = None
    consumed_at: datetime | None = None


_INVALID = TokenVerification(valid=False)


class TokenService:
    """Mint, verify and purge verification tokens.

    Usage:
        tokens = TokenService(store, secret_key)
        issued = tokens.create_token("a@example.com", TokenPurpose.PASSWORD_RESET)
        tokens.peek_token(issued.token, TokenPurpose.PASSWORD_RESET).valid     # True, still live
        tokens.redeem_token(issued.token, TokenPurpose.PASSWORD_RESET).valid   # True
        tokens.redeem_token(issued.token, TokenPurpose.PASSWORD_RESET).valid   # False
    """

    def __init__(
        self,
        store: AuthStore,
        secret_key: str,
        clock: Clock = utcnow,
        email_verification_ttl_minutes: int = 24 * 60,
        password_reset_ttl_minutes: int = 60,
    ) -> None:
        self.store = store
        self._secret_key = secret_key
        self._clock = clock
        self._ttls = {
            TokenPurpose.EMAIL_VERIFICATION: email_verification_ttl_minutes,
            TokenPurpose.PASSWORD_RESET: password_reset_ttl_minutes,
        }

    def create_token(
        self,
        identifier: str,
        purpose: TokenPurpose,
        ttl_minutes: int | None = None,
    ) -> IssuedToken:
        """Mint a token valid for ttl_minutes (purpose default when None).

        A hash collision with an existing row regenerates rather than failing.
        With 256-bit tokens a collision means a broken RNG, so after
        _MAX_GENERATION_ATTEMPTS the IntegrityError propagates.
        """
        identifier = normalize_email(identifier)
        now = self._clock()
        minutes = ttl_minutes if ttl_minutes is not None else self._ttls[purpose]
        expires_at = now + timedelta(minutes=minutes)

        for attempt in range(1, _MAX_GENERATION_ATTEMPTS + 1):
            raw = generate_token()
            record = VerificationToken(
                token_hash=digest_token(self._secret_key, raw),
                identifier=identifier,
                purpose=purpose,
                expires_at=expires_at,
                created_at=now,
            )
            try:
                self.store.create_token(record)
            except IntegrityError:
                logger.warning("Token hash collision on attempt %d; regenerating", attempt)
                if attempt == _MAX_GENERATION_ATTEMPTS:
                    raise
                continue
            return IssuedToken(token=raw, expires_at=expires_at)
        raise AssertionError("unreachable")

    def verify_token(self, token: str, identifier: str, purpose: TokenPurpose) -> TokenVerification:
        """Consume token if it is valid for this identifier and purpose."""
        if not token:
            return _INVALID
        return self._consume(token, purpose, normalize_email(identifier))

    def redeem_token(self, token: str, purpose: TokenPurpose) -> TokenVerification:
        """Consume token by value alone; the result carries the identifier it was minted for."""
        if not token:
            return _INVALID
        return self._consume(token, purpose, None)

    def peek_token(self, token: str, purpose: TokenPurpose) -> TokenVerification:
        """Report whether token is currently redeemable, without consuming it.

        Lets a caller run checks that need the identifier before spending the
        token. Only a later verify_token or redeem_token decides who wins.
        """
        if not token:
            return _INVALID
        row = self.store.get_live_token(digest_token(self._secret_key, token), purpose, self._clock())
        if row is None:
            return _INVALID
        return TokenVerification(valid=True, identifier=row.identifier)

    def _consume(self, token: str, purpose: TokenPurpose, identifier: str | None) -> TokenVerification:
        row = self.store.consume_token(
            digest_token(self._secret_key, token),
            purpose,
            self._clock(),
            identifier=identifier,
        )
        if row is None:
            return _INVALID
        return TokenVerification(valid=True, identifier=row.identifier, consumed_at=row.consumed_at)

    def cleanup_expired_tokens(self) -> int:
        removed = self.store.delete_expired_tokens(self._clock())
        if removed:
            logger.info("Removed %d expired verification token(s)", removed)
        return removed
