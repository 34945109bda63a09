"""
auth/sessions.py -- Server-side session lifecycle.

A session is an opaque 256-bit token held by the client (cookie or Bearer
header) and a row in the sessions table keyed by HMAC-SHA256(SECRET_KEY, token).

Lifetime rules, all checked on every validation:
  absolute   expires_at = created_at + max_age; never extended
  idle       last_validated_at + inactivity_timeout; sliding, bumped on
             every successful validation
  origin     when bind_origin is on, the creating client's address is
             recorded and later validations from a different address fail.
             Sessions created with binding off (or without an address) are
             never origin-checked.
  cap        at most max_concurrent sessions per user; creating one more
             evicts the least recently used

Expired and idle sessions are deleted lazily on validation and in bulk by
cleanup_expired_sessions().
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError

from auth.audit import log_auth_event, log_security_event
from auth.hashing import digest_token, generate_token
from auth.models import AuthUser, Clock, Session, User, utcnow
from auth.store import AuthStore

logger = logging.getLogger("gatehouse.auth.sessions")

_MAX_GENERATION_ATTEMPTS = 3


@dataclass(frozen=True)
class IssuedSession:
    session_token: str
    expires_at: datetime


@dataclass(frozen=True)
class SessionValidation:
    valid: bool
    user: AuthUser | None = None


_INVALID = SessionValidation(valid=False)


class SessionManager:
    def __init__(
        self,
        store: AuthStore,
        secret_key: str,
        clock: Clock = utcnow,
        max_age_seconds: int = 24 * 60 * 60,
        inactivity_seconds: int = 60 * 60,
        max_concurrent: int = 3,
        bind_origin: bool = True,
    ) -> None:
        self.store = store
        self._secret_key = secret_key
        self._clock = clock
        self.max_age = timedelta(seconds=max_age_seconds)
        self.inactivity = timedelta(seconds=inactivity_seconds)
        self.max_concurrent = max_concurrent
        self.bind_origin = bind_origin

    def _digest(self, session_token: str) -> str:
        return digest_token(self._secret_key, session_token)

    def create_session(
        self,
        user: User | AuthUser,
        origin_address: str | None = None,
        user_agent: str | None = None,
    ) -> IssuedSession:
        now = self._clock()
        expires_at = now + self.max_age
        for attempt in range(1, _MAX_GENERATION_ATTEMPTS + 1):
            raw = generate_token()
            record = Session(
                session_hash=self._digest(raw),
                user_id=user.id,
                expires_at=expires_at,
                origin_address=origin_address if self.bind_origin else None,
                user_agent=user_agent,
                created_at=now,
                last_validated_at=now,
            )
            try:
                self.store.create_session(record, max_concurrent=self.max_concurrent)
            except IntegrityError:
                logger.warning("Session token collision on attempt %d; regenerating", attempt)
                if attempt == _MAX_GENERATION_ATTEMPTS:
                    raise
                continue
            return IssuedSession(session_token=raw, expires_at=expires_at)
        raise AssertionError("unreachable")

    def validate_session(self, session_token: str | None, origin_address: str | None = None) -> SessionValidation:
        """Return the session's user if the token is live; bump its idle timer.

        origin_address is the address of the current request. It is compared
        only if the session recorded one at creation.
        """
        if not session_token:
            return _INVALID
        session_hash = self._digest(session_token)
        session = self.store.get_session(session_hash)
        if session is None:
            return _INVALID

        now = self._clock()
        if session.expires_at <= now:
            self.store.delete_session(session_hash)
            return _INVALID
        last_seen = session.last_validated_at or session.created_at
        if last_seen is not None and last_seen + self.inactivity <= now:
            self.store.delete_session(session_hash)
            log_auth_event("session_timeout", success=False, user_id=session.user_id, error="inactive")
            return _INVALID

        if session.origin_address and origin_address and session.origin_address != origin_address:
            log_security_event(
                "session_origin_mismatch",
                severity="medium",
                user_id=session.user_id,
                ip_address=origin_address,
                action_taken="rejected",
            )
            return _INVALID

        user = self.store.get_user_by_id(session.user_id)
        if user is None:
            self.store.delete_session(session_hash)
            return _INVALID

        self.store.touch_session(session_hash, now)
        return SessionValidation(valid=True, user=user.to_public())

    def destroy_session(self, session_token: str | None) -> bool:
        if not session_token:
            return False
        return self.store.delete_session(self._digest(session_token))

    def invalidate_user_sessions(self, user_id: str, reason: str = "security") -> int:
        """Delete every session of user_id in one statement. reason is recorded in the audit log."""
        removed = self.store.delete_user_sessions(user_id)
        log_auth_event("sessions_invalidated", success=True, user_id=user_id, reason=reason, count=removed)
        return removed

    def list_user_sessions(self, user_id: str) -> list[Session]:
        now = self._clock()
        return [
            s
            for s in self.store.list_user_sessions(user_id, now)
            if (s.last_validated_at or s.created_at or now) + self.inactivity > now
        ]

    def cleanup_expired_sessions(self) -> int:
        now = self._clock()
        removed = self.store.delete_expired_sessions(now, idle_cutoff=now - self.inactivity)
        if removed:
            logger.info("Removed %d expired session(s)", removed)
        return removed
