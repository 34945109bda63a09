"""
auth/factory.py -- Build a CredentialAuthProvider from Settings.

The one place backends are chosen. Called once from the FastAPI lifespan and
from the CLI; tests call it with their own store, email sender and clock.

  AUTH_BACKEND=database  AuthStore on DATABASE_URL
  AUTH_BACKEND=memory    AuthStore on an in-memory SQLite database
                         (lost on restart; development and demos only)

  EMAIL_BACKEND=resend   ResendEmailSender (requires RESEND_API_KEY)
  EMAIL_BACKEND=console  ConsoleEmailSender
  EMAIL_BACKEND=memory   MemoryEmailSender
"""

from __future__ import annotations

import logging

from auth.email import ConsoleEmailSender, EmailSender, MemoryEmailSender, ResendEmailSender
from auth.hashing import PasswordHasher
from auth.models import Clock, utcnow
from auth.passwords import PasswordPolicy
from auth.provider import CredentialAuthProvider
from auth.rate_limiter import RateLimiter
from auth.sessions import SessionManager
from auth.store import AuthStore
from auth.token_service import TokenService
from core.config import Settings

logger = logging.getLogger("gatehouse.auth.factory")


def build_store(settings: Settings) -> AuthStore:
    if settings.auth_backend == "memory":
        logger.warning("AUTH_BACKEND=memory: accounts and sessions are lost on restart")
        return AuthStore("sqlite://")
    return AuthStore(settings.database_url)


def build_email_sender(settings: Settings) -> EmailSender:
    if settings.email_backend == "resend":
        return ResendEmailSender(settings.resend_api_key, settings.email_from, settings.email_from_name)
    if settings.email_backend == "memory":
        return MemoryEmailSender()
    if not settings.debug:
        logger.warning("EMAIL_BACKEND=console in production mode: verification links are only logged")
    return ConsoleEmailSender()


def build_auth_provider(
    settings: Settings,
    store: AuthStore | None = None,
    email_sender: EmailSender | None = None,
    clock: Clock = utcnow,
    hasher: PasswordHasher | None = None,
) -> CredentialAuthProvider:
    store = store or build_store(settings)
    email_sender = email_sender or build_email_sender(settings)
    hasher = hasher or PasswordHasher(rounds=settings.bcrypt_rounds)

    tokens = TokenService(
        store,
        settings.secret_key,
        clock=clock,
        email_verification_ttl_minutes=settings.email_verification_ttl_minutes,
        password_reset_ttl_minutes=settings.password_reset_ttl_minutes,
    )
    sessions = SessionManager(
        store,
        settings.secret_key,
        clock=clock,
        max_age_seconds=settings.session_max_age_seconds,
        inactivity_seconds=settings.session_inactivity_seconds,
        max_concurrent=settings.session_max_concurrent,
        bind_origin=settings.session_bind_origin,
    )
    limiter = RateLimiter(
        store,
        max_attempts=settings.rate_limit_max_attempts,
        window_seconds=settings.rate_limit_window_seconds,
        lockout_seconds=settings.rate_limit_lockout_seconds,
        extend_on_blocked=settings.rate_limit_extend_on_blocked,
        key_mode=settings.rate_limit_key,
        clock=clock,
    )
    logger.info(
        "Auth provider ready (backend=%s, email=%s, bcrypt_rounds=%d)",
        settings.auth_backend,
        settings.email_backend,
        hasher.rounds,
    )
    return CredentialAuthProvider(
        store=store,
        hasher=hasher,
        policy=PasswordPolicy.from_settings(settings),
        tokens=tokens,
        sessions=sessions,
        limiter=limiter,
        email_sender=email_sender,
        app_url=settings.app_url,
        clock=clock,
        password_history_limit=settings.password_history_limit,
        oauth_link_by_email=settings.oauth_link_by_email,
        password_max_age_days=settings.password_max_age_days,
        password_expiry_warning_days=settings.password_expiry_warning_days,
    )
