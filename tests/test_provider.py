"""
tests/test_provider.py -- Flow tests for auth/provider.py (CredentialAuthProvider).

Every test runs against a real AuthStore (in-memory SQLite), a FakeClock and a
MemoryEmailSender; nothing below the provider is mocked except where a test
injects a failure on purpose.

Covers:
  - Lockout: five failures, then RATE_LIMITED even for the right password
  - Uniform failure for unknown user, OAuth-only account and wrong password
  - Signup validation (email format, policy, duplicates) without a session
  - Password change and reset: policy, history, session invalidation from
    every address, per-account attempt limit, rejected resets keep the link
  - Profile updates (email change re-verifies) and account deletion
  - Optional password expiry, reported on login but never blocking it
  - Reset and verification requests answer identically for unknown emails
  - Single-use, purpose-scoped links
  - OAuth link-or-create idempotence and the link-by-email switch
  - Secondary-effect failures (email, session invalidation) never fail the call
  - STORE_UNAVAILABLE for writes, StoreUnavailableError for reads
  - Maintenance and health
"""

from __future__ import annotations

import logging

import pytest
from sqlalchemy import text

from auth.email import MemoryEmailSender
from auth.errors import AuthErrorCode, AuthResult, StoreUnavailableError
from auth.factory import build_auth_provider
from auth.models import OAuthIdentity, PasswordExpiry, TokenPurpose
from tests.helpers import OTHER_PASSWORD, STRONG_PASSWORD, make_settings

EMAIL = "a@example.com"
WRONG = "Wr0ng!Guess9"


@pytest.fixture
def user(provider):
    result = provider.create_user(EMAIL, STRONG_PASSWORD, "Ann Lee")
    assert result.success, result.error
    return result.user


def _reset_token(outbox: MemoryEmailSender) -> str:
    return outbox.last("password_reset").link.token


def _verification_token(outbox: MemoryEmailSender) -> str:
    return outbox.last("verification").link.token


class TestLockout:
    def test_sixth_attempt_is_rate_limited_even_with_correct_password(self, provider, user):
        for _ in range(5):
            assert provider.authenticate(EMAIL, WRONG).code is AuthErrorCode.INVALID_CREDENTIALS

        sixth = provider.authenticate(EMAIL, WRONG)
        assert sixth.code is AuthErrorCode.RATE_LIMITED
        assert sixth.retry_after_seconds > 0

        blocked = provider.authenticate(EMAIL, STRONG_PASSWORD)
        assert blocked.code is AuthErrorCode.RATE_LIMITED
        assert blocked.session is None

    def test_blocked_attempt_never_checks_the_password(self, provider, user, monkeypatch):
        for _ in range(6):
            provider.authenticate(EMAIL, WRONG)

        def fail(*args, **kwargs):
            raise AssertionError("password compared while blocked")

        monkeypatch.setattr(provider.hasher, "verify", fail)
        assert provider.authenticate(EMAIL, STRONG_PASSWORD).code is AuthErrorCode.RATE_LIMITED

    def test_login_allowed_after_lockout(self, provider, user, clock):
        for _ in range(6):
            provider.authenticate(EMAIL, WRONG)
        clock.advance(minutes=15, seconds=1)
        assert provider.authenticate(EMAIL, STRONG_PASSWORD).success

    def test_success_resets_the_counter(self, provider, user):
        for _ in range(4):
            provider.authenticate(EMAIL, WRONG)
        assert provider.authenticate(EMAIL, STRONG_PASSWORD).success
        for _ in range(5):
            assert provider.authenticate(EMAIL, WRONG).code is AuthErrorCode.INVALID_CREDENTIALS
        assert provider.authenticate(EMAIL, WRONG).code is AuthErrorCode.RATE_LIMITED

    def test_counter_keyed_by_email_and_address(self, provider, user):
        for _ in range(6):
            provider.authenticate(EMAIL, WRONG, ip_address="203.0.113.7")
        assert provider.authenticate(EMAIL, STRONG_PASSWORD, ip_address="198.51.100.2").success


class TestAuthenticate:
    def test_success_issues_session(self, provider, user):
        result = provider.authenticate("A@Example.com", STRONG_PASSWORD, ip_address="203.0.113.7")
        assert result.success
        assert result.user.id == user.id
        assert not hasattr(result.user, "hashed_password")
        assert provider.validate_session(result.session.session_token, "203.0.113.7").user.id == user.id

    def test_failures_are_indistinguishable(self, provider, user):
        provider.link_or_create_oauth_user("github", "42", "oauth-only@example.com")
        results = [
            provider.authenticate(EMAIL, WRONG),
            provider.authenticate("nobody@example.com", WRONG),
            provider.authenticate("oauth-only@example.com", WRONG),
        ]
        assert {(r.code, r.error) for r in results} == {(AuthErrorCode.INVALID_CREDENTIALS, "Invalid credentials")}

    def test_session_rejected_from_other_origin(self, provider, user):
        issued = provider.authenticate(EMAIL, STRONG_PASSWORD, ip_address="203.0.113.7").session
        assert not provider.validate_session(issued.session_token, "198.51.100.2").valid

    def test_sign_out(self, provider, user):
        issued = provider.authenticate(EMAIL, STRONG_PASSWORD).session
        assert provider.sign_out(issued.session_token).success
        assert not provider.validate_session(issued.session_token).valid


class TestCreateUser:
    def test_creates_unverified_user_without_session(self, provider):
        result = provider.create_user(" New@Example.com ", STRONG_PASSWORD)
        assert result.success
        assert result.session is None
        assert result.user.email == "new@example.com"
        assert result.user.email_verified_at is None
        assert result.user.has_password

    def test_invalid_email(self, provider):
        assert provider.create_user("not-an-email", STRONG_PASSWORD).code is AuthErrorCode.INVALID_EMAIL

    def test_weak_password_lists_every_error(self, provider):
        result = provider.create_user("new@example.com", "short")
        assert result.code is AuthErrorCode.WEAK_PASSWORD
        assert len(result.details) >= 3

    def test_password_with_personal_info_rejected(self, provider):
        result = provider.create_user("jdoe@example.com", "Jdoe#Secure9")
        assert result.code is AuthErrorCode.WEAK_PASSWORD
        assert "Password should not contain your email or name" in result.details

    def test_duplicate_email_case_insensitive(self, provider, user):
        assert provider.create_user("A@EXAMPLE.COM", OTHER_PASSWORD).code is AuthErrorCode.DUPLICATE_EMAIL


class TestChangePassword:
    def test_change_ends_every_session(self, provider, user):
        addresses = ["203.0.113.7", "198.51.100.2"]
        sessions = {ip: provider.authenticate(EMAIL, STRONG_PASSWORD, ip_address=ip).session for ip in addresses}
        assert all(provider.validate_session(s.session_token, ip).valid for ip, s in sessions.items())

        assert provider.change_password(user.id, STRONG_PASSWORD, OTHER_PASSWORD, ip_address="203.0.113.7").success
        assert not any(provider.validate_session(s.session_token, ip).valid for ip, s in sessions.items())
        assert provider.authenticate(EMAIL, OTHER_PASSWORD).success
        assert provider.authenticate(EMAIL, STRONG_PASSWORD).code is AuthErrorCode.INVALID_CREDENTIALS

    def test_wrong_current_password(self, provider, user):
        result = provider.change_password(user.id, WRONG, OTHER_PASSWORD)
        assert result.code is AuthErrorCode.INVALID_CREDENTIALS

    def test_weak_new_password(self, provider, user):
        assert provider.change_password(user.id, STRONG_PASSWORD, "weak").code is AuthErrorCode.WEAK_PASSWORD

    def test_current_password_cannot_be_reused(self, provider, user):
        result = provider.change_password(user.id, STRONG_PASSWORD, STRONG_PASSWORD)
        assert result.code is AuthErrorCode.PASSWORD_REUSED

    def test_recent_password_cannot_be_reused(self, provider, user):
        assert provider.change_password(user.id, STRONG_PASSWORD, OTHER_PASSWORD).success
        result = provider.change_password(user.id, OTHER_PASSWORD, STRONG_PASSWORD)
        assert result.code is AuthErrorCode.PASSWORD_REUSED

    def test_history_disabled_allows_reuse(self, store, outbox, clock, hasher):
        provider = build_auth_provider(
            make_settings(password_history_limit=0), store=store, email_sender=outbox, clock=clock, hasher=hasher
        )
        created = provider.create_user(EMAIL, STRONG_PASSWORD).user
        assert provider.change_password(created.id, STRONG_PASSWORD, STRONG_PASSWORD).success

    def test_session_invalidation_failure_is_logged_not_raised(self, provider, user, monkeypatch, caplog):
        def unavailable(*args, **kwargs):
            raise StoreUnavailableError("database is locked")

        monkeypatch.setattr(provider.sessions, "invalidate_user_sessions", unavailable)
        with caplog.at_level(logging.ERROR, logger="gatehouse.auth"):
            result = provider.change_password(user.id, STRONG_PASSWORD, OTHER_PASSWORD)
        assert result.success
        assert provider.authenticate(EMAIL, OTHER_PASSWORD).success
        assert any("Session invalidation failed" in r.getMessage() for r in caplog.records)

    def test_wrong_current_password_is_rate_limited(self, provider, user):
        for _ in range(5):
            assert provider.change_password(user.id, WRONG, OTHER_PASSWORD).code is AuthErrorCode.INVALID_CREDENTIALS

        blocked = provider.change_password(user.id, STRONG_PASSWORD, OTHER_PASSWORD)
        assert blocked.code is AuthErrorCode.RATE_LIMITED
        assert blocked.retry_after_seconds > 0
        assert provider.authenticate(EMAIL, STRONG_PASSWORD).success

    def test_blocked_change_never_checks_the_password(self, provider, user, monkeypatch):
        for _ in range(6):
            provider.change_password(user.id, WRONG, OTHER_PASSWORD)

        def fail(*args, **kwargs):
            raise AssertionError("password compared while blocked")

        monkeypatch.setattr(provider.hasher, "verify", fail)
        assert provider.change_password(user.id, STRONG_PASSWORD, OTHER_PASSWORD).code is AuthErrorCode.RATE_LIMITED

    def test_change_limit_follows_the_account_across_addresses(self, provider, user):
        for i in range(5):
            provider.change_password(user.id, WRONG, OTHER_PASSWORD, ip_address=f"203.0.113.{i}")
        result = provider.change_password(user.id, STRONG_PASSWORD, OTHER_PASSWORD, ip_address="198.51.100.2")
        assert result.code is AuthErrorCode.RATE_LIMITED

    def test_correct_current_password_resets_the_counter(self, provider, user):
        for _ in range(4):
            provider.change_password(user.id, WRONG, OTHER_PASSWORD)
        assert provider.change_password(user.id, STRONG_PASSWORD, "weak").code is AuthErrorCode.WEAK_PASSWORD
        for _ in range(4):
            provider.change_password(user.id, WRONG, OTHER_PASSWORD)
        assert provider.change_password(user.id, STRONG_PASSWORD, OTHER_PASSWORD).success

    def test_change_limit_allows_again_after_lockout(self, provider, user, clock):
        for _ in range(6):
            provider.change_password(user.id, WRONG, OTHER_PASSWORD)
        clock.advance(minutes=15, seconds=1)
        assert provider.change_password(user.id, STRONG_PASSWORD, OTHER_PASSWORD).success


class TestPasswordReset:
    def test_known_and_unknown_emails_get_identical_results(self, provider, outbox, user):
        known = provider.request_password_reset(EMAIL)
        unknown = provider.request_password_reset("nobody@example.com")
        assert known == unknown == AuthResult.ok()
        assert [m.to for m in outbox.outbox] == [EMAIL]

    def test_reset_link_points_at_app(self, provider, outbox, user):
        provider.request_password_reset(EMAIL)
        link = outbox.last("password_reset").link
        assert link.url.startswith("http://localhost:3000/auth/reset-password?token=")
        assert link.name == "Ann Lee"

    def test_full_reset_flow(self, provider, outbox, store, user):
        session = provider.authenticate(EMAIL, STRONG_PASSWORD).session
        provider.request_password_reset(EMAIL)
        result = provider.reset_password_with_token(_reset_token(outbox), OTHER_PASSWORD)
        assert result.success
        assert provider.authenticate(EMAIL, OTHER_PASSWORD).success
        assert not provider.validate_session(session.session_token).valid
        assert store.get_user_by_email(EMAIL).email_verified_at is not None

    def test_reset_token_is_single_use(self, provider, outbox, user):
        provider.request_password_reset(EMAIL)
        token = _reset_token(outbox)
        assert provider.reset_password_with_token(token, OTHER_PASSWORD).success
        again = provider.reset_password_with_token(token, "An0ther!Secret")
        assert again.code is AuthErrorCode.INVALID_OR_EXPIRED_TOKEN

    def test_weak_password_does_not_spend_token(self, provider, outbox, user):
        provider.request_password_reset(EMAIL)
        token = _reset_token(outbox)
        assert provider.reset_password_with_token(token, "weak").code is AuthErrorCode.WEAK_PASSWORD
        assert provider.reset_password_with_token(token, OTHER_PASSWORD).success

    def test_reset_ends_sessions_from_every_address(self, provider, outbox, user):
        addresses = ["203.0.113.7", "198.51.100.2"]
        sessions = {ip: provider.authenticate(EMAIL, STRONG_PASSWORD, ip_address=ip).session for ip in addresses}
        provider.request_password_reset(EMAIL)
        assert provider.reset_password_with_token(_reset_token(outbox), OTHER_PASSWORD).success
        assert not any(provider.validate_session(s.session_token, ip).valid for ip, s in sessions.items())

    def test_reused_password_does_not_spend_token(self, provider, outbox, user):
        provider.request_password_reset(EMAIL)
        token = _reset_token(outbox)
        assert provider.reset_password_with_token(token, STRONG_PASSWORD).code is AuthErrorCode.PASSWORD_REUSED
        assert provider.reset_password_with_token(token, OTHER_PASSWORD).success

    def test_personal_info_password_does_not_spend_token(self, provider, outbox, user):
        provider.request_password_reset(EMAIL)
        token = _reset_token(outbox)
        result = provider.reset_password_with_token(token, "Lee#Secure9x")
        assert result.code is AuthErrorCode.WEAK_PASSWORD
        assert "Password should not contain your email or name" in result.details
        assert provider.reset_password_with_token(token, OTHER_PASSWORD).success

    def test_expired_reset_token(self, provider, outbox, user, clock):
        provider.request_password_reset(EMAIL)
        clock.advance(minutes=61)
        result = provider.reset_password_with_token(_reset_token(outbox), OTHER_PASSWORD)
        assert result.code is AuthErrorCode.INVALID_OR_EXPIRED_TOKEN

    def test_newer_request_supersedes_older_link(self, provider, outbox, user):
        provider.request_password_reset(EMAIL)
        first = _reset_token(outbox)
        provider.request_password_reset(EMAIL)
        assert provider.reset_password_with_token(first, OTHER_PASSWORD).code is AuthErrorCode.INVALID_OR_EXPIRED_TOKEN
        assert provider.reset_password_with_token(_reset_token(outbox), OTHER_PASSWORD).success

    def test_verification_token_cannot_reset_password(self, provider, outbox, user):
        provider.send_email_verification(EMAIL)
        result = provider.reset_password_with_token(_verification_token(outbox), OTHER_PASSWORD)
        assert result.code is AuthErrorCode.INVALID_OR_EXPIRED_TOKEN

    def test_email_failure_still_succeeds(self, settings, store, clock, hasher, caplog):
        provider = build_auth_provider(
            settings, store=store, email_sender=MemoryEmailSender(fail=True), clock=clock, hasher=hasher
        )
        provider.create_user(EMAIL, STRONG_PASSWORD)
        with caplog.at_level(logging.ERROR, logger="gatehouse.auth"):
            assert provider.request_password_reset(EMAIL).success
        assert len(store.list_tokens(EMAIL, TokenPurpose.PASSWORD_RESET)) == 1
        assert any("could not be sent" in r.getMessage() for r in caplog.records)


class TestEmailVerification:
    def test_verify_flow(self, provider, outbox, user):
        assert provider.send_email_verification(EMAIL).success
        result = provider.verify_email_with_token(_verification_token(outbox))
        assert result.success
        assert result.user.email_verified_at is not None

    def test_already_verified(self, provider, outbox, user):
        provider.send_email_verification(EMAIL)
        provider.verify_email_with_token(_verification_token(outbox))
        assert provider.send_email_verification(EMAIL).code is AuthErrorCode.ALREADY_VERIFIED

    def test_unknown_email_gets_success_and_no_mail(self, provider, outbox):
        assert provider.send_email_verification("nobody@example.com") == AuthResult.ok()
        assert outbox.outbox == []

    def test_verification_token_single_use(self, provider, outbox, user):
        provider.send_email_verification(EMAIL)
        token = _verification_token(outbox)
        assert provider.verify_email_with_token(token).success
        assert provider.verify_email_with_token(token).code is AuthErrorCode.INVALID_OR_EXPIRED_TOKEN


class TestOAuth:
    def test_new_identity_creates_verified_passwordless_user(self, provider):
        result = provider.link_or_create_oauth_user("github", "42", "O@Example.com", {"name": "Octo"})
        assert result.success
        assert result.user.email == "o@example.com"
        assert result.user.email_verified_at is not None
        assert not result.user.has_password

    def test_repeat_call_is_idempotent(self, provider, store):
        first = provider.link_or_create_oauth_user("github", "42", "o@example.com")
        second = provider.link_or_create_oauth_user("github", "42", "o@example.com")
        assert first.user.id == second.user.id
        assert store.count_linked_accounts("github", "42") == 1

    def test_links_existing_account_by_email(self, provider, store, user):
        result = provider.link_or_create_oauth_user("google", "g-1", EMAIL)
        assert result.user.id == user.id
        assert result.user.email_verified_at is not None
        assert store.count_linked_accounts("google", "g-1") == 1
        assert provider.authenticate(EMAIL, STRONG_PASSWORD).success

    def test_link_by_email_can_be_disabled(self, store, outbox, clock, hasher):
        provider = build_auth_provider(
            make_settings(oauth_link_by_email=False), store=store, email_sender=outbox, clock=clock, hasher=hasher
        )
        provider.create_user(EMAIL, STRONG_PASSWORD)
        result = provider.link_or_create_oauth_user("google", "g-1", EMAIL)
        assert result.code is AuthErrorCode.ACCOUNT_LINK_REQUIRED
        assert store.count_linked_accounts("google", "g-1") == 0

    def test_sign_in_with_oauth_issues_session(self, provider):
        identity = OAuthIdentity(provider="github", provider_account_id="42", email="o@example.com", name="Octo")
        result = provider.sign_in_with_oauth(identity, ip_address="203.0.113.7")
        assert result.success
        assert provider.validate_session(result.session.session_token, "203.0.113.7").valid

    def test_list_linked_providers(self, provider, user):
        assert provider.list_linked_providers(user.id) == []
        provider.link_or_create_oauth_user("google", "g-1", EMAIL)
        provider.link_or_create_oauth_user("github", "42", EMAIL)
        assert sorted(provider.list_linked_providers(user.id)) == ["github", "google"]


class TestUpdateUser:
    def test_name_and_image_change(self, provider, user):
        result = provider.update_user(user.id, name="Ann Smith", image="https://example.com/a.png")
        assert result.success
        assert result.user.name == "Ann Smith"
        assert result.user.image == "https://example.com/a.png"
        assert result.user.email == EMAIL

    def test_email_change_needs_fresh_verification(self, provider, outbox, user):
        provider.send_email_verification(EMAIL)
        provider.verify_email_with_token(_verification_token(outbox))

        result = provider.update_user(user.id, email=" New@Example.com ")
        assert result.success
        assert result.user.email == "new@example.com"
        assert result.user.email_verified_at is None
        assert outbox.last("verification").to == "new@example.com"
        assert provider.verify_email_with_token(_verification_token(outbox)).success

    def test_email_change_drops_links_sent_to_old_address(self, provider, outbox, store, user):
        provider.request_password_reset(EMAIL)
        token = _reset_token(outbox)
        assert provider.update_user(user.id, email="new@example.com").success
        assert store.list_tokens(EMAIL) == []
        assert provider.reset_password_with_token(token, OTHER_PASSWORD).code is AuthErrorCode.INVALID_OR_EXPIRED_TOKEN

    def test_same_email_in_other_case_is_not_a_change(self, provider, outbox, user):
        provider.send_email_verification(EMAIL)
        provider.verify_email_with_token(_verification_token(outbox))
        result = provider.update_user(user.id, email="A@Example.COM")
        assert result.success
        assert result.user.email_verified_at is not None

    def test_duplicate_email(self, provider, user):
        provider.create_user("b@example.com", OTHER_PASSWORD)
        assert provider.update_user(user.id, email="B@example.com").code is AuthErrorCode.DUPLICATE_EMAIL
        assert provider.get_user(user.id).email == EMAIL

    def test_invalid_email(self, provider, user):
        assert provider.update_user(user.id, email="not-an-email").code is AuthErrorCode.INVALID_EMAIL

    def test_unknown_user(self, provider):
        assert provider.update_user("missing", name="X").code is AuthErrorCode.USER_NOT_FOUND

    def test_sign_in_with_new_email(self, provider, user):
        provider.update_user(user.id, email="new@example.com")
        assert provider.authenticate("new@example.com", STRONG_PASSWORD).success
        assert provider.authenticate(EMAIL, STRONG_PASSWORD).code is AuthErrorCode.INVALID_CREDENTIALS


class TestDeleteUser:
    def test_delete_removes_sessions_tokens_and_links(self, provider, outbox, store, user):
        session = provider.authenticate(EMAIL, STRONG_PASSWORD).session
        provider.link_or_create_oauth_user("google", "g-1", EMAIL)
        provider.request_password_reset(EMAIL)

        assert provider.delete_user(user.id, STRONG_PASSWORD).success
        assert provider.get_user(user.id) is None
        assert not provider.validate_session(session.session_token).valid
        assert store.list_tokens(EMAIL) == []
        assert store.count_linked_accounts("google", "g-1") == 0
        assert provider.reset_password_with_token(_reset_token(outbox), OTHER_PASSWORD).code is (
            AuthErrorCode.INVALID_OR_EXPIRED_TOKEN
        )

    def test_email_is_free_after_delete(self, provider, user):
        provider.delete_user(user.id, STRONG_PASSWORD)
        assert provider.create_user(EMAIL, OTHER_PASSWORD).success

    def test_wrong_or_missing_password(self, provider, user):
        assert provider.delete_user(user.id, WRONG).code is AuthErrorCode.INVALID_CREDENTIALS
        assert provider.delete_user(user.id).code is AuthErrorCode.INVALID_CREDENTIALS
        assert provider.get_user(user.id) is not None

    def test_wrong_password_is_rate_limited(self, provider, user):
        for _ in range(5):
            provider.delete_user(user.id, WRONG)
        result = provider.delete_user(user.id, STRONG_PASSWORD)
        assert result.code is AuthErrorCode.RATE_LIMITED
        assert provider.get_user(user.id) is not None

    def test_oauth_only_account_needs_no_password(self, provider, store):
        created = provider.link_or_create_oauth_user("github", "42", "o@example.com").user
        assert provider.delete_user(created.id).success
        assert provider.get_user(created.id) is None
        assert store.count_linked_accounts("github", "42") == 0

    def test_unknown_user(self, provider):
        assert provider.delete_user("missing", STRONG_PASSWORD).code is AuthErrorCode.USER_NOT_FOUND


class TestPasswordExpiry:
    @pytest.fixture
    def aging(self, store, outbox, clock, hasher):
        provider = build_auth_provider(
            make_settings(password_max_age_days=90), store=store, email_sender=outbox, clock=clock, hasher=hasher
        )
        created = provider.create_user(EMAIL, STRONG_PASSWORD).user
        return provider, created

    def test_disabled_by_default(self, provider, user, clock):
        clock.advance(days=400)
        result = provider.authenticate(EMAIL, STRONG_PASSWORD)
        assert result.password_expiry == PasswordExpiry()
        assert provider.check_password_expiration(user.id).days_until_expiration is None

    def test_fresh_password(self, aging):
        provider, created = aging
        status = provider.check_password_expiration(created.id)
        assert status == PasswordExpiry(is_expired=False, is_near_expiration=False, days_until_expiration=90)

    def test_near_expiration(self, aging, clock):
        provider, created = aging
        clock.advance(days=84)
        status = provider.check_password_expiration(created.id)
        assert status.is_near_expiration and not status.is_expired
        assert status.days_until_expiration == 6

    def test_expired_password_still_signs_in(self, aging, clock):
        provider, _ = aging
        clock.advance(days=90)
        result = provider.authenticate(EMAIL, STRONG_PASSWORD)
        assert result.success
        assert result.password_expiry.is_expired
        assert result.password_expiry.days_until_expiration == 0

    def test_change_restarts_the_clock(self, aging, clock):
        provider, created = aging
        clock.advance(days=100)
        provider.change_password(created.id, STRONG_PASSWORD, OTHER_PASSWORD)
        assert provider.check_password_expiration(created.id).days_until_expiration == 90

    def test_oauth_only_account_never_expires(self, aging, clock):
        provider, _ = aging
        created = provider.link_or_create_oauth_user("github", "42", "o@example.com").user
        clock.advance(days=365)
        assert provider.check_password_expiration(created.id) == PasswordExpiry()


class TestStoreFailures:
    def test_write_operations_report_store_unavailable(self, provider, store, user):
        with store.engine.begin() as conn:
            conn.execute(text("DROP TABLE users"))
        assert provider.authenticate(EMAIL, STRONG_PASSWORD).code is AuthErrorCode.STORE_UNAVAILABLE
        assert provider.create_user("b@example.com", STRONG_PASSWORD).code is AuthErrorCode.STORE_UNAVAILABLE
        assert provider.request_password_reset(EMAIL).code is AuthErrorCode.STORE_UNAVAILABLE
        assert provider.update_user(user.id, name="X").code is AuthErrorCode.STORE_UNAVAILABLE
        assert provider.delete_user(user.id, STRONG_PASSWORD).code is AuthErrorCode.STORE_UNAVAILABLE

    def test_read_operations_raise(self, provider, store, user):
        issued = provider.authenticate(EMAIL, STRONG_PASSWORD).session
        with store.engine.begin() as conn:
            conn.execute(text("DROP TABLE users"))
        with pytest.raises(StoreUnavailableError):
            provider.get_user(user.id)
        with pytest.raises(StoreUnavailableError):
            provider.validate_session(issued.session_token)

    def test_health_reports_unavailable(self, provider, store, monkeypatch):
        assert provider.health() == {"database": "ok"}

        def down():
            raise StoreUnavailableError("connection refused")

        monkeypatch.setattr(store, "ping", down)
        assert provider.health() == {"database": "unavailable"}


class TestMaintenance:
    def test_run_maintenance_purges_dead_rows(self, provider, user, clock):
        provider.request_password_reset(EMAIL)
        provider.authenticate(EMAIL, STRONG_PASSWORD)
        provider.authenticate("nobody@example.com", WRONG)
        clock.advance(days=2)
        assert provider.run_maintenance() == {"tokens": 1, "sessions": 1, "rate_limit_counters": 1}
        assert provider.run_maintenance() == {"tokens": 0, "sessions": 0, "rate_limit_counters": 0}

    def test_check_password_uses_user_info(self, provider):
        assert provider.check_password("Jdoe#Secure9").is_valid
        assert not provider.check_password("Jdoe#Secure9", email="jdoe@example.com").is_valid
