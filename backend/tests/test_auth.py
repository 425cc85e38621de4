"""
Account and password login tests.

Verifies:
- registration rules (email format, password strength, duplicates)
- login issues a token pair and records the attempt
- repeated failures lock the identifier, a success resets the count
- soft-deleted accounts cannot sign in
"""

import pytest

from marketplace.errors import (
    AccountLocked,
    ConflictError,
    InvalidCredentials,
    PasswordValidationError,
    ValidationError,
)
from marketplace.models import SecurityEvent
from marketplace.models.identity import ROLE_BUYER, ROLE_SELLER, credential_invariant_holds
from marketplace.services import auth_service, login_throttle_service, session_service

PASSWORD = "Password123!"


class TestRegistration:

    def test_register_buyer(self, db_session):
        user = auth_service.register_user("  New.User@Example.com ", PASSWORD, display_name="New")

        assert user.email == "new.user@example.com"
        assert user.role == ROLE_BUYER
        assert user.password_hash != PASSWORD
        assert auth_service.verify_password(PASSWORD, user.password_hash)
        assert credential_invariant_holds(user)

    @pytest.mark.parametrize("password", ["short1!", "alllowercase1!", "NoDigits!!", "NoSpecial123"])
    def test_weak_passwords_are_rejected(self, db_session, password):
        with pytest.raises(PasswordValidationError):
            auth_service.register_user("weak@example.com", password)

    def test_malformed_email(self, db_session):
        with pytest.raises(ValidationError):
            auth_service.register_user("not-an-email", PASSWORD)

    def test_duplicate_email_is_a_conflict(self, buyer):
        with pytest.raises(ConflictError):
            auth_service.register_user("BUYER@example.com", PASSWORD)

    def test_seller_accounts_are_approved(self, seller):
        assert seller.role == ROLE_SELLER
        assert seller.is_seller_approved is True
        assert seller.became_seller_at is not None

    def test_promote_to_seller(self, buyer):
        user = auth_service.promote_to_seller(buyer.id)

        assert user.role == ROLE_SELLER
        assert user.is_seller_approved is True


class TestLogin:

    def test_login_returns_a_working_session(self, buyer):
        tokens = auth_service.login("buyer@example.com", PASSWORD, device_id="web")

        context = session_service.validate_session(tokens.access_token)
        assert context is not None
        assert context.user.id == buyer.id
        assert tokens.to_dict()["token_type"] == "Bearer"

    def test_wrong_password_reports_remaining_attempts(self, app, buyer):
        with pytest.raises(InvalidCredentials) as exc:
            auth_service.login("buyer@example.com", "Wrong-password1")

        assert exc.value.details["attempts_remaining"] == app.config["LOGIN_MAX_FAILED_ATTEMPTS"] - 1

    def test_unknown_email_is_indistinguishable(self, db_session):
        with pytest.raises(InvalidCredentials):
            auth_service.login("nobody@example.com", PASSWORD)

    def test_deleted_account_cannot_login(self, buyer):
        auth_service.soft_delete_user(buyer.id)

        with pytest.raises(InvalidCredentials):
            auth_service.login("buyer@example.com", PASSWORD)

    def test_successful_login_is_audited(self, db_session, buyer):
        auth_service.login("buyer@example.com", PASSWORD)

        assert db_session.query(SecurityEvent).filter_by(
            event_type="LOGIN_SUCCESS", user_id=buyer.id,
        ).count() == 1


class TestThrottling:

    def _fail(self, times, email="buyer@example.com"):
        for _ in range(times):
            try:
                auth_service.login(email, "Wrong-password1")
            except (InvalidCredentials, AccountLocked):
                pass

    def test_lockout_after_max_failures(self, app, buyer):
        self._fail(app.config["LOGIN_MAX_FAILED_ATTEMPTS"])

        # Even the right password is refused while locked
        with pytest.raises(AccountLocked) as exc:
            auth_service.login("buyer@example.com", PASSWORD)

        assert exc.value.details["retry_after_seconds"] > 0

    def test_final_failure_reports_the_lock(self, app, buyer):
        self._fail(app.config["LOGIN_MAX_FAILED_ATTEMPTS"] - 1)

        with pytest.raises(AccountLocked):
            auth_service.login("buyer@example.com", "Wrong-password1")

    def test_success_resets_failure_count(self, app, buyer):
        self._fail(app.config["LOGIN_MAX_FAILED_ATTEMPTS"] - 1)
        auth_service.login("buyer@example.com", PASSWORD)

        assert login_throttle_service.get_recent_failed_attempts("buyer@example.com") == 0
        with pytest.raises(InvalidCredentials):
            auth_service.login("buyer@example.com", "Wrong-password1")

    def test_identifier_is_case_insensitive(self, app, buyer):
        self._fail(2, email="BUYER@EXAMPLE.COM")

        status = login_throttle_service.get_lockout_status("buyer@example.com")

        assert status["failed_attempts"] == 2
        assert status["locked"] is False
        assert status["max_attempts"] == app.config["LOGIN_MAX_FAILED_ATTEMPTS"]


class TestLogout:

    def test_logout_revokes_both_tokens(self, buyer):
        tokens = auth_service.login("buyer@example.com", PASSWORD)

        assert auth_service.logout(tokens.access_token, tokens.refresh_token) is True
        assert session_service.validate_session(tokens.access_token) is None

    def test_logout_with_nothing_is_a_noop(self, db_session):
        assert auth_service.logout(None, None) is False
