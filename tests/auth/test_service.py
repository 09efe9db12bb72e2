"""Tests for AuthService - core auth orchestration."""

from unittest.mock import ANY
from uuid import uuid4

import pytest

from auth.exceptions import (
    AccountDisabledError,
    AuthenticationFailedError,
    DuplicateUserError,
    InvalidPasswordError,
    InvalidRoleError,
    InvalidTokenError,
    OtpFailure,
    OtpVerificationError,
    RateLimitedError,
    RefreshTokenError,
    ResourceNotFoundError,
    SessionNotFoundError,
    TokenReusedError,
)
from auth.security_logger import SecurityEvent
from auth.service import INVALID_CREDENTIALS, validate_password_strength
from auth.types import FederatedClaims, OtpPurpose, Role


@pytest.fixture
def registered(auth_service):
    """A password account: a@x.com / Passw0rd1."""
    return auth_service.register("a@x.com", "Passw0rd1", full_name="Alice", phone="+15551234567")


def _logged_events(mock_security_logger):
    return [c.args[0] for c in mock_security_logger.log.call_args_list]


class TestPasswordStrength:
    @pytest.mark.parametrize("password", ["short1", "lettersonly", "12345678"])
    def test_weak_passwords_rejected(self, password):
        with pytest.raises(InvalidPasswordError):
            validate_password_strength(password)

    def test_letters_and_digits_accepted(self):
        validate_password_strength("Passw0rd1")


class TestEndToEnd:
    """Register, log in, rotate, detect stale token, log out."""

    def test_full_lifecycle(self, auth_service):
        registered = auth_service.register("a@x.com", "Passw0rd1")
        assert registered.is_new_user

        tokens = auth_service.login("Passw0rd1", email="a@x.com")
        rotated = auth_service.refresh(tokens.refresh_token)

        # The exchanged token is spent; presenting it again is reuse
        with pytest.raises(TokenReusedError):
            auth_service.refresh(tokens.refresh_token)

        # Reuse revoked the whole family, so log in again
        fresh = auth_service.login("Passw0rd1", email="a@x.com")
        assert fresh.refresh_token != rotated.refresh_token
        next_pair = auth_service.refresh(fresh.refresh_token)

        auth_service.logout(next_pair.refresh_token)

        with pytest.raises(RefreshTokenError):
            auth_service.refresh(next_pair.refresh_token)


class TestRegister:
    def test_returns_tokens_for_new_user(self, auth_service, mock_security_logger):
        tokens = auth_service.register("A@X.com", "Passw0rd1", full_name="Alice")

        assert tokens.user.email == "a@x.com"
        assert tokens.user.role is Role.USER
        assert tokens.is_new_user
        assert auth_service.validate_access_token(tokens.access_token).user_id == tokens.user.id
        assert SecurityEvent.USER_REGISTERED in _logged_events(mock_security_logger)

    def test_duplicate_email_reported(self, auth_service, registered):
        with pytest.raises(DuplicateUserError) as exc_info:
            auth_service.register("A@x.com", "Passw0rd1")
        assert exc_info.value.field == "email"

    def test_duplicate_phone_reported(self, auth_service, registered):
        with pytest.raises(DuplicateUserError) as exc_info:
            auth_service.register("b@x.com", "Passw0rd1", phone="+1 (555) 123-4567")
        assert exc_info.value.field == "phone"

    def test_privileged_role_rejected(self, auth_service):
        with pytest.raises(InvalidRoleError):
            auth_service.register("a@x.com", "Passw0rd1", role=Role.ADMIN)

    def test_service_provider_allowed(self, auth_service):
        tokens = auth_service.register("sp@x.com", "Passw0rd1", role=Role.SERVICE_PROVIDER)
        assert tokens.user.role is Role.SERVICE_PROVIDER

    def test_weak_password_rejected(self, auth_service, store):
        with pytest.raises(InvalidPasswordError):
            auth_service.register("a@x.com", "password")
        assert store.get_user_by_email("a@x.com") is None

    def test_password_not_stored_in_clear(self, auth_service, registered, store):
        stored = store.get_user_by_email("a@x.com")
        assert stored.password_hash.startswith("$argon2id$")


class TestLogin:
    def test_email_login(self, auth_service, registered, clock, store):
        tokens = auth_service.login("Passw0rd1", email="A@X.COM")

        assert tokens.user.id == registered.user.id
        assert not tokens.is_new_user
        assert store.get_user_by_id(registered.user.id).last_login_at == clock()

    def test_phone_login(self, auth_service, registered):
        tokens = auth_service.login("Passw0rd1", phone="+1 555 123 4567")
        assert tokens.user.id == registered.user.id

    def test_unknown_user_and_wrong_password_look_identical(self, auth_service, registered):
        with pytest.raises(AuthenticationFailedError) as unknown:
            auth_service.login("Passw0rd1", email="nobody@x.com")
        with pytest.raises(AuthenticationFailedError) as wrong:
            auth_service.login("Wrong0000", email="a@x.com")

        assert str(unknown.value) == str(wrong.value) == INVALID_CREDENTIALS

    def test_failure_logged(self, auth_service, registered, mock_security_logger):
        with pytest.raises(AuthenticationFailedError):
            auth_service.login("Wrong0000", email="a@x.com", ip_address="10.0.0.1")

        mock_security_logger.log.assert_called_with(
            SecurityEvent.LOGIN_FAILED,
            email="a@x.com",
            user_id=registered.user.id,
            ip_address="10.0.0.1",
            user_agent=None,
            details={"reason": "bad_password"},
        )

    def test_deactivated_account_after_correct_password(self, auth_service, registered):
        auth_service.set_user_active(registered.user.id, False)

        with pytest.raises(AccountDisabledError):
            auth_service.login("Passw0rd1", email="a@x.com")

    def test_deactivated_account_wrong_password_stays_generic(self, auth_service, registered):
        auth_service.set_user_active(registered.user.id, False)

        with pytest.raises(AuthenticationFailedError):
            auth_service.login("Wrong0000", email="a@x.com")

    def test_passwordless_account_cannot_password_login(self, auth_service):
        auth_service.login_with_federated_identity(
            FederatedClaims(provider="google", subject="g-1", email="fed@x.com")
        )

        with pytest.raises(AuthenticationFailedError):
            auth_service.login("anything1", email="fed@x.com")

    def test_device_login_opens_session(self, auth_service, registered, phone_device):
        tokens = auth_service.login("Passw0rd1", email="a@x.com", device=phone_device)

        sessions = auth_service.list_sessions(registered.user.id, "device-phone")
        assert tokens.session_id == sessions[0].id
        assert sessions[0].is_current

    def test_relogin_on_same_device_replaces_its_refresh_token(
        self, auth_service, registered, phone_device
    ):
        first = auth_service.login("Passw0rd1", email="a@x.com", device=phone_device)
        second = auth_service.login("Passw0rd1", email="a@x.com", device=phone_device)

        assert first.session_id == second.session_id
        with pytest.raises(RefreshTokenError):
            auth_service.refresh(first.refresh_token)
        auth_service.refresh(second.refresh_token)


class TestFederatedLogin:
    def test_creates_verified_account(self, auth_service, store):
        tokens = auth_service.login_with_federated_identity(
            FederatedClaims(provider="google", subject="g-1", email="New@x.com", full_name="N")
        )

        assert tokens.is_new_user
        user = store.get_user_by_id(tokens.user.id)
        assert user.email == "new@x.com"
        assert user.email_verified
        assert not user.has_password

    def test_same_subject_returns_same_user(self, auth_service):
        claims = FederatedClaims(provider="google", subject="g-1", email="new@x.com")
        first = auth_service.login_with_federated_identity(claims)
        second = auth_service.login_with_federated_identity(claims)

        assert second.user.id == first.user.id
        assert not second.is_new_user

    def test_links_existing_account_by_email(self, auth_service, registered, store):
        tokens = auth_service.login_with_federated_identity(
            FederatedClaims(provider="apple", subject="a-1", email="a@x.com")
        )

        assert tokens.user.id == registered.user.id
        assert not tokens.is_new_user
        assert store.get_user_by_federated_identity("apple", "a-1").id == registered.user.id

    def test_unverified_email_rejected(self, auth_service):
        with pytest.raises(AuthenticationFailedError):
            auth_service.login_with_federated_identity(
                FederatedClaims(
                    provider="google", subject="g-1", email="a@x.com", email_verified=False
                )
            )

    def test_privileged_role_rejected_for_new_account(self, auth_service):
        with pytest.raises(InvalidRoleError):
            auth_service.login_with_federated_identity(
                FederatedClaims(provider="google", subject="g-1", email="a@x.com"),
                role=Role.IT_ADMIN,
            )

    def test_deactivated_account_rejected(self, auth_service, registered):
        auth_service.set_user_active(registered.user.id, False)

        with pytest.raises(AccountDisabledError):
            auth_service.login_with_federated_identity(
                FederatedClaims(provider="google", subject="g-1", email="a@x.com")
            )


class TestRequestOtp:
    def test_delivers_to_existing_email(self, auth_service, registered, mock_email_client):
        result = auth_service.request_otp("A@x.com")

        mock_email_client.send_otp_code.assert_called_once_with("a@x.com", "login", ANY, 300)
        assert result.destination == "****@x.com"
        assert result.expires_in_seconds == 300

    def test_phone_target_goes_to_sms(
        self, auth_service, registered, mock_sms_client, mock_email_client
    ):
        result = auth_service.request_otp("+1 555 123 4567")

        mock_sms_client.send_otp_code.assert_called_once_with("+15551234567", "login", ANY, 300)
        mock_email_client.send_otp_code.assert_not_called()
        assert result.destination == "****4567"

    def test_unknown_target_same_response_no_delivery(self, auth_service, mock_email_client):
        result = auth_service.request_otp("ghost@x.com")

        mock_email_client.send_otp_code.assert_not_called()
        assert result.expires_in_seconds == 300

    def test_unknown_target_still_has_cooldown(self, auth_service):
        auth_service.request_otp("ghost@x.com")
        with pytest.raises(RateLimitedError):
            auth_service.request_otp("ghost@x.com")

    def test_deactivated_account_not_delivered(
        self, auth_service, registered, mock_email_client
    ):
        auth_service.set_user_active(registered.user.id, False)

        auth_service.request_otp("a@x.com")

        mock_email_client.send_otp_code.assert_not_called()

    def test_sms_not_configured_rejects_every_number(
        self, config, store, mock_email_client, mock_security_logger
    ):
        from auth.service import create_auth_service

        service = create_auth_service(config, store, mock_email_client, mock_security_logger)
        service.register("a@x.com", "Passw0rd1", phone="+15551234567")

        with pytest.raises(ValueError) as known:
            service.request_otp("+15551234567")
        with pytest.raises(ValueError) as unknown:
            service.request_otp("+15559999999")

        assert str(known.value) == str(unknown.value)
        assert store.find_latest_pending_otp("+15559999999", OtpPurpose.LOGIN) is None

    def test_gateway_failure_answers_like_unknown_target(
        self, auth_service, registered, mock_email_client, mock_security_logger
    ):
        from clients.email_client import EmailGatewayError

        mock_email_client.send_otp_code.side_effect = EmailGatewayError("Connection failed")

        known = auth_service.request_otp("a@x.com")
        unknown = auth_service.request_otp("z@x.com")

        assert known.expires_in_seconds == unknown.expires_in_seconds
        assert known.destination == "****@x.com"
        requested = [
            c.kwargs["details"]
            for c in mock_security_logger.log.call_args_list
            if c.args[0] == SecurityEvent.OTP_REQUESTED
        ]
        assert requested == [
            {"purpose": "login", "delivered": False},
            {"purpose": "login", "delivered": False},
        ]


class TestVerifyOtp:
    def test_verification_marks_email_verified(
        self, auth_service, registered, store, mock_email_client, sent_code
    ):
        auth_service.request_otp("a@x.com", OtpPurpose.VERIFICATION)

        auth_service.verify_otp("a@x.com", OtpPurpose.VERIFICATION, sent_code(mock_email_client))

        assert store.get_user_by_email("a@x.com").email_verified

    def test_verification_marks_phone_verified(
        self, auth_service, registered, store, mock_sms_client, sent_code
    ):
        auth_service.request_otp("+15551234567", OtpPurpose.VERIFICATION)

        auth_service.verify_otp(
            "+15551234567", OtpPurpose.VERIFICATION, sent_code(mock_sms_client)
        )

        user = store.get_user_by_id(registered.user.id)
        assert user.phone_verified
        assert not user.email_verified

    def test_failure_logged_and_raised(
        self, auth_service, registered, mock_security_logger, mock_email_client, sent_code
    ):
        auth_service.request_otp("a@x.com")
        wrong = "111111" if sent_code(mock_email_client) != "111111" else "222222"

        with pytest.raises(OtpVerificationError):
            auth_service.verify_otp("a@x.com", OtpPurpose.LOGIN, wrong)

        assert SecurityEvent.OTP_FAILED in _logged_events(mock_security_logger)


class TestLoginWithOtp:
    def test_passwordless_login(self, auth_service, registered, store, mock_email_client, sent_code):
        auth_service.request_otp("a@x.com")

        tokens = auth_service.login_with_otp("a@x.com", sent_code(mock_email_client))

        assert tokens.user.id == registered.user.id
        assert store.get_user_by_id(registered.user.id).email_verified

    def test_code_is_single_use(self, auth_service, registered, mock_email_client, sent_code):
        auth_service.request_otp("a@x.com")
        code = sent_code(mock_email_client)
        auth_service.login_with_otp("a@x.com", code)

        with pytest.raises(OtpVerificationError) as exc_info:
            auth_service.login_with_otp("a@x.com", code)
        assert exc_info.value.reason is OtpFailure.NOT_FOUND

    def test_unknown_target_fails_generically(self, auth_service):
        auth_service.request_otp("ghost@x.com")

        # No code was delivered, so any guess is a mismatch
        with pytest.raises(AuthenticationFailedError):
            auth_service.login_with_otp("ghost@x.com", "123456")

    def test_deactivated_after_request(
        self, auth_service, registered, mock_email_client, sent_code
    ):
        auth_service.request_otp("a@x.com")
        code = sent_code(mock_email_client)
        auth_service.set_user_active(registered.user.id, False)

        with pytest.raises(AccountDisabledError):
            auth_service.login_with_otp("a@x.com", code)


class TestRefresh:
    def test_rotation_logged(self, auth_service, registered, mock_security_logger):
        auth_service.refresh(registered.refresh_token, ip_address="10.0.0.1")
        assert SecurityEvent.TOKEN_REFRESHED in _logged_events(mock_security_logger)

    def test_reuse_logged(self, auth_service, registered, mock_security_logger):
        auth_service.refresh(registered.refresh_token)

        with pytest.raises(TokenReusedError):
            auth_service.refresh(registered.refresh_token)

        assert SecurityEvent.TOKEN_REUSE_DETECTED in _logged_events(mock_security_logger)

    def test_session_and_trust_carried(self, auth_service, registered, phone_device):
        tokens = auth_service.login("Passw0rd1", email="a@x.com", device=phone_device)
        auth_service.trust_device(registered.user.id, phone_device)

        rotated = auth_service.refresh(tokens.refresh_token)

        assert rotated.session_id == tokens.session_id
        assert rotated.device_trusted

    def test_session_follows_rotated_token(self, auth_service, store, registered, phone_device):
        tokens = auth_service.login("Passw0rd1", email="a@x.com", device=phone_device)

        auth_service.refresh(tokens.refresh_token)
        session = store.get_session(tokens.session_id)

        assert store.get_refresh_token(session.refresh_token_id).is_active(session.created_at)

    def test_login_failure_leaves_no_session(
        self, auth_service, store, registered, phone_device, monkeypatch
    ):
        def fail(*args, **kwargs):
            raise ConnectionError("store down")

        monkeypatch.setattr(store, "record_login", fail)

        with pytest.raises(ConnectionError):
            auth_service.login("Passw0rd1", email="a@x.com", device=phone_device)

        assert store.get_session_by_device(registered.user.id, "device-phone") is None

    def test_refresh_touches_session(self, auth_service, registered, phone_device, clock):
        tokens = auth_service.login("Passw0rd1", email="a@x.com", device=phone_device)
        clock.advance(minutes=30)

        auth_service.refresh(tokens.refresh_token)

        session = auth_service.list_sessions(registered.user.id)[0]
        assert session.last_activity_at == clock()

    def test_expired_refresh_token(self, auth_service, registered, clock):
        clock.advance(days=7)
        with pytest.raises(RefreshTokenError):
            auth_service.refresh(registered.refresh_token)


class TestLogout:
    def test_logout_closes_session(self, auth_service, registered, phone_device):
        tokens = auth_service.login("Passw0rd1", email="a@x.com", device=phone_device)

        auth_service.logout(tokens.refresh_token)

        assert auth_service.list_sessions(registered.user.id) == []

    def test_unknown_token_is_noop(self, auth_service, mock_security_logger):
        auth_service.logout("never-issued")
        mock_security_logger.log.assert_not_called()

    def test_logout_everywhere(self, auth_service, registered, phone_device, laptop_device):
        phone = auth_service.login("Passw0rd1", email="a@x.com", device=phone_device)
        laptop = auth_service.login("Passw0rd1", email="a@x.com", device=laptop_device)
        auth_service.trust_device(registered.user.id, phone_device)

        assert auth_service.logout_everywhere(registered.user.id) == 3

        for tokens in (registered, phone, laptop):
            with pytest.raises(RefreshTokenError):
                auth_service.refresh(tokens.refresh_token)
        assert auth_service.list_sessions(registered.user.id) == []
        # Trust survives logout
        assert auth_service.is_device_trusted(registered.user.id, "device-phone")


class TestSessions:
    def test_revoke_one_session(self, auth_service, registered, phone_device, laptop_device):
        phone = auth_service.login("Passw0rd1", email="a@x.com", device=phone_device)
        laptop = auth_service.login("Passw0rd1", email="a@x.com", device=laptop_device)

        auth_service.revoke_session(registered.user.id, laptop.session_id)

        with pytest.raises(RefreshTokenError):
            auth_service.refresh(laptop.refresh_token)
        auth_service.refresh(phone.refresh_token)

    def test_cannot_revoke_someone_elses_session(self, auth_service, registered, phone_device):
        other = auth_service.register("b@x.com", "Passw0rd1", device=phone_device)

        with pytest.raises(SessionNotFoundError):
            auth_service.revoke_session(registered.user.id, other.session_id)

    def test_revoke_other_sessions(self, auth_service, registered, phone_device, laptop_device):
        phone = auth_service.login("Passw0rd1", email="a@x.com", device=phone_device)
        laptop = auth_service.login("Passw0rd1", email="a@x.com", device=laptop_device)

        assert auth_service.revoke_other_sessions(registered.user.id, "device-phone") == 1

        auth_service.refresh(phone.refresh_token)
        with pytest.raises(RefreshTokenError):
            auth_service.refresh(laptop.refresh_token)
        # The device-less token from registration is not on the kept device
        with pytest.raises(RefreshTokenError):
            auth_service.refresh(registered.refresh_token)


class TestDevices:
    def test_trust_and_untrust(self, auth_service, registered, phone_device):
        auth_service.trust_device(registered.user.id, phone_device)
        assert [d.device_id for d in auth_service.list_trusted_devices(registered.user.id)] == [
            "device-phone"
        ]

        auth_service.untrust_device(registered.user.id, "device-phone")
        assert not auth_service.is_device_trusted(registered.user.id, "device-phone")

    def test_trust_reflected_on_next_login(self, auth_service, registered, phone_device):
        auth_service.trust_device(registered.user.id, phone_device)

        tokens = auth_service.login("Passw0rd1", email="a@x.com", device=phone_device)

        assert tokens.device_trusted


class TestAccessTokens:
    def test_authenticate_loads_user(self, auth_service, registered):
        user = auth_service.authenticate_access_token(registered.access_token)
        assert user.id == registered.user.id

    def test_deactivated_user_rejected_live(self, auth_service, registered):
        auth_service.set_user_active(registered.user.id, False)

        # Signature and expiry still pass
        auth_service.validate_access_token(registered.access_token)
        with pytest.raises(AccountDisabledError):
            auth_service.authenticate_access_token(registered.access_token)
        auth_service.authenticate_access_token(registered.access_token, check_user_status=False)

    def test_vanished_user(self, auth_service, config, clock):
        from auth.tokens import TokenCodec

        token = TokenCodec(config, clock).issue(uuid4(), "gone@x.com", Role.USER)

        with pytest.raises(InvalidTokenError):
            auth_service.authenticate_access_token(token)

    def test_expired_access_token(self, auth_service, registered, clock, config):
        clock.advance(minutes=config.access_token_ttl_minutes)
        with pytest.raises(InvalidTokenError):
            auth_service.validate_access_token(registered.access_token)


class TestPasswordReset:
    def test_reset_with_code(self, auth_service, registered, mock_email_client, sent_code):
        result = auth_service.request_password_reset("a@x.com")
        assert result.expires_in_seconds == 15 * 60

        auth_service.reset_password_with_otp("a@x.com", sent_code(mock_email_client), "N3wpassword")

        auth_service.login("N3wpassword", email="a@x.com")
        with pytest.raises(AuthenticationFailedError):
            auth_service.login("Passw0rd1", email="a@x.com")

    def test_reset_logs_out_everywhere(
        self, auth_service, registered, mock_email_client, sent_code
    ):
        auth_service.request_password_reset("a@x.com")
        auth_service.reset_password_with_otp("a@x.com", sent_code(mock_email_client), "N3wpassword")

        with pytest.raises(RefreshTokenError):
            auth_service.refresh(registered.refresh_token)

    def test_login_code_cannot_reset(self, auth_service, registered, mock_email_client, sent_code):
        auth_service.request_otp("a@x.com", OtpPurpose.LOGIN)

        with pytest.raises(OtpVerificationError):
            auth_service.reset_password_with_otp(
                "a@x.com", sent_code(mock_email_client), "N3wpassword"
            )

    def test_weak_password_checked_before_code_spent(
        self, auth_service, registered, mock_email_client, sent_code
    ):
        auth_service.request_password_reset("a@x.com")
        code = sent_code(mock_email_client)

        with pytest.raises(InvalidPasswordError):
            auth_service.reset_password_with_otp("a@x.com", code, "weakpass")

        auth_service.reset_password_with_otp("a@x.com", code, "N3wpassword")


class TestChangePassword:
    def test_change_keeps_current_device(self, auth_service, registered, phone_device, laptop_device):
        phone = auth_service.login("Passw0rd1", email="a@x.com", device=phone_device)
        laptop = auth_service.login("Passw0rd1", email="a@x.com", device=laptop_device)

        auth_service.change_password(
            registered.user.id, "Passw0rd1", "N3wpassword", current_device_id="device-phone"
        )

        auth_service.refresh(phone.refresh_token)
        with pytest.raises(RefreshTokenError):
            auth_service.refresh(laptop.refresh_token)
        auth_service.login("N3wpassword", email="a@x.com")

    def test_change_without_device_revokes_all(self, auth_service, registered):
        auth_service.change_password(registered.user.id, "Passw0rd1", "N3wpassword")

        with pytest.raises(RefreshTokenError):
            auth_service.refresh(registered.refresh_token)

    @pytest.mark.parametrize(
        "current,new,message",
        [
            ("Wrong0000", "N3wpassword", "Current password is incorrect"),
            ("Passw0rd1", "Passw0rd1", "New password must be different from current password"),
            ("Passw0rd1", "weakpass", "Password must contain letters and digits"),
        ],
    )
    def test_rejections(self, auth_service, registered, current, new, message):
        with pytest.raises(InvalidPasswordError, match=message):
            auth_service.change_password(registered.user.id, current, new)

    def test_no_password_set(self, auth_service):
        tokens = auth_service.login_with_federated_identity(
            FederatedClaims(provider="google", subject="g-1", email="fed@x.com")
        )

        with pytest.raises(InvalidPasswordError, match="No password is set"):
            auth_service.change_password(tokens.user.id, "anything1", "N3wpassword")

    def test_unknown_user(self, auth_service):
        with pytest.raises(ResourceNotFoundError):
            auth_service.change_password(uuid4(), "Passw0rd1", "N3wpassword")


class TestAccountStatus:
    def test_deactivate_revokes_everything(self, auth_service, registered, phone_device):
        tokens = auth_service.login("Passw0rd1", email="a@x.com", device=phone_device)

        user = auth_service.set_user_active(registered.user.id, False)

        assert not user.is_active
        with pytest.raises(RefreshTokenError):
            auth_service.refresh(tokens.refresh_token)
        assert auth_service.list_sessions(registered.user.id) == []

    def test_reactivate(self, auth_service, registered, mock_security_logger):
        auth_service.set_user_active(registered.user.id, False)
        auth_service.set_user_active(registered.user.id, True)

        auth_service.login("Passw0rd1", email="a@x.com")
        assert SecurityEvent.USER_ACTIVATED in _logged_events(mock_security_logger)

    def test_unknown_user(self, auth_service):
        with pytest.raises(ResourceNotFoundError):
            auth_service.set_user_active(uuid4(), False)


class TestAccountDeletion:
    def test_delete_with_code(
        self, auth_service, registered, phone_device, mock_email_client, sent_code, store
    ):
        auth_service.trust_device(registered.user.id, phone_device)
        auth_service.request_account_deletion(registered.user.id)

        auth_service.delete_account_with_otp(registered.user.id, sent_code(mock_email_client))

        assert not store.get_user_by_id(registered.user.id).is_active
        assert auth_service.list_trusted_devices(registered.user.id) == []
        with pytest.raises(RefreshTokenError):
            auth_service.refresh(registered.refresh_token)

    def test_code_sent_for_deletion_purpose(self, auth_service, registered, mock_email_client):
        auth_service.request_account_deletion(registered.user.id)
        assert mock_email_client.send_otp_code.call_args.args[1] == "account_deletion"

    def test_wrong_code_keeps_account(self, auth_service, registered, store):
        auth_service.request_account_deletion(registered.user.id)

        with pytest.raises(OtpVerificationError):
            auth_service.delete_account_with_otp(registered.user.id, "12345")

        assert store.get_user_by_id(registered.user.id).is_active


class TestPurgeExpired:
    def test_counts_include_rate_buckets(self, auth_service, registered, rate_limiter, clock):
        from auth.types import RateCategory

        rate_limiter.try_consume("10.0.0.1", RateCategory.AUTH)
        auth_service.logout(registered.refresh_token)
        clock.advance(days=31)

        counts = auth_service.purge_expired()

        assert counts["refresh_tokens"] == 1
        assert "rate_buckets" in counts
