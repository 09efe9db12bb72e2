"""Authentication service - orchestrates every login, token and session flow.

Account existence is hidden on every login path: unknown accounts and wrong
secrets fail the same way, and passcode requests answer the same whether or
not anyone owns the target. Registration is the one path that reports a
duplicate email.
"""

import logging
from datetime import timedelta
from typing import Protocol
from uuid import UUID, uuid4

from auth.config import AuthConfig
from auth.exceptions import (
    AccountDisabledError,
    AuthenticationFailedError,
    DuplicateUserError,
    InvalidPasswordError,
    InvalidRoleError,
    InvalidTokenError,
    OtpVerificationError,
    ResourceNotFoundError,
    TokenFailure,
    TokenReusedError,
)
from auth.otp import IssuedChallenge, OtpChallengeEngine, normalize_target
from auth.passwords import PasswordManager
from auth.rate_limiter import RateLimiter
from auth.refresh import RefreshTokenEngine
from auth.security_logger import SecurityEvent, SecurityLogger
from auth.session import SessionManager
from auth.store import CredentialStore
from auth.tokens import TokenCodec
from auth.types import (
    SELF_SERVICE_ROLES,
    AccessTokenClaims,
    DeviceInfo,
    FederatedClaims,
    IssuedTokens,
    OtpChallenge,
    OtpPurpose,
    OtpRequestResult,
    RevocationReason,
    Role,
    SessionView,
    TrustedDevice,
    User,
    UserSummary,
    mask_target,
)
from clients.email_client import EmailGatewayError
from utils.timezone import Clock, now_utc

logger = logging.getLogger(__name__)

INVALID_CREDENTIALS = "Invalid credentials"


class OtpSender(Protocol):
    """Delivers a passcode to a contact address. Implemented by EmailGatewayClient.

    Delivery failures raise EmailGatewayError.
    """

    def send_otp_code(self, target: str, purpose: str, code: str, expires_in_seconds: int) -> None: ...


def validate_password_strength(password: str) -> None:
    """At least 8 characters with a letter and a digit.

    Raises:
        InvalidPasswordError: Password is too weak.
    """
    if len(password) < 8:
        raise InvalidPasswordError("Password must be at least 8 characters")
    if not any(c.isalpha() for c in password) or not any(c.isdigit() for c in password):
        raise InvalidPasswordError("Password must contain letters and digits")


class AuthService:
    """Orchestrates authentication flows.

    Handles:
    - Password, passcode and federated login
    - Refresh token rotation and logout
    - Session and trusted-device management
    - Password reset/change and account status
    """

    def __init__(
        self,
        config: AuthConfig,
        store: CredentialStore,
        codec: TokenCodec,
        refresh_tokens: RefreshTokenEngine,
        otp: OtpChallengeEngine,
        sessions: SessionManager,
        passwords: PasswordManager,
        otp_sender: OtpSender,
        security_logger: SecurityLogger,
        sms_sender: OtpSender | None = None,
        rate_limiter: RateLimiter | None = None,
        clock: Clock = now_utc,
    ):
        self._config = config
        self._store = store
        self._codec = codec
        self._refresh = refresh_tokens
        self._otp = otp
        self._sessions = sessions
        self._passwords = passwords
        self._otp_sender = otp_sender
        self._sms_sender = sms_sender
        self._security_logger = security_logger
        self._rate_limiter = rate_limiter
        self._clock = clock

    # -------------------------------------------------------------------------
    # Token issuance
    # -------------------------------------------------------------------------

    def _issue_tokens(
        self,
        user: User,
        device: DeviceInfo | None,
        ip_address: str | None,
        is_new_user: bool = False,
    ) -> IssuedTokens:
        """
        Record the login, open the device session and mint both tokens.

        The store writes (last login, session, the session's previous token,
        the new token and its link) happen in one `record_login` call.
        """
        raw_refresh, record = self._refresh.mint(user.id)
        draft = None
        if device is not None:
            draft = self._sessions.new_session(user, device, ip_address)

        user, session = self._store.record_login(user.id, self._clock(), record, draft)
        session_id = session.id if session else None
        device_trusted = session.is_trusted if session else False
        if session is not None:
            logger.info(f"Session {session.id} opened for user {user.id}")

        return IssuedTokens(
            access_token=self._codec.issue(user.id, user.email, user.role),
            refresh_token=raw_refresh,
            expires_in=self._codec.expiry_seconds(),
            user=UserSummary.from_user(user),
            session_id=session_id,
            device_trusted=device_trusted,
            is_new_user=is_new_user,
        )

    def _find_user_by_target(self, target: str) -> User | None:
        if "@" in target:
            return self._store.get_user_by_email(target)
        return self._store.get_user_by_phone(target)

    # -------------------------------------------------------------------------
    # Registration and login
    # -------------------------------------------------------------------------

    def register(
        self,
        email: str,
        password: str,
        *,
        full_name: str | None = None,
        phone: str | None = None,
        role: Role = Role.USER,
        device: DeviceInfo | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> IssuedTokens:
        """Create a password account and log it in.

        Raises:
            InvalidRoleError: Role is not self-service.
            DuplicateUserError: Email or phone already registered.
            InvalidPasswordError: Password too weak.
        """
        if role not in SELF_SERVICE_ROLES:
            raise InvalidRoleError(f"Role {role.value} cannot be chosen at registration")
        validate_password_strength(password)

        email = email.strip().lower()
        phone = normalize_target(phone) if phone else None
        if self._store.get_user_by_email(email) is not None:
            raise DuplicateUserError("email")
        if phone and self._store.get_user_by_phone(phone) is not None:
            raise DuplicateUserError("phone")

        user = self._store.insert_user(
            User(
                id=uuid4(),
                email=email,
                phone=phone,
                full_name=full_name,
                password_hash=self._passwords.hash(password),
                role=role,
                created_at=self._clock(),
            )
        )
        self._security_logger.log(
            SecurityEvent.USER_REGISTERED,
            email=user.email,
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return self._issue_tokens(user, device, ip_address, is_new_user=True)

    def login(
        self,
        password: str,
        *,
        email: str | None = None,
        phone: str | None = None,
        device: DeviceInfo | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> IssuedTokens:
        """Password login by email or phone.

        Raises:
            AuthenticationFailedError: Unknown account, no password, or wrong password.
            AccountDisabledError: Correct password on a deactivated account.
        """
        if email:
            user = self._store.get_user_by_email(email.strip().lower())
        elif phone:
            user = self._store.get_user_by_phone(normalize_target(phone))
        else:
            raise AuthenticationFailedError(INVALID_CREDENTIALS)

        if user is None or not self._passwords.verify(user.password_hash, password):
            self._security_logger.log(
                SecurityEvent.LOGIN_FAILED,
                email=email,
                user_id=user.id if user else None,
                ip_address=ip_address,
                user_agent=user_agent,
                details={"reason": "user_not_found" if user is None else "bad_password"},
            )
            raise AuthenticationFailedError(INVALID_CREDENTIALS)

        if not user.is_active:
            raise AccountDisabledError("Account is deactivated. Please contact support.")

        if self._passwords.needs_rehash(user.password_hash):
            user = user.model_copy(update={"password_hash": self._passwords.hash(password)})

        tokens = self._issue_tokens(user, device, ip_address)
        self._security_logger.log(
            SecurityEvent.LOGIN_SUCCEEDED,
            email=user.email,
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return tokens

    def login_with_federated_identity(
        self,
        claims: FederatedClaims,
        *,
        role: Role = Role.USER,
        device: DeviceInfo | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> IssuedTokens:
        """
        Log in with claims an external provider already verified.

        Matches on (provider, subject), then links an existing account by
        email, then creates a new password-less account.

        Raises:
            AuthenticationFailedError: Provider did not verify the email.
            InvalidRoleError: Role is not self-service (new accounts only).
            AccountDisabledError: Matched account is deactivated.
        """
        if not claims.email_verified:
            raise AuthenticationFailedError("Email not verified with identity provider")

        email = claims.email.lower()
        is_new_user = False
        user = self._store.get_user_by_federated_identity(claims.provider, claims.subject)

        if user is None:
            user = self._store.get_user_by_email(email)
            if user is not None:
                user = self._store.save_user(
                    user.model_copy(
                        update={
                            "federated_provider": claims.provider,
                            "federated_subject": claims.subject,
                            "email_verified": True,
                        }
                    )
                )
                logger.info(f"Linked {claims.provider} identity to user {user.id}")

        if user is None:
            if role not in SELF_SERVICE_ROLES:
                raise InvalidRoleError(f"Role {role.value} cannot be chosen at registration")
            user = self._store.insert_user(
                User(
                    id=uuid4(),
                    email=email,
                    full_name=claims.full_name,
                    federated_provider=claims.provider,
                    federated_subject=claims.subject,
                    role=role,
                    email_verified=True,
                    created_at=self._clock(),
                )
            )
            is_new_user = True
            self._security_logger.log(
                SecurityEvent.USER_REGISTERED,
                email=user.email,
                user_id=user.id,
                ip_address=ip_address,
                user_agent=user_agent,
                details={"provider": claims.provider},
            )

        if not user.is_active:
            raise AccountDisabledError("Account is deactivated. Please contact support.")

        tokens = self._issue_tokens(user, device, ip_address, is_new_user=is_new_user)
        self._security_logger.log(
            SecurityEvent.FEDERATED_LOGIN,
            email=user.email,
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
            details={"provider": claims.provider},
        )
        return tokens

    # -------------------------------------------------------------------------
    # One-time passcodes
    # -------------------------------------------------------------------------

    def request_otp(
        self,
        target: str,
        purpose: OtpPurpose = OtpPurpose.LOGIN,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> OtpRequestResult:
        """
        Issue a passcode for target.

        A challenge is created whether or not an account owns the target, so
        the response and the resend cooldown look the same either way; the
        code is only delivered to real accounts. Delivery failures are logged
        and do not change the response.

        Raises:
            ValueError: Phone target while no SMS sender is configured
                (raised for every phone number, before any account lookup).
            RateLimitedError: Resend cooldown has not elapsed.
        """
        target = normalize_target(target)
        sender = self._sender_for(target)

        user = self._find_user_by_target(target)
        deliverable = user is not None and user.is_active

        issued = self._otp.create(target, purpose, user.id if deliverable else None)

        delivered = False
        if deliverable:
            delivered = self._deliver(sender, target, purpose, issued)

        self._security_logger.log(
            SecurityEvent.OTP_REQUESTED,
            email=user.email if user else None,
            user_id=user.id if user else None,
            ip_address=ip_address,
            user_agent=user_agent,
            details={"purpose": purpose.value, "delivered": delivered},
        )
        return OtpRequestResult(
            destination=mask_target(target),
            expires_in_seconds=issued.expires_in_seconds,
        )

    def _sender_for(self, target: str) -> OtpSender:
        if "@" in target:
            return self._otp_sender
        if self._sms_sender is None:
            raise ValueError("SMS delivery is not configured")
        return self._sms_sender

    def _deliver(
        self, sender: OtpSender, target: str, purpose: OtpPurpose, issued: IssuedChallenge
    ) -> bool:
        try:
            sender.send_otp_code(target, purpose.value, issued.code, issued.expires_in_seconds)
        except EmailGatewayError as e:
            logger.error(f"Passcode delivery to {mask_target(target)} failed: {e}")
            return False
        return True

    def verify_otp(
        self,
        target: str,
        purpose: OtpPurpose,
        code: str,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> OtpChallenge:
        """Verify and consume a passcode. VERIFICATION marks the contact verified.

        Raises:
            OtpVerificationError: NOT_FOUND, EXPIRED, EXHAUSTED or MISMATCH.
        """
        target = normalize_target(target)
        try:
            challenge = self._otp.verify(target, purpose, code)
        except OtpVerificationError as e:
            self._security_logger.log(
                SecurityEvent.OTP_FAILED,
                ip_address=ip_address,
                user_agent=user_agent,
                details={"purpose": purpose.value, "reason": e.reason.value},
            )
            raise

        user = self._find_user_by_target(target)
        if purpose is OtpPurpose.VERIFICATION and user is not None:
            self._mark_contact_verified(user, target)

        self._security_logger.log(
            SecurityEvent.OTP_VERIFIED,
            email=user.email if user else None,
            user_id=user.id if user else None,
            ip_address=ip_address,
            user_agent=user_agent,
            details={"purpose": purpose.value},
        )
        return challenge

    def _mark_contact_verified(self, user: User, target: str) -> User:
        if "@" in target:
            if user.email_verified:
                return user
            return self._store.save_user(user.model_copy(update={"email_verified": True}))
        if user.phone_verified:
            return user
        return self._store.save_user(user.model_copy(update={"phone_verified": True}))

    def login_with_otp(
        self,
        target: str,
        code: str,
        *,
        device: DeviceInfo | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> IssuedTokens:
        """Passwordless login with a LOGIN passcode.

        Raises:
            OtpVerificationError: Passcode rejected.
            AuthenticationFailedError: No account owns the target.
            AccountDisabledError: Account is deactivated.
        """
        target = normalize_target(target)
        self.verify_otp(target, OtpPurpose.LOGIN, code, ip_address=ip_address, user_agent=user_agent)

        user = self._find_user_by_target(target)
        if user is None:
            raise AuthenticationFailedError(INVALID_CREDENTIALS)
        if not user.is_active:
            raise AccountDisabledError("Account is deactivated. Please contact support.")

        # Receiving the code proves control of the contact
        user = self._mark_contact_verified(user, target)
        tokens = self._issue_tokens(user, device, ip_address)
        self._security_logger.log(
            SecurityEvent.LOGIN_SUCCEEDED,
            email=user.email,
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
            details={"method": "otp"},
        )
        return tokens

    # -------------------------------------------------------------------------
    # Refresh and logout
    # -------------------------------------------------------------------------

    def refresh(
        self,
        refresh_token: str,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> IssuedTokens:
        """Rotate a refresh token.

        Raises:
            RefreshTokenError: Unknown, expired or revoked token.
            TokenReusedError: Token was already rotated; all tokens revoked.
            AccountDisabledError: Owner is deactivated.
        """
        try:
            result = self._refresh.rotate(refresh_token)
        except TokenReusedError:
            self._security_logger.log(
                SecurityEvent.TOKEN_REUSE_DETECTED,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            raise

        session_id = result.record.session_id
        device_trusted = False
        if session_id is not None:
            self._sessions.touch(session_id)
            session = self._store.get_session(session_id)
            if session is not None:
                device_trusted = self._sessions.is_trusted(result.user.id, session.device_id)

        self._security_logger.log(
            SecurityEvent.TOKEN_REFRESHED,
            email=result.user.email,
            user_id=result.user.id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return IssuedTokens(
            access_token=result.access_token,
            refresh_token=result.refresh_token,
            expires_in=self._codec.expiry_seconds(),
            user=UserSummary.from_user(result.user),
            session_id=session_id,
            device_trusted=device_trusted,
        )

    def logout(self, refresh_token: str, *, ip_address: str | None = None) -> None:
        """Revoke the refresh token and close its session.

        Safe to call with an unknown or already revoked token.
        """
        previous = self._refresh.revoke(refresh_token, RevocationReason.LOGOUT)
        if previous is None:
            return

        if previous.session_id is not None:
            self._store.revoke_sessions(previous.user_id, session_ids=[previous.session_id])

        self._security_logger.log(
            SecurityEvent.LOGOUT,
            user_id=previous.user_id,
            ip_address=ip_address,
        )

    def logout_everywhere(self, user_id: UUID, *, ip_address: str | None = None) -> int:
        """Revoke every refresh token and session. Trusted devices stay trusted."""
        revoked = self._refresh.revoke_all(user_id, RevocationReason.LOGOUT)
        self._sessions.revoke_all(user_id)
        self._security_logger.log(
            SecurityEvent.LOGOUT_EVERYWHERE,
            user_id=user_id,
            ip_address=ip_address,
            details={"tokens_revoked": revoked},
        )
        return revoked

    # -------------------------------------------------------------------------
    # Sessions and devices
    # -------------------------------------------------------------------------

    def list_sessions(self, user_id: UUID, current_device_id: str | None = None) -> list[SessionView]:
        return self._sessions.list_active(user_id, current_device_id)

    def revoke_session(self, user_id: UUID, session_id: UUID, *, ip_address: str | None = None) -> None:
        """
        Raises:
            SessionNotFoundError: Not one of the user's active sessions.
        """
        self._sessions.revoke(user_id, session_id)
        self._security_logger.log(
            SecurityEvent.SESSION_REVOKED,
            user_id=user_id,
            ip_address=ip_address,
            details={"session_id": str(session_id)},
        )

    def revoke_other_sessions(
        self,
        user_id: UUID,
        current_device_id: str,
        *,
        ip_address: str | None = None,
    ) -> int:
        """Close every session except the one on current_device_id."""
        count = self._sessions.revoke_all_except(user_id, current_device_id)
        self._refresh.revoke_all_except_device(user_id, current_device_id)
        self._security_logger.log(
            SecurityEvent.SESSION_REVOKED,
            user_id=user_id,
            ip_address=ip_address,
            details={"kept_device": current_device_id, "sessions_revoked": count},
        )
        return count

    def trust_device(self, user_id: UUID, device: DeviceInfo) -> TrustedDevice:
        trusted = self._sessions.trust(user_id, device)
        self._security_logger.log(SecurityEvent.DEVICE_TRUSTED, user_id=user_id)
        return trusted

    def untrust_device(self, user_id: UUID, device_id: str) -> None:
        """
        Raises:
            DeviceNotFoundError: Device is not trusted.
        """
        self._sessions.untrust(user_id, device_id)
        self._security_logger.log(SecurityEvent.DEVICE_UNTRUSTED, user_id=user_id)

    def list_trusted_devices(self, user_id: UUID) -> list[TrustedDevice]:
        return self._sessions.list_trusted(user_id)

    def is_device_trusted(self, user_id: UUID, device_id: str) -> bool:
        return self._sessions.is_trusted(user_id, device_id)

    # -------------------------------------------------------------------------
    # Access token validation
    # -------------------------------------------------------------------------

    def validate_access_token(self, token: str) -> AccessTokenClaims:
        """Signature and expiry only. Does not see deactivation until expiry."""
        return self._codec.verify(token)

    def authenticate_access_token(self, token: str, check_user_status: bool = True) -> User:
        """
        Verify the token and load its user.

        With check_user_status, a deactivated user is rejected immediately
        even though the token itself is still valid.

        Raises:
            InvalidTokenError: Token rejected, or its user no longer exists.
            AccountDisabledError: User is deactivated.
        """
        claims = self._codec.verify(token)
        user = self._store.get_user_by_id(claims.user_id)
        if user is None:
            raise InvalidTokenError(TokenFailure.MALFORMED, "Token subject no longer exists")
        if check_user_status and not user.is_active:
            raise AccountDisabledError("Account is deactivated. Please contact support.")
        return user

    # -------------------------------------------------------------------------
    # Passwords
    # -------------------------------------------------------------------------

    def request_password_reset(
        self,
        target: str,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> OtpRequestResult:
        return self.request_otp(
            target, OtpPurpose.PASSWORD_RESET, ip_address=ip_address, user_agent=user_agent
        )

    def reset_password_with_otp(
        self,
        target: str,
        code: str,
        new_password: str,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        """Set a new password after a PASSWORD_RESET passcode; logs out everywhere.

        Raises:
            InvalidPasswordError: New password too weak.
            OtpVerificationError: Passcode rejected.
            AuthenticationFailedError: No account owns the target.
        """
        validate_password_strength(new_password)
        target = normalize_target(target)
        self.verify_otp(
            target, OtpPurpose.PASSWORD_RESET, code, ip_address=ip_address, user_agent=user_agent
        )

        user = self._find_user_by_target(target)
        if user is None:
            raise AuthenticationFailedError(INVALID_CREDENTIALS)

        self._store.save_user(
            user.model_copy(update={"password_hash": self._passwords.hash(new_password)})
        )
        self._refresh.revoke_all(user.id, RevocationReason.PASSWORD_CHANGED)
        self._sessions.revoke_all(user.id)
        self._security_logger.log(
            SecurityEvent.PASSWORD_RESET,
            email=user.email,
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    def change_password(
        self,
        user_id: UUID,
        current_password: str,
        new_password: str,
        *,
        current_device_id: str | None = None,
    ) -> None:
        """
        Change password for a logged-in user.

        Other devices are logged out; the current device (if given) keeps
        its session.

        Raises:
            ResourceNotFoundError: Unknown user.
            InvalidPasswordError: No password set, wrong current password,
                unchanged or weak new password.
        """
        user = self._store.get_user_by_id(user_id)
        if user is None:
            raise ResourceNotFoundError("User not found")
        if not user.has_password:
            raise InvalidPasswordError("No password is set for this account")
        if not self._passwords.verify(user.password_hash, current_password):
            raise InvalidPasswordError("Current password is incorrect")
        if current_password == new_password:
            raise InvalidPasswordError("New password must be different from current password")
        validate_password_strength(new_password)

        self._store.save_user(
            user.model_copy(update={"password_hash": self._passwords.hash(new_password)})
        )
        if current_device_id is None:
            self._refresh.revoke_all(user_id, RevocationReason.PASSWORD_CHANGED)
            self._sessions.revoke_all(user_id)
        else:
            self._refresh.revoke_all_except_device(
                user_id, current_device_id, RevocationReason.PASSWORD_CHANGED
            )
            self._sessions.revoke_all_except(user_id, current_device_id)
        self._security_logger.log(SecurityEvent.PASSWORD_CHANGED, email=user.email, user_id=user_id)

    # -------------------------------------------------------------------------
    # Account status
    # -------------------------------------------------------------------------

    def set_user_active(self, user_id: UUID, active: bool) -> User:
        """
        Activate or deactivate a user. Deactivation revokes every refresh
        token and session; issued access tokens live until they expire.

        Raises:
            ResourceNotFoundError: Unknown user.
        """
        user = self._store.get_user_by_id(user_id)
        if user is None:
            raise ResourceNotFoundError("User not found")

        user = self._store.save_user(user.model_copy(update={"is_active": active}))
        if not active:
            self._refresh.revoke_all(user_id, RevocationReason.ACCOUNT_DISABLED)
            self._sessions.revoke_all(user_id)

        self._security_logger.log(
            SecurityEvent.USER_ACTIVATED if active else SecurityEvent.USER_DEACTIVATED,
            email=user.email,
            user_id=user_id,
        )
        return user

    def request_account_deletion(self, user_id: UUID) -> OtpRequestResult:
        """Send an ACCOUNT_DELETION passcode to the user's email.

        Raises:
            ResourceNotFoundError: Unknown user.
        """
        user = self._store.get_user_by_id(user_id)
        if user is None:
            raise ResourceNotFoundError("User not found")
        return self.request_otp(user.email, OtpPurpose.ACCOUNT_DELETION)

    def delete_account_with_otp(self, user_id: UUID, code: str) -> None:
        """
        Close the account after an ACCOUNT_DELETION passcode.

        Users are never hard-deleted: the account is deactivated, and its
        tokens, sessions and trusted devices are revoked.

        Raises:
            ResourceNotFoundError: Unknown user.
            OtpVerificationError: Passcode rejected.
        """
        user = self._store.get_user_by_id(user_id)
        if user is None:
            raise ResourceNotFoundError("User not found")
        self.verify_otp(user.email, OtpPurpose.ACCOUNT_DELETION, code)
        self.set_user_active(user_id, False)
        self._sessions.untrust_all(user_id)

    # -------------------------------------------------------------------------
    # Housekeeping
    # -------------------------------------------------------------------------

    def purge_expired(self) -> dict[str, int]:
        """Periodic sweep of dead credentials and idle rate-limit buckets."""
        now = self._clock()
        counts = self._store.purge_expired(
            now,
            refresh_token_cutoff=now - timedelta(days=self._config.refresh_token_retention_days),
            session_cutoff=now - timedelta(days=self._config.session_retention_days),
        )
        if self._rate_limiter is not None:
            counts["rate_buckets"] = self._rate_limiter.sweep_idle()
        return counts


def create_auth_service(
    config: AuthConfig,
    store: CredentialStore,
    otp_sender: OtpSender,
    security_logger: SecurityLogger,
    *,
    sms_sender: OtpSender | None = None,
    rate_limiter: RateLimiter | None = None,
    passwords: PasswordManager | None = None,
    clock: Clock = now_utc,
) -> AuthService:
    """Wire the engines around one store and one clock."""
    codec = TokenCodec(config, clock)
    return AuthService(
        config=config,
        store=store,
        codec=codec,
        refresh_tokens=RefreshTokenEngine(store, codec, config, clock),
        otp=OtpChallengeEngine(store, config, clock),
        sessions=SessionManager(store, clock),
        passwords=passwords or PasswordManager(),
        otp_sender=otp_sender,
        security_logger=security_logger,
        sms_sender=sms_sender,
        rate_limiter=rate_limiter,
        clock=clock,
    )
