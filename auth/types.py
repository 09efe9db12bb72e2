"""Pydantic models for auth domain."""

from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, EmailStr, Field, model_validator


class Role(str, Enum):
    """Closed set of account roles."""

    USER = "USER"
    SERVICE_PROVIDER = "SERVICE_PROVIDER"
    ADMIN = "ADMIN"
    SUPPORT = "SUPPORT"
    IT_ADMIN = "IT_ADMIN"


# Roles a person may pick for themselves (password or federated sign-up)
SELF_SERVICE_ROLES = frozenset({Role.USER, Role.SERVICE_PROVIDER})


class TokenType(str, Enum):
    ACCESS = "ACCESS"
    REFRESH = "REFRESH"


class OtpPurpose(str, Enum):
    """What a passcode unlocks. One challenge entity serves all of them."""

    LOGIN = "login"
    VERIFICATION = "verification"
    PASSWORD_RESET = "password_reset"
    ACCOUNT_DELETION = "account_deletion"


class RateCategory(str, Enum):
    """Admission-control tiers, strictest first."""

    OTP = "otp"
    AUTH = "auth"
    GENERAL = "general"


class RevocationReason(str, Enum):
    ROTATED = "rotated"
    LOGOUT = "logout"
    REUSE_DETECTED = "reuse_detected"
    SESSION_REVOKED = "session_revoked"
    EXPIRED = "expired"
    PASSWORD_CHANGED = "password_changed"
    ACCOUNT_DISABLED = "account_disabled"


def mask_email(email: str | None) -> str:
    """`jo****@example.com`; never log a full address."""
    if not email or "@" not in email:
        return "****"
    local, domain = email.split("@", 1)
    if len(local) <= 2:
        return f"****@{domain}"
    return f"{local[:2]}****@{domain}"


def mask_phone(phone: str | None) -> str:
    if not phone or len(phone) < 4:
        return "****"
    return "****" + phone[-4:]


def mask_target(target: str) -> str:
    """Mask an OTP destination that may be an email or a phone number."""
    return mask_email(target) if "@" in target else mask_phone(target)


class User(BaseModel):
    """A registered user of the system."""

    id: UUID
    email: EmailStr
    phone: str | None = None
    full_name: str | None = None
    password_hash: str | None = None
    federated_provider: str | None = None
    federated_subject: str | None = None
    role: Role = Role.USER
    is_active: bool = True
    email_verified: bool = False
    phone_verified: bool = False
    created_at: datetime
    last_login_at: datetime | None = None

    model_config = {"from_attributes": True}

    @property
    def has_password(self) -> bool:
        return bool(self.password_hash)


class UserSummary(BaseModel):
    """What callers get back about the user after authenticating."""

    id: UUID
    email: EmailStr
    full_name: str | None = None
    role: Role
    phone: str | None = None
    email_verified: bool
    phone_verified: bool

    @classmethod
    def from_user(cls, user: User) -> "UserSummary":
        return cls(
            id=user.id,
            email=user.email,
            full_name=user.full_name,
            role=user.role,
            phone=user.phone,
            email_verified=user.email_verified,
            phone_verified=user.phone_verified,
        )


class AccessTokenClaims(BaseModel):
    """Verified contents of a signed access token."""

    subject: str = Field(..., description="User email")
    user_id: UUID
    role: Role
    token_type: TokenType
    issued_at: datetime
    expires_at: datetime
    issuer: str
    token_id: str


class RefreshToken(BaseModel):
    """Store-backed refresh token. Only the SHA-256 of the opaque value is kept."""

    id: UUID
    token_hash: str
    user_id: UUID
    session_id: UUID | None = None
    created_at: datetime
    expires_at: datetime
    revoked: bool  # Required - fail closed, no default
    revoked_at: datetime | None = None
    revoked_reason: RevocationReason | None = None
    replaced_by: UUID | None = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def is_active(self, now: datetime) -> bool:
        return not self.revoked and not self.is_expired(now)

    @property
    def was_rotated(self) -> bool:
        """A successor was issued from this token."""
        return self.revoked and self.revoked_reason == RevocationReason.ROTATED


class OtpChallenge(BaseModel):
    """A numeric passcode bound to a contact address and a purpose."""

    id: UUID
    target: str
    purpose: OtpPurpose
    user_id: UUID | None = None
    code_hash: str
    created_at: datetime
    expires_at: datetime
    attempts: int = Field(default=0, ge=0)
    max_attempts: int = Field(..., ge=1)
    used: bool  # Required - fail closed, no default
    verified_at: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    @property
    def is_exhausted(self) -> bool:
        return self.attempts >= self.max_attempts


class DeviceInfo(BaseModel):
    """Client-reported device metadata."""

    device_id: str = Field(..., min_length=1, max_length=255)
    device_name: str | None = Field(default=None, max_length=255)
    custom_name: str | None = Field(default=None, max_length=255)
    device_model: str | None = Field(default=None, max_length=255)
    platform: str | None = Field(default=None, max_length=50)
    system_version: str | None = Field(default=None, max_length=50)
    app_version: str | None = Field(default=None, max_length=50)


class Session(BaseModel):
    """A per-device login, optionally linked to the current refresh token."""

    id: UUID
    user_id: UUID
    device_id: str
    refresh_token_id: UUID | None = None
    device_name: str | None = None
    device_model: str | None = None
    platform: str | None = None
    system_version: str | None = None
    app_version: str | None = None
    ip_address: str | None = None
    is_trusted: bool = False
    is_active: bool = True
    last_activity_at: datetime
    created_at: datetime


class SessionView(BaseModel):
    """Session as shown on a "manage devices" screen."""

    id: UUID
    device_id: str
    device_name: str | None = None
    device_model: str | None = None
    platform: str | None = None
    ip_address: str | None = None
    is_trusted: bool
    is_current: bool
    last_activity_at: datetime
    created_at: datetime

    @classmethod
    def from_session(cls, session: Session, current_device_id: str | None) -> "SessionView":
        return cls(
            id=session.id,
            device_id=session.device_id,
            device_name=session.device_name,
            device_model=session.device_model,
            platform=session.platform,
            ip_address=session.ip_address,
            is_trusted=session.is_trusted,
            is_current=current_device_id is not None and session.device_id == current_device_id,
            last_activity_at=session.last_activity_at,
            created_at=session.created_at,
        )


class TrustedDevice(BaseModel):
    """A device the user confirmed. Outlives any single session."""

    id: UUID
    user_id: UUID
    device_id: str
    custom_name: str | None = None
    device_name: str | None = None
    device_model: str | None = None
    platform: str | None = None
    system_version: str | None = None
    app_version: str | None = None
    is_active: bool = True
    last_used_at: datetime
    trusted_at: datetime


class FederatedClaims(BaseModel):
    """Identity asserted by an external provider after its own verification."""

    provider: str = Field(..., min_length=1)
    subject: str = Field(..., min_length=1)
    email: EmailStr
    email_verified: bool = True
    full_name: str | None = None


class IssuedTokens(BaseModel):
    """Result of every login-class operation and of refresh."""

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    user: UserSummary
    session_id: UUID | None = None
    device_trusted: bool = False
    is_new_user: bool = False


class OtpRequestResult(BaseModel):
    """Same shape whether or not the target exists."""

    destination: str
    expires_in_seconds: int


# =============================================================================
# REQUEST PAYLOADS
# =============================================================================


class RegisterRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=8, max_length=128)
    full_name: str | None = Field(default=None, max_length=255)
    phone: str | None = Field(default=None, max_length=32)
    role: Role = Role.USER
    device: DeviceInfo | None = None


class LoginRequest(BaseModel):
    """Password login by email or by phone (exactly one)."""

    email: EmailStr | None = None
    phone: str | None = Field(default=None, max_length=32)
    password: str = Field(..., min_length=1, max_length=128)
    device: DeviceInfo | None = None

    @model_validator(mode="after")
    def _exactly_one_identifier(self) -> "LoginRequest":
        if (self.email is None) == (self.phone is None):
            raise ValueError("Provide either email or phone")
        return self


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1)


class LogoutRequest(BaseModel):
    refresh_token: str | None = None


class OtpRequest(BaseModel):
    target: str = Field(..., min_length=3, max_length=255)
    purpose: OtpPurpose = OtpPurpose.LOGIN


class OtpVerifyRequest(BaseModel):
    target: str = Field(..., min_length=3, max_length=255)
    purpose: OtpPurpose
    code: str = Field(..., min_length=4, max_length=10, pattern=r"^\d+$")


class OtpLoginRequest(BaseModel):
    target: str = Field(..., min_length=3, max_length=255)
    code: str = Field(..., min_length=4, max_length=10, pattern=r"^\d+$")
    device: DeviceInfo | None = None


class ForgotPasswordRequest(BaseModel):
    target: str = Field(..., min_length=3, max_length=255)


class ResetPasswordRequest(BaseModel):
    target: str = Field(..., min_length=3, max_length=255)
    code: str = Field(..., min_length=4, max_length=10, pattern=r"^\d+$")
    new_password: str = Field(..., min_length=8, max_length=128)


class RevokeOthersRequest(BaseModel):
    current_device_id: str = Field(..., min_length=1, max_length=255)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str = Field(..., min_length=8, max_length=128)
    current_device_id: str | None = Field(default=None, max_length=255)
