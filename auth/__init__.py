"""Credential issuance and session lifecycle."""

from auth.exceptions import (
    AuthError,
    AuthenticationFailedError,
    OtpVerificationError,
    InvalidTokenError,
    RefreshTokenError,
    TokenReusedError,
    RateLimitedError,
    AccountDisabledError,
    ResourceNotFoundError,
    SessionNotFoundError,
    DeviceNotFoundError,
    DuplicateUserError,
    InvalidRoleError,
    InvalidPasswordError,
)
from auth.types import (
    Role,
    TokenType,
    OtpPurpose,
    RateCategory,
    User,
    Session,
    TrustedDevice,
    DeviceInfo,
    FederatedClaims,
    IssuedTokens,
)
from auth.config import AuthConfig
from auth.store import CredentialStore
from auth.memory_store import MemoryCredentialStore
from auth.database import PostgresCredentialStore
from auth.tokens import TokenCodec
from auth.passwords import PasswordManager
from auth.refresh import RefreshTokenEngine
from auth.otp import OtpChallengeEngine
from auth.rate_limiter import RateLimiter
from auth.security_logger import SecurityLogger, SecurityEvent
from auth.session import SessionManager
from auth.service import AuthService, create_auth_service
