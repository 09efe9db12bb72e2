"""Typed exceptions for auth failures."""

from enum import Enum


class TokenFailure(Enum):
    """Why a signed access token was rejected."""

    INVALID_SIGNATURE = "invalid_signature"
    MALFORMED = "malformed"
    EXPIRED = "expired"
    UNSUPPORTED_TYPE = "unsupported_type"


class RefreshFailure(Enum):
    """Why a refresh token could not be rotated."""

    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    REVOKED = "revoked"
    ALREADY_ROTATED = "already_rotated"


class OtpFailure(Enum):
    """Why a passcode verification failed."""

    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    EXHAUSTED = "exhausted"
    MISMATCH = "mismatch"


class AuthError(Exception):
    """Base class for authentication/authorization errors."""


class AuthenticationFailedError(AuthError):
    """
    Bad credentials. User-correctable.

    Raised for unknown accounts as well as wrong secrets so that login paths
    never reveal whether an account exists.
    """


class OtpVerificationError(AuthenticationFailedError):
    """Passcode was not accepted."""

    def __init__(self, reason: OtpFailure, remaining_attempts: int | None = None):
        self.reason = reason
        self.remaining_attempts = remaining_attempts
        message = {
            OtpFailure.NOT_FOUND: "No valid code found. Please request a new one.",
            OtpFailure.EXPIRED: "Code has expired. Please request a new one.",
            OtpFailure.EXHAUSTED: "Maximum verification attempts exceeded. Please request a new code.",
            OtpFailure.MISMATCH: "Invalid code.",
        }[reason]
        if reason is OtpFailure.MISMATCH and remaining_attempts is not None:
            message = f"Invalid code. {remaining_attempts} attempt(s) remaining."
        super().__init__(message)


class InvalidTokenError(AuthError):
    """
    Access token is malformed, expired, or carries a bad signature.

    Client must re-authenticate (or refresh).
    """

    def __init__(self, reason: TokenFailure, message: str | None = None):
        self.reason = reason
        super().__init__(message or f"Invalid token ({reason.value})")


class RefreshTokenError(AuthError):
    """Refresh token cannot be exchanged. Client must log in again."""

    def __init__(self, reason: RefreshFailure, message: str | None = None):
        self.reason = reason
        super().__init__(message or f"Invalid refresh token ({reason.value})")


class TokenReusedError(RefreshTokenError):
    """
    An already-rotated refresh token was presented again.

    Treated as theft: every refresh token of the owner has been revoked by
    the time this is raised.
    """

    def __init__(self, message: str = "Refresh token reuse detected. Please log in again."):
        super().__init__(RefreshFailure.ALREADY_ROTATED, message)


class RateLimitedError(AuthError):
    """Too many attempts. Client should wait before retrying."""

    def __init__(self, retry_after_seconds: int):
        self.retry_after_seconds = retry_after_seconds
        super().__init__(f"Rate limited. Retry after {retry_after_seconds} seconds.")


class AccountDisabledError(AuthError):
    """User account is deactivated. Terminal until an administrator re-enables it."""


class ResourceNotFoundError(AuthError):
    """A managed resource (session, device) does not exist for this user."""


class SessionNotFoundError(ResourceNotFoundError):
    """Session id unknown, or owned by someone else."""


class DeviceNotFoundError(ResourceNotFoundError):
    """Device is not in the user's trusted list."""


class DuplicateUserError(AuthError):
    """Email or phone is already registered."""

    def __init__(self, field: str):
        self.field = field
        super().__init__(f"A user with this {field} already exists")


class InvalidRoleError(AuthError):
    """Requested role is not allowed on this path."""


class InvalidPasswordError(AuthError):
    """Password change rejected (wrong current password, reuse, no password set)."""
