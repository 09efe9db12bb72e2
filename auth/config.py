"""Authentication configuration."""

import os

from pydantic import BaseModel, Field, model_validator

from auth.types import OtpPurpose, RateCategory


class OtpPolicy(BaseModel):
    """Per-purpose one-time passcode settings."""

    code_length: int = Field(default=6, ge=4, le=10)
    ttl_minutes: int = Field(default=5, ge=1, le=60)
    max_attempts: int = Field(default=3, ge=1, le=10)
    resend_cooldown_seconds: int = Field(
        default=60,
        description="Minimum gap between two challenges for the same target and purpose",
        ge=0,
        le=3600,
    )


class RateLimitPolicy(BaseModel):
    """Refilling bucket: `capacity` requests per `window_seconds`."""

    capacity: int = Field(ge=1, le=10_000)
    window_seconds: int = Field(default=60, ge=1, le=3600)


def _default_otp_policies() -> dict[OtpPurpose, OtpPolicy]:
    return {
        OtpPurpose.LOGIN: OtpPolicy(),
        OtpPurpose.VERIFICATION: OtpPolicy(ttl_minutes=10),
        OtpPurpose.PASSWORD_RESET: OtpPolicy(ttl_minutes=15, resend_cooldown_seconds=300),
        OtpPurpose.ACCOUNT_DELETION: OtpPolicy(),
    }


def _default_rate_limits() -> dict[RateCategory, RateLimitPolicy]:
    return {
        RateCategory.AUTH: RateLimitPolicy(capacity=10),
        RateCategory.OTP: RateLimitPolicy(capacity=5),
        RateCategory.GENERAL: RateLimitPolicy(capacity=100),
    }


class AuthConfig(BaseModel):
    """
    Authentication configuration.

    Durations are in their natural units (minutes for access tokens and
    passcodes, days for refresh tokens and retention) to keep env files
    readable.
    """

    # Token signing
    signing_key: str = Field(
        ...,
        description="Shared HMAC secret for access tokens and passcode digests",
        min_length=32,
    )
    signing_algorithm: str = Field(
        default="HS512",
        pattern=r"^HS(256|384|512)$",
    )
    issuer: str = Field(default="tenant-auth", min_length=1)

    # Token lifetimes
    access_token_ttl_minutes: int = Field(
        default=60,
        description="Access token lifetime",
        ge=1,
        le=24 * 60,
    )
    refresh_token_ttl_days: int = Field(
        default=7,
        description="Refresh token lifetime",
        ge=1,
        le=90,
    )

    # One-time passcodes
    otp_policies: dict[OtpPurpose, OtpPolicy] = Field(default_factory=_default_otp_policies)

    # Admission control
    rate_limit_enabled: bool = True
    rate_limits: dict[RateCategory, RateLimitPolicy] = Field(default_factory=_default_rate_limits)
    trusted_proxies: list[str] = Field(
        default_factory=list,
        description="Peer addresses whose X-Forwarded-For / X-Real-IP headers are believed",
    )

    # Housekeeping
    session_retention_days: int = Field(
        default=30,
        description="Inactive sessions older than this are deleted by the sweep",
        ge=1,
    )
    refresh_token_retention_days: int = Field(
        default=30,
        description="Revoked or expired refresh tokens older than this are deleted",
        ge=1,
    )

    @model_validator(mode="after")
    def _fill_missing_policies(self) -> "AuthConfig":
        """Partial overrides keep the defaults for purposes/categories not mentioned."""
        for purpose, policy in _default_otp_policies().items():
            self.otp_policies.setdefault(purpose, policy)
        for category, policy in _default_rate_limits().items():
            self.rate_limits.setdefault(category, policy)
        return self

    def otp_policy(self, purpose: OtpPurpose) -> OtpPolicy:
        return self.otp_policies[purpose]

    def rate_limit(self, category: RateCategory) -> RateLimitPolicy:
        return self.rate_limits[category]

    @classmethod
    def from_env(cls) -> "AuthConfig":
        """Build config from process environment (AUTH_* variables)."""
        otp_policies = {}
        for purpose in OtpPurpose:
            prefix = f"AUTH_OTP_{purpose.name}_"
            overrides = {
                field: int(os.environ[prefix + field.upper()])
                for field in OtpPolicy.model_fields
                if prefix + field.upper() in os.environ
            }
            if overrides:
                otp_policies[purpose] = OtpPolicy(**overrides)

        rate_limits = {}
        for category in RateCategory:
            capacity = os.getenv(f"AUTH_RATE_LIMIT_{category.name}_CAPACITY")
            window = os.getenv(f"AUTH_RATE_LIMIT_{category.name}_WINDOW_SECONDS", "60")
            if capacity is not None:
                rate_limits[category] = RateLimitPolicy(
                    capacity=int(capacity), window_seconds=int(window)
                )

        return cls(
            signing_key=os.getenv("AUTH_SIGNING_KEY", ""),
            signing_algorithm=os.getenv("AUTH_SIGNING_ALGORITHM", "HS512"),
            issuer=os.getenv("AUTH_ISSUER", "tenant-auth"),
            access_token_ttl_minutes=int(os.getenv("AUTH_ACCESS_TOKEN_TTL_MINUTES", "60")),
            refresh_token_ttl_days=int(os.getenv("AUTH_REFRESH_TOKEN_TTL_DAYS", "7")),
            otp_policies=otp_policies,
            rate_limit_enabled=os.getenv("AUTH_RATE_LIMIT_ENABLED", "true").strip().lower()
            in {"1", "true", "yes", "on"},
            rate_limits=rate_limits,
            trusted_proxies=[
                p.strip() for p in os.getenv("AUTH_TRUSTED_PROXIES", "").split(",") if p.strip()
            ],
            session_retention_days=int(os.getenv("AUTH_SESSION_RETENTION_DAYS", "30")),
            refresh_token_retention_days=int(os.getenv("AUTH_REFRESH_TOKEN_RETENTION_DAYS", "30")),
        )
