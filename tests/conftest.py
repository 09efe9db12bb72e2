"""Shared test fixtures for the auth test suite.

Everything runs in-process: the memory credential store stands in for
Postgres, clocks are injected, and outbound delivery is mocked.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import pytest
from argon2 import PasswordHasher, Type

from auth.config import AuthConfig
from auth.memory_store import MemoryCredentialStore
from auth.passwords import PasswordManager
from auth.rate_limiter import InMemoryBucketStore, RateLimiter
from auth.security_logger import SecurityLogger
from auth.service import AuthService, create_auth_service
from auth.types import DeviceInfo
from clients.email_client import EmailGatewayClient
from utils.user_context import clear_current_principal


# =============================================================================
# TEST CONSTANTS
# =============================================================================

TEST_SIGNING_KEY = "test-signing-key-" + "x" * 47  # 64 chars, enough for HS512
START = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


# =============================================================================
# CLOCKS
# =============================================================================


class FrozenClock:
    """Wall clock that only moves when told to."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class MonotonicClock:
    """Monotonic seconds counter for rate-limit buckets."""

    def __init__(self, start: float = 1000.0):
        self.value = start

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> float:
        self.value += seconds
        return self.value


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def monotonic() -> MonotonicClock:
    return MonotonicClock()


# =============================================================================
# CONTEXT
# =============================================================================


@pytest.fixture(autouse=True)
def reset_principal():
    """Ensure clean principal context before and after each test."""
    clear_current_principal()
    yield
    clear_current_principal()


# =============================================================================
# CORE COMPONENTS
# =============================================================================


@pytest.fixture
def config() -> AuthConfig:
    """Test config: defaults except the signing key."""
    return AuthConfig(signing_key=TEST_SIGNING_KEY)


@pytest.fixture
def store() -> MemoryCredentialStore:
    return MemoryCredentialStore()


@pytest.fixture
def passwords() -> PasswordManager:
    """Argon2id with minimal cost so the suite stays fast."""
    return PasswordManager(
        PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)
    )


@pytest.fixture
def mock_security_logger():
    """Security logger mock - no database in unit tests."""
    return Mock(spec=SecurityLogger)


@pytest.fixture
def mock_email_client():
    """Mock email client - no actual emails sent in tests."""
    mock = Mock(spec=EmailGatewayClient)
    mock.send_otp_code.return_value = None
    return mock


@pytest.fixture
def mock_sms_client():
    mock = Mock(spec=EmailGatewayClient)
    mock.send_otp_code.return_value = None
    return mock


@pytest.fixture
def rate_limiter(config, monotonic) -> RateLimiter:
    return RateLimiter(config, InMemoryBucketStore(monotonic))


@pytest.fixture
def auth_service(
    config, store, passwords, clock, mock_email_client, mock_sms_client, mock_security_logger,
    rate_limiter,
) -> AuthService:
    """Fully wired AuthService over the memory store."""
    return create_auth_service(
        config,
        store,
        mock_email_client,
        mock_security_logger,
        sms_sender=mock_sms_client,
        rate_limiter=rate_limiter,
        passwords=passwords,
        clock=clock,
    )


@pytest.fixture
def phone_device() -> DeviceInfo:
    return DeviceInfo(device_id="device-phone", device_name="Pixel", platform="android")


@pytest.fixture
def laptop_device() -> DeviceInfo:
    return DeviceInfo(device_id="device-laptop", device_name="MacBook", platform="macos")


@pytest.fixture
def sent_code():
    """Return the passcode handed to a sender mock's most recent send_otp_code call."""

    def _sent_code(mock_sender) -> str:
        return mock_sender.send_otp_code.call_args.args[2]

    return _sent_code
