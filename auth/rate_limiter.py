"""Admission control with refilling token buckets.

Each (client, category) pair owns a bucket of `capacity` tokens that refills
continuously at `capacity / window_seconds` tokens per second. Buckets are
created full on first use.

Bucket state sits behind `BucketStore`: `InMemoryBucketStore` is process
local (lost on restart, not shared across instances), `ValkeyBucketStore`
shares buckets between instances through an atomic Lua script.
"""

import logging
import math
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Protocol

import redis

from auth.config import AuthConfig
from auth.exceptions import RateLimitedError
from auth.types import RateCategory
from clients.valkey_client import ValkeyClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateDecision:
    admitted: bool
    remaining: int
    retry_after_seconds: int = 0


class BucketStore(Protocol):
    """Atomic refill-then-consume on one bucket."""

    def consume(self, key: str, capacity: int, window_seconds: int) -> RateDecision: ...


@dataclass
class _Bucket:
    tokens: float
    last_refill: float
    last_seen: float
    lock: threading.Lock = field(default_factory=threading.Lock)


class InMemoryBucketStore:
    """Process-local buckets, one lock per bucket."""

    def __init__(self, monotonic: Callable[[], float] = time.monotonic):
        self._monotonic = monotonic
        self._buckets: dict[str, _Bucket] = {}
        self._registry_lock = threading.Lock()

    def _bucket(self, key: str, capacity: int) -> _Bucket:
        bucket = self._buckets.get(key)
        if bucket is None:
            with self._registry_lock:
                bucket = self._buckets.get(key)
                if bucket is None:
                    now = self._monotonic()
                    bucket = _Bucket(tokens=float(capacity), last_refill=now, last_seen=now)
                    self._buckets[key] = bucket
        return bucket

    def consume(self, key: str, capacity: int, window_seconds: int) -> RateDecision:
        bucket = self._bucket(key, capacity)

        with bucket.lock:
            now = self._monotonic()
            elapsed = max(0.0, now - bucket.last_refill)
            bucket.tokens = min(float(capacity), bucket.tokens + elapsed * capacity / window_seconds)
            bucket.last_refill = now
            bucket.last_seen = now

            if bucket.tokens >= 1.0:
                bucket.tokens -= 1.0
                return RateDecision(admitted=True, remaining=int(bucket.tokens))

            retry_after = math.ceil((1.0 - bucket.tokens) * window_seconds / capacity)
            return RateDecision(admitted=False, remaining=0, retry_after_seconds=max(retry_after, 1))

    def sweep_idle(self, max_idle_seconds: float) -> int:
        """Drop buckets unused for max_idle_seconds. Returns count removed."""
        cutoff = self._monotonic() - max_idle_seconds
        with self._registry_lock:
            idle = [key for key, bucket in self._buckets.items() if bucket.last_seen < cutoff]
            for key in idle:
                del self._buckets[key]
        if idle:
            logger.debug(f"Swept {len(idle)} idle rate-limit bucket(s)")
        return len(idle)

    def __len__(self) -> int:
        return len(self._buckets)


# KEYS[1] bucket key; ARGV: capacity, window_seconds, now (seconds, float)
# Returns {admitted (0/1), remaining tokens (floored), retry_after_seconds}
TOKEN_BUCKET_LUA = """
local capacity = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local now = tonumber(ARGV[3])

local state = redis.call('HMGET', KEYS[1], 'tokens', 'ts')
local tokens = tonumber(state[1])
local ts = tonumber(state[2])
if tokens == nil or ts == nil then
    tokens = capacity
    ts = now
end

local elapsed = math.max(0, now - ts)
tokens = math.min(capacity, tokens + elapsed * capacity / window)

local admitted = 0
local retry_after = 0
if tokens >= 1 then
    tokens = tokens - 1
    admitted = 1
else
    retry_after = math.max(1, math.ceil((1 - tokens) * window / capacity))
end

redis.call('HSET', KEYS[1], 'tokens', tostring(tokens), 'ts', tostring(now))
redis.call('EXPIRE', KEYS[1], math.ceil(window * 2))
return {admitted, math.floor(tokens), retry_after}
"""


class ValkeyBucketStore:
    """Buckets shared across instances. Fails closed when Valkey is unreachable."""

    KEY_PREFIX = "ratelimit:"

    def __init__(self, valkey: ValkeyClient, clock: Callable[[], float] = time.time):
        self._valkey = valkey
        self._clock = clock
        self._script = valkey.register_script(TOKEN_BUCKET_LUA)

    def consume(self, key: str, capacity: int, window_seconds: int) -> RateDecision:
        try:
            admitted, remaining, retry_after = self._valkey.run_script(
                self._script,
                keys=[f"{self.KEY_PREFIX}{key}"],
                args=[capacity, window_seconds, self._clock()],
            )
        except redis.RedisError as e:
            logger.error(f"Rate limit store unavailable, denying request: {e}")
            return RateDecision(admitted=False, remaining=0, retry_after_seconds=1)

        return RateDecision(
            admitted=bool(int(admitted)),
            remaining=max(0, int(remaining)),
            retry_after_seconds=int(retry_after),
        )


# Checked in this order; the strictest matching tier wins.
_OTP_MARKERS = ("/otp", "/forgot-password", "/password/forgot", "/send-verification", "/resend")
_AUTH_MARKERS = ("/login", "/register", "/oauth2/google", "/federated")


def classify_path(method: str, path: str) -> RateCategory | None:
    """
    Pick the rate category for a request, or None when it is exempt.

    Reads (GET) are exempt unless they verify something.
    """
    if method.upper() == "GET" and "/verify" not in path:
        return None
    if any(marker in path for marker in _OTP_MARKERS):
        return RateCategory.OTP
    if any(marker in path for marker in _AUTH_MARKERS):
        return RateCategory.AUTH
    return RateCategory.GENERAL


class RateLimiter:
    """Per-client, per-category admission control."""

    def __init__(self, config: AuthConfig, store: BucketStore | None = None):
        self._config = config
        self._store = store if store is not None else InMemoryBucketStore()

    def try_consume(self, client_key: str, category: RateCategory) -> RateDecision:
        """Refill, then take one token if available."""
        policy = self._config.rate_limit(category)
        if not self._config.rate_limit_enabled:
            return RateDecision(admitted=True, remaining=policy.capacity)
        return self._store.consume(
            f"{category.value}:{client_key}", policy.capacity, policy.window_seconds
        )

    def check(self, client_key: str, category: RateCategory) -> RateDecision:
        """
        Like try_consume, but denial raises.

        Raises:
            RateLimitedError: Bucket is empty.
        """
        decision = self.try_consume(client_key, category)
        if not decision.admitted:
            logger.warning(f"Rate limit exceeded for {client_key} on {category.value}")
            raise RateLimitedError(retry_after_seconds=decision.retry_after_seconds)
        return decision

    def sweep_idle(self, max_idle_seconds: float | None = None) -> int:
        """Evict idle in-memory buckets. Shared stores expire keys on their own."""
        if not isinstance(self._store, InMemoryBucketStore):
            return 0
        if max_idle_seconds is None:
            max_idle_seconds = 2 * max(p.window_seconds for p in self._config.rate_limits.values())
        return self._store.sweep_idle(max_idle_seconds)
