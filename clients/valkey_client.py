"""
Valkey (Redis-compatible) client for state shared between service instances.

Thin wrapper around redis-py. The auth core uses it for shared rate-limit
buckets; anything that must be atomic runs as a registered Lua script.
Fail-fast: raises on connection failure, never returns fallback values.
"""

import logging
from typing import Any, Sequence

import redis

logger = logging.getLogger(__name__)


class ValkeyClient:
    """
    Redis-compatible client for Valkey.

    Usage:
        client = ValkeyClient("redis://localhost:6379/0")
        script = client.register_script(LUA_SOURCE)
        result = client.run_script(script, keys=["k"], args=[1, 2])
    """

    def __init__(self, url: str, *, socket_timeout: float = 5.0):
        """
        Initialize Valkey connection.

        Args:
            url: Redis-compatible connection URL (e.g., redis://localhost:6379/0)
            socket_timeout: Seconds before a command is abandoned

        Raises:
            redis.ConnectionError: If connection fails
        """
        self._client = redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=socket_timeout,
        )
        # Verify connectivity immediately (fail-fast)
        self._client.ping()
        logger.info("ValkeyClient connected")

    def ping(self) -> bool:
        """
        Health check.

        Returns True if Valkey responds.
        Raises redis.ConnectionError if unreachable.
        """
        self._client.ping()
        return True

    def register_script(self, source: str) -> Any:
        """Register a Lua script; the returned handle is reused across calls."""
        return self._client.register_script(source)

    def run_script(self, script: Any, keys: Sequence[str], args: Sequence[Any]) -> Any:
        """Execute a registered script atomically on the server."""
        return script(keys=list(keys), args=list(args))

    def close(self) -> None:
        """Close the connection."""
        self._client.close()
        logger.info("ValkeyClient closed")
