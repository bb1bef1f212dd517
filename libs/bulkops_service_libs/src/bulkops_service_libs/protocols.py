"""
Shared protocol definitions for bulkops_service_libs.

Defines the contract of the shared Redis client so services can depend on the
protocol and tests can substitute structural fakes.
"""

from __future__ import annotations

from contextlib import AbstractAsyncContextManager
from typing import Any, Protocol

__all__ = ["AtomicRedisClientProtocol"]


class AtomicRedisClientProtocol(Protocol):
    """Protocol for Redis operations used by tracking, queueing and notifications."""

    async def start(self) -> None:
        """Connect and verify connectivity."""
        ...

    async def stop(self) -> None:
        """Close the connection."""
        ...

    async def ping(self) -> bool:
        """Health check. Returns True if Redis answered."""
        ...

    async def hgetall(self, key: str) -> dict[str, str]:
        """Get all fields of a hash; empty dict if the key does not exist."""
        ...

    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        """Atomically increment a hash field and return the new value."""
        ...

    async def rpush(self, key: str, *values: str) -> int:
        """Append values to a list and return its new length."""
        ...

    async def lrange(self, key: str, start: int, stop: int) -> list[str]:
        """Read a range of a list (stop inclusive, -1 for end)."""
        ...

    async def llen(self, key: str) -> int:
        """Length of a list."""
        ...

    async def zcard(self, key: str) -> int:
        """Cardinality of a sorted set."""
        ...

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        """Set a TTL on a key."""
        ...

    async def publish(self, channel: str, message: str) -> int:
        """
        Publish a message to a channel.

        Returns:
            Number of subscribers that received the message
        """
        ...

    def subscribe(self, channel: str) -> AbstractAsyncContextManager[Any]:
        """Async context manager yielding a PubSub subscribed to the channel."""
        ...

    async def register_script(self, script_body: str) -> str:
        """
        Load a Lua script and return its SHA1 hash.

        Args:
            script_body: The Lua script as a string

        Returns:
            The SHA1 hash of the script for use with execute_script
        """
        ...

    async def execute_script(self, sha: str, keys: list[str], args: list[Any]) -> Any:
        """
        Execute a pre-loaded Lua script by its SHA hash.

        Args:
            sha: The SHA1 hash of the script
            keys: Key names used by the script
            args: Argument values used by the script

        Returns:
            The result of the script execution
        """
        ...
