"""
Redis client wrapper for bulk operation services.

Provides the Redis operations needed for operation tracking, the work queue
and change notifications. Lua scripts are the unit of atomicity: callers
register a script once and execute it by SHA.
"""

from __future__ import annotations

import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import NoScriptError

from bulkops_service_libs.logging_utils import create_service_logger
from bulkops_service_libs.protocols import AtomicRedisClientProtocol
from bulkops_service_libs.redis_pubsub import RedisPubSub

logger = create_service_logger("redis-client")

REDIS_URL = os.getenv("REDIS_URL", "redis://redis:6379")


class RedisClient(AtomicRedisClientProtocol):
    """Redis client with lifecycle management for tracking and queue operations."""

    def __init__(
        self,
        *,
        client_id: str,
        redis_url: str = REDIS_URL,
        socket_timeout: float = 5,
    ):
        self.redis_url = redis_url
        self.client_id = client_id
        self.client = aioredis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_connect_timeout=socket_timeout,
            socket_timeout=socket_timeout,
        )
        self._started = False
        self._pubsub: RedisPubSub | None = None
        self._scripts: dict[str, str] = {}

    async def start(self) -> None:
        """Initialize Redis connection with health verification."""
        if not self._started:
            try:
                await self.client.ping()
                self._started = True
                self._pubsub = RedisPubSub(self.client, self.client_id)
                logger.info(f"Redis client '{self.client_id}' connected to {self.redis_url}")
            except RedisConnectionError as e:
                logger.error(f"Redis client '{self.client_id}' failed to connect: {e}")
                raise
            except Exception as e:
                logger.error(f"Redis client '{self.client_id}' startup error: {e}")
                raise

    async def stop(self) -> None:
        """Clean shutdown of Redis connection."""
        if self._started:
            try:
                await self.client.aclose()
                self._started = False
                logger.info(f"Redis client '{self.client_id}' disconnected")
            except Exception as e:
                logger.error(
                    f"Error stopping Redis client '{self.client_id}': {e}",
                    exc_info=True,
                )

    def _ensure_started(self) -> None:
        if not self._started:
            raise RuntimeError(f"Redis client '{self.client_id}' is not running.")

    async def ping(self) -> bool:
        """
        Health check method to verify Redis connectivity.

        Returns:
            True if Redis connection is healthy
        """
        self._ensure_started()
        try:
            result = await self.client.ping()
            is_healthy = bool(result)
            logger.debug(f"Redis PING by '{self.client_id}': result={is_healthy}")
            return is_healthy
        except Exception as e:
            logger.error(
                f"Error in Redis PING operation by '{self.client_id}': {e}",
                exc_info=True,
            )
            raise

    # Hash operations
    async def hgetall(self, key: str) -> dict[str, str]:
        """Get all fields and values of a hash."""
        self._ensure_started()
        try:
            record = dict(await self.client.hgetall(key) or {})
            logger.debug(f"Redis HGETALL by '{self.client_id}': key='{key}' fields={len(record)}")
            return record
        except Exception as e:
            logger.error(
                f"Error in Redis HGETALL operation by '{self.client_id}' for key '{key}': {e}",
                exc_info=True,
            )
            raise

    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        """Atomically increment an integer hash field and return the new value."""
        self._ensure_started()
        try:
            result = int(await self.client.hincrby(key, field, amount))
            logger.debug(
                f"Redis HINCRBY by '{self.client_id}': key='{key}' field='{field}' "
                f"amount={amount} new_value={result}"
            )
            return result
        except Exception as e:
            logger.error(
                f"Error in Redis HINCRBY operation by '{self.client_id}' for key '{key}': {e}",
                exc_info=True,
            )
            raise

    # List operations
    async def rpush(self, key: str, *values: str) -> int:
        """
        Append values to a Redis list.

        Returns:
            Length of the list after operation
        """
        self._ensure_started()
        try:
            length = int(await self.client.rpush(key, *values))
            logger.debug(
                f"Redis RPUSH by '{self.client_id}': key='{key}' "
                f"added={len(values)} values, new_length={length}",
            )
            return length
        except Exception as e:
            logger.error(
                f"Error in Redis RPUSH operation by '{self.client_id}' for key '{key}': {e}",
                exc_info=True,
            )
            raise

    async def lrange(self, key: str, start: int, stop: int) -> list[str]:
        """Get range of elements from a Redis list (stop is inclusive, -1 for end)."""
        self._ensure_started()
        try:
            elements = await self.client.lrange(key, start, stop) or []
            logger.debug(
                f"Redis LRANGE by '{self.client_id}': key='{key}' "
                f"range=[{start}:{stop}] returned {len(elements)} elements",
            )
            return list(elements)
        except Exception as e:
            logger.error(
                f"Error in Redis LRANGE operation by '{self.client_id}' for key '{key}': {e}",
                exc_info=True,
            )
            raise

    async def llen(self, key: str) -> int:
        """Get the length of a Redis list."""
        self._ensure_started()
        try:
            return int(await self.client.llen(key))
        except Exception as e:
            logger.error(
                f"Error in Redis LLEN operation by '{self.client_id}' for key '{key}': {e}",
                exc_info=True,
            )
            raise

    async def zcard(self, key: str) -> int:
        """Get cardinality of a sorted set."""
        self._ensure_started()
        try:
            return int(await self.client.zcard(key) or 0)
        except Exception as e:
            logger.error(
                f"Error in Redis ZCARD operation by '{self.client_id}' for key '{key}': {e}",
                exc_info=True,
            )
            raise

    # Key operations
    async def expire(self, key: str, ttl_seconds: int) -> bool:
        """Set a TTL on a key. Returns True if the key exists and the TTL was set."""
        self._ensure_started()
        try:
            result = bool(await self.client.expire(key, ttl_seconds))
            logger.debug(
                f"Redis EXPIRE by '{self.client_id}': key='{key}' ttl={ttl_seconds}s "
                f"result={result}"
            )
            return result
        except Exception as e:
            logger.error(
                f"Error in Redis EXPIRE operation by '{self.client_id}' for key '{key}': {e}",
                exc_info=True,
            )
            raise

    # Pub/Sub
    async def publish(self, channel: str, message: str) -> int:
        """Publish a message to a Redis channel."""
        if not self._pubsub:
            raise RuntimeError(
                f"Redis client '{self.client_id}' PubSub not initialized. "
                f"Ensure start() was called."
            )
        return await self._pubsub.publish(channel, message)

    @asynccontextmanager
    async def subscribe(self, channel: str) -> AsyncIterator[Any]:
        """Subscribe to a Redis channel for the lifetime of the context."""
        if not self._pubsub:
            raise RuntimeError(
                f"Redis client '{self.client_id}' PubSub not initialized. "
                f"Ensure start() was called."
            )
        async with self._pubsub.subscribe(channel) as pubsub:
            yield pubsub

    # Lua script operations for atomic complex operations
    async def register_script(self, script_body: str) -> str:
        """
        Load a Lua script into Redis and return its SHA1 hash.

        Args:
            script_body: The Lua script as a string

        Returns:
            The SHA1 hash of the script for use with EVALSHA
        """
        self._ensure_started()
        try:
            sha = str(await self.client.script_load(script_body))
            self._scripts[sha] = script_body
            logger.debug(f"Lua script registered by '{self.client_id}' with SHA: {sha}")
            return sha
        except Exception as e:
            logger.error(
                f"Error registering Lua script by '{self.client_id}': {e}",
                exc_info=True,
            )
            raise

    async def execute_script(self, sha: str, keys: list[str], args: list[Any]) -> Any:
        """
        Execute a pre-loaded Lua script by its SHA hash.

        Reloads the script once if the server lost its script cache
        (restart or SCRIPT FLUSH).

        Args:
            sha: The SHA1 hash of the script
            keys: A list of key names used by the script
            args: A list of argument values used by the script

        Returns:
            The result of the script execution
        """
        self._ensure_started()
        try:
            try:
                result = await self.client.evalsha(sha, len(keys), *keys, *args)
            except NoScriptError:
                body = self._scripts.get(sha)
                if body is None:
                    raise
                logger.warning(f"Lua script {sha} missing on server, reloading")
                await self.client.script_load(body)
                result = await self.client.evalsha(sha, len(keys), *keys, *args)
            logger.debug(
                f"Executed Lua script by '{self.client_id}' with SHA: {sha}, "
                f"keys: {keys}, args: {len(args)}"
            )
            return result
        except Exception as e:
            logger.error(
                f"Error executing Lua script by '{self.client_id}' with SHA: {sha}: {e}",
                exc_info=True,
            )
            raise
