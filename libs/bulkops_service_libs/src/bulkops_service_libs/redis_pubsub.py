"""
Redis Pub/Sub functionality for bulk operation services.

Carries operation change records from worker processes to every API
process that holds WebSocket subscribers.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import redis.asyncio as aioredis

from bulkops_service_libs.logging_utils import create_service_logger

logger = create_service_logger("redis-pubsub")


class RedisPubSub:
    """Redis Pub/Sub functionality for real-time notifications."""

    def __init__(self, client: aioredis.Redis, client_id: str) -> None:
        self.client = client
        self.client_id = client_id

    async def publish(self, channel: str, message: str) -> int:
        """
        Publish a message to a Redis channel.

        Args:
            channel: The channel to publish to
            message: The message to publish

        Returns:
            Number of subscribers that received the message
        """
        try:
            receiver_count = int(await self.client.publish(channel, message))
            logger.debug(
                f"Redis PUBLISH by '{self.client_id}': channel='{channel}', "
                f"message='{message[:75]}...', receivers={receiver_count}",
            )
            return receiver_count
        except Exception as e:
            logger.error(
                f"Error in Redis PUBLISH operation by '{self.client_id}' "
                f"for channel '{channel}': {e}",
                exc_info=True,
            )
            raise

    @asynccontextmanager
    async def subscribe(self, channel: str) -> AsyncIterator[Any]:
        """
        Subscribe to a Redis channel with lifecycle management.

        Args:
            channel: The channel to subscribe to

        Yields:
            PubSub instance for receiving messages
        """
        pubsub = self.client.pubsub()
        try:
            await pubsub.subscribe(channel)
            logger.debug(f"Redis SUBSCRIBE by '{self.client_id}' to channel '{channel}'")
            yield pubsub
        except Exception as e:
            logger.error(
                f"Error in Redis SUBSCRIBE operation by '{self.client_id}' "
                f"for channel '{channel}': {e}",
                exc_info=True,
            )
            raise
        finally:
            try:
                await pubsub.unsubscribe(channel)
                await pubsub.aclose()
                logger.debug(
                    f"Redis UNSUBSCRIBE cleanup by '{self.client_id}' from channel '{channel}'",
                )
            except Exception as e:
                # Cleanup errors must not mask the original exit reason
                logger.error(
                    f"Error during Redis UNSUBSCRIBE cleanup by '{self.client_id}': {e}",
                    exc_info=True,
                )
