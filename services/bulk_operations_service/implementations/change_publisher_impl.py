"""
Change publisher for Redis backend mode.

Workers and API processes do not share a notification hub, so the tracker's
observer publishes each change record on a Redis channel and every API
process relays it into its own hub.
"""

from __future__ import annotations

from bulkops_service_libs.logging_utils import create_service_logger
from bulkops_service_libs.protocols import AtomicRedisClientProtocol

from services.bulk_operations_service.domain_models import OperationSnapshot

logger = create_service_logger("bulkops.change_publisher")


class RedisChangePublisher:
    """Publishes operation snapshots to the change channel."""

    def __init__(self, redis_client: AtomicRedisClientProtocol, channel: str) -> None:
        self.redis_client = redis_client
        self.channel = channel

    async def on_change(self, operation_id: str, snapshot: OperationSnapshot) -> None:
        receivers = await self.redis_client.publish(self.channel, snapshot.model_dump_json())
        logger.debug(
            f"Published change for operation {operation_id} to {receivers} listeners",
            extra={"operation_id": operation_id, "status": snapshot.status.value},
        )
