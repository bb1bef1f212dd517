from __future__ import annotations

from typing import Any

from bulkops_service_libs.protocols import AtomicRedisClientProtocol
from common_core.config_enums import BackendMode

from services.bulk_operations_service.protocols import WorkQueueProtocol


class InfrastructureHealth:
    """Backend checks used by the health routes. Redis is absent in local mode."""

    def __init__(
        self,
        backend_mode: BackendMode,
        queue: WorkQueueProtocol,
        redis_client: AtomicRedisClientProtocol | None = None,
    ) -> None:
        self.backend_mode = backend_mode
        self.queue = queue
        self.redis_client = redis_client

    async def redis(self) -> dict[str, Any]:
        """Raises whatever the Redis client raises when unreachable."""
        if self.redis_client is None:
            return {"service": "redis", "status": "disabled", "backend_mode": self.backend_mode}
        await self.redis_client.ping()
        return {"service": "redis", "status": "healthy", "backend_mode": self.backend_mode}

    async def queue_depth(self) -> dict[str, int]:
        return await self.queue.depth()
