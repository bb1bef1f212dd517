from __future__ import annotations

import asyncio

from bulkops_service_libs.logging_utils import create_service_logger
from bulkops_service_libs.protocols import AtomicRedisClientProtocol
from pydantic import ValidationError

from services.bulk_operations_service.domain_models import OperationSnapshot
from services.bulk_operations_service.protocols import OperationChangeObserverProtocol

logger = create_service_logger("bulkops.change_listener")


class OperationChangeListener:
    """
    Relays change records from the Redis change channel into the local hub.
    Reconnects after Redis errors until stopped.
    """

    def __init__(
        self,
        redis_client: AtomicRedisClientProtocol,
        hub: OperationChangeObserverProtocol,
        channel: str,
        reconnect_delay: float = 1.0,
    ) -> None:
        self._redis_client = redis_client
        self._hub = hub
        self._channel = channel
        self._reconnect_delay = reconnect_delay
        self._task: asyncio.Task | None = None

    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.is_running():
            return
        self._task = asyncio.create_task(self._listen_forever(), name="bulkops-change-listener")
        logger.info(f"Change listener started on channel {self._channel}")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Change listener stopped")

    async def _listen_forever(self) -> None:
        while True:
            try:
                await self._listen()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    f"Change listener lost its subscription: {e}, reconnecting",
                    exc_info=True,
                )
                await asyncio.sleep(self._reconnect_delay)

    async def _listen(self) -> None:
        async with self._redis_client.subscribe(self._channel) as pubsub:
            while True:
                message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                if message and message.get("type") == "message":
                    await self.handle_message(message["data"])

    async def handle_message(self, data: str | bytes) -> None:
        raw = data.decode("utf-8") if isinstance(data, bytes) else data
        try:
            snapshot = OperationSnapshot.model_validate_json(raw)
        except ValidationError as e:
            logger.warning(f"Ignoring malformed change record: {e}")
            return
        await self._hub.on_change(snapshot.operation_id, snapshot)
