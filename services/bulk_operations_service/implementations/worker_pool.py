"""Pool of concurrent queue consumers, one task in flight per consumer."""

from __future__ import annotations

import asyncio

from bulkops_service_libs.logging_utils import create_service_logger

from services.bulk_operations_service.config import Settings
from services.bulk_operations_service.protocols import (
    WorkerProcessorProtocol,
    WorkQueueProtocol,
)

logger = create_service_logger("bulkops.worker_pool")


class WorkerPool:
    """Owns lifecycle of the consumer tasks."""

    def __init__(
        self,
        queue: WorkQueueProtocol,
        processor: WorkerProcessorProtocol,
        settings: Settings,
    ) -> None:
        self.queue = queue
        self.processor = processor
        self.settings = settings

        self._running = False
        self._tasks: list[asyncio.Task] = []

    @property
    def size(self) -> int:
        return self.settings.WORKER_COUNT

    def is_running(self) -> bool:
        return self._running and any(not t.done() for t in self._tasks)

    async def start(self) -> None:
        if self._running:
            logger.warning("Worker pool already running")
            return

        requeued = await self.queue.requeue_expired()
        if requeued:
            logger.info(f"Recovered {requeued} tasks with expired leases")

        self._running = True
        self._tasks = [
            asyncio.create_task(self._consume_loop(i), name=f"bulkops-worker-{i}")
            for i in range(self.size)
        ]
        logger.info(f"Worker pool started with {self.size} consumers")

    async def stop(self) -> None:
        if not self._running:
            return

        logger.info("Stopping worker pool...")
        self._running = False

        # Consumers finish the task in hand; consume() returns within its timeout
        _, pending = await asyncio.wait(
            self._tasks,
            timeout=self.settings.CONSUME_TIMEOUT_SECONDS
            + self.settings.BATCH_APPLY_TIMEOUT_SECONDS,
        )
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._tasks = []
        logger.info("Worker pool stopped")

    async def _consume_loop(self, worker_id: int) -> None:
        logger.debug(f"Consumer {worker_id} started")
        while self._running:
            try:
                delivery = await self.queue.consume(
                    timeout=self.settings.CONSUME_TIMEOUT_SECONDS
                )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Consumer {worker_id} failed to consume: {e}", exc_info=True)
                await asyncio.sleep(self.settings.QUEUE_POLL_INTERVAL_SECONDS)
                continue

            if delivery is None:
                continue

            try:
                await self.processor.process(delivery)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # Lease is left to expire so the queue redelivers the task
                logger.error(
                    f"Consumer {worker_id} failed processing receipt {delivery.receipt}: {e}",
                    exc_info=True,
                )
        logger.debug(f"Consumer {worker_id} stopped")
