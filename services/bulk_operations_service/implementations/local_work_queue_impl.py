"""
Local in-memory work queue with lease/redelivery semantics.

Mirrors RedisWorkQueue for local backend mode and tests: a consumed task is
leased for the visibility timeout and becomes visible again if it is
neither acked nor nacked in time.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections import deque
from collections.abc import Callable

from bulkops_service_libs.logging_utils import create_service_logger

from services.bulk_operations_service.domain_models import BatchTask, QueueDelivery

logger = create_service_logger("bulkops.queue.local")


class InMemoryWorkQueue:
    """asyncio-backed work queue. Not shared across processes."""

    def __init__(
        self,
        visibility_timeout: float,
        poll_interval: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.visibility_timeout = visibility_timeout
        self.poll_interval = poll_interval
        self._clock = clock

        self._ready: deque[str] = deque()
        self._payloads: dict[str, BatchTask] = {}
        self._inflight: dict[str, float] = {}
        self._delayed: dict[str, float] = {}
        self._deliveries: dict[str, int] = {}

        self._lock = asyncio.Lock()
        self._available = asyncio.Event()

    def _promote(self, now: float) -> None:
        for receipt, visible_at in list(self._delayed.items()):
            if visible_at <= now:
                del self._delayed[receipt]
                self._ready.append(receipt)
        for receipt, deadline in list(self._inflight.items()):
            if deadline <= now:
                del self._inflight[receipt]
                self._ready.append(receipt)

    async def enqueue(self, task: BatchTask) -> str:
        receipt = uuid.uuid4().hex
        async with self._lock:
            self._payloads[receipt] = task
            self._deliveries[receipt] = 0
            self._ready.append(receipt)
        self._available.set()
        return receipt

    async def _lease(self) -> QueueDelivery | None:
        async with self._lock:
            now = self._clock()
            self._promote(now)
            while self._ready:
                receipt = self._ready.popleft()
                task = self._payloads.get(receipt)
                if task is None:
                    continue
                self._inflight[receipt] = now + self.visibility_timeout
                self._deliveries[receipt] += 1
                return QueueDelivery(
                    receipt=receipt, task=task, delivery_count=self._deliveries[receipt]
                )
            self._available.clear()
            return None

    async def consume(self, timeout: float | None = None) -> QueueDelivery | None:
        deadline = None if timeout is None else self._clock() + timeout
        while True:
            delivery = await self._lease()
            if delivery is not None:
                return delivery
            wait = self.poll_interval
            if deadline is not None:
                remaining = deadline - self._clock()
                if remaining <= 0:
                    return None
                wait = min(wait, remaining)
            try:
                await asyncio.wait_for(self._available.wait(), timeout=wait)
            except TimeoutError:
                pass

    async def ack(self, delivery: QueueDelivery) -> None:
        async with self._lock:
            held = self._inflight.pop(delivery.receipt, None) is not None
            if delivery.receipt in self._ready:
                self._ready.remove(delivery.receipt)
            self._delayed.pop(delivery.receipt, None)
            self._payloads.pop(delivery.receipt, None)
            self._deliveries.pop(delivery.receipt, None)
        if not held:
            logger.warning(f"Acked receipt {delivery.receipt} after its lease expired")

    async def nack(self, delivery: QueueDelivery, delay_seconds: float = 0) -> None:
        async with self._lock:
            if self._inflight.pop(delivery.receipt, None) is None:
                logger.warning(
                    f"Nack for receipt {delivery.receipt} ignored, lease no longer held"
                )
                return
            if delay_seconds > 0:
                self._delayed[delivery.receipt] = self._clock() + delay_seconds
            else:
                self._ready.append(delivery.receipt)
        self._available.set()

    async def requeue_expired(self) -> int:
        async with self._lock:
            now = self._clock()
            expired = [r for r, deadline in self._inflight.items() if deadline <= now]
            for receipt in expired:
                del self._inflight[receipt]
                self._ready.append(receipt)
        if expired:
            self._available.set()
            logger.info(f"Requeued {len(expired)} tasks with expired leases")
        return len(expired)

    async def depth(self) -> dict[str, int]:
        async with self._lock:
            return {
                "ready": len(self._ready),
                "inflight": len(self._inflight),
                "delayed": len(self._delayed),
            }
