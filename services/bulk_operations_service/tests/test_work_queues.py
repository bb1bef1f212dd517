"""
Tests for InMemoryWorkQueue lease semantics.

A consumed task stays invisible until acked, nacked or its lease expires.
A manual clock drives lease expiry and nack delays.
"""

from __future__ import annotations

import asyncio

import pytest

from services.bulk_operations_service.domain_models import BatchTask
from services.bulk_operations_service.implementations.local_work_queue_impl import (
    InMemoryWorkQueue,
)


class ManualClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def queue(clock: ManualClock) -> InMemoryWorkQueue:
    return InMemoryWorkQueue(visibility_timeout=30, poll_interval=0.01, clock=clock)


def _task(index: int = 0) -> BatchTask:
    return BatchTask(operation_id="op-1", batch_index=index)


class TestLeasing:
    @pytest.mark.asyncio
    async def test_consume_leases_in_fifo_order(self, queue: InMemoryWorkQueue) -> None:
        await queue.enqueue(_task(0))
        await queue.enqueue(_task(1))

        first = await queue.consume(timeout=1)
        second = await queue.consume(timeout=1)

        assert first is not None and second is not None
        assert [first.task.batch_index, second.task.batch_index] == [0, 1]
        assert first.delivery_count == 1
        assert await queue.depth() == {"ready": 0, "inflight": 2, "delayed": 0}

    @pytest.mark.asyncio
    async def test_consume_times_out_on_empty_queue(self) -> None:
        queue = InMemoryWorkQueue(visibility_timeout=30, poll_interval=0.01)

        assert await queue.consume(timeout=0.05) is None

    @pytest.mark.asyncio
    async def test_waiting_consumer_wakes_on_enqueue(self) -> None:
        queue = InMemoryWorkQueue(visibility_timeout=30, poll_interval=0.5)

        consumer = asyncio.create_task(queue.consume(timeout=2))
        await asyncio.sleep(0.01)
        await queue.enqueue(_task(7))
        delivery = await asyncio.wait_for(consumer, timeout=1)

        assert delivery is not None
        assert delivery.task.batch_index == 7

    @pytest.mark.asyncio
    async def test_ack_removes_task(self, queue: InMemoryWorkQueue) -> None:
        await queue.enqueue(_task())
        delivery = await queue.consume(timeout=1)
        assert delivery is not None

        await queue.ack(delivery)

        assert await queue.depth() == {"ready": 0, "inflight": 0, "delayed": 0}


class TestRedelivery:
    @pytest.mark.asyncio
    async def test_expired_lease_is_redelivered(
        self, queue: InMemoryWorkQueue, clock: ManualClock
    ) -> None:
        receipt = await queue.enqueue(_task())
        first = await queue.consume(timeout=1)
        assert first is not None

        clock.advance(31)
        second = await queue.consume(timeout=1)

        assert second is not None
        assert second.receipt == receipt
        assert second.delivery_count == 2

    @pytest.mark.asyncio
    async def test_lease_not_expired_is_not_redelivered(
        self, queue: InMemoryWorkQueue, clock: ManualClock
    ) -> None:
        await queue.enqueue(_task())
        assert await queue.consume(timeout=1) is not None

        clock.advance(29)

        assert (await queue.depth())["inflight"] == 1
        assert await queue.requeue_expired() == 0

    @pytest.mark.asyncio
    async def test_nack_without_delay_is_immediately_visible(
        self, queue: InMemoryWorkQueue
    ) -> None:
        await queue.enqueue(_task())
        delivery = await queue.consume(timeout=1)
        assert delivery is not None

        await queue.nack(delivery)
        again = await queue.consume(timeout=1)

        assert again is not None
        assert again.delivery_count == 2

    @pytest.mark.asyncio
    async def test_nack_with_delay_hides_task_until_due(
        self, queue: InMemoryWorkQueue, clock: ManualClock
    ) -> None:
        await queue.enqueue(_task())
        delivery = await queue.consume(timeout=1)
        assert delivery is not None

        await queue.nack(delivery, delay_seconds=10)
        assert await queue.depth() == {"ready": 0, "inflight": 0, "delayed": 1}

        clock.advance(10)
        again = await queue.consume(timeout=1)
        assert again is not None
        assert again.receipt == delivery.receipt

    @pytest.mark.asyncio
    async def test_nack_after_lease_lost_is_ignored(
        self, queue: InMemoryWorkQueue, clock: ManualClock
    ) -> None:
        await queue.enqueue(_task())
        stale = await queue.consume(timeout=1)
        assert stale is not None
        clock.advance(31)
        current = await queue.consume(timeout=1)
        assert current is not None

        await queue.ack(current)
        await queue.nack(stale)

        assert await queue.depth() == {"ready": 0, "inflight": 0, "delayed": 0}

    @pytest.mark.asyncio
    async def test_requeue_expired_on_startup(
        self, queue: InMemoryWorkQueue, clock: ManualClock
    ) -> None:
        await queue.enqueue(_task(0))
        await queue.enqueue(_task(1))
        assert await queue.consume(timeout=1) is not None
        assert await queue.consume(timeout=1) is not None

        clock.advance(60)

        assert await queue.requeue_expired() == 2
        assert await queue.depth() == {"ready": 2, "inflight": 0, "delayed": 0}
