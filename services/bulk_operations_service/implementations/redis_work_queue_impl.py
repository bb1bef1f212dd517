"""
Redis-based at-least-once work queue.

Key layout (prefix = QUEUE_KEY_PREFIX):

    {prefix}:ready       LIST  receipts visible to consumers, FIFO
    {prefix}:payloads    HASH  receipt -> task JSON
    {prefix}:inflight    ZSET  receipt -> lease deadline (epoch seconds)
    {prefix}:delayed     ZSET  receipt -> visible-at (epoch seconds)
    {prefix}:deliveries  HASH  receipt -> delivery count

A lease that is neither acked nor nacked before its deadline is moved back to
the ready list by the next lease call, which is what makes delivery
at-least-once. The current time is passed in from the caller so the scripts
stay deterministic.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from bulkops_service_libs.logging_utils import create_service_logger

from services.bulk_operations_service.domain_models import BatchTask, QueueDelivery

if TYPE_CHECKING:
    from bulkops_service_libs.protocols import AtomicRedisClientProtocol

logger = create_service_logger("bulkops.queue.redis")


# -----------------------------------------------------------------------------
# ENQUEUE
# -----------------------------------------------------------------------------
# KEYS: ready, payloads, deliveries
# ARGV[1]: receipt, ARGV[2]: task JSON
# -----------------------------------------------------------------------------
ENQUEUE_SCRIPT = """
redis.call('HSET', KEYS[2], ARGV[1], ARGV[2])
redis.call('HSET', KEYS[3], ARGV[1], 0)
return redis.call('RPUSH', KEYS[1], ARGV[1])
"""


# -----------------------------------------------------------------------------
# LEASE
# -----------------------------------------------------------------------------
# 1. Promote delayed receipts whose visible-at has passed.
# 2. Requeue in-flight receipts whose lease deadline has passed.
# 3. Pop the next ready receipt that still has a payload, lease it until
#    now + visibility and bump its delivery count.
#
# KEYS: ready, payloads, inflight, delayed, deliveries
# ARGV[1]: now, ARGV[2]: visibility timeout seconds
# Returns {receipt, payload, delivery_count} or nil.
# -----------------------------------------------------------------------------
LEASE_SCRIPT = """
local now = tonumber(ARGV[1])
local visibility = tonumber(ARGV[2])

local due = redis.call('ZRANGEBYSCORE', KEYS[4], '-inf', now)
for _, receipt in ipairs(due) do
    redis.call('ZREM', KEYS[4], receipt)
    redis.call('RPUSH', KEYS[1], receipt)
end

local expired = redis.call('ZRANGEBYSCORE', KEYS[3], '-inf', now)
for _, receipt in ipairs(expired) do
    redis.call('ZREM', KEYS[3], receipt)
    redis.call('RPUSH', KEYS[1], receipt)
end

while true do
    local receipt = redis.call('LPOP', KEYS[1])
    if not receipt then
        return nil
    end
    local payload = redis.call('HGET', KEYS[2], receipt)
    if payload then
        redis.call('ZADD', KEYS[3], now + visibility, receipt)
        local count = redis.call('HINCRBY', KEYS[5], receipt, 1)
        return {receipt, payload, count}
    end
end
"""


# -----------------------------------------------------------------------------
# ACK
# -----------------------------------------------------------------------------
# Removes every trace of the receipt. Returns 1 if the lease was still held.
# KEYS: ready, payloads, inflight, delayed, deliveries
# ARGV[1]: receipt
# -----------------------------------------------------------------------------
ACK_SCRIPT = """
local held = redis.call('ZREM', KEYS[3], ARGV[1])
redis.call('LREM', KEYS[1], 0, ARGV[1])
redis.call('ZREM', KEYS[4], ARGV[1])
redis.call('HDEL', KEYS[2], ARGV[1])
redis.call('HDEL', KEYS[5], ARGV[1])
return held
"""


# -----------------------------------------------------------------------------
# NACK
# -----------------------------------------------------------------------------
# Releases a held lease. With a positive delay the receipt waits in the
# delayed set, otherwise it goes straight back to the ready list.
# Returns 0 if the lease was no longer held (already expired and requeued).
#
# KEYS: ready, inflight, delayed
# ARGV[1]: receipt, ARGV[2]: visible-at (0 for immediate)
# -----------------------------------------------------------------------------
NACK_SCRIPT = """
if redis.call('ZREM', KEYS[2], ARGV[1]) == 0 then
    return 0
end
local visible_at = tonumber(ARGV[2])
if visible_at > 0 then
    redis.call('ZADD', KEYS[3], visible_at, ARGV[1])
else
    redis.call('RPUSH', KEYS[1], ARGV[1])
end
return 1
"""


# -----------------------------------------------------------------------------
# REQUEUE EXPIRED
# -----------------------------------------------------------------------------
# KEYS: ready, inflight
# ARGV[1]: now
# -----------------------------------------------------------------------------
REQUEUE_EXPIRED_SCRIPT = """
local expired = redis.call('ZRANGEBYSCORE', KEYS[2], '-inf', tonumber(ARGV[1]))
for _, receipt in ipairs(expired) do
    redis.call('ZREM', KEYS[2], receipt)
    redis.call('RPUSH', KEYS[1], receipt)
end
return #expired
"""


class RedisWorkQueue:
    """Durable work queue over Redis lists, hashes and sorted sets."""

    def __init__(
        self,
        redis_client: AtomicRedisClientProtocol,
        key_prefix: str,
        visibility_timeout: float,
        poll_interval: float,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._redis = redis_client
        self.visibility_timeout = visibility_timeout
        self.poll_interval = poll_interval
        self._clock = clock

        self.ready_key = f"{key_prefix}:ready"
        self.payloads_key = f"{key_prefix}:payloads"
        self.inflight_key = f"{key_prefix}:inflight"
        self.delayed_key = f"{key_prefix}:delayed"
        self.deliveries_key = f"{key_prefix}:deliveries"

        self._script_load_lock = asyncio.Lock()
        self._shas: dict[str, str] = {}

    async def ensure_scripts_loaded(self) -> None:
        """Load Lua scripts if not already loaded, protected by a lock."""
        if len(self._shas) == 5:
            return

        async with self._script_load_lock:
            scripts = {
                "enqueue": ENQUEUE_SCRIPT,
                "lease": LEASE_SCRIPT,
                "ack": ACK_SCRIPT,
                "nack": NACK_SCRIPT,
                "requeue": REQUEUE_EXPIRED_SCRIPT,
            }
            for name, body in scripts.items():
                if name not in self._shas:
                    self._shas[name] = await self._redis.register_script(body)
            logger.info("Loaded work queue Lua scripts")

    async def _run(self, name: str, keys: list[str], args: list[str]) -> Any:
        await self.ensure_scripts_loaded()
        return await self._redis.execute_script(self._shas[name], keys, args)

    async def enqueue(self, task: BatchTask) -> str:
        receipt = uuid.uuid4().hex
        await self._run(
            "enqueue",
            [self.ready_key, self.payloads_key, self.deliveries_key],
            [receipt, task.model_dump_json()],
        )
        logger.debug(
            f"Enqueued batch {task.batch_index} of operation {task.operation_id}",
            extra={"receipt": receipt},
        )
        return receipt

    async def _lease(self) -> QueueDelivery | None:
        result = await self._run(
            "lease",
            [
                self.ready_key,
                self.payloads_key,
                self.inflight_key,
                self.delayed_key,
                self.deliveries_key,
            ],
            [repr(self._clock()), repr(self.visibility_timeout)],
        )
        if not result:
            return None

        receipt, payload, count = result
        return QueueDelivery(
            receipt=str(receipt),
            task=BatchTask.model_validate_json(payload),
            delivery_count=int(count),
        )

    async def consume(self, timeout: float | None = None) -> QueueDelivery | None:
        deadline = None if timeout is None else self._clock() + timeout
        while True:
            delivery = await self._lease()
            if delivery is not None:
                return delivery
            if deadline is not None and self._clock() >= deadline:
                return None
            await asyncio.sleep(self.poll_interval)

    async def ack(self, delivery: QueueDelivery) -> None:
        held = await self._run(
            "ack",
            [
                self.ready_key,
                self.payloads_key,
                self.inflight_key,
                self.delayed_key,
                self.deliveries_key,
            ],
            [delivery.receipt],
        )
        if not int(held):
            logger.warning(
                f"Acked receipt {delivery.receipt} after its lease expired",
                extra={"operation_id": delivery.task.operation_id},
            )

    async def nack(self, delivery: QueueDelivery, delay_seconds: float = 0) -> None:
        visible_at = self._clock() + delay_seconds if delay_seconds > 0 else 0
        held = await self._run(
            "nack",
            [self.ready_key, self.inflight_key, self.delayed_key],
            [delivery.receipt, repr(visible_at)],
        )
        if not int(held):
            logger.warning(
                f"Nack for receipt {delivery.receipt} ignored, lease no longer held",
                extra={"operation_id": delivery.task.operation_id},
            )

    async def requeue_expired(self) -> int:
        count = int(
            await self._run(
                "requeue", [self.ready_key, self.inflight_key], [repr(self._clock())]
            )
        )
        if count:
            logger.info(f"Requeued {count} tasks with expired leases")
        return count

    async def depth(self) -> dict[str, int]:
        return {
            "ready": await self._redis.llen(self.ready_key),
            "inflight": await self._redis.zcard(self.inflight_key),
            "delayed": await self._redis.zcard(self.delayed_key),
        }
