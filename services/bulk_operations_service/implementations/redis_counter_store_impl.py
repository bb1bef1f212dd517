"""
Redis-backed counter store for Operation and Batch records.

Every mutation that must be atomic is a Lua script: Redis runs a script to
completion before serving any other command, so a guarded transition and the
counter increment it unlocks cannot interleave with a concurrent report.
Script arguments are passed as a single JSON document (ARGV[1]).
"""

from __future__ import annotations

import asyncio
import json
from typing import TYPE_CHECKING, Any

from bulkops_service_libs.logging_utils import create_service_logger

if TYPE_CHECKING:
    from bulkops_service_libs.protocols import AtomicRedisClientProtocol

logger = create_service_logger("bulkops.counter_store.redis")


# -----------------------------------------------------------------------------
# CREATE-IF-ABSENT
# -----------------------------------------------------------------------------
# KEYS[1]: record HASH
# ARGV[1]: JSON object of fields to write
# Returns 1 if created, 0 if the key already existed.
# -----------------------------------------------------------------------------
CREATE_RECORD_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 1 then
    return 0
end
local fields = cjson.decode(ARGV[1])
for name, value in pairs(fields) do
    redis.call('HSET', KEYS[1], name, value)
end
return 1
"""


# -----------------------------------------------------------------------------
# CONDITIONAL TRANSITION (compare-and-set on one hash field)
# -----------------------------------------------------------------------------
# KEYS[1]: record HASH
# ARGV[1]: JSON {field, to_state, from_states: [...], extra: {...}}
# Returns 1 if the field matched one of from_states and was updated, else 0.
# -----------------------------------------------------------------------------
CONDITIONAL_TRANSITION_SCRIPT = """
local transition = cjson.decode(ARGV[1])
local current = redis.call('HGET', KEYS[1], transition.field)
if not current then
    return 0
end

local allowed = false
for _, state in ipairs(transition.from_states) do
    if state == current then
        allowed = true
        break
    end
end
if not allowed then
    return 0
end

redis.call('HSET', KEYS[1], transition.field, transition.to_state)
if transition.extra then
    for name, value in pairs(transition.extra) do
        redis.call('HSET', KEYS[1], name, value)
    end
end
return 1
"""


# -----------------------------------------------------------------------------
# TRANSITION AND INCREMENT
# -----------------------------------------------------------------------------
# Guarded transition on KEYS[1]; when it wins, increments a counter field on
# KEYS[2], optionally appends to the KEYS[3] list, and returns the KEYS[2]
# hash as it stands after the increment. Returns nil (no mutation) when the
# guard fails or the counter record does not exist.
#
# KEYS[1]: guarded record HASH
# KEYS[2]: counter record HASH (may equal KEYS[1])
# KEYS[3]: optional append LIST
# ARGV[1]: JSON {field, to_state, from_states, extra, counter_field,
#                counter_extra, append_value}
# -----------------------------------------------------------------------------
TRANSITION_AND_INCREMENT_SCRIPT = """
local transition = cjson.decode(ARGV[1])

if redis.call('EXISTS', KEYS[2]) == 0 then
    return nil
end

local current = redis.call('HGET', KEYS[1], transition.field)
if not current then
    return nil
end

local allowed = false
for _, state in ipairs(transition.from_states) do
    if state == current then
        allowed = true
        break
    end
end
if not allowed then
    return nil
end

redis.call('HSET', KEYS[1], transition.field, transition.to_state)
if transition.extra then
    for name, value in pairs(transition.extra) do
        redis.call('HSET', KEYS[1], name, value)
    end
end

redis.call('HINCRBY', KEYS[2], transition.counter_field, 1)
if transition.counter_extra then
    for name, value in pairs(transition.counter_extra) do
        redis.call('HSET', KEYS[2], name, value)
    end
end

if KEYS[3] and transition.append_value then
    redis.call('RPUSH', KEYS[3], transition.append_value)
end

return redis.call('HGETALL', KEYS[2])
"""


def _pairs_to_dict(flat: list[Any]) -> dict[str, str]:
    return {str(flat[i]): str(flat[i + 1]) for i in range(0, len(flat), 2)}


class RedisCounterStore:
    """Counter store over Redis hashes and lists."""

    def __init__(self, redis_client: AtomicRedisClientProtocol) -> None:
        self._redis = redis_client
        self._script_load_lock = asyncio.Lock()
        self._create_sha: str | None = None
        self._transition_sha: str | None = None
        self._transition_increment_sha: str | None = None

    async def ensure_scripts_loaded(self) -> None:
        """Load Lua scripts if not already loaded, protected by a lock."""
        if self._create_sha and self._transition_sha and self._transition_increment_sha:
            return

        async with self._script_load_lock:
            if self._create_sha is None:
                self._create_sha = await self._redis.register_script(CREATE_RECORD_SCRIPT)
            if self._transition_sha is None:
                self._transition_sha = await self._redis.register_script(
                    CONDITIONAL_TRANSITION_SCRIPT
                )
            if self._transition_increment_sha is None:
                self._transition_increment_sha = await self._redis.register_script(
                    TRANSITION_AND_INCREMENT_SCRIPT
                )
            logger.info("Loaded counter store Lua scripts")

    async def create_record(self, key: str, fields: dict[str, str]) -> bool:
        await self.ensure_scripts_loaded()
        assert self._create_sha is not None
        result = await self._redis.execute_script(
            self._create_sha, [key], [json.dumps(fields)]
        )
        return bool(int(result))

    async def read_record(self, key: str) -> dict[str, str] | None:
        record = await self._redis.hgetall(key)
        return record or None

    async def conditional_transition(
        self,
        key: str,
        field: str,
        from_states: list[str],
        to_state: str,
        extra_fields: dict[str, str] | None = None,
    ) -> bool:
        await self.ensure_scripts_loaded()
        assert self._transition_sha is not None
        transition: dict[str, Any] = {
            "field": field,
            "to_state": to_state,
            "from_states": list(from_states),
        }
        if extra_fields:
            transition["extra"] = extra_fields
        result = await self._redis.execute_script(
            self._transition_sha, [key], [json.dumps(transition)]
        )
        return bool(int(result))

    async def atomic_increment(self, key: str, field: str, amount: int = 1) -> int:
        return await self._redis.hincrby(key, field, amount)

    async def transition_and_increment(
        self,
        key: str,
        field: str,
        from_states: list[str],
        to_state: str,
        counter_key: str,
        counter_field: str,
        *,
        extra_fields: dict[str, str] | None = None,
        counter_extra_fields: dict[str, str] | None = None,
        append_key: str | None = None,
        append_value: str | None = None,
    ) -> dict[str, str] | None:
        await self.ensure_scripts_loaded()
        assert self._transition_increment_sha is not None

        transition: dict[str, Any] = {
            "field": field,
            "to_state": to_state,
            "from_states": list(from_states),
            "counter_field": counter_field,
        }
        if extra_fields:
            transition["extra"] = extra_fields
        if counter_extra_fields:
            transition["counter_extra"] = counter_extra_fields
        keys = [key, counter_key]
        if append_key is not None and append_value is not None:
            keys.append(append_key)
            transition["append_value"] = append_value

        result = await self._redis.execute_script(
            self._transition_increment_sha, keys, [json.dumps(transition)]
        )
        if result is None:
            return None
        return _pairs_to_dict(list(result))

    async def append_entry(self, key: str, value: str) -> int:
        return await self._redis.rpush(key, value)

    async def read_entries(self, key: str) -> list[str]:
        return await self._redis.lrange(key, 0, -1)

    async def expire(self, key: str, ttl_seconds: int) -> None:
        await self._redis.expire(key, ttl_seconds)
