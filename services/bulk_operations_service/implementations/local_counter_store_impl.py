"""
Local in-memory counter store.

Used in local backend mode and in tests. Each method runs under one asyncio
lock, which gives the same all-or-nothing behaviour as the Redis Lua scripts
for coroutines sharing this process.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable

from bulkops_service_libs.logging_utils import create_service_logger

logger = create_service_logger("bulkops.counter_store.local")


class InMemoryCounterStore:
    """Dict-backed counter store with lazy TTL eviction."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._records: dict[str, dict[str, str]] = {}
        self._lists: dict[str, list[str]] = {}
        self._deadlines: dict[str, float] = {}
        self._clock = clock
        self._lock = asyncio.Lock()

    def _evict_if_expired(self, key: str) -> None:
        deadline = self._deadlines.get(key)
        if deadline is not None and self._clock() >= deadline:
            self._records.pop(key, None)
            self._lists.pop(key, None)
            del self._deadlines[key]
            logger.debug(f"Evicted expired key {key}")

    def _record(self, key: str) -> dict[str, str] | None:
        self._evict_if_expired(key)
        return self._records.get(key)

    async def create_record(self, key: str, fields: dict[str, str]) -> bool:
        async with self._lock:
            if self._record(key) is not None:
                return False
            self._records[key] = dict(fields)
            return True

    async def read_record(self, key: str) -> dict[str, str] | None:
        async with self._lock:
            record = self._record(key)
            return dict(record) if record is not None else None

    async def conditional_transition(
        self,
        key: str,
        field: str,
        from_states: list[str],
        to_state: str,
        extra_fields: dict[str, str] | None = None,
    ) -> bool:
        async with self._lock:
            record = self._record(key)
            if record is None or record.get(field) not in from_states:
                return False
            record[field] = to_state
            if extra_fields:
                record.update(extra_fields)
            return True

    async def atomic_increment(self, key: str, field: str, amount: int = 1) -> int:
        async with self._lock:
            record = self._record(key)
            if record is None:
                record = self._records.setdefault(key, {})
            value = int(record.get(field, "0")) + amount
            record[field] = str(value)
            return value

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
        async with self._lock:
            counter = self._record(counter_key)
            record = self._record(key)
            if counter is None or record is None or record.get(field) not in from_states:
                return None

            record[field] = to_state
            if extra_fields:
                record.update(extra_fields)

            counter[counter_field] = str(int(counter.get(counter_field, "0")) + 1)
            if counter_extra_fields:
                counter.update(counter_extra_fields)

            if append_key is not None and append_value is not None:
                self._evict_if_expired(append_key)
                self._lists.setdefault(append_key, []).append(append_value)

            return dict(counter)

    async def append_entry(self, key: str, value: str) -> int:
        async with self._lock:
            self._evict_if_expired(key)
            entries = self._lists.setdefault(key, [])
            entries.append(value)
            return len(entries)

    async def read_entries(self, key: str) -> list[str]:
        async with self._lock:
            self._evict_if_expired(key)
            return list(self._lists.get(key, []))

    async def expire(self, key: str, ttl_seconds: int) -> None:
        async with self._lock:
            if key in self._records or key in self._lists:
                self._deadlines[key] = self._clock() + ttl_seconds
