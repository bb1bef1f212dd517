"""
Test configuration for the Bulk Operations Service.

Components are wired against the in-memory counter store, work queue and
entity store, which share their semantics with the Redis and PostgreSQL
implementations.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pytest
from common_core.config_enums import BackendMode, EntityStoreType
from fastapi import FastAPI
from prometheus_client import CollectorRegistry

from services.bulk_operations_service.app import create_app
from services.bulk_operations_service.config import Settings
from services.bulk_operations_service.domain_models import OperationSnapshot
from services.bulk_operations_service.implementations.batch_dispatcher_impl import (
    BatchDispatcherImpl,
)
from services.bulk_operations_service.implementations.job_tracker_impl import JobTrackerImpl
from services.bulk_operations_service.implementations.local_counter_store_impl import (
    InMemoryCounterStore,
)
from services.bulk_operations_service.implementations.local_entity_store_impl import (
    InMemoryEntityStore,
)
from services.bulk_operations_service.implementations.local_work_queue_impl import (
    InMemoryWorkQueue,
)
from services.bulk_operations_service.implementations.worker_processor_impl import (
    WorkerProcessorImpl,
)
from services.bulk_operations_service.metrics import BulkOperationsMetrics


class RecordingObserver:
    """Collects every change record the tracker emits."""

    def __init__(self) -> None:
        self.changes: list[OperationSnapshot] = []

    async def on_change(self, operation_id: str, snapshot: OperationSnapshot) -> None:
        self.changes.append(snapshot)

    def for_operation(self, operation_id: str) -> list[OperationSnapshot]:
        return [s for s in self.changes if s.operation_id == operation_id]


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "BACKEND_MODE": BackendMode.LOCAL,
        "ENTITY_STORE": EntityStoreType.MEMORY,
        "REDIS_KEY_PREFIX": "test-bulkops",
        "DEFAULT_BATCH_SIZE": 100,
        "WORKER_COUNT": 3,
        "RUN_EMBEDDED_WORKERS": False,
        "MAX_DELIVERY_ATTEMPTS": 3,
        "VISIBILITY_TIMEOUT_SECONDS": 30,
        "BATCH_APPLY_TIMEOUT_SECONDS": 5,
        "NACK_DELAY_SECONDS": 0,
        "QUEUE_POLL_INTERVAL_SECONDS": 0.01,
        "CONSUME_TIMEOUT_SECONDS": 0.05,
        "TRACKER_MAX_RETRIES": 3,
        "TRACKER_RETRY_MIN_WAIT_SECONDS": 0,
        "TRACKER_RETRY_MAX_WAIT_SECONDS": 0,
        "OPERATION_RETENTION_SECONDS": 3600,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def metrics() -> BulkOperationsMetrics:
    return BulkOperationsMetrics(registry=CollectorRegistry())


@pytest.fixture
def observer() -> RecordingObserver:
    return RecordingObserver()


@pytest.fixture
def counter_store() -> InMemoryCounterStore:
    return InMemoryCounterStore()


@pytest.fixture
def work_queue(settings: Settings) -> InMemoryWorkQueue:
    return InMemoryWorkQueue(
        visibility_timeout=settings.VISIBILITY_TIMEOUT_SECONDS,
        poll_interval=settings.QUEUE_POLL_INTERVAL_SECONDS,
    )


@pytest.fixture
def entity_store() -> InMemoryEntityStore:
    return InMemoryEntityStore()


@pytest.fixture
def tracker(
    counter_store: InMemoryCounterStore,
    observer: RecordingObserver,
    settings: Settings,
    metrics: BulkOperationsMetrics,
) -> JobTrackerImpl:
    return JobTrackerImpl(
        store=counter_store, observer=observer, settings=settings, metrics=metrics
    )


@pytest.fixture
def dispatcher(
    counter_store: InMemoryCounterStore,
    work_queue: InMemoryWorkQueue,
    settings: Settings,
    metrics: BulkOperationsMetrics,
) -> BatchDispatcherImpl:
    return BatchDispatcherImpl(
        store=counter_store, queue=work_queue, settings=settings, metrics=metrics
    )


@pytest.fixture
def processor(
    work_queue: InMemoryWorkQueue,
    tracker: JobTrackerImpl,
    entity_store: InMemoryEntityStore,
    settings: Settings,
    metrics: BulkOperationsMetrics,
) -> WorkerProcessorImpl:
    return WorkerProcessorImpl(
        queue=work_queue,
        tracker=tracker,
        entity_store=entity_store,
        settings=settings,
        metrics=metrics,
    )


@pytest.fixture
def settings_factory():
    """Build local-mode settings with selected overrides."""
    return make_settings


@pytest.fixture
def create_test_app() -> Callable[..., FastAPI]:
    """Application factory wired to in-memory infrastructure and a private registry."""

    def _create(**overrides: Any) -> FastAPI:
        return create_app(make_settings(**overrides), registry=CollectorRegistry())

    return _create
