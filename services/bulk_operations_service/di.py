from __future__ import annotations

from collections.abc import AsyncIterator

from bulkops_service_libs.protocols import AtomicRedisClientProtocol
from bulkops_service_libs.redis_client import RedisClient
from common_core.config_enums import BackendMode, EntityStoreType
from dishka import Provider, Scope, provide
from prometheus_client import REGISTRY, CollectorRegistry

from services.bulk_operations_service.config import Settings, settings
from services.bulk_operations_service.implementations.batch_dispatcher_impl import (
    BatchDispatcherImpl,
)
from services.bulk_operations_service.implementations.change_listener_impl import (
    OperationChangeListener,
)
from services.bulk_operations_service.implementations.change_publisher_impl import (
    RedisChangePublisher,
)
from services.bulk_operations_service.implementations.health_probe import InfrastructureHealth
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
from services.bulk_operations_service.implementations.notification_hub_impl import (
    NotificationHub,
)
from services.bulk_operations_service.implementations.postgres_entity_store_impl import (
    PostgresEntityStore,
)
from services.bulk_operations_service.implementations.redis_counter_store_impl import (
    RedisCounterStore,
)
from services.bulk_operations_service.implementations.redis_work_queue_impl import (
    RedisWorkQueue,
)
from services.bulk_operations_service.implementations.worker_pool import WorkerPool
from services.bulk_operations_service.implementations.worker_processor_impl import (
    WorkerProcessorImpl,
)
from services.bulk_operations_service.metrics import BulkOperationsMetrics
from services.bulk_operations_service.protocols import (
    BatchDispatcherProtocol,
    CounterStoreProtocol,
    EntityStoreProtocol,
    JobTrackerProtocol,
    NotificationHubProtocol,
    OperationChangeObserverProtocol,
    WorkerPoolProtocol,
    WorkerProcessorProtocol,
    WorkQueueProtocol,
)


class CoreInfrastructureProvider(Provider):
    """Configuration, metrics, notification hub and entity store."""

    scope = Scope.APP

    def __init__(
        self, config: Settings | None = None, registry: CollectorRegistry | None = None
    ) -> None:
        super().__init__()
        self._config = config or settings
        self._registry = registry or REGISTRY

    @provide
    def get_config(self) -> Settings:
        """Provide service configuration."""
        return self._config

    @provide
    def provide_registry(self) -> CollectorRegistry:
        """Provide Prometheus registry."""
        return self._registry

    @provide
    def provide_metrics(self, registry: CollectorRegistry) -> BulkOperationsMetrics:
        """Provide Prometheus metrics collector."""
        return BulkOperationsMetrics(registry=registry)

    @provide
    def provide_notification_hub(
        self, config: Settings, metrics: BulkOperationsMetrics
    ) -> NotificationHubProtocol:
        """Provide the in-process subscription registry."""
        return NotificationHub(
            metrics=metrics,
            max_subscriptions_per_connection=config.WEBSOCKET_MAX_SUBSCRIPTIONS_PER_CONNECTION,
            send_timeout=config.WEBSOCKET_SEND_TIMEOUT_SECONDS,
        )

    @provide
    async def provide_entity_store(self, config: Settings) -> AsyncIterator[EntityStoreProtocol]:
        """Provide the backing store batches are applied to."""
        if config.ENTITY_STORE is EntityStoreType.MEMORY:
            yield InMemoryEntityStore()
            return

        store = PostgresEntityStore(
            config.DATABASE_URL,
            pool_size=config.DB_POOL_SIZE,
            max_overflow=config.DB_MAX_OVERFLOW,
        )
        await store.initialize()
        yield store
        await store.close()


class RedisInfrastructureProvider(Provider):
    """Durable queue, counter store and change fan-out over Redis."""

    scope = Scope.APP

    @provide
    async def get_redis_client(self, config: Settings) -> AsyncIterator[AtomicRedisClientProtocol]:
        """Provide Redis client for tracking, queueing and pub/sub."""
        client = RedisClient(
            client_id=config.SERVICE_NAME,
            redis_url=config.REDIS_URL,
            socket_timeout=config.REDIS_SOCKET_TIMEOUT,
        )
        await client.start()
        yield client
        await client.stop()

    @provide
    def provide_counter_store(self, redis_client: AtomicRedisClientProtocol) -> CounterStoreProtocol:
        return RedisCounterStore(redis_client)

    @provide
    def provide_work_queue(
        self, config: Settings, redis_client: AtomicRedisClientProtocol
    ) -> WorkQueueProtocol:
        return RedisWorkQueue(
            redis_client,
            key_prefix=config.QUEUE_KEY_PREFIX,
            visibility_timeout=config.VISIBILITY_TIMEOUT_SECONDS,
            poll_interval=config.QUEUE_POLL_INTERVAL_SECONDS,
        )

    @provide
    def provide_change_observer(
        self, config: Settings, redis_client: AtomicRedisClientProtocol
    ) -> OperationChangeObserverProtocol:
        """Tracker changes go to every API process through pub/sub."""
        return RedisChangePublisher(redis_client, config.CHANGE_CHANNEL)

    @provide
    def provide_change_listener(
        self,
        config: Settings,
        redis_client: AtomicRedisClientProtocol,
        hub: NotificationHubProtocol,
    ) -> OperationChangeListener:
        return OperationChangeListener(redis_client, hub, config.CHANGE_CHANNEL)

    @provide
    def provide_health(
        self,
        config: Settings,
        queue: WorkQueueProtocol,
        redis_client: AtomicRedisClientProtocol,
    ) -> InfrastructureHealth:
        return InfrastructureHealth(config.BACKEND_MODE, queue, redis_client)


class LocalInfrastructureProvider(Provider):
    """In-process queue and counter store; the hub observes the tracker directly."""

    scope = Scope.APP

    @provide
    def provide_counter_store(self) -> CounterStoreProtocol:
        return InMemoryCounterStore()

    @provide
    def provide_work_queue(self, config: Settings) -> WorkQueueProtocol:
        return InMemoryWorkQueue(
            visibility_timeout=config.VISIBILITY_TIMEOUT_SECONDS,
            poll_interval=config.QUEUE_POLL_INTERVAL_SECONDS,
        )

    @provide
    def provide_change_observer(self, hub: NotificationHubProtocol) -> OperationChangeObserverProtocol:
        return hub

    @provide
    def provide_health(self, config: Settings, queue: WorkQueueProtocol) -> InfrastructureHealth:
        return InfrastructureHealth(config.BACKEND_MODE, queue)


class BulkOperationsServiceProvider(Provider):
    """Dispatcher, tracker and workers."""

    scope = Scope.APP

    @provide
    def provide_job_tracker(
        self,
        config: Settings,
        store: CounterStoreProtocol,
        observer: OperationChangeObserverProtocol,
        metrics: BulkOperationsMetrics,
    ) -> JobTrackerProtocol:
        return JobTrackerImpl(store=store, observer=observer, settings=config, metrics=metrics)

    @provide
    def provide_batch_dispatcher(
        self,
        config: Settings,
        store: CounterStoreProtocol,
        queue: WorkQueueProtocol,
        metrics: BulkOperationsMetrics,
    ) -> BatchDispatcherProtocol:
        return BatchDispatcherImpl(store=store, queue=queue, settings=config, metrics=metrics)

    @provide
    def provide_worker_processor(
        self,
        config: Settings,
        queue: WorkQueueProtocol,
        tracker: JobTrackerProtocol,
        entity_store: EntityStoreProtocol,
        metrics: BulkOperationsMetrics,
    ) -> WorkerProcessorProtocol:
        return WorkerProcessorImpl(
            queue=queue,
            tracker=tracker,
            entity_store=entity_store,
            settings=config,
            metrics=metrics,
        )

    @provide
    def provide_worker_pool(
        self,
        config: Settings,
        queue: WorkQueueProtocol,
        processor: WorkerProcessorProtocol,
    ) -> WorkerPoolProtocol:
        return WorkerPool(queue=queue, processor=processor, settings=config)


def build_providers(
    config: Settings, registry: CollectorRegistry | None = None
) -> list[Provider]:
    """Providers for the configured backend mode."""
    infrastructure: Provider
    if config.BACKEND_MODE is BackendMode.LOCAL:
        infrastructure = LocalInfrastructureProvider()
    else:
        infrastructure = RedisInfrastructureProvider()
    return [
        CoreInfrastructureProvider(config, registry),
        infrastructure,
        BulkOperationsServiceProvider(),
    ]
