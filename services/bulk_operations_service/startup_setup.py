from __future__ import annotations

from typing import Any

from bulkops_service_libs.logging_utils import create_service_logger
from common_core.config_enums import BackendMode
from dishka import make_async_container
from dishka.integrations.fastapi import setup_dishka
from fastapi import FastAPI
from prometheus_client import CollectorRegistry

from services.bulk_operations_service.config import Settings
from services.bulk_operations_service.di import build_providers
from services.bulk_operations_service.implementations.change_listener_impl import (
    OperationChangeListener,
)
from services.bulk_operations_service.protocols import WorkerPoolProtocol

logger = create_service_logger("bulkops.startup")


def create_di_container(config: Settings, registry: CollectorRegistry | None = None) -> Any:
    """Create the dependency injection container."""
    logger.info(f"Creating DI container for backend mode {config.BACKEND_MODE.value}")
    return make_async_container(*build_providers(config, registry))


def setup_dependency_injection(app: FastAPI, container: Any) -> None:
    """Setup Dishka dependency injection for FastAPI."""
    logger.info("Setting up dependency injection")
    setup_dishka(container, app)


async def start_background_services(container: Any, config: Settings) -> None:
    """Start the change listener (Redis mode) and the embedded worker pool."""
    if config.BACKEND_MODE is BackendMode.REDIS:
        listener = await container.get(OperationChangeListener)
        await listener.start()

    if config.RUN_EMBEDDED_WORKERS:
        pool = await container.get(WorkerPoolProtocol)
        await pool.start()
    else:
        logger.info("Embedded workers disabled, expecting a separate worker process")


async def stop_background_services(container: Any, config: Settings) -> None:
    """Stop background tasks in reverse start order. Errors are logged, not raised."""
    try:
        if config.RUN_EMBEDDED_WORKERS:
            pool = await container.get(WorkerPoolProtocol)
            await pool.stop()

        if config.BACKEND_MODE is BackendMode.REDIS:
            listener = await container.get(OperationChangeListener)
            await listener.stop()
    except Exception as e:
        logger.error(f"Error during background service shutdown: {e}", exc_info=True)
