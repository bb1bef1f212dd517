from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from bulkops_service_libs.logging_utils import configure_service_logging, create_service_logger
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CollectorRegistry

from services.bulk_operations_service.api import (
    health_routes,
    operation_routes,
    websocket_routes,
)
from services.bulk_operations_service.config import Settings, settings
from services.bulk_operations_service.error_handlers import register_error_handlers
from services.bulk_operations_service.middleware import MetricsMiddleware
from services.bulk_operations_service.startup_setup import (
    create_di_container,
    setup_dependency_injection,
    start_background_services,
    stop_background_services,
)

logger = create_service_logger("bulkops.app")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application lifecycle."""
    config: Settings = app.state.settings
    logger.info("Starting Bulk Operations Service...")

    await start_background_services(app.state.di_container, config)

    yield

    logger.info("Shutting down Bulk Operations Service...")
    await stop_background_services(app.state.di_container, config)
    await app.state.di_container.close()


def create_app(
    config: Settings | None = None, registry: CollectorRegistry | None = None
) -> FastAPI:
    """Create and configure the FastAPI application."""
    config = config or settings
    configure_service_logging(
        config.SERVICE_NAME,
        environment=config.ENVIRONMENT.value,
        log_level=config.LOG_LEVEL,
    )

    app = FastAPI(
        title=config.SERVICE_NAME,
        version="1.0.0",
        description="Bulk create/update/delete orchestration with real-time progress",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(MetricsMiddleware)

    register_error_handlers(app)

    app.include_router(health_routes.router, tags=["Health"])
    app.include_router(operation_routes.router, tags=["Operations"])
    app.include_router(websocket_routes.router, tags=["WebSocket"])

    container = create_di_container(config, registry)
    setup_dependency_injection(app, container)

    app.state.di_container = container
    app.state.settings = config

    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "services.bulk_operations_service.app:create_app",
        factory=True,
        host=settings.HOST,
        port=settings.PORT,
    )
