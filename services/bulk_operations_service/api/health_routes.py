from __future__ import annotations

import time
from datetime import UTC, datetime
from typing import Any

from bulkops_service_libs.logging_utils import create_service_logger
from dishka.integrations.fastapi import FromDishka, inject
from fastapi import APIRouter, HTTPException, Response
from prometheus_client import generate_latest

from services.bulk_operations_service.config import Settings
from services.bulk_operations_service.implementations.health_probe import InfrastructureHealth
from services.bulk_operations_service.metrics import BulkOperationsMetrics
from services.bulk_operations_service.protocols import NotificationHubProtocol, WorkerPoolProtocol

router = APIRouter()
logger = create_service_logger("bulkops.health_routes")

SERVICE_START_TIME = time.time()


@router.get("/healthz")
@inject
async def health_check(
    settings: FromDishka[Settings],
) -> dict[str, Any]:
    """Basic health check endpoint."""
    return {
        "service": settings.SERVICE_NAME,
        "status": "healthy",
        "message": "Bulk Operations Service is healthy",
        "environment": settings.ENVIRONMENT.value,
        "backend_mode": settings.BACKEND_MODE.value,
        "timestamp": datetime.now(UTC).isoformat(),
        "uptime_seconds": int(time.time() - SERVICE_START_TIME),
    }


@router.get("/healthz/redis")
@inject
async def redis_health(
    health: FromDishka[InfrastructureHealth],
) -> dict[str, Any]:
    """Check Redis connectivity health."""
    try:
        return await health.redis()
    except Exception as e:
        logger.warning(f"Redis health check failed: {e}")
        raise HTTPException(
            status_code=503,
            detail={
                "service": "redis",
                "status": "unhealthy",
                "error": str(e),
            },
        )


@router.get("/healthz/workers")
@inject
async def workers_health(
    pool: FromDishka[WorkerPoolProtocol],
    hub: FromDishka[NotificationHubProtocol],
    health: FromDishka[InfrastructureHealth],
    settings: FromDishka[Settings],
) -> dict[str, Any]:
    """Worker pool state, queue depth and live subscriber connections."""
    embedded = settings.RUN_EMBEDDED_WORKERS
    running = pool.is_running()
    try:
        depth: dict[str, int] | None = await health.queue_depth()
    except Exception as e:
        logger.warning(f"Could not read queue depth: {e}")
        depth = None

    return {
        "service": "worker_pool",
        "status": "healthy" if running or not embedded else "stopped",
        "embedded": embedded,
        "running": running,
        "worker_count": pool.size,
        "queue_depth": depth,
        "subscriber_connections": hub.get_total_connections(),
    }


@router.get("/metrics")
@inject
async def get_metrics(
    metrics: FromDishka[BulkOperationsMetrics],
) -> Response:
    """Prometheus metrics endpoint."""
    return Response(
        generate_latest(metrics.registry),
        media_type="text/plain",
    )
