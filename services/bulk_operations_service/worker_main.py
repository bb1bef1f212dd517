"""
Bulk Operations Service worker entry point.

Runs the worker pool without the HTTP API. Used in Redis backend mode when
API processes are started with RUN_EMBEDDED_WORKERS=false.
"""

from __future__ import annotations

import asyncio
import signal
import sys

from bulkops_service_libs.logging_utils import configure_service_logging, create_service_logger
from common_core.config_enums import BackendMode
from dishka import make_async_container

from services.bulk_operations_service.config import settings
from services.bulk_operations_service.di import build_providers
from services.bulk_operations_service.protocols import WorkerPoolProtocol

logger = create_service_logger("bulkops.worker_main")

# Global state for graceful shutdown
should_stop = asyncio.Event()


def setup_signal_handlers(loop: asyncio.AbstractEventLoop) -> None:
    """Setup signal handlers for graceful shutdown."""

    def signal_handler(signum: int) -> None:
        logger.info(f"Received signal {signum}, initiating graceful shutdown")
        should_stop.set()

    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, signal_handler, signum)


async def main() -> int:
    """Run the worker pool until a shutdown signal arrives."""
    configure_service_logging(
        f"{settings.SERVICE_NAME}_worker",
        environment=settings.ENVIRONMENT.value,
        log_level=settings.LOG_LEVEL,
    )

    if settings.BACKEND_MODE is BackendMode.LOCAL:
        logger.error("Standalone workers need BACKEND_MODE=redis; local queues are per-process")
        return 1

    setup_signal_handlers(asyncio.get_running_loop())
    container = make_async_container(*build_providers(settings))

    try:
        pool = await container.get(WorkerPoolProtocol)
        await pool.start()
        logger.info(f"Worker process running {pool.size} consumers")

        await should_stop.wait()

        await pool.stop()
    except Exception as e:
        logger.error(f"Worker process failed: {e}", exc_info=True)
        return 1
    finally:
        await container.close()
        logger.info("Worker process shutdown complete")
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
