"""HTTP middleware for the Bulk Operations Service."""

from __future__ import annotations

import time

from bulkops_service_libs.logging_utils import create_service_logger
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from services.bulk_operations_service.metrics import BulkOperationsMetrics

logger = create_service_logger("bulkops.middleware")


def _endpoint_label(request: Request) -> str:
    # Route template keeps operation ids out of label values
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


class MetricsMiddleware(BaseHTTPMiddleware):
    """Records request count and duration for every HTTP request."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        start_time = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            await self._record(request, status_code, time.perf_counter() - start_time)

    async def _record(self, request: Request, status_code: int, duration: float) -> None:
        try:
            metrics = await request.app.state.di_container.get(BulkOperationsMetrics)
            endpoint = _endpoint_label(request)
            metrics.http_requests_total.labels(
                method=request.method, endpoint=endpoint, http_status=str(status_code)
            ).inc()
            metrics.http_request_duration_seconds.labels(
                method=request.method, endpoint=endpoint
            ).observe(duration)
        except Exception as e:
            logger.error(f"Error recording request metrics: {e}")
