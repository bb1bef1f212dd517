"""Bulk Operations Service error handlers.

Maps service exceptions onto a uniform JSON error body:
{error_code, message, correlation_id, details}.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from bulkops_service_libs.logging_utils import create_service_logger
from common_core.error_enums import BulkOperationErrorCode, ErrorCode
from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from services.bulk_operations_service.exceptions import BulkOperationsError

if TYPE_CHECKING:
    from fastapi import FastAPI

logger = create_service_logger("bulkops.error_handlers")

STATUS_BY_CODE: dict[BulkOperationErrorCode, int] = {
    BulkOperationErrorCode.INVALID_REQUEST: 400,
    BulkOperationErrorCode.OPERATION_NOT_FOUND: 404,
    BulkOperationErrorCode.ENQUEUE_FAILURE: 503,
    BulkOperationErrorCode.TRACKER_CONTENTION_EXCEEDED: 503,
}


def create_error_response(
    status_code: int,
    error_code: str,
    message: str,
    correlation_id: Any = None,
    details: dict[str, Any] | None = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "error_code": error_code,
            "message": message,
            "correlation_id": str(correlation_id) if correlation_id else None,
            "details": details or {},
        },
    )


def register_error_handlers(app: FastAPI) -> None:
    """Register service error handlers on the FastAPI app."""

    @app.exception_handler(BulkOperationsError)
    async def handle_bulk_operations_error(
        request: Request, error: BulkOperationsError
    ) -> JSONResponse:
        status_code = STATUS_BY_CODE.get(error.error_code, 500)  # type: ignore[call-overload]
        log = logger.warning if status_code < 500 else logger.error
        log(
            f"{error.error_code.value}: {error.message}",
            extra={
                "path": request.url.path,
                "correlation_id": str(error.correlation_id) if error.correlation_id else None,
                "details": error.details,
            },
        )
        return create_error_response(
            status_code,
            error.error_code.value,
            error.message,
            error.correlation_id,
            error.details,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(
        request: Request, error: RequestValidationError
    ) -> JSONResponse:
        errors = [
            {"loc": [str(part) for part in e.get("loc", ())], "msg": e.get("msg", "")}
            for e in error.errors()
        ]
        logger.warning(f"Rejected malformed request to {request.url.path}")
        return create_error_response(
            400,
            BulkOperationErrorCode.INVALID_REQUEST.value,
            "Request body is malformed",
            details={"errors": errors},
        )

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, error: Exception) -> JSONResponse:
        logger.error(f"Unhandled error on {request.url.path}: {error}", exc_info=True)
        return create_error_response(
            500,
            ErrorCode.UNKNOWN_ERROR.value,
            "Internal server error",
        )
