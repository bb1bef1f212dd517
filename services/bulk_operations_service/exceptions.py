"""Custom exception classes for the Bulk Operations Service.

Each exception carries an error code, a human-readable message, an optional
correlation ID and structured details, so API handlers and workers can log
and surface failures uniformly.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from common_core.error_enums import BulkOperationErrorCode, ErrorCode


class BulkOperationsError(Exception):
    """Base exception for the Bulk Operations Service."""

    def __init__(
        self,
        error_code: BulkOperationErrorCode | ErrorCode,
        message: str,
        correlation_id: UUID | None = None,
        details: dict[str, Any] | None = None,
        timestamp: datetime | None = None,
    ) -> None:
        """Initialize the base error.

        Args:
            error_code: Error code enum value for categorization
            message: Human-readable error message
            correlation_id: Optional correlation ID for request tracing
            details: Optional dictionary of additional error context
            timestamp: Optional error timestamp (defaults to current UTC time)
        """
        self.error_code = error_code
        self.message = message
        self.correlation_id = correlation_id
        self.details = details or {}
        self.timestamp = timestamp or datetime.now(UTC)
        super().__init__(message)


class InvalidRequestError(BulkOperationsError):
    """Client input rejected before any record is created. Never retried."""

    def __init__(
        self,
        message: str,
        correlation_id: UUID | None = None,
        field: str | None = None,
    ) -> None:
        super().__init__(
            error_code=BulkOperationErrorCode.INVALID_REQUEST,
            message=message,
            correlation_id=correlation_id,
            details={"field": field} if field else None,
        )


class OperationNotFoundError(BulkOperationsError):
    """Raised when an operation id is unknown (or has expired)."""

    def __init__(self, operation_id: str, correlation_id: UUID | None = None) -> None:
        super().__init__(
            error_code=BulkOperationErrorCode.OPERATION_NOT_FOUND,
            message=f"Operation not found: {operation_id}",
            correlation_id=correlation_id,
            details={"operation_id": operation_id},
        )
        self.operation_id = operation_id


class EnqueueFailureError(BulkOperationsError):
    """The work queue refused a task during submit.

    The operation record may be left pending; the caller decides whether to
    resubmit.
    """

    def __init__(
        self,
        message: str,
        operation_id: str,
        batch_index: int | None = None,
        correlation_id: UUID | None = None,
    ) -> None:
        super().__init__(
            error_code=BulkOperationErrorCode.ENQUEUE_FAILURE,
            message=message,
            correlation_id=correlation_id,
            details={"operation_id": operation_id, "batch_index": batch_index},
        )
        self.operation_id = operation_id
        self.batch_index = batch_index


class TransientApplyError(BulkOperationsError):
    """Retryable backing-store failure; the task is nacked and redelivered."""

    def __init__(self, message: str, correlation_id: UUID | None = None) -> None:
        super().__init__(
            error_code=BulkOperationErrorCode.TRANSIENT_APPLY_FAILURE,
            message=message,
            correlation_id=correlation_id,
        )


class PermanentBatchFailureError(BulkOperationsError):
    """Data or validation failure while applying a batch. Never retried."""

    def __init__(
        self,
        message: str,
        operation_id: str,
        batch_index: int,
        correlation_id: UUID | None = None,
    ) -> None:
        super().__init__(
            error_code=BulkOperationErrorCode.PERMANENT_BATCH_FAILURE,
            message=message,
            correlation_id=correlation_id,
            details={"operation_id": operation_id, "batch_index": batch_index},
        )
        self.operation_id = operation_id
        self.batch_index = batch_index


class TrackerContentionExceededError(BulkOperationsError):
    """Counter-store retries exhausted; the report must be retried from scratch."""

    def __init__(
        self,
        message: str,
        operation_id: str,
        batch_index: int | None = None,
        attempts: int | None = None,
        correlation_id: UUID | None = None,
    ) -> None:
        super().__init__(
            error_code=BulkOperationErrorCode.TRACKER_CONTENTION_EXCEEDED,
            message=message,
            correlation_id=correlation_id,
            details={
                "operation_id": operation_id,
                "batch_index": batch_index,
                "attempts": attempts,
            },
        )
        self.operation_id = operation_id
        self.batch_index = batch_index
