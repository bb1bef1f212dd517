"""
common_core.error_enums - Centralized error code definitions.
"""

from __future__ import annotations

from enum import Enum


class ErrorCode(str, Enum):
    UNKNOWN_ERROR = "UNKNOWN_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    RESOURCE_NOT_FOUND = "RESOURCE_NOT_FOUND"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    EXTERNAL_SERVICE_ERROR = "EXTERNAL_SERVICE_ERROR"
    TIMEOUT = "TIMEOUT"
    CONNECTION_ERROR = "CONNECTION_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    PROCESSING_ERROR = "PROCESSING_ERROR"


class BulkOperationErrorCode(str, Enum):
    """
    Specific error codes for bulk operation orchestration.
    """

    INVALID_REQUEST = "INVALID_REQUEST"
    OPERATION_NOT_FOUND = "OPERATION_NOT_FOUND"
    ENQUEUE_FAILURE = "ENQUEUE_FAILURE"
    TRANSIENT_APPLY_FAILURE = "TRANSIENT_APPLY_FAILURE"
    PERMANENT_BATCH_FAILURE = "PERMANENT_BATCH_FAILURE"
    TRACKER_CONTENTION_EXCEEDED = "TRACKER_CONTENTION_EXCEEDED"
