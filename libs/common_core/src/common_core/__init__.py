"""
Common Core Package.

Enums and error codes shared by bulk operation services and libraries.
"""

from .config_enums import BackendMode, EntityStoreType, Environment
from .error_enums import BulkOperationErrorCode, ErrorCode
from .status_enums import BatchState, OperationKind, OperationStatus

__all__ = [
    "BackendMode",
    "BatchState",
    "BulkOperationErrorCode",
    "EntityStoreType",
    "Environment",
    "ErrorCode",
    "OperationKind",
    "OperationStatus",
]
