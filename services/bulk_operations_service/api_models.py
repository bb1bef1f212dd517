"""
Pydantic models for the Bulk Operations Service HTTP API.
"""

from __future__ import annotations

from typing import Any

from common_core.status_enums import OperationStatus
from pydantic import BaseModel, ConfigDict, Field

from services.bulk_operations_service.domain_models import OperationResult, OperationSnapshot


class BulkSubmitRequest(BaseModel):
    """Body of POST /bulk-{create|update|delete}.

    Entities are validated by the dispatcher so that empty or malformed input
    is reported as INVALID_REQUEST with the offending index.
    """

    entities: list[Any]
    batch_size: int | None = Field(default=None, description="Entities per batch")


class BulkSubmitResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    operation_id: str = Field(alias="operationId")
    message: str


class OperationStatusResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    operation_id: str = Field(alias="operationId")
    status: OperationStatus
    total_batches: int
    processed_batches: int
    failed_batches: int

    @classmethod
    def from_snapshot(cls, snapshot: OperationSnapshot) -> OperationStatusResponse:
        return cls(
            operation_id=snapshot.operation_id,
            status=snapshot.status,
            total_batches=snapshot.total_batches,
            processed_batches=snapshot.processed_batches,
            failed_batches=snapshot.failed_batches,
        )


class OperationResultResponse(OperationStatusResponse):
    errors: list[str] = Field(default_factory=list)

    @classmethod
    def from_result(cls, result: OperationResult) -> OperationResultResponse:
        snapshot = result.snapshot
        return cls(
            operation_id=snapshot.operation_id,
            status=snapshot.status,
            total_batches=snapshot.total_batches,
            processed_batches=snapshot.processed_batches,
            failed_batches=snapshot.failed_batches,
            errors=[f"batch {e.batch_index}: {e.message}" for e in result.errors],
        )
