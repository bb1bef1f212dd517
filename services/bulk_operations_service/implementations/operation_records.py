"""
Key naming and record encoding for Operation and Batch state.

Records live in the counter store as flat string hashes:

    {prefix}:op:{operation_id}                  Operation HASH
    {prefix}:op:{operation_id}:errors           error LIST (JSON entries)
    {prefix}:op:{operation_id}:batch:{index}    Batch HASH
"""

from __future__ import annotations

import json
from datetime import datetime

from common_core.status_enums import BatchState, OperationKind, OperationStatus

from services.bulk_operations_service.domain_models import (
    Batch,
    Operation,
    OperationError,
    utc_now,
)

PROCESSED_FIELD = "processed_batches"
FAILED_FIELD = "failed_batches"
STATUS_FIELD = "status"
STATE_FIELD = "state"
ATTEMPT_FIELD = "attempt"
CANCEL_FIELD = "cancel_requested"
UPDATED_AT_FIELD = "updated_at"


class OperationKeys:
    """Redis-style key naming for one deployment prefix."""

    def __init__(self, prefix: str) -> None:
        self.prefix = prefix

    def operation(self, operation_id: str) -> str:
        return f"{self.prefix}:op:{operation_id}"

    def errors(self, operation_id: str) -> str:
        return f"{self.prefix}:op:{operation_id}:errors"

    def batch(self, operation_id: str, batch_index: int) -> str:
        return f"{self.prefix}:op:{operation_id}:batch:{batch_index}"


def timestamp() -> str:
    return utc_now().isoformat()


def operation_to_record(operation: Operation) -> dict[str, str]:
    return {
        "operation_id": operation.operation_id,
        "kind": operation.kind.value,
        "total_batches": str(operation.total_batches),
        PROCESSED_FIELD: str(operation.processed_batches),
        FAILED_FIELD: str(operation.failed_batches),
        STATUS_FIELD: operation.status.value,
        CANCEL_FIELD: "1" if operation.cancel_requested else "0",
        "created_at": operation.created_at.isoformat(),
        UPDATED_AT_FIELD: operation.updated_at.isoformat(),
    }


def operation_from_record(record: dict[str, str]) -> Operation:
    return Operation(
        operation_id=record["operation_id"],
        kind=OperationKind(record["kind"]),
        total_batches=int(record["total_batches"]),
        processed_batches=int(record.get(PROCESSED_FIELD, 0)),
        failed_batches=int(record.get(FAILED_FIELD, 0)),
        status=OperationStatus(record[STATUS_FIELD]),
        cancel_requested=record.get(CANCEL_FIELD) == "1",
        created_at=datetime.fromisoformat(record["created_at"]),
        updated_at=datetime.fromisoformat(record[UPDATED_AT_FIELD]),
    )


def batch_to_record(batch: Batch) -> dict[str, str]:
    record = {
        "operation_id": batch.operation_id,
        "batch_index": str(batch.batch_index),
        STATE_FIELD: batch.state.value,
        ATTEMPT_FIELD: str(batch.attempt),
        "entities": json.dumps(batch.entities),
    }
    if batch.last_error is not None:
        record["last_error"] = batch.last_error
    return record


def batch_from_record(record: dict[str, str]) -> Batch:
    return Batch(
        operation_id=record["operation_id"],
        batch_index=int(record["batch_index"]),
        state=BatchState(record[STATE_FIELD]),
        attempt=int(record.get(ATTEMPT_FIELD, 0)),
        last_error=record.get("last_error") or None,
        entities=json.loads(record.get("entities", "[]")),
    )


def encode_error(error: OperationError) -> str:
    return error.model_dump_json()


def decode_error(raw: str) -> OperationError:
    return OperationError.model_validate_json(raw)
