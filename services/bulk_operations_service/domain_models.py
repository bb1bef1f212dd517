"""Domain models for bulk operation orchestration.

Operation and Batch are the tracked records; OperationSnapshot is the
change record pushed to observers; BatchTask/QueueDelivery travel through
the work queue.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from common_core.status_enums import BatchState, OperationKind, OperationStatus
from pydantic import BaseModel, Field


def utc_now() -> datetime:
    return datetime.now(UTC)


class OperationSnapshot(BaseModel):
    """Point-in-time progress of an operation, as seen by status reads and pushes."""

    operation_id: str
    status: OperationStatus
    total_batches: int
    processed_batches: int
    failed_batches: int

    @property
    def completed_batches(self) -> int:
        return self.processed_batches + self.failed_batches

    def supersedes(self, previous: OperationSnapshot | None) -> bool:
        """True if this snapshot is at least as advanced as `previous` and differs from it.

        Counters and status only move forward, so a snapshot that is behind on
        either is stale and must not be pushed after a newer one.
        """
        if previous is None:
            return True
        if self.status.rank() < previous.status.rank():
            return False
        if self.processed_batches < previous.processed_batches:
            return False
        if self.failed_batches < previous.failed_batches:
            return False
        return self != previous

    def to_push_payload(self) -> dict[str, Any]:
        return {
            "operationId": self.operation_id,
            "status": self.status.value,
            "total_batches": self.total_batches,
            "processed_batches": self.processed_batches,
            "failed_batches": self.failed_batches,
        }


class OperationError(BaseModel):
    batch_index: int
    message: str


class Operation(BaseModel):
    operation_id: str
    kind: OperationKind
    total_batches: int = Field(ge=1)
    processed_batches: int = 0
    failed_batches: int = 0
    status: OperationStatus = OperationStatus.PENDING
    cancel_requested: bool = False
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def snapshot(self) -> OperationSnapshot:
        return OperationSnapshot(
            operation_id=self.operation_id,
            status=self.status,
            total_batches=self.total_batches,
            processed_batches=self.processed_batches,
            failed_batches=self.failed_batches,
        )


class Batch(BaseModel):
    operation_id: str
    batch_index: int = Field(ge=0)
    state: BatchState = BatchState.QUEUED
    attempt: int = 0
    last_error: str | None = None
    entities: list[dict[str, Any]] = Field(default_factory=list)


class OperationResult(BaseModel):
    snapshot: OperationSnapshot
    errors: list[OperationError] = Field(default_factory=list)


class BatchTask(BaseModel):
    """Queue message. Carries only the idempotency key; the payload lives on the Batch record."""

    operation_id: str
    batch_index: int


class QueueDelivery(BaseModel):
    """One delivery of a task. `receipt` identifies the lease for ack/nack."""

    receipt: str
    task: BatchTask
    delivery_count: int = 1


class ItemOutcome(BaseModel):
    index: int
    success: bool
    error: str | None = None


class BatchOutcome(BaseModel):
    """Terminal outcome proposed by a worker for one batch."""

    state: BatchState
    error: str | None = None

    @classmethod
    def done(cls) -> BatchOutcome:
        return cls(state=BatchState.DONE)

    @classmethod
    def failed(cls, error: str) -> BatchOutcome:
        return cls(state=BatchState.FAILED, error=error)

    @classmethod
    def from_item_outcomes(cls, outcomes: list[ItemOutcome], expected: int) -> BatchOutcome:
        """Whole batch fails if any item failed; last_error names the first failure."""
        if len(outcomes) != expected:
            return cls.failed(
                f"Store returned {len(outcomes)} item outcomes for {expected} entities"
            )
        for outcome in sorted(outcomes, key=lambda o: o.index):
            if not outcome.success:
                return cls.failed(f"item {outcome.index}: {outcome.error or 'rejected'}")
        return cls.done()


class ReportResult(str, Enum):
    APPLIED = "applied"
    ALREADY_APPLIED = "already_applied"
