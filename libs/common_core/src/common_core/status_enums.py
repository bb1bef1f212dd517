"""Status enums for the bulk operation state machines.

OperationKind: Mutation applied to every entity of an operation.
OperationStatus: Operation-level state machine (pending -> in_progress -> terminal).
BatchState: Batch-level state machine (queued -> processing -> done | failed).
"""

from __future__ import annotations

from enum import Enum


class OperationKind(str, Enum):
    """Mutation kind requested for a bulk operation."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class OperationStatus(str, Enum):
    """Operation lifecycle.

    Transitions form a strict DAG: PENDING -> IN_PROGRESS -> one of the terminal
    states. rank() orders states along that DAG so observers can discard
    stale snapshots.
    """

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"

    @classmethod
    def terminal(cls) -> set[OperationStatus]:
        """Return terminal states (no further transitions accepted)."""
        return {cls.COMPLETED, cls.COMPLETED_WITH_ERRORS, cls.FAILED}

    @classmethod
    def non_terminal(cls) -> set[OperationStatus]:
        """Return states that may still transition."""
        return {cls.PENDING, cls.IN_PROGRESS}

    @property
    def is_terminal(self) -> bool:
        return self in OperationStatus.terminal()

    def rank(self) -> int:
        if self is OperationStatus.PENDING:
            return 0
        if self is OperationStatus.IN_PROGRESS:
            return 1
        return 2


class BatchState(str, Enum):
    """Batch lifecycle.

    PROCESSING may be re-entered on redelivery after a transient failure.
    DONE and FAILED are terminal; a batch contributes to the operation
    counters exactly once, on entering one of them.
    """

    QUEUED = "queued"
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"

    @classmethod
    def terminal(cls) -> set[BatchState]:
        """Return terminal states."""
        return {cls.DONE, cls.FAILED}

    @classmethod
    def non_terminal(cls) -> set[BatchState]:
        """Return states a batch may still leave."""
        return {cls.QUEUED, cls.PROCESSING}

    @property
    def is_terminal(self) -> bool:
        return self in BatchState.terminal()
