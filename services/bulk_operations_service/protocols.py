from __future__ import annotations

from typing import Any, Protocol

from common_core.status_enums import OperationKind

from services.bulk_operations_service.domain_models import (
    Batch,
    BatchOutcome,
    BatchTask,
    ItemOutcome,
    Operation,
    OperationResult,
    OperationSnapshot,
    QueueDelivery,
    ReportResult,
)


class WorkQueueProtocol(Protocol):
    """
    Protocol for a durable, at-least-once work queue.

    A consumed task stays leased until it is acked or nacked; an expired
    lease makes the task visible again (redelivery).
    """

    async def enqueue(self, task: BatchTask) -> str:
        """Enqueue a task and return its receipt."""
        ...

    async def consume(self, timeout: float | None = None) -> QueueDelivery | None:
        """
        Wait for the next visible task and lease it.
        Returns None if nothing became visible within `timeout` seconds.
        """
        ...

    async def ack(self, delivery: QueueDelivery) -> None:
        """Permanently remove a leased task."""
        ...

    async def nack(self, delivery: QueueDelivery, delay_seconds: float = 0) -> None:
        """Release a leased task so it is redelivered after `delay_seconds`."""
        ...

    async def requeue_expired(self) -> int:
        """Make tasks with expired leases visible again. Returns how many were requeued."""
        ...

    async def depth(self) -> dict[str, int]:
        """Counts of ready, in-flight and delayed tasks."""
        ...


class CounterStoreProtocol(Protocol):
    """
    Protocol for the atomic key-value store holding Operation and Batch records.

    Records are flat string hashes; every method is a single atomic step.
    """

    async def create_record(self, key: str, fields: dict[str, str]) -> bool:
        """Create a record if absent. Returns False if the key already exists."""
        ...

    async def read_record(self, key: str) -> dict[str, str] | None:
        """Read a record, or None if it does not exist."""
        ...

    async def conditional_transition(
        self,
        key: str,
        field: str,
        from_states: list[str],
        to_state: str,
        extra_fields: dict[str, str] | None = None,
    ) -> bool:
        """
        Set `field` to `to_state` only if its current value is one of `from_states`.
        `extra_fields` are written in the same step when the transition wins.
        """
        ...

    async def atomic_increment(self, key: str, field: str, amount: int = 1) -> int:
        """Increment an integer field and return the new value."""
        ...

    async def transition_and_increment(
        self,
        key: str,
        field: str,
        from_states: list[str],
        to_state: str,
        counter_key: str,
        counter_field: str,
        *,
        extra_fields: dict[str, str] | None = None,
        counter_extra_fields: dict[str, str] | None = None,
        append_key: str | None = None,
        append_value: str | None = None,
    ) -> dict[str, str] | None:
        """
        Guarded transition plus counter increment in one atomic step.

        When the transition wins, `counter_field` on `counter_key` is
        incremented by one (and `counter_extra_fields` written), `append_value`
        is appended to `append_key`, and the counter record as it stands after
        the increment is returned.
        Returns None when the guard fails; nothing is mutated in that case.
        """
        ...

    async def append_entry(self, key: str, value: str) -> int:
        """Append to an ordered, append-only list. Returns the new length."""
        ...

    async def read_entries(self, key: str) -> list[str]:
        """Read an append-only list in insertion order."""
        ...

    async def expire(self, key: str, ttl_seconds: int) -> None:
        """Schedule a key for removal."""
        ...


class EntityStoreProtocol(Protocol):
    """Protocol for the backing store that batches are applied to."""

    async def apply_batch(
        self, kind: OperationKind, entities: list[dict[str, Any]]
    ) -> list[ItemOutcome]:
        """
        Apply every entity and return one outcome per entity, in order.
        Raises TransientApplyError for retryable infrastructure failures.
        """
        ...


class OperationChangeObserverProtocol(Protocol):
    """Receives a snapshot after every successful tracker mutation."""

    async def on_change(self, operation_id: str, snapshot: OperationSnapshot) -> None: ...


class SubscriberConnectionProtocol(Protocol):
    """A live client connection the notification hub can push to."""

    async def send_json(self, data: Any) -> None: ...


class NotificationHubProtocol(OperationChangeObserverProtocol, Protocol):
    """
    Protocol for the subscription registry that fans out operation changes.
    """

    async def register(self, connection_id: str, connection: SubscriberConnectionProtocol) -> None:
        """Track a newly opened connection."""
        ...

    async def subscribe(
        self,
        connection_id: str,
        operation_id: str,
        current: OperationSnapshot | None = None,
    ) -> bool:
        """
        Subscribe a registered connection to an operation, optionally sending
        it the current snapshot.
        Returns False if the connection is unknown or at its subscription limit.
        """
        ...

    async def unsubscribe(self, connection_id: str, operation_id: str) -> None:
        """Remove one subscription."""
        ...

    async def disconnect(self, connection_id: str) -> None:
        """Forget a connection and all of its subscriptions."""
        ...

    def get_subscriber_count(self, operation_id: str) -> int:
        """Number of connections watching an operation."""
        ...

    def get_total_connections(self) -> int:
        """Number of registered connections."""
        ...


class BatchDispatcherProtocol(Protocol):
    async def submit(
        self,
        kind: OperationKind,
        entities: list[Any],
        batch_size: int | None = None,
    ) -> str:
        """
        Split entities into batches, record them and enqueue one task per batch.
        Returns the new operation id.
        """
        ...


class JobTrackerProtocol(Protocol):
    """
    Protocol for the authoritative Operation/Batch state machine.
    """

    async def mark_batch_processing(self, operation_id: str, batch_index: int) -> int | None:
        """
        Move a batch into processing and return its attempt number.
        Returns None if the batch is already terminal.
        """
        ...

    async def report_outcome(
        self, operation_id: str, batch_index: int, outcome: BatchOutcome
    ) -> ReportResult:
        """Apply a terminal batch outcome at most once."""
        ...

    async def finalize_if_complete(self, operation_id: str) -> OperationSnapshot | None:
        """Set the terminal status if every batch has reported. Idempotent."""
        ...

    async def get_operation(self, operation_id: str) -> Operation:
        """Read an Operation record. Raises OperationNotFoundError for unknown ids."""
        ...

    async def get_batch(self, operation_id: str, batch_index: int) -> Batch | None:
        """Read a Batch record, or None if it does not exist."""
        ...

    async def cancel(self, operation_id: str) -> OperationSnapshot:
        """Flag an operation so workers stop applying its remaining batches."""
        ...

    async def get_status(self, operation_id: str) -> OperationSnapshot:
        """Current snapshot. Raises OperationNotFoundError for unknown ids."""
        ...

    async def get_result(self, operation_id: str) -> OperationResult:
        """Current snapshot plus accumulated errors."""
        ...


class WorkerProcessorProtocol(Protocol):
    async def process(self, delivery: QueueDelivery) -> None:
        """Handle one delivered task, ending in exactly one ack or nack."""
        ...


class WorkerPoolProtocol(Protocol):
    async def start(self) -> None: ...

    async def stop(self) -> None: ...

    def is_running(self) -> bool: ...

    @property
    def size(self) -> int: ...
