"""
Job tracker: the authoritative state machine for Operation and Batch records.

Every mutation goes through one atomic counter-store primitive:

- a batch enters processing via a guarded transition that also bumps its
  attempt counter;
- a terminal outcome is a guarded transition (queued|processing -> done|failed)
  that, only when it wins, increments exactly one operation counter and
  appends the error entry, and returns the counters as they stand right after
  the increment;
- the terminal operation status is set by a compare-and-set on `status`, so
  two reports that both observe processed + failed == total finalize once.

A report whose guard fails (redelivery, duplicate) mutates nothing and
re-runs the finalization check, so an operation whose last increment landed
before a crash still reaches its terminal status.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from bulkops_service_libs.logging_utils import create_service_logger
from common_core.status_enums import BatchState, OperationStatus
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from services.bulk_operations_service.config import Settings
from services.bulk_operations_service.domain_models import (
    Batch,
    BatchOutcome,
    Operation,
    OperationError,
    OperationResult,
    OperationSnapshot,
    ReportResult,
)
from services.bulk_operations_service.exceptions import (
    OperationNotFoundError,
    TrackerContentionExceededError,
)
from services.bulk_operations_service.implementations.operation_records import (
    ATTEMPT_FIELD,
    CANCEL_FIELD,
    FAILED_FIELD,
    PROCESSED_FIELD,
    STATE_FIELD,
    STATUS_FIELD,
    UPDATED_AT_FIELD,
    OperationKeys,
    batch_from_record,
    decode_error,
    encode_error,
    operation_from_record,
    timestamp,
)
from services.bulk_operations_service.metrics import BulkOperationsMetrics
from services.bulk_operations_service.protocols import (
    CounterStoreProtocol,
    OperationChangeObserverProtocol,
)

logger = create_service_logger("bulkops.job_tracker")

T = TypeVar("T")

NON_TERMINAL_BATCH_STATES = [BatchState.QUEUED.value, BatchState.PROCESSING.value]


def derive_final_status(processed_batches: int, failed_batches: int) -> OperationStatus:
    """Terminal status from final counter values."""
    if failed_batches == 0:
        return OperationStatus.COMPLETED
    if processed_batches > 0:
        return OperationStatus.COMPLETED_WITH_ERRORS
    return OperationStatus.FAILED


class JobTrackerImpl:
    """Applies worker-proposed outcomes idempotently and derives operation status."""

    def __init__(
        self,
        store: CounterStoreProtocol,
        observer: OperationChangeObserverProtocol,
        settings: Settings,
        metrics: BulkOperationsMetrics,
    ) -> None:
        self.store = store
        self.observer = observer
        self.settings = settings
        self.metrics = metrics
        self.keys = OperationKeys(settings.REDIS_KEY_PREFIX)

        self.retryable_exceptions: tuple[type[BaseException], ...] = (
            RedisConnectionError,
            RedisTimeoutError,
            ConnectionError,
            TimeoutError,
        )

    async def _with_retry(
        self,
        action: str,
        operation_id: str,
        batch_index: int | None,
        func: Callable[..., Awaitable[T]],
        *args: Any,
        **kwargs: Any,
    ) -> T:
        """Run one counter-store call with bounded retries.

        Raises:
            TrackerContentionExceededError: when every attempt failed
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.settings.TRACKER_MAX_RETRIES),
            wait=wait_exponential(
                multiplier=self.settings.TRACKER_RETRY_MIN_WAIT_SECONDS,
                min=self.settings.TRACKER_RETRY_MIN_WAIT_SECONDS,
                max=self.settings.TRACKER_RETRY_MAX_WAIT_SECONDS,
            ),
            retry=retry_if_exception_type(self.retryable_exceptions),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        logger.warning(
                            f"Retrying tracker {action} "
                            f"(attempt {attempt.retry_state.attempt_number}/"
                            f"{self.settings.TRACKER_MAX_RETRIES})",
                            extra={"operation_id": operation_id, "batch_index": batch_index},
                        )
                    return await func(*args, **kwargs)
        except self.retryable_exceptions as e:
            logger.error(
                f"Tracker {action} gave up after {self.settings.TRACKER_MAX_RETRIES} attempts: {e}",
                extra={"operation_id": operation_id, "batch_index": batch_index},
            )
            raise TrackerContentionExceededError(
                message=f"Counter store unavailable during {action}: {e}",
                operation_id=operation_id,
                batch_index=batch_index,
                attempts=self.settings.TRACKER_MAX_RETRIES,
            ) from e
        raise RuntimeError(f"Retry loop for tracker {action} exited without result")

    async def _emit(self, snapshot: OperationSnapshot) -> None:
        """Hand a change record to the observer. Delivery is best-effort."""
        try:
            await self.observer.on_change(snapshot.operation_id, snapshot)
        except Exception as e:
            logger.warning(
                f"Change observer failed for operation {snapshot.operation_id}: {e}",
                exc_info=True,
            )

    # Reads

    async def get_operation(self, operation_id: str) -> Operation:
        record = await self._with_retry(
            "read_operation",
            operation_id,
            None,
            self.store.read_record,
            self.keys.operation(operation_id),
        )
        if record is None:
            raise OperationNotFoundError(operation_id)
        return operation_from_record(record)

    async def get_batch(self, operation_id: str, batch_index: int) -> Batch | None:
        record = await self._with_retry(
            "read_batch",
            operation_id,
            batch_index,
            self.store.read_record,
            self.keys.batch(operation_id, batch_index),
        )
        return batch_from_record(record) if record is not None else None

    async def get_status(self, operation_id: str) -> OperationSnapshot:
        return (await self.get_operation(operation_id)).snapshot()

    async def get_result(self, operation_id: str) -> OperationResult:
        snapshot = await self.get_status(operation_id)
        raw_errors = await self._with_retry(
            "read_errors",
            operation_id,
            None,
            self.store.read_entries,
            self.keys.errors(operation_id),
        )
        return OperationResult(
            snapshot=snapshot, errors=[decode_error(raw) for raw in raw_errors]
        )

    # Batch transitions

    async def mark_batch_processing(self, operation_id: str, batch_index: int) -> int | None:
        batch_key = self.keys.batch(operation_id, batch_index)
        now = timestamp()
        record = await self._with_retry(
            "mark_batch_processing",
            operation_id,
            batch_index,
            self.store.transition_and_increment,
            batch_key,
            STATE_FIELD,
            NON_TERMINAL_BATCH_STATES,
            BatchState.PROCESSING.value,
            batch_key,
            ATTEMPT_FIELD,
            counter_extra_fields={UPDATED_AT_FIELD: now},
        )
        if record is None:
            if await self.get_batch(operation_id, batch_index) is None:
                raise OperationNotFoundError(operation_id)
            return None

        attempt = int(record[ATTEMPT_FIELD])
        logger.debug(
            f"Batch {batch_index} of operation {operation_id} processing (attempt {attempt})"
        )

        if await self._mark_started(operation_id):
            await self._emit(await self.get_status(operation_id))
        return attempt

    async def _mark_started(self, operation_id: str) -> bool:
        """pending -> in_progress. True only for the caller that made the move."""
        started = await self._with_retry(
            "mark_started",
            operation_id,
            None,
            self.store.conditional_transition,
            self.keys.operation(operation_id),
            STATUS_FIELD,
            [OperationStatus.PENDING.value],
            OperationStatus.IN_PROGRESS.value,
            {UPDATED_AT_FIELD: timestamp()},
        )
        if started:
            logger.info(f"Operation {operation_id} is in progress")
        return started

    async def report_outcome(
        self, operation_id: str, batch_index: int, outcome: BatchOutcome
    ) -> ReportResult:
        if not outcome.state.is_terminal:
            raise ValueError(f"Outcome state must be terminal, got {outcome.state.value}")

        now = timestamp()
        failed = outcome.state is BatchState.FAILED
        batch_extra = {UPDATED_AT_FIELD: now}
        append_value = None
        if failed:
            message = outcome.error or "batch failed"
            batch_extra["last_error"] = message
            append_value = encode_error(OperationError(batch_index=batch_index, message=message))

        record = await self._with_retry(
            "report_outcome",
            operation_id,
            batch_index,
            self.store.transition_and_increment,
            self.keys.batch(operation_id, batch_index),
            STATE_FIELD,
            NON_TERMINAL_BATCH_STATES,
            outcome.state.value,
            self.keys.operation(operation_id),
            FAILED_FIELD if failed else PROCESSED_FIELD,
            extra_fields=batch_extra,
            counter_extra_fields={UPDATED_AT_FIELD: now},
            append_key=self.keys.errors(operation_id) if failed else None,
            append_value=append_value,
        )

        if record is None:
            if await self.get_batch(operation_id, batch_index) is None:
                raise OperationNotFoundError(operation_id)
            self.metrics.duplicate_reports_total.inc()
            logger.info(
                f"Batch {batch_index} of operation {operation_id} already terminal, "
                f"report collapsed",
                extra={"operation_id": operation_id, "batch_index": batch_index},
            )
            await self.finalize_if_complete(operation_id)
            return ReportResult.ALREADY_APPLIED

        self.metrics.batch_outcomes_total.labels(state=outcome.state.value).inc()
        operation = operation_from_record(record)
        logger.info(
            f"Batch {batch_index} of operation {operation_id} -> {outcome.state.value} "
            f"({operation.processed_batches} processed, {operation.failed_batches} failed "
            f"of {operation.total_batches})",
            extra={"operation_id": operation_id, "batch_index": batch_index},
        )

        if operation.snapshot().completed_batches >= operation.total_batches:
            if await self._finalize(operation) is None:
                await self._emit(await self.get_status(operation_id))
        else:
            await self._emit(operation.snapshot())
        return ReportResult.APPLIED

    # Operation transitions

    async def finalize_if_complete(self, operation_id: str) -> OperationSnapshot | None:
        operation = await self.get_operation(operation_id)
        if operation.status.is_terminal:
            return None
        if operation.snapshot().completed_batches < operation.total_batches:
            return None
        return await self._finalize(operation)

    async def _finalize(self, operation: Operation) -> OperationSnapshot | None:
        """Compare-and-set the terminal status. Returns the final snapshot if this call won."""
        operation_id = operation.operation_id
        final_status = derive_final_status(operation.processed_batches, operation.failed_batches)

        await self._mark_started(operation_id)
        won = await self._with_retry(
            "finalize",
            operation_id,
            None,
            self.store.conditional_transition,
            self.keys.operation(operation_id),
            STATUS_FIELD,
            [OperationStatus.IN_PROGRESS.value],
            final_status.value,
            {UPDATED_AT_FIELD: timestamp()},
        )
        if not won:
            logger.debug(f"Operation {operation_id} already finalized by another report")
            return None

        self.metrics.operations_finalized_total.labels(status=final_status.value).inc()
        logger.info(
            f"Operation {operation_id} finalized as {final_status.value}",
            extra={
                "operation_id": operation_id,
                "processed_batches": operation.processed_batches,
                "failed_batches": operation.failed_batches,
                "total_batches": operation.total_batches,
            },
        )

        await self._apply_retention(operation)
        snapshot = operation.snapshot().model_copy(update={"status": final_status})
        await self._emit(snapshot)
        return snapshot

    async def _apply_retention(self, operation: Operation) -> None:
        ttl = self.settings.OPERATION_RETENTION_SECONDS
        if ttl <= 0:
            return

        operation_id = operation.operation_id
        keys = [self.keys.operation(operation_id), self.keys.errors(operation_id)]
        keys.extend(self.keys.batch(operation_id, i) for i in range(operation.total_batches))
        try:
            for key in keys:
                await self.store.expire(key, ttl)
        except self.retryable_exceptions as e:
            logger.warning(
                f"Could not apply retention to operation {operation_id}: {e}",
                extra={"operation_id": operation_id},
            )

    async def cancel(self, operation_id: str) -> OperationSnapshot:
        operation = await self.get_operation(operation_id)
        if operation.status.is_terminal:
            logger.info(f"Cancel ignored, operation {operation_id} is {operation.status.value}")
            return operation.snapshot()

        flagged = await self._with_retry(
            "cancel",
            operation_id,
            None,
            self.store.conditional_transition,
            self.keys.operation(operation_id),
            CANCEL_FIELD,
            ["0"],
            "1",
            {UPDATED_AT_FIELD: timestamp()},
        )
        if flagged:
            logger.info(f"Cancellation requested for operation {operation_id}")
        snapshot = await self.get_status(operation_id)
        await self._emit(snapshot)
        return snapshot
