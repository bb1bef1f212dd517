"""
Tests for JobTrackerImpl.

Covers idempotent outcome reporting, exactly-once finalization under
concurrent reports, the status DAG, cancellation, retention and bounded
retries against an unavailable counter store.
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest
from common_core.status_enums import BatchState, OperationKind, OperationStatus

from services.bulk_operations_service.domain_models import BatchOutcome, ReportResult
from services.bulk_operations_service.exceptions import (
    OperationNotFoundError,
    TrackerContentionExceededError,
)
from services.bulk_operations_service.implementations.batch_dispatcher_impl import (
    BatchDispatcherImpl,
)
from services.bulk_operations_service.implementations.job_tracker_impl import (
    JobTrackerImpl,
    derive_final_status,
)
from services.bulk_operations_service.implementations.local_counter_store_impl import (
    InMemoryCounterStore,
)
from services.bulk_operations_service.implementations.local_work_queue_impl import (
    InMemoryWorkQueue,
)

STATUS_ORDER = [
    OperationStatus.PENDING,
    OperationStatus.IN_PROGRESS,
    OperationStatus.COMPLETED,
]


async def _submit(dispatcher: BatchDispatcherImpl, batches: int) -> str:
    entities = [{"id": f"e{i}"} for i in range(batches)]
    return await dispatcher.submit(OperationKind.CREATE, entities, 1)


async def _complete(tracker: JobTrackerImpl, operation_id: str, index: int) -> ReportResult:
    await tracker.mark_batch_processing(operation_id, index)
    return await tracker.report_outcome(operation_id, index, BatchOutcome.done())


class TestDeriveFinalStatus:
    @pytest.mark.parametrize(
        "processed, failed, expected",
        [
            (3, 0, OperationStatus.COMPLETED),
            (2, 1, OperationStatus.COMPLETED_WITH_ERRORS),
            (0, 3, OperationStatus.FAILED),
        ],
    )
    def test_final_status_from_counters(
        self, processed: int, failed: int, expected: OperationStatus
    ) -> None:
        assert derive_final_status(processed, failed) is expected


class TestReportOutcome:
    @pytest.mark.asyncio
    async def test_all_batches_succeed_completes_operation(
        self, dispatcher: BatchDispatcherImpl, tracker: JobTrackerImpl
    ) -> None:
        """250 entities in batches of 100; three successes complete the operation."""
        entities = [{"id": f"e{i}"} for i in range(250)]
        operation_id = await dispatcher.submit(OperationKind.CREATE, entities, 100)

        for index in range(3):
            assert await _complete(tracker, operation_id, index) is ReportResult.APPLIED

        snapshot = await tracker.get_status(operation_id)
        assert snapshot.status is OperationStatus.COMPLETED
        assert snapshot.total_batches == 3
        assert snapshot.processed_batches == 3
        assert snapshot.failed_batches == 0

    @pytest.mark.asyncio
    async def test_one_failed_batch_completes_with_errors(
        self, dispatcher: BatchDispatcherImpl, tracker: JobTrackerImpl
    ) -> None:
        operation_id = await _submit(dispatcher, 3)

        await _complete(tracker, operation_id, 0)
        await _complete(tracker, operation_id, 1)
        await tracker.mark_batch_processing(operation_id, 2)
        await tracker.report_outcome(operation_id, 2, BatchOutcome.failed("item 0: duplicate key"))

        result = await tracker.get_result(operation_id)
        assert result.snapshot.status is OperationStatus.COMPLETED_WITH_ERRORS
        assert result.snapshot.processed_batches == 2
        assert result.snapshot.failed_batches == 1
        assert len(result.errors) == 1
        assert result.errors[0].batch_index == 2
        assert result.errors[0].message == "item 0: duplicate key"

        batch = await tracker.get_batch(operation_id, 2)
        assert batch is not None
        assert batch.state is BatchState.FAILED
        assert batch.last_error == "item 0: duplicate key"

    @pytest.mark.asyncio
    async def test_all_batches_failed_fails_operation(
        self, dispatcher: BatchDispatcherImpl, tracker: JobTrackerImpl
    ) -> None:
        operation_id = await _submit(dispatcher, 2)

        await tracker.report_outcome(operation_id, 0, BatchOutcome.failed("boom"))
        await tracker.report_outcome(operation_id, 1, BatchOutcome.failed("boom"))

        result = await tracker.get_result(operation_id)
        assert result.snapshot.status is OperationStatus.FAILED
        assert [e.batch_index for e in result.errors] == [0, 1]

    @pytest.mark.asyncio
    async def test_duplicate_report_counts_once(
        self, dispatcher: BatchDispatcherImpl, tracker: JobTrackerImpl, metrics
    ) -> None:
        """A redelivered outcome for batch 1 does not increment the counter again."""
        operation_id = await _submit(dispatcher, 3)

        await tracker.mark_batch_processing(operation_id, 1)
        first = await tracker.report_outcome(operation_id, 1, BatchOutcome.done())
        second = await tracker.report_outcome(operation_id, 1, BatchOutcome.done())

        assert first is ReportResult.APPLIED
        assert second is ReportResult.ALREADY_APPLIED
        snapshot = await tracker.get_status(operation_id)
        assert snapshot.processed_batches == 1
        assert snapshot.failed_batches == 0
        assert metrics.registry.get_sample_value("bulkops_duplicate_reports_total") == 1.0

    @pytest.mark.asyncio
    async def test_conflicting_duplicate_keeps_first_outcome(
        self, dispatcher: BatchDispatcherImpl, tracker: JobTrackerImpl
    ) -> None:
        operation_id = await _submit(dispatcher, 2)

        await tracker.report_outcome(operation_id, 0, BatchOutcome.done())
        result = await tracker.report_outcome(operation_id, 0, BatchOutcome.failed("late"))

        assert result is ReportResult.ALREADY_APPLIED
        batch = await tracker.get_batch(operation_id, 0)
        assert batch is not None
        assert batch.state is BatchState.DONE
        assert (await tracker.get_result(operation_id)).errors == []

    @pytest.mark.asyncio
    async def test_non_terminal_outcome_is_rejected(
        self, dispatcher: BatchDispatcherImpl, tracker: JobTrackerImpl
    ) -> None:
        operation_id = await _submit(dispatcher, 1)

        with pytest.raises(ValueError, match="must be terminal"):
            await tracker.report_outcome(
                operation_id, 0, BatchOutcome(state=BatchState.PROCESSING)
            )

    @pytest.mark.asyncio
    async def test_report_for_unknown_batch_raises_not_found(self, tracker: JobTrackerImpl) -> None:
        with pytest.raises(OperationNotFoundError):
            await tracker.report_outcome("missing", 0, BatchOutcome.done())

    @pytest.mark.asyncio
    async def test_failed_outcome_without_message_gets_default(
        self, dispatcher: BatchDispatcherImpl, tracker: JobTrackerImpl
    ) -> None:
        operation_id = await _submit(dispatcher, 1)

        await tracker.report_outcome(operation_id, 0, BatchOutcome(state=BatchState.FAILED))

        result = await tracker.get_result(operation_id)
        assert result.errors[0].message == "batch failed"


class TestConcurrentFinalization:
    @pytest.mark.asyncio
    async def test_last_two_reports_finalize_exactly_once(
        self, dispatcher: BatchDispatcherImpl, tracker: JobTrackerImpl, observer, metrics
    ) -> None:
        operation_id = await _submit(dispatcher, 5)
        for index in range(3):
            await _complete(tracker, operation_id, index)
        await tracker.mark_batch_processing(operation_id, 3)
        await tracker.mark_batch_processing(operation_id, 4)

        results = await asyncio.gather(
            tracker.report_outcome(operation_id, 3, BatchOutcome.done()),
            tracker.report_outcome(operation_id, 4, BatchOutcome.done()),
        )

        assert results == [ReportResult.APPLIED, ReportResult.APPLIED]
        snapshot = await tracker.get_status(operation_id)
        assert snapshot.status is OperationStatus.COMPLETED
        assert snapshot.processed_batches == 5

        terminal = [s for s in observer.for_operation(operation_id) if s.status.is_terminal]
        assert len(terminal) == 1
        assert (
            metrics.registry.get_sample_value(
                "bulkops_operations_finalized_total", {"status": "completed"}
            )
            == 1.0
        )

    @pytest.mark.asyncio
    async def test_many_concurrent_reports_keep_exact_counts(
        self, dispatcher: BatchDispatcherImpl, tracker: JobTrackerImpl
    ) -> None:
        operation_id = await _submit(dispatcher, 20)

        outcomes = [
            BatchOutcome.failed("bad row") if i % 5 == 0 else BatchOutcome.done()
            for i in range(20)
        ]
        # Every outcome delivered twice
        await asyncio.gather(
            *(tracker.report_outcome(operation_id, i % 20, outcomes[i % 20]) for i in range(40))
        )

        result = await tracker.get_result(operation_id)
        assert result.snapshot.processed_batches == 16
        assert result.snapshot.failed_batches == 4
        assert result.snapshot.status is OperationStatus.COMPLETED_WITH_ERRORS
        assert sorted(e.batch_index for e in result.errors) == [0, 5, 10, 15]

    @pytest.mark.asyncio
    async def test_duplicate_report_recovers_lost_finalization(
        self,
        dispatcher: BatchDispatcherImpl,
        tracker: JobTrackerImpl,
        counter_store: InMemoryCounterStore,
    ) -> None:
        """If the counters are complete but status was never set, a duplicate finalizes."""
        operation_id = await _submit(dispatcher, 1)
        keys = tracker.keys
        await counter_store.transition_and_increment(
            keys.batch(operation_id, 0),
            "state",
            ["queued", "processing"],
            "done",
            keys.operation(operation_id),
            "processed_batches",
        )
        assert (await tracker.get_status(operation_id)).status is OperationStatus.PENDING

        result = await tracker.report_outcome(operation_id, 0, BatchOutcome.done())

        assert result is ReportResult.ALREADY_APPLIED
        assert (await tracker.get_status(operation_id)).status is OperationStatus.COMPLETED


class TestStatusTransitions:
    @pytest.mark.asyncio
    async def test_first_processing_batch_starts_operation(
        self, dispatcher: BatchDispatcherImpl, tracker: JobTrackerImpl, observer
    ) -> None:
        operation_id = await _submit(dispatcher, 2)

        attempt = await tracker.mark_batch_processing(operation_id, 0)

        assert attempt == 1
        assert (await tracker.get_status(operation_id)).status is OperationStatus.IN_PROGRESS
        assert [s.status for s in observer.for_operation(operation_id)] == [
            OperationStatus.IN_PROGRESS
        ]

    @pytest.mark.asyncio
    async def test_attempt_increments_on_each_processing_entry(
        self, dispatcher: BatchDispatcherImpl, tracker: JobTrackerImpl
    ) -> None:
        operation_id = await _submit(dispatcher, 1)

        assert await tracker.mark_batch_processing(operation_id, 0) == 1
        assert await tracker.mark_batch_processing(operation_id, 0) == 2

        batch = await tracker.get_batch(operation_id, 0)
        assert batch is not None
        assert batch.attempt == 2
        assert batch.state is BatchState.PROCESSING

    @pytest.mark.asyncio
    async def test_terminal_batch_cannot_reenter_processing(
        self, dispatcher: BatchDispatcherImpl, tracker: JobTrackerImpl
    ) -> None:
        operation_id = await _submit(dispatcher, 2)
        await _complete(tracker, operation_id, 0)

        assert await tracker.mark_batch_processing(operation_id, 0) is None
        batch = await tracker.get_batch(operation_id, 0)
        assert batch is not None
        assert batch.state is BatchState.DONE

    @pytest.mark.asyncio
    async def test_mark_processing_unknown_batch_raises(self, tracker: JobTrackerImpl) -> None:
        with pytest.raises(OperationNotFoundError):
            await tracker.mark_batch_processing("missing", 0)

    @pytest.mark.asyncio
    async def test_observed_status_never_moves_backwards(
        self, dispatcher: BatchDispatcherImpl, tracker: JobTrackerImpl, observer
    ) -> None:
        """Finalizing straight from pending still passes through in_progress."""
        operation_id = await _submit(dispatcher, 1)

        await tracker.report_outcome(operation_id, 0, BatchOutcome.done())

        statuses = [s.status for s in observer.for_operation(operation_id)]
        assert statuses[-1] is OperationStatus.COMPLETED
        ranks = [STATUS_ORDER.index(s) for s in statuses]
        assert ranks == sorted(ranks)

    @pytest.mark.asyncio
    async def test_each_applied_report_emits_progress(
        self, dispatcher: BatchDispatcherImpl, tracker: JobTrackerImpl, observer
    ) -> None:
        operation_id = await _submit(dispatcher, 3)

        await _complete(tracker, operation_id, 0)
        await _complete(tracker, operation_id, 1)

        processed = [s.processed_batches for s in observer.for_operation(operation_id)]
        assert processed[-1] == 2
        assert processed == sorted(processed)

    @pytest.mark.asyncio
    async def test_finalize_if_complete_ignores_incomplete_operation(
        self, dispatcher: BatchDispatcherImpl, tracker: JobTrackerImpl
    ) -> None:
        operation_id = await _submit(dispatcher, 2)
        await _complete(tracker, operation_id, 0)

        assert await tracker.finalize_if_complete(operation_id) is None
        assert (await tracker.get_status(operation_id)).status is OperationStatus.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_observer_failure_does_not_fail_report(
        self, counter_store: InMemoryCounterStore, work_queue: InMemoryWorkQueue, settings, metrics
    ) -> None:
        observer = AsyncMock()
        observer.on_change.side_effect = RuntimeError("pubsub down")
        tracker = JobTrackerImpl(
            store=counter_store, observer=observer, settings=settings, metrics=metrics
        )
        dispatcher = BatchDispatcherImpl(
            store=counter_store, queue=work_queue, settings=settings, metrics=metrics
        )
        operation_id = await _submit(dispatcher, 1)

        result = await _complete(tracker, operation_id, 0)

        assert result is ReportResult.APPLIED
        assert (await tracker.get_status(operation_id)).status is OperationStatus.COMPLETED
        assert observer.on_change.await_count >= 1


class TestReads:
    @pytest.mark.asyncio
    async def test_unknown_operation_raises_not_found(self, tracker: JobTrackerImpl) -> None:
        with pytest.raises(OperationNotFoundError) as exc_info:
            await tracker.get_status("does-not-exist")

        assert exc_info.value.operation_id == "does-not-exist"

    @pytest.mark.asyncio
    async def test_get_result_of_unknown_operation_raises(self, tracker: JobTrackerImpl) -> None:
        with pytest.raises(OperationNotFoundError):
            await tracker.get_result("does-not-exist")

    @pytest.mark.asyncio
    async def test_get_batch_of_unknown_operation_is_none(self, tracker: JobTrackerImpl) -> None:
        assert await tracker.get_batch("does-not-exist", 0) is None


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_sets_flag_and_emits(
        self, dispatcher: BatchDispatcherImpl, tracker: JobTrackerImpl, observer
    ) -> None:
        operation_id = await _submit(dispatcher, 2)

        snapshot = await tracker.cancel(operation_id)

        assert snapshot.status is OperationStatus.PENDING
        assert (await tracker.get_operation(operation_id)).cancel_requested is True
        assert observer.for_operation(operation_id)[-1] == snapshot

    @pytest.mark.asyncio
    async def test_cancel_is_idempotent(
        self, dispatcher: BatchDispatcherImpl, tracker: JobTrackerImpl
    ) -> None:
        operation_id = await _submit(dispatcher, 2)

        await tracker.cancel(operation_id)
        snapshot = await tracker.cancel(operation_id)

        assert snapshot.status is OperationStatus.PENDING
        assert (await tracker.get_operation(operation_id)).cancel_requested is True

    @pytest.mark.asyncio
    async def test_cancel_of_terminal_operation_changes_nothing(
        self, dispatcher: BatchDispatcherImpl, tracker: JobTrackerImpl
    ) -> None:
        operation_id = await _submit(dispatcher, 1)
        await _complete(tracker, operation_id, 0)

        snapshot = await tracker.cancel(operation_id)

        assert snapshot.status is OperationStatus.COMPLETED
        assert (await tracker.get_operation(operation_id)).cancel_requested is False

    @pytest.mark.asyncio
    async def test_cancel_unknown_operation_raises(self, tracker: JobTrackerImpl) -> None:
        with pytest.raises(OperationNotFoundError):
            await tracker.cancel("does-not-exist")


class TestRetention:
    @pytest.mark.asyncio
    async def test_terminal_operation_expires_after_retention(
        self, observer, settings, metrics, work_queue: InMemoryWorkQueue
    ) -> None:
        now = [1000.0]
        store = InMemoryCounterStore(clock=lambda: now[0])
        tracker = JobTrackerImpl(store=store, observer=observer, settings=settings, metrics=metrics)
        dispatcher = BatchDispatcherImpl(
            store=store, queue=work_queue, settings=settings, metrics=metrics
        )
        operation_id = await _submit(dispatcher, 2)
        await tracker.report_outcome(operation_id, 0, BatchOutcome.done())
        await tracker.report_outcome(operation_id, 1, BatchOutcome.failed("bad"))

        now[0] += settings.OPERATION_RETENTION_SECONDS - 1
        assert (await tracker.get_status(operation_id)).status.is_terminal

        now[0] += 2
        with pytest.raises(OperationNotFoundError):
            await tracker.get_status(operation_id)
        assert await tracker.get_batch(operation_id, 0) is None
        assert await store.read_entries(tracker.keys.errors(operation_id)) == []

    @pytest.mark.asyncio
    async def test_non_terminal_operation_never_expires(
        self, observer, settings, metrics, work_queue: InMemoryWorkQueue
    ) -> None:
        now = [1000.0]
        store = InMemoryCounterStore(clock=lambda: now[0])
        tracker = JobTrackerImpl(store=store, observer=observer, settings=settings, metrics=metrics)
        dispatcher = BatchDispatcherImpl(
            store=store, queue=work_queue, settings=settings, metrics=metrics
        )
        operation_id = await _submit(dispatcher, 2)
        await tracker.report_outcome(operation_id, 0, BatchOutcome.done())

        now[0] += settings.OPERATION_RETENTION_SECONDS * 10
        assert (await tracker.get_status(operation_id)).processed_batches == 1


class TestContention:
    @pytest.mark.asyncio
    async def test_read_gives_up_after_max_retries(self, observer, settings, metrics) -> None:
        store = AsyncMock()
        store.read_record.side_effect = ConnectionError("redis unavailable")
        tracker = JobTrackerImpl(store=store, observer=observer, settings=settings, metrics=metrics)

        with pytest.raises(TrackerContentionExceededError) as exc_info:
            await tracker.get_status("op-1")

        assert store.read_record.await_count == settings.TRACKER_MAX_RETRIES
        assert exc_info.value.details["attempts"] == settings.TRACKER_MAX_RETRIES

    @pytest.mark.asyncio
    async def test_report_retries_then_succeeds(
        self,
        dispatcher: BatchDispatcherImpl,
        counter_store: InMemoryCounterStore,
        observer,
        settings,
        metrics,
    ) -> None:
        operation_id = await _submit(dispatcher, 2)
        real = counter_store.transition_and_increment
        calls: list[tuple] = []

        async def first_call_times_out(*args, **kwargs):
            calls.append(args)
            if len(calls) == 1:
                raise TimeoutError("slow")
            return await real(*args, **kwargs)

        counter_store.transition_and_increment = first_call_times_out  # type: ignore[method-assign]
        tracker = JobTrackerImpl(
            store=counter_store, observer=observer, settings=settings, metrics=metrics
        )

        result = await tracker.report_outcome(operation_id, 0, BatchOutcome.done())

        assert result is ReportResult.APPLIED
        assert len(calls) == 2
        assert (await tracker.get_status(operation_id)).processed_batches == 1

    @pytest.mark.asyncio
    async def test_non_retryable_errors_propagate_immediately(
        self, observer, settings, metrics
    ) -> None:
        store = AsyncMock()
        store.read_record.side_effect = KeyError("corrupt record")
        tracker = JobTrackerImpl(store=store, observer=observer, settings=settings, metrics=metrics)

        with pytest.raises(KeyError):
            await tracker.get_status("op-1")

        assert store.read_record.await_count == 1
