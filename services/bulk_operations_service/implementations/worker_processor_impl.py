"""
Worker processor: handles one delivered batch task end to end.

Every delivery ends in exactly one ack or nack. The ack is sent only after
the tracker confirmed the outcome, so a crash in between leaves the task
leased and it is redelivered; the tracker collapses the duplicate.
"""

from __future__ import annotations

import asyncio
import time

from bulkops_service_libs.logging_utils import create_service_logger, log_task_processing

from services.bulk_operations_service.config import Settings
from services.bulk_operations_service.domain_models import (
    Batch,
    BatchOutcome,
    Operation,
    QueueDelivery,
)
from services.bulk_operations_service.exceptions import (
    OperationNotFoundError,
    PermanentBatchFailureError,
    TrackerContentionExceededError,
    TransientApplyError,
)
from services.bulk_operations_service.metrics import BulkOperationsMetrics
from services.bulk_operations_service.protocols import (
    EntityStoreProtocol,
    JobTrackerProtocol,
    WorkQueueProtocol,
)

logger = create_service_logger("bulkops.worker")

CANCELLED_MESSAGE = "operation cancelled"


class WorkerProcessorImpl:
    def __init__(
        self,
        queue: WorkQueueProtocol,
        tracker: JobTrackerProtocol,
        entity_store: EntityStoreProtocol,
        settings: Settings,
        metrics: BulkOperationsMetrics,
    ) -> None:
        self.queue = queue
        self.tracker = tracker
        self.entity_store = entity_store
        self.settings = settings
        self.metrics = metrics

    async def process(self, delivery: QueueDelivery) -> None:
        task = delivery.task
        log_task_processing(
            logger,
            f"Processing batch {task.batch_index} of operation {task.operation_id}",
            operation_id=task.operation_id,
            batch_index=task.batch_index,
            delivery_count=delivery.delivery_count,
        )
        try:
            await self._handle(delivery)
        except OperationNotFoundError:
            logger.warning(
                f"No tracking record for batch {task.batch_index} of operation "
                f"{task.operation_id}, discarding task"
            )
            await self.queue.ack(delivery)
        except TrackerContentionExceededError as e:
            self.metrics.redeliveries_total.labels(reason="contention").inc()
            logger.warning(f"Tracker unavailable, task will be redelivered: {e.message}")
            await self.queue.nack(delivery, self.settings.NACK_DELAY_SECONDS)

    async def _handle(self, delivery: QueueDelivery) -> None:
        task = delivery.task
        attempt = await self.tracker.mark_batch_processing(task.operation_id, task.batch_index)
        if attempt is None:
            # Effect already applied by an earlier delivery
            logger.info("Batch already terminal, acknowledging redelivered task")
            await self.tracker.finalize_if_complete(task.operation_id)
            await self.queue.ack(delivery)
            return

        operation = await self.tracker.get_operation(task.operation_id)
        batch = await self.tracker.get_batch(task.operation_id, task.batch_index)
        if batch is None:
            raise OperationNotFoundError(task.operation_id)

        if operation.cancel_requested:
            logger.info("Operation cancelled, batch will not be applied")
            outcome: BatchOutcome | None = BatchOutcome.failed(CANCELLED_MESSAGE)
        else:
            outcome = await self._apply(operation, batch, attempt, delivery)
            if outcome is None:
                return

        result = await self.tracker.report_outcome(task.operation_id, task.batch_index, outcome)
        logger.debug(f"Outcome {outcome.state.value} reported: {result.value}")
        await self.queue.ack(delivery)

    async def _apply(
        self,
        operation: Operation,
        batch: Batch,
        attempt: int,
        delivery: QueueDelivery,
    ) -> BatchOutcome | None:
        """Apply a batch and turn the result into an outcome.

        Returns None when the task was nacked for a retry.
        """
        started = time.monotonic()
        try:
            item_outcomes = await asyncio.wait_for(
                self.entity_store.apply_batch(operation.kind, batch.entities),
                timeout=self.settings.BATCH_APPLY_TIMEOUT_SECONDS,
            )
        except (TransientApplyError, TimeoutError) as e:
            reason = "timeout" if isinstance(e, TimeoutError) else "transient"
            message = (
                f"apply timed out after {self.settings.BATCH_APPLY_TIMEOUT_SECONDS}s"
                if reason == "timeout"
                else e.message
            )
            if attempt >= self.settings.MAX_DELIVERY_ATTEMPTS:
                logger.error(
                    f"Giving up after {attempt} attempts: {message}",
                    extra={"attempt": attempt},
                )
                return BatchOutcome.failed(f"gave up after {attempt} attempts: {message}")

            self.metrics.redeliveries_total.labels(reason=reason).inc()
            logger.warning(
                f"Transient apply failure on attempt {attempt}/"
                f"{self.settings.MAX_DELIVERY_ATTEMPTS}, nacking: {message}",
                extra={"attempt": attempt},
            )
            await self.queue.nack(delivery, self.settings.NACK_DELAY_SECONDS)
            return None
        except PermanentBatchFailureError as e:
            logger.warning(f"Batch rejected by store: {e.message}")
            return BatchOutcome.failed(e.message)
        except Exception as e:
            logger.error(f"Unexpected error applying batch: {e}", exc_info=True)
            return BatchOutcome.failed(f"unexpected apply error: {e}")
        finally:
            self.metrics.batch_apply_duration_seconds.labels(kind=operation.kind.value).observe(
                time.monotonic() - started
            )

        return BatchOutcome.from_item_outcomes(item_outcomes, len(batch.entities))
