"""Batch dispatcher: validates a bulk request, records it and enqueues its batches."""

from __future__ import annotations

import uuid
from typing import Any

from bulkops_service_libs.logging_utils import create_service_logger
from common_core.status_enums import OperationKind

from services.bulk_operations_service.config import Settings
from services.bulk_operations_service.domain_models import Batch, BatchTask, Operation
from services.bulk_operations_service.exceptions import (
    EnqueueFailureError,
    InvalidRequestError,
)
from services.bulk_operations_service.implementations.operation_records import (
    OperationKeys,
    batch_to_record,
    operation_to_record,
)
from services.bulk_operations_service.metrics import BulkOperationsMetrics
from services.bulk_operations_service.protocols import CounterStoreProtocol, WorkQueueProtocol

logger = create_service_logger("bulkops.dispatcher")


def partition(entities: list[Any], batch_size: int) -> list[list[Any]]:
    """Contiguous, order-preserving chunks of at most batch_size items."""
    return [entities[i : i + batch_size] for i in range(0, len(entities), batch_size)]


class BatchDispatcherImpl:
    def __init__(
        self,
        store: CounterStoreProtocol,
        queue: WorkQueueProtocol,
        settings: Settings,
        metrics: BulkOperationsMetrics,
    ) -> None:
        self.store = store
        self.queue = queue
        self.settings = settings
        self.metrics = metrics
        self.keys = OperationKeys(settings.REDIS_KEY_PREFIX)

    def _validate(
        self, kind: OperationKind, entities: list[Any], batch_size: int | None
    ) -> int:
        if not isinstance(entities, list) or not entities:
            raise InvalidRequestError("entities must be a non-empty list", field="entities")
        if len(entities) > self.settings.MAX_ENTITIES_PER_REQUEST:
            raise InvalidRequestError(
                f"At most {self.settings.MAX_ENTITIES_PER_REQUEST} entities per request",
                field="entities",
            )

        needs_id = kind in (OperationKind.UPDATE, OperationKind.DELETE)
        for index, entity in enumerate(entities):
            if not isinstance(entity, dict):
                raise InvalidRequestError(
                    f"entities[{index}] must be an object", field=f"entities[{index}]"
                )
            if needs_id and entity.get("id") in (None, ""):
                raise InvalidRequestError(
                    f"entities[{index}] must carry an id for {kind.value}",
                    field=f"entities[{index}].id",
                )

        size = self.settings.DEFAULT_BATCH_SIZE if batch_size is None else batch_size
        if size < 1 or size > self.settings.MAX_BATCH_SIZE:
            raise InvalidRequestError(
                f"batch_size must be between 1 and {self.settings.MAX_BATCH_SIZE}",
                field="batch_size",
            )
        return size

    async def submit(
        self,
        kind: OperationKind,
        entities: list[Any],
        batch_size: int | None = None,
    ) -> str:
        size = self._validate(kind, entities, batch_size)
        chunks = partition(entities, size)

        operation = Operation(
            operation_id=str(uuid.uuid4()),
            kind=kind,
            total_batches=len(chunks),
        )
        operation_id = operation.operation_id

        # Records first: a worker must never see a task without a tracking record
        try:
            await self.store.create_record(
                self.keys.operation(operation_id), operation_to_record(operation)
            )
            for index, chunk in enumerate(chunks):
                await self.store.create_record(
                    self.keys.batch(operation_id, index),
                    batch_to_record(
                        Batch(operation_id=operation_id, batch_index=index, entities=chunk)
                    ),
                )
        except Exception as e:
            self.metrics.enqueue_failures_total.inc()
            logger.error(f"Failed to record operation {operation_id}: {e}", exc_info=True)
            raise EnqueueFailureError(
                message=f"Failed to record operation: {e}", operation_id=operation_id
            ) from e

        for index in range(len(chunks)):
            try:
                await self.queue.enqueue(BatchTask(operation_id=operation_id, batch_index=index))
            except Exception as e:
                self.metrics.enqueue_failures_total.inc()
                logger.error(
                    f"Failed to enqueue batch {index} of operation {operation_id}: {e}",
                    exc_info=True,
                )
                raise EnqueueFailureError(
                    message=f"Failed to enqueue batch {index}: {e}",
                    operation_id=operation_id,
                    batch_index=index,
                ) from e
            self.metrics.batches_enqueued_total.inc()

        self.metrics.operations_submitted_total.labels(kind=kind.value).inc()
        logger.info(
            f"Operation {operation_id} submitted: {kind.value} of {len(entities)} entities "
            f"in {len(chunks)} batches",
            extra={"operation_id": operation_id, "batch_size": size},
        )
        return operation_id
