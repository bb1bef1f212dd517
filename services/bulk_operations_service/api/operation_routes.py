from __future__ import annotations

from bulkops_service_libs.logging_utils import create_service_logger
from common_core.status_enums import OperationKind
from dishka.integrations.fastapi import FromDishka, inject
from fastapi import APIRouter, status

from services.bulk_operations_service.api_models import (
    BulkSubmitRequest,
    BulkSubmitResponse,
    OperationResultResponse,
    OperationStatusResponse,
)
from services.bulk_operations_service.protocols import (
    BatchDispatcherProtocol,
    JobTrackerProtocol,
)

router = APIRouter()
logger = create_service_logger("bulkops.operation_routes")


async def _submit(
    kind: OperationKind, request: BulkSubmitRequest, dispatcher: BatchDispatcherProtocol
) -> BulkSubmitResponse:
    operation_id = await dispatcher.submit(kind, request.entities, request.batch_size)
    return BulkSubmitResponse(
        operation_id=operation_id,
        message=f"Bulk {kind.value} accepted for processing",
    )


@router.post(
    "/bulk-create",
    response_model=BulkSubmitResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Submit a bulk create operation",
)
@inject
async def bulk_create(
    request: BulkSubmitRequest,
    dispatcher: FromDishka[BatchDispatcherProtocol],
) -> BulkSubmitResponse:
    return await _submit(OperationKind.CREATE, request, dispatcher)


@router.post(
    "/bulk-update",
    response_model=BulkSubmitResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Submit a bulk update operation",
)
@inject
async def bulk_update(
    request: BulkSubmitRequest,
    dispatcher: FromDishka[BatchDispatcherProtocol],
) -> BulkSubmitResponse:
    return await _submit(OperationKind.UPDATE, request, dispatcher)


@router.post(
    "/bulk-delete",
    response_model=BulkSubmitResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Submit a bulk delete operation",
)
@inject
async def bulk_delete(
    request: BulkSubmitRequest,
    dispatcher: FromDishka[BatchDispatcherProtocol],
) -> BulkSubmitResponse:
    return await _submit(OperationKind.DELETE, request, dispatcher)


@router.get(
    "/status/{operation_id}",
    response_model=OperationStatusResponse,
    summary="Current progress of an operation",
)
@inject
async def get_operation_status(
    operation_id: str,
    tracker: FromDishka[JobTrackerProtocol],
) -> OperationStatusResponse:
    """
    Pure read of the tracker's latest confirmed state.

    Unknown or expired ids return 404 OPERATION_NOT_FOUND.
    """
    snapshot = await tracker.get_status(operation_id)
    return OperationStatusResponse.from_snapshot(snapshot)


@router.get(
    "/result/{operation_id}",
    response_model=OperationResultResponse,
    summary="Progress of an operation plus its accumulated batch errors",
)
@inject
async def get_operation_result(
    operation_id: str,
    tracker: FromDishka[JobTrackerProtocol],
) -> OperationResultResponse:
    result = await tracker.get_result(operation_id)
    return OperationResultResponse.from_result(result)


@router.post(
    "/operations/{operation_id}/cancel",
    response_model=OperationStatusResponse,
    summary="Stop applying the remaining batches of an operation",
)
@inject
async def cancel_operation(
    operation_id: str,
    tracker: FromDishka[JobTrackerProtocol],
) -> OperationStatusResponse:
    """
    Flag the operation as cancelled. Batches not yet applied are recorded as
    failed with "operation cancelled"; cancelling a terminal operation is a
    no-op.
    """
    snapshot = await tracker.cancel(operation_id)
    logger.info(f"Cancel requested for operation {operation_id}")
    return OperationStatusResponse.from_snapshot(snapshot)
