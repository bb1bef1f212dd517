from __future__ import annotations

import json
from typing import Any
from uuid import uuid4

from bulkops_service_libs.logging_utils import create_service_logger
from dishka.integrations.fastapi import FromDishka, inject
from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

from services.bulk_operations_service.exceptions import OperationNotFoundError
from services.bulk_operations_service.protocols import (
    JobTrackerProtocol,
    NotificationHubProtocol,
)

router = APIRouter()
logger = create_service_logger("bulkops.websocket_routes")


@router.websocket("/ws")
@inject
async def operations_websocket(
    websocket: WebSocket,
    hub: FromDishka[NotificationHubProtocol],
    tracker: FromDishka[JobTrackerProtocol],
) -> None:
    """
    Real-time progress channel.

    Clients send {"operationId": id} to subscribe and
    {"action": "unsubscribe", "operationId": id} to stop watching. Every
    tracked change is pushed as {operationId, status, total_batches,
    processed_batches, failed_batches}. Closing the connection drops all of
    its subscriptions.
    """
    await websocket.accept()
    connection_id = uuid4().hex
    await hub.register(connection_id, websocket)

    try:
        while True:
            raw = await websocket.receive_text()
            await _handle_client_message(websocket, connection_id, raw, hub, tracker)
    except WebSocketDisconnect:
        logger.info(
            f"WebSocket {connection_id} closed by client",
            extra={"connection_id": connection_id},
        )
    except Exception as e:
        logger.error(
            f"Unexpected error on WebSocket {connection_id}: {e}",
            exc_info=True,
            extra={"connection_id": connection_id},
        )
        try:
            await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
        except Exception as close_error:
            logger.debug(f"WebSocket {connection_id} already closed: {close_error}")
    finally:
        await hub.disconnect(connection_id)


async def _handle_client_message(
    websocket: WebSocket,
    connection_id: str,
    raw: str,
    hub: NotificationHubProtocol,
    tracker: JobTrackerProtocol,
) -> None:
    try:
        message: Any = json.loads(raw)
    except json.JSONDecodeError:
        await websocket.send_json({"error": "message must be JSON"})
        return

    operation_id = message.get("operationId") if isinstance(message, dict) else None
    if not isinstance(operation_id, str) or not operation_id:
        await websocket.send_json({"error": "message must carry an operationId"})
        return

    action = message.get("action", "subscribe")
    if action == "unsubscribe":
        await hub.unsubscribe(connection_id, operation_id)
        await websocket.send_json({"operationId": operation_id, "action": "unsubscribed"})
        return
    if action != "subscribe":
        await websocket.send_json({"operationId": operation_id, "error": f"unknown action {action}"})
        return

    try:
        snapshot = await tracker.get_status(operation_id)
    except OperationNotFoundError:
        await websocket.send_json({"operationId": operation_id, "error": "operation not found"})
        return

    if not await hub.subscribe(connection_id, operation_id, current=snapshot):
        await websocket.send_json(
            {"operationId": operation_id, "error": "subscription limit reached"}
        )
