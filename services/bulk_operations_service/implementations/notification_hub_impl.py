from __future__ import annotations

import asyncio
from collections import defaultdict

from bulkops_service_libs.logging_utils import create_service_logger

from services.bulk_operations_service.domain_models import OperationSnapshot
from services.bulk_operations_service.metrics import BulkOperationsMetrics
from services.bulk_operations_service.protocols import SubscriberConnectionProtocol

logger = create_service_logger("bulkops.notification_hub")


class NotificationHub:
    """
    Subscription registry for real-time operation progress.

    Maps operation ids to the connections watching them and pushes every
    change record it observes. Delivery is best-effort: a connection whose
    send fails or exceeds the send timeout is dropped together with all of
    its subscriptions. Sends run outside the registry lock, so a slow client
    only delays pushes for the operations it watches. Snapshots that do not
    supersede the last one pushed for an operation are discarded, so
    watchers never see counters go backwards.
    """

    def __init__(
        self,
        metrics: BulkOperationsMetrics,
        max_subscriptions_per_connection: int = 50,
        send_timeout: float = 5.0,
    ) -> None:
        self._connections: dict[str, SubscriberConnectionProtocol] = {}
        self._subscriptions: dict[str, set[str]] = defaultdict(set)
        self._watching: dict[str, set[str]] = defaultdict(set)
        self._last_pushed: dict[str, OperationSnapshot] = {}
        self._max_subscriptions = max_subscriptions_per_connection
        self._send_timeout = send_timeout
        self._metrics = metrics
        self._lock = asyncio.Lock()
        # Pushes for one operation go out in order; always taken before _lock
        self._send_locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def register(self, connection_id: str, connection: SubscriberConnectionProtocol) -> None:
        async with self._lock:
            self._connections[connection_id] = connection
            self._update_gauges()
        logger.info(
            f"Connection {connection_id} registered. Total connections: "
            f"{len(self._connections)}",
            extra={"connection_id": connection_id},
        )

    async def subscribe(
        self,
        connection_id: str,
        operation_id: str,
        current: OperationSnapshot | None = None,
    ) -> bool:
        """
        Subscribe a registered connection to an operation.

        If `current` is given, the connection immediately receives the most
        advanced of `current` and the last snapshot pushed for the operation.
        Returns False if the connection is unknown or at its subscription limit.
        """
        async with self._send_locks[operation_id]:
            async with self._lock:
                connection = self._connections.get(connection_id)
                if connection is None:
                    logger.warning(f"Subscribe from unknown connection {connection_id}")
                    return False

                watching = self._watching[connection_id]
                if operation_id not in watching and len(watching) >= self._max_subscriptions:
                    logger.warning(
                        f"Connection {connection_id} exceeded max subscriptions "
                        f"({self._max_subscriptions})",
                        extra={"connection_id": connection_id, "operation_id": operation_id},
                    )
                    return False

                watching.add(operation_id)
                self._subscriptions[operation_id].add(connection_id)
                self._update_gauges()
                logger.info(
                    f"Connection {connection_id} subscribed to operation {operation_id}",
                    extra={"connection_id": connection_id, "operation_id": operation_id},
                )

                if current is None:
                    return True
                last = self._last_pushed.get(operation_id)
                if current.supersedes(last):
                    self._last_pushed[operation_id] = current
                    last = current
                assert last is not None

            if not await self._send(connection_id, connection, last):
                async with self._lock:
                    self._drop_if_current_locked(connection_id, connection)
            return True

    async def unsubscribe(self, connection_id: str, operation_id: str) -> None:
        async with self._lock:
            self._watching.get(connection_id, set()).discard(operation_id)
            self._remove_subscription_locked(connection_id, operation_id)
            self._update_gauges()
        logger.debug(
            f"Connection {connection_id} unsubscribed from operation {operation_id}",
            extra={"connection_id": connection_id, "operation_id": operation_id},
        )

    async def disconnect(self, connection_id: str) -> None:
        async with self._lock:
            self._drop_locked(connection_id)
        logger.info(
            f"Connection {connection_id} disconnected. Remaining connections: "
            f"{len(self._connections)}",
            extra={"connection_id": connection_id},
        )

    async def on_change(self, operation_id: str, snapshot: OperationSnapshot) -> None:
        """Push a change record to every connection watching the operation."""
        async with self._send_locks[operation_id]:
            async with self._lock:
                if not snapshot.supersedes(self._last_pushed.get(operation_id)):
                    self._metrics.notification_pushes_total.labels(result="stale").inc()
                    logger.debug(f"Dropped stale snapshot for operation {operation_id}")
                    return

                targets = [
                    (connection_id, self._connections[connection_id])
                    for connection_id in self._subscriptions.get(operation_id, ())
                    if connection_id in self._connections
                ]
                if not targets:
                    return
                self._last_pushed[operation_id] = snapshot

            results = await asyncio.gather(
                *(
                    self._send(connection_id, connection, snapshot)
                    for connection_id, connection in targets
                )
            )

            failed = [target for target, sent in zip(targets, results) if not sent]
            if failed:
                async with self._lock:
                    for connection_id, connection in failed:
                        self._drop_if_current_locked(connection_id, connection)

        logger.debug(
            f"Pushed operation {operation_id} to "
            f"{len(targets) - len(failed)}/{len(targets)} connections",
            extra={"operation_id": operation_id, "status": snapshot.status.value},
        )

    async def _send(
        self,
        connection_id: str,
        connection: SubscriberConnectionProtocol,
        snapshot: OperationSnapshot,
    ) -> bool:
        try:
            await asyncio.wait_for(
                connection.send_json(snapshot.to_push_payload()), timeout=self._send_timeout
            )
        except TimeoutError:
            self._metrics.notification_pushes_total.labels(result="failed").inc()
            logger.warning(
                f"Push to connection {connection_id} timed out after "
                f"{self._send_timeout}s, dropping it",
                extra={"connection_id": connection_id},
            )
            return False
        except Exception as e:
            self._metrics.notification_pushes_total.labels(result="failed").inc()
            logger.warning(
                f"Push to connection {connection_id} failed, dropping it: {e}",
                extra={"connection_id": connection_id},
            )
            return False
        self._metrics.notification_pushes_total.labels(result="sent").inc()
        return True

    def _remove_subscription_locked(self, connection_id: str, operation_id: str) -> None:
        watchers = self._subscriptions.get(operation_id)
        if watchers is None:
            return
        watchers.discard(connection_id)
        if not watchers:
            del self._subscriptions[operation_id]
            self._last_pushed.pop(operation_id, None)
            send_lock = self._send_locks.get(operation_id)
            if send_lock is not None and not send_lock.locked():
                del self._send_locks[operation_id]

    def _drop_if_current_locked(
        self, connection_id: str, connection: SubscriberConnectionProtocol
    ) -> None:
        # The id may have been re-registered with a new connection during the send
        if self._connections.get(connection_id) is connection:
            self._drop_locked(connection_id)

    def _drop_locked(self, connection_id: str) -> None:
        self._connections.pop(connection_id, None)
        for operation_id in self._watching.pop(connection_id, set()):
            self._remove_subscription_locked(connection_id, operation_id)
        self._update_gauges()

    def _update_gauges(self) -> None:
        self._metrics.active_connections.set(len(self._connections))
        self._metrics.active_subscriptions.set(
            sum(len(watchers) for watchers in self._subscriptions.values())
        )

    def get_subscriber_count(self, operation_id: str) -> int:
        return len(self._subscriptions.get(operation_id, ()))

    def get_total_connections(self) -> int:
        return len(self._connections)

    def get_subscriptions(self, connection_id: str) -> set[str]:
        return set(self._watching.get(connection_id, ()))
