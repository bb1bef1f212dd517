from __future__ import annotations

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram


class BulkOperationsMetrics:
    """Prometheus metrics for the Bulk Operations Service."""

    def __init__(self, registry: CollectorRegistry | None = None):
        registry = registry or REGISTRY
        self.registry = registry

        # Standard HTTP metrics
        self.http_requests_total = Counter(
            "bulkops_http_requests_total",
            "Total number of HTTP requests for Bulk Operations Service.",
            ["method", "endpoint", "http_status"],
            registry=registry,
        )
        self.http_request_duration_seconds = Histogram(
            "bulkops_http_request_duration_seconds",
            "HTTP request duration in seconds for Bulk Operations Service.",
            ["method", "endpoint"],
            registry=registry,
        )

        # Dispatch
        self.operations_submitted_total = Counter(
            "bulkops_operations_submitted_total",
            "Operations accepted for processing",
            ["kind"],
            registry=registry,
        )
        self.batches_enqueued_total = Counter(
            "bulkops_batches_enqueued_total",
            "Batch tasks written to the work queue",
            registry=registry,
        )
        self.enqueue_failures_total = Counter(
            "bulkops_enqueue_failures_total",
            "Submits that failed while enqueuing",
            registry=registry,
        )

        # Workers and tracking
        self.batch_outcomes_total = Counter(
            "bulkops_batch_outcomes_total",
            "Batch outcomes applied by the tracker",
            ["state"],  # state: done, failed
            registry=registry,
        )
        self.duplicate_reports_total = Counter(
            "bulkops_duplicate_reports_total",
            "Outcome reports collapsed because the batch was already terminal",
            registry=registry,
        )
        self.redeliveries_total = Counter(
            "bulkops_redeliveries_total",
            "Tasks nacked for redelivery after a transient failure",
            ["reason"],  # reason: transient, timeout, contention
            registry=registry,
        )
        self.operations_finalized_total = Counter(
            "bulkops_operations_finalized_total",
            "Operations that reached a terminal status",
            ["status"],
            registry=registry,
        )
        self.batch_apply_duration_seconds = Histogram(
            "bulkops_batch_apply_duration_seconds",
            "Backing-store apply latency per batch",
            ["kind"],
            buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60, 120],
            registry=registry,
        )

        # Notifications
        self.notification_pushes_total = Counter(
            "bulkops_notification_pushes_total",
            "Snapshot pushes to subscribed connections",
            ["result"],  # result: sent, failed, stale
            registry=registry,
        )
        self.active_subscriptions = Gauge(
            "bulkops_active_subscriptions",
            "Current number of (connection, operation) subscriptions",
            registry=registry,
        )
        self.active_connections = Gauge(
            "bulkops_active_connections",
            "Current number of registered real-time connections",
            registry=registry,
        )
