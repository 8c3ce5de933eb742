"""
Prometheus metrics definitions for the bookshop services

All metrics live on one private registry so the three service roles expose
the same names and duplicate registration cannot happen on re-import.
"""

from prometheus_client import Counter, Histogram, Gauge, CollectorRegistry

registry = CollectorRegistry()

# =============================================================================
# HTTP API METRICS
# =============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests by method, endpoint, and status code",
    ["method", "endpoint", "status_code"],
    registry=registry,
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "endpoint"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
    registry=registry,
)

# =============================================================================
# DATABASE METRICS
# =============================================================================

db_query_duration_seconds = Histogram(
    "db_query_duration_seconds",
    "Database query execution time in seconds",
    ["operation"],
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
    registry=registry,
)

db_query_errors_total = Counter(
    "db_query_errors_total",
    "Total number of database query errors by type",
    ["error_type"],
    registry=registry,
)

# =============================================================================
# BROKER METRICS
# =============================================================================

broker_messages_published_total = Counter(
    "broker_messages_published_total",
    "Total messages published to the broker",
    ["queue", "status"],
    registry=registry,
)

broker_publish_duration_seconds = Histogram(
    "broker_publish_duration_seconds",
    "Time taken to publish a message to the broker",
    ["queue"],
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
    registry=registry,
)

broker_messages_consumed_total = Counter(
    "broker_messages_consumed_total",
    "Total messages handled by consumers",
    ["queue", "status"],  # success, duplicate, requeued, dead_lettered
    registry=registry,
)

broker_reconnects_total = Counter(
    "broker_reconnects_total",
    "Subscription re-opens after a broker error",
    ["queue"],
    registry=registry,
)

# =============================================================================
# OUTBOX METRICS
# =============================================================================

outbox_events_pending = Gauge(
    "outbox_events_pending",
    "Number of unpublished events in the outbox table",
    registry=registry,
)

outbox_events_processed_total = Counter(
    "outbox_events_processed_total",
    "Total outbox events processed",
    ["status"],
    registry=registry,
)

outbox_retry_attempts_total = Counter(
    "outbox_retry_attempts_total",
    "Total number of retry attempts for failed outbox events",
    ["queue"],
    registry=registry,
)

# =============================================================================
# CHOREOGRAPHY METRICS
# =============================================================================

orders_placed_total = Counter(
    "orders_placed_total",
    "Orders accepted by the order service",
    registry=registry,
)

order_rejections_total = Counter(
    "order_rejections_total",
    "Orders rejected before commit",
    ["reason"],  # validation, not_found, conflict
    registry=registry,
)

payments_recorded_total = Counter(
    "payments_recorded_total",
    "Payments persisted in response to OrderPlaced",
    ["method"],
    registry=registry,
)

stock_updates_applied_total = Counter(
    "stock_updates_applied_total",
    "PaymentProcessed events applied to stock",
    registry=registry,
)

stock_items_skipped_total = Counter(
    "stock_items_skipped_total",
    "Line items skipped because the book does not exist",
    registry=registry,
)

# =============================================================================
# BACKGROUND TASK METRICS
# =============================================================================

background_tasks_running = Gauge(
    "background_tasks_running",
    "Number of background tasks currently running",
    ["task_name"],
    registry=registry,
)

background_task_errors_total = Counter(
    "background_task_errors_total",
    "Total errors in background tasks",
    ["task_name", "error_type"],
    registry=registry,
)
