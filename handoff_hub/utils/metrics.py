"""Prometheus metrics shared by the orchestrator and the delivery layer."""

from prometheus_client import Counter, Gauge, Histogram

REQUEST_COUNT = Counter(
    "handoff_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"]
)
REQUEST_LATENCY = Histogram(
    "handoff_request_latency_seconds",
    "HTTP request latency",
    ["method", "endpoint"]
)
TRANSFER_EVENTS = Counter(
    "handoff_transfer_events_total",
    "Transfer lifecycle events",
    ["event", "reason"]
)
DELIVERY_DROPS = Counter(
    "handoff_delivery_dropped_total",
    "Live deliveries skipped because the target connection was absent or closed",
    ["channel"]
)
QUEUE_DEPTH = Gauge(
    "handoff_waiting_queue_depth",
    "Sessions waiting for an available agent"
)
ACTIVE_CONNECTIONS = Gauge(
    "handoff_active_connections",
    "Authenticated real-time connections",
    ["user_type"]
)
