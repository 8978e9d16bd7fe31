"""Prometheus metrics for the pgdbus daemon.

Exposed over HTTP only when a metrics port is configured.
"""

from prometheus_client import Counter, Gauge, Histogram

REQUEST_DURATION = Histogram(
    "pgdbus_request_duration_seconds",
    "Bus method call duration in seconds",
    ["method", "status"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

REQUEST_COUNT = Counter(
    "pgdbus_requests_total",
    "Total bus method calls handled",
    ["method", "status"],
)

PING_STATUS = Counter(
    "pgdbus_ping_status_total",
    "Ping results by reachability status",
    ["status"],
)

PENDING_REQUESTS = Gauge(
    "pgdbus_pending_requests",
    "Bus messages received but not yet dispatched",
)
