"""
Prometheus metrics for application monitoring.
"""
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
from prometheus_client.openmetrics.exposition import generate_latest as generate_latest_openmetrics
from fastapi import Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
import time


# Request metrics
http_requests_total = Counter(
    'http_requests_total',
    'Total number of HTTP requests',
    ['method', 'endpoint', 'status_code']
)

http_request_duration_seconds = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# Reservation metrics
reservations_created_total = Counter(
    'reservations_created_total',
    'Total number of stock reservations granted',
    ['origin_kind']
)

reservations_rejected_total = Counter(
    'reservations_rejected_total',
    'Total number of reservation requests refused by the admission check',
    ['reason']
)

reservations_transitions_total = Counter(
    'reservations_transitions_total',
    'Reservation state transitions performed by callers',
    ['state']
)

reservations_expired_total = Counter(
    'reservations_expired_total',
    'Reservations whose expiry was materialised by the sweeper'
)

sweeper_duration_seconds = Histogram(
    'sweeper_duration_seconds',
    'Duration of one expiration sweep in seconds',
    buckets=[0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0]
)

# Ledger metrics
ledger_entries_total = Counter(
    'ledger_entries_total',
    'Total number of stock ledger entries written',
    ['movement_kind']
)

# Database metrics
transaction_retries_total = Counter(
    'transaction_retries_total',
    'Units of work retried after lock contention or serialization failure',
    ['operation']
)


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Middleware to collect HTTP request metrics."""

    async def dispatch(self, request: Request, call_next):
        start_time = time.time()

        if request.url.path == "/metrics":
            return await call_next(request)

        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
        finally:
            duration = time.time() - start_time
            # Route template keeps label cardinality bounded (/reservations/{reservation_id})
            route = request.scope.get("route")
            endpoint = getattr(route, "path", request.url.path)

            http_requests_total.labels(
                method=request.method,
                endpoint=endpoint,
                status_code=status_code
            ).inc()

            http_request_duration_seconds.labels(
                method=request.method,
                endpoint=endpoint
            ).observe(duration)

        return response


def get_metrics_response(openmetrics: bool = False) -> Response:
    """
    Get Prometheus metrics response.

    Args:
        openmetrics: If True, return OpenMetrics format, else Prometheus format

    Returns:
        Response with metrics data
    """
    if openmetrics:
        content = generate_latest_openmetrics()
        content_type = "application/openmetrics-text; version=1.0.0; charset=utf-8"
    else:
        content = generate_latest()
        content_type = CONTENT_TYPE_LATEST

    return Response(content=content, media_type=content_type)
