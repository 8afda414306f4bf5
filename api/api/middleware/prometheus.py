"""Prometheus metrics middleware and domain counters.

Exposes RED metrics (Rate, Errors, Duration) for every HTTP request plus
counters for orders, transitions, notification delivery and webhook
events.

Path normalisation collapses ids and tenant slugs (``/api/public/acme/orders``
-> ``/api/public/{tenant}/orders``) to keep label cardinality bounded.
"""

from __future__ import annotations

import logging
import re
import time

from groupbuy_core.notifications.dispatcher import DispatchReport
from prometheus_client import Counter, Histogram
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger(__name__)

HTTP_REQUESTS_TOTAL = Counter(
    "groupbuy_http_requests_total",
    "Total HTTP requests by method, path, and status code",
    ["method", "path", "status_code"],
)

HTTP_REQUEST_DURATION = Histogram(
    "groupbuy_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

ORDERS_CREATED_TOTAL = Counter(
    "groupbuy_orders_created_total",
    "Order submissions by result (created or replayed)",
    ["result"],
)

ORDER_TRANSITIONS_TOTAL = Counter(
    "groupbuy_order_transitions_total",
    "Host actions applied to orders",
    ["action"],
)

NOTIFICATIONS_TOTAL = Counter(
    "groupbuy_notifications_total",
    "Notification delivery attempts by outcome",
    ["outcome"],
)

WEBHOOK_EVENTS_TOTAL = Counter(
    "groupbuy_webhook_events_total",
    "Inbound webhook events by outcome",
    ["outcome"],
)

# ---------------------------------------------------------------------------
# Domain hooks
# ---------------------------------------------------------------------------


def record_dispatch_report(report: DispatchReport) -> None:
    """Feed one dispatcher pass into the notification and webhook counters."""
    for outcome, count in (
        ("sent", report.sent),
        ("retried", report.retried),
        ("dead_lettered", report.dead_lettered),
        ("lost_lease", report.lost_lease),
    ):
        if count:
            NOTIFICATIONS_TOTAL.labels(outcome=outcome).inc(count)
    if report.webhooks_replayed:
        WEBHOOK_EVENTS_TOTAL.labels(outcome="replayed").inc(report.webhooks_replayed)
    if report.webhooks_failed:
        WEBHOOK_EVENTS_TOTAL.labels(outcome="failed").inc(report.webhooks_failed)


# ---------------------------------------------------------------------------
# Path normalisation
# ---------------------------------------------------------------------------

_PATH_PARAM_PATTERNS = [
    (re.compile(r"^/api/public/[^/]+"), "/api/public/{tenant}"),
    (re.compile(r"^/api/webhooks/line/[^/]+"), "/api/webhooks/line/{tenant}"),
    (re.compile(r"^/api/host/idempotency/[^/]+"), "/api/host/idempotency/{key}"),
    # UUIDs, hex or dashed.
    (re.compile(r"/[0-9a-f]{8}-?[0-9a-f]{4}-?[0-9a-f]{4}-?[0-9a-f]{4}-?[0-9a-f]{12}"), "/{id}"),
    (re.compile(r"/\d+"), "/{id}"),
]


def _normalise_path(path: str) -> str:
    """Collapse path parameters to prevent cardinality explosion."""
    for pattern, replacement in _PATH_PARAM_PATTERNS:
        path = pattern.sub(replacement, path)
    return path


# Paths excluded from metrics recording.
_SKIP_PATHS: frozenset[str] = frozenset({"/metrics", "/docs", "/redoc", "/openapi.json", "/favicon.ico"})


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Record HTTP request rate, error rate, and latency."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path
        if path in _SKIP_PATHS:
            return await call_next(request)

        method = request.method
        normalised = _normalise_path(path)

        start = time.monotonic()
        response = await call_next(request)
        duration = time.monotonic() - start

        HTTP_REQUESTS_TOTAL.labels(
            method=method,
            path=normalised,
            status_code=str(response.status_code),
        ).inc()
        HTTP_REQUEST_DURATION.labels(method=method, path=normalised).observe(duration)

        return response
