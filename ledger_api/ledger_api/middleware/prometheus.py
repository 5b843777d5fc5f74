"""Prometheus metrics for HTTP traffic and ledger reconciliation.

Exposes standard RED metrics (Rate, Errors, Duration) for every request
plus counters for reconciliation passes, summaries written, pass
conflicts and registrations.

Requests are labelled with the matched route template (e.g.
``/api/v1/usage/{tenant_id}/summaries``) so tenant ids never become label
values.  Unmatched paths fall back to regex normalisation.
"""

from __future__ import annotations

import logging
import re
import time

from prometheus_client import Counter, Histogram
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from ledger_core.ledger.models import ReconcileReport

logger = logging.getLogger(__name__)

HTTP_REQUESTS_TOTAL = Counter(
    "ledger_http_requests_total",
    "Total HTTP requests by method, path, and status code",
    ["method", "path", "status_code"],
)

HTTP_REQUEST_DURATION = Histogram(
    "ledger_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

RECONCILIATION_PASSES_TOTAL = Counter(
    "ledger_reconciliation_passes_total",
    "Reconciliation passes by usage type",
    ["usage_type"],
)

SUMMARIES_WRITTEN_TOTAL = Counter(
    "ledger_usage_summaries_written_total",
    "Usage summary versions written, split into first versions and corrections",
    ["usage_type", "kind"],
)

RECONCILIATION_CONFLICTS_TOTAL = Counter(
    "ledger_reconciliation_conflicts_total",
    "Reconcile requests rejected because a pass was already in flight",
)

RECONCILIATION_FAILURES_TOTAL = Counter(
    "ledger_reconciliation_failures_total",
    "Pairs whose reconciliation failed after retries",
)

RECONCILE_DURATION = Histogram(
    "ledger_reconcile_duration_seconds",
    "Wall-clock duration of a reconcile trigger",
    buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 15.0, 60.0, 300.0),
)

REGISTRATIONS_TOTAL = Counter(
    "ledger_registrations_total",
    "Registrations handled, by attribution outcome",
    ["outcome"],
)


def record_reconcile_report(report: ReconcileReport) -> None:
    """Fold one :class:`ReconcileReport` into the ledger counters."""
    for pair in report.pairs:
        usage_type = pair.usage_type.value
        if pair.passes:
            RECONCILIATION_PASSES_TOTAL.labels(usage_type=usage_type).inc(len(pair.passes))
        corrections = pair.corrections
        first_versions = pair.summaries_written - corrections
        if first_versions:
            SUMMARIES_WRITTEN_TOTAL.labels(usage_type=usage_type, kind="new").inc(first_versions)
        if corrections:
            SUMMARIES_WRITTEN_TOTAL.labels(usage_type=usage_type, kind="correction").inc(corrections)
    if report.conflicts:
        RECONCILIATION_CONFLICTS_TOTAL.inc(len(report.conflicts))
    if report.failures:
        RECONCILIATION_FAILURES_TOTAL.inc(len(report.failures))
    if report.finished_at is not None:
        RECONCILE_DURATION.observe((report.finished_at - report.started_at).total_seconds())


# ---------------------------------------------------------------------------
# Path normalisation for unmatched routes
# ---------------------------------------------------------------------------

_PATH_PARAM_PATTERNS = [
    # UUIDs (8-4-4-4-12 hex format)
    (re.compile(r"/[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}"), "/{id}"),
    # Long hex strings
    (re.compile(r"/[0-9a-f]{12,64}"), "/{id}"),
    # Pure numeric segments
    (re.compile(r"/\d+"), "/{id}"),
]


def _normalise_path(path: str) -> str:
    """Collapse path parameters to prevent cardinality explosion."""
    for pattern, replacement in _PATH_PARAM_PATTERNS:
        path = pattern.sub(replacement, path)
    return path


def _route_label(request: Request) -> str:
    """Full route template for the matched route, e.g. ``/api/v1/usage/{tenant_id}``.

    Depending on the framework version the matched route carries either
    the full template or only the part below its router's prefix; in the
    latter case the prefix segments are taken from the request path.
    """
    path = request.url.path
    route = request.scope.get("route")
    template = getattr(route, "path", None)
    if not isinstance(template, str):
        return _normalise_path(path)

    regex = getattr(route, "path_regex", None)
    if regex is not None and regex.match(path):
        return template

    template_parts = template.strip("/").split("/")
    path_parts = path.strip("/").split("/")
    if len(template_parts) > len(path_parts):
        return _normalise_path(path)
    prefix = path_parts[: len(path_parts) - len(template_parts)]
    return "/" + "/".join(prefix + template_parts)


# Paths excluded from metrics recording.
_SKIP_PATHS: frozenset[str] = frozenset({"/metrics", "/docs", "/redoc", "/openapi.json", "/favicon.ico"})


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Record HTTP request rate, error rate and latency."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path in _SKIP_PATHS:
            return await call_next(request)

        method = request.method
        start = time.monotonic()
        response = await call_next(request)
        duration = time.monotonic() - start

        path = _route_label(request)
        HTTP_REQUESTS_TOTAL.labels(method=method, path=path, status_code=str(response.status_code)).inc()
        HTTP_REQUEST_DURATION.labels(method=method, path=path).observe(duration)
        return response
