"""Prometheus metric definitions for the lifecycle service."""

from prometheus_client import Counter, Histogram, generate_latest
from starlette.responses import Response


transitions_total = Counter(
    "transitions_total",
    "Transition attempts by resource kind, action and outcome",
    ["service", "kind", "action", "outcome"],
)
transition_conflicts_total = Counter(
    "transition_conflicts_total",
    "Conditional writes rejected because the resource moved underneath",
    ["service", "kind", "action"],
)
provider_calls_total = Counter(
    "provider_calls_total",
    "Payment provider calls by operation and outcome",
    ["service", "operation", "outcome"],
)
provider_latency_seconds = Histogram(
    "provider_latency_seconds",
    "Payment provider call latency seconds",
    ["service", "operation"],
)
duplicate_events_skipped_total = Counter(
    "duplicate_events_skipped_total",
    "Duplicate webhook events skipped",
    ["service", "source"],
)
audit_write_failures_total = Counter(
    "audit_write_failures_total",
    "Audit events that could not be recorded after local retries",
    ["service"],
)
notification_failures_total = Counter(
    "notification_failures_total",
    "Notifications that failed to send",
    ["service", "template"],
)
payment_invariant_violations_total = Counter(
    "payment_invariant_violations_total",
    "Payment data-integrity violations (alerting)",
    ["service"],
)
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["service", "route", "method", "status_code"],
)
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration seconds",
    ["service", "route", "method"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
