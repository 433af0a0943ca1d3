from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.requests import Request


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

pipeline_jobs_total = Counter(
    "pipeline_jobs_total",
    "Total pipeline passes by status",
    ["job_type", "status"],
)

pipeline_job_duration_seconds = Histogram(
    "pipeline_job_duration_seconds",
    "Pipeline pass duration in seconds",
    ["job_type"],
)

automation_queue_items_total = Counter(
    "automation_queue_items_total",
    "Automation queue items processed by outcome",
    ["outcome"],
)

automation_rule_executions_total = Counter(
    "automation_rule_executions_total",
    "Automation rule evaluations by status",
    ["status"],
)

automation_actions_total = Counter(
    "automation_actions_total",
    "Automation actions executed by type and outcome",
    ["action", "outcome"],
)

webhook_deliveries_total = Counter(
    "webhook_deliveries_total",
    "Webhook delivery attempts by status",
    ["event", "status"],
)

webhook_delivery_duration_seconds = Histogram(
    "webhook_delivery_duration_seconds",
    "Webhook delivery duration in seconds",
    ["event"],
)

inbound_messages_total = Counter(
    "inbound_messages_total",
    "Inbound provider messages by outcome",
    ["outcome"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _normalize_route_template(path: str) -> str:
    return _PATH_PARAM_RE.sub("{id}", path)


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None)
        if isinstance(path_format, str) and path_format:
            return _normalize_route_template(path_format)
        route_path = getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return _normalize_route_template(route_path)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    status_str = str(status)
    http_requests_total.labels(method=method, path=path, status=status_str).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_job(job_type: str, status: str, duration: float) -> None:
    pipeline_jobs_total.labels(job_type=job_type, status=status).inc()
    pipeline_job_duration_seconds.labels(job_type=job_type).observe(duration)


def observe_queue_item(outcome: str) -> None:
    automation_queue_items_total.labels(outcome=outcome).inc()


def observe_rule_execution(status: str) -> None:
    automation_rule_executions_total.labels(status=status).inc()


def observe_action(action: str, success: bool) -> None:
    automation_actions_total.labels(action=action, outcome="success" if success else "failure").inc()


def observe_webhook_delivery(event: str, status: str, duration: float) -> None:
    webhook_deliveries_total.labels(event=event, status=status).inc()
    webhook_delivery_duration_seconds.labels(event=event).observe(duration)


def observe_inbound_message(outcome: str) -> None:
    inbound_messages_total.labels(outcome=outcome).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
