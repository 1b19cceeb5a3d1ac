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

crm_conversions_total = Counter(
    "crm_conversions_total",
    "Prospect to member conversions by outcome",
    ["outcome"],
)

crm_import_rows_total = Counter(
    "crm_import_rows_total",
    "Lead import rows by source and outcome",
    ["source", "outcome"],
)

crm_import_duration_seconds = Histogram(
    "crm_import_duration_seconds",
    "Lead import duration in seconds",
    ["source"],
)

crm_task_transitions_total = Counter(
    "crm_task_transitions_total",
    "Task status transitions",
    ["status"],
)

crm_lead_feed_sync_total = Counter(
    "crm_lead_feed_sync_total",
    "Automatic lead feed sync runs by status",
    ["status"],
)

visibility_denied_total = Counter(
    "visibility_denied_total",
    "Mutations rejected by the role and branch rules",
    ["resource", "action"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        for attribute in ("path_format", "path"):
            template = getattr(route, attribute, None)
            if isinstance(template, str) and template:
                return _PATH_PARAM_RE.sub("{id}", template)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_conversion(outcome: str) -> None:
    crm_conversions_total.labels(outcome=outcome).inc()


def observe_import(source: str, counts: dict[str, int], duration: float) -> None:
    for outcome in ("created", "duplicate", "incomplete", "failed"):
        value = counts.get(outcome, 0)
        if value > 0:
            crm_import_rows_total.labels(source=source, outcome=outcome).inc(value)
    crm_import_duration_seconds.labels(source=source).observe(duration)


def observe_task_transition(status: str) -> None:
    crm_task_transitions_total.labels(status=status).inc()


def observe_lead_feed_sync(status: str) -> None:
    crm_lead_feed_sync_total.labels(status=status).inc()


def observe_visibility_denied(resource: str, action: str) -> None:
    visibility_denied_total.labels(resource=resource, action=action).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
