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

stage_transitions_total = Counter(
    "stagegate_transitions_total",
    "Transition attempts by workflow and outcome",
    ["workflow", "outcome"],
)

stage_transition_rejections_total = Counter(
    "stagegate_transition_rejections_total",
    "Rejected transition attempts by kind",
    ["workflow", "kind"],
)

stage_transition_duration_seconds = Histogram(
    "stagegate_transition_duration_seconds",
    "Time spent evaluating and committing a transition",
    ["workflow"],
)

stage_transition_conflicts_total = Counter(
    "stagegate_transition_conflicts_total",
    "Optimistic version conflicts while committing transitions",
    ["workflow"],
)

approval_resolutions_total = Counter(
    "stagegate_approval_resolutions_total",
    "Approval requests resolved by decision",
    ["decision"],
)

provisioning_total = Counter(
    "stagegate_provisioning_total",
    "Downstream provisioning attempts by entity and result",
    ["entity", "result"],
)

stage_registry_cache_hit_total = Counter(
    "stagegate_stage_registry_cache_hit_total",
    "Stage registry cache hits",
)

stage_registry_cache_miss_total = Counter(
    "stagegate_stage_registry_cache_miss_total",
    "Stage registry cache misses",
)

notification_intents_dispatched_total = Counter(
    "stagegate_notification_intents_dispatched_total",
    "Notification intents handed to the delivery collaborator",
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


def observe_transition(workflow: str, outcome: str, duration: float, kind: str | None = None) -> None:
    stage_transitions_total.labels(workflow=workflow, outcome=outcome).inc()
    stage_transition_duration_seconds.labels(workflow=workflow).observe(duration)
    if kind is not None:
        stage_transition_rejections_total.labels(workflow=workflow, kind=kind).inc()


def observe_transition_conflict(workflow: str) -> None:
    stage_transition_conflicts_total.labels(workflow=workflow).inc()


def observe_approval_resolution(decision: str) -> None:
    approval_resolutions_total.labels(decision=decision).inc()


def observe_provisioning(entity: str, result: str) -> None:
    provisioning_total.labels(entity=entity, result=result).inc()


def observe_stage_cache_hit() -> None:
    stage_registry_cache_hit_total.inc()


def observe_stage_cache_miss() -> None:
    stage_registry_cache_miss_total.inc()


def observe_notifications_dispatched(count: int = 1) -> None:
    if count > 0:
        notification_intents_dispatched_total.inc(count)


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
