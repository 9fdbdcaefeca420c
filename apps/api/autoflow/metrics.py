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

automation_runs_total = Counter(
    "automation_runs_total",
    "Total automation runs by trigger type and status",
    ["trigger_type", "status"],
)

automation_run_duration_seconds = Histogram(
    "automation_run_duration_seconds",
    "Automation run duration in seconds",
    ["trigger_type"],
)

automation_claim_conflicts_total = Counter(
    "automation_claim_conflicts_total",
    "Due automations skipped because another tick claimed them",
)

automation_action_failures_total = Counter(
    "automation_action_failures_total",
    "Failed automation actions by action type",
    ["action_type"],
)

automation_guardrail_blocks_total = Counter(
    "automation_guardrail_blocks_total",
    "Event automations blocked by a guardrail",
    ["reason"],
)

workflow_dispatch_total = Counter(
    "workflow_dispatch_total",
    "Workflow router dispatches by action and outcome",
    ["action", "outcome"],
)

service_auth_failures_total = Counter(
    "service_auth_failures_total",
    "Service credential authentication failures by reason",
    ["reason"],
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
        route_path = getattr(route, "path_format", None) or getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return _PATH_PARAM_RE.sub("{id}", route_path)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    status_str = str(status)
    http_requests_total.labels(method=method, path=path, status=status_str).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_automation_run(trigger_type: str, status: str, duration: float) -> None:
    automation_runs_total.labels(trigger_type=trigger_type, status=status).inc()
    automation_run_duration_seconds.labels(trigger_type=trigger_type).observe(duration)


def observe_claim_conflict() -> None:
    automation_claim_conflicts_total.inc()


def observe_action_failure(action_type: str) -> None:
    automation_action_failures_total.labels(action_type=action_type).inc()


def observe_guardrail_block(reason: str) -> None:
    automation_guardrail_blocks_total.labels(reason=reason).inc()


def observe_dispatch(action: str, outcome: str) -> None:
    workflow_dispatch_total.labels(action=action, outcome=outcome).inc()


def observe_service_auth_failure(reason: str) -> None:
    service_auth_failures_total.labels(reason=reason).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
