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

sweep_runs_total = Counter(
    "growth_sweep_runs_total",
    "Total automation sweep runs by status",
    ["sweep", "status"],
)

sweep_duration_seconds = Histogram(
    "growth_sweep_duration_seconds",
    "Automation sweep duration in seconds",
    ["sweep"],
)

sweep_overlap_skips_total = Counter(
    "growth_sweep_overlap_skips_total",
    "Sweep ticks skipped because the previous run was still in progress",
    ["sweep"],
)

leads_assigned_total = Counter(
    "growth_leads_assigned_total",
    "Total leads assigned by the round-robin sweep",
)

escalations_total = Counter(
    "growth_escalations_total",
    "Total stale deal escalations by tier",
    ["tier"],
)

workflow_rule_matches_total = Counter(
    "growth_workflow_rule_matches_total",
    "Total workflow rule matches by action type",
    ["action_type"],
)

notifications_created_total = Counter(
    "growth_notifications_created_total",
    "Total in-app notifications created by type",
    ["type"],
)

emails_total = Counter(
    "growth_emails_total",
    "Total outbound emails by outcome",
    ["outcome"],
)

lead_score_histogram = Histogram(
    "growth_lead_score",
    "Distribution of computed lead scores",
    buckets=(0, 10, 20, 30, 40, 50, 60, 70, 80, 90, 100),
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


def observe_sweep(sweep: str, status: str, duration: float) -> None:
    sweep_runs_total.labels(sweep=sweep, status=status).inc()
    sweep_duration_seconds.labels(sweep=sweep).observe(duration)


def observe_sweep_overlap(sweep: str) -> None:
    sweep_overlap_skips_total.labels(sweep=sweep).inc()


def observe_leads_assigned(count: int = 1) -> None:
    if count > 0:
        leads_assigned_total.inc(count)


def observe_escalation(tier: str) -> None:
    escalations_total.labels(tier=tier).inc()


def observe_workflow_match(action_type: str) -> None:
    workflow_rule_matches_total.labels(action_type=action_type).inc()


def observe_notification(notification_type: str) -> None:
    notifications_created_total.labels(type=notification_type).inc()


def observe_email(outcome: str) -> None:
    emails_total.labels(outcome=outcome).inc()


def observe_lead_score(score: int) -> None:
    lead_score_histogram.observe(score)


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
