from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest
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

realtime_sessions = Gauge(
    "realtime_sessions",
    "Currently connected realtime sessions",
)

realtime_events_published_total = Counter(
    "realtime_events_published_total",
    "Total domain events published to tenant rooms",
    ["event"],
)

realtime_events_delivered_total = Counter(
    "realtime_events_delivered_total",
    "Total event frames enqueued for connected sessions",
    ["event"],
)

realtime_events_dropped_total = Counter(
    "realtime_events_dropped_total",
    "Total event frames not delivered by reason",
    ["reason"],
)

realtime_room_joins_total = Counter(
    "realtime_room_joins_total",
    "Total room join requests by outcome",
    ["outcome"],
)

transcript_analyses_total = Counter(
    "transcript_analyses_total",
    "Total transcript analyses by outcome",
    ["outcome"],
)

transcript_analysis_duration_seconds = Histogram(
    "transcript_analysis_duration_seconds",
    "Transcript analysis duration in seconds",
)

transcript_assignments_dropped_total = Counter(
    "transcript_assignments_dropped_total",
    "Total model-proposed assignments dropped by validation",
)

assignments_applied_total = Counter(
    "assignments_applied_total",
    "Total pipeline assignments applied by action and status",
    ["action", "status"],
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


def observe_session_opened() -> None:
    realtime_sessions.inc()


def observe_session_closed() -> None:
    realtime_sessions.dec()


def observe_event_published(event: str, delivered: int) -> None:
    realtime_events_published_total.labels(event=event).inc()
    if delivered > 0:
        realtime_events_delivered_total.labels(event=event).inc(delivered)


def observe_event_dropped(reason: str) -> None:
    realtime_events_dropped_total.labels(reason=reason).inc()


def observe_room_join(outcome: str) -> None:
    realtime_room_joins_total.labels(outcome=outcome).inc()


def observe_transcript_analysis(outcome: str, duration: float, dropped: int = 0) -> None:
    transcript_analyses_total.labels(outcome=outcome).inc()
    transcript_analysis_duration_seconds.observe(duration)
    if dropped > 0:
        transcript_assignments_dropped_total.inc(dropped)


def observe_assignment_applied(action: str, status: str) -> None:
    assignments_applied_total.labels(action=action, status=status).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
