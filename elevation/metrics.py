from __future__ import annotations

import time
from typing import Callable, Optional

from fastapi import Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, Info, generate_latest

from elevation.core.settings import S

METRICS_ENABLED = S.metrics_enabled

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_ERRORS = Counter(
    "http_request_errors_total",
    "Total HTTP requests resulting in server errors",
    ["method", "path", "status"],
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "path"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10),
)
MFA_SUCCESSES = Counter(
    "mfa_success_total",
    "Total successful MFA checks",
)
MFA_FAILURES = Counter(
    "mfa_failure_total",
    "Total failed MFA checks",
    ["category"],
)
MFA_CHALLENGES = Counter(
    "mfa_challenges_total",
    "MFA challenges requested, by factor kind and outcome",
    ["kind", "outcome"],
)
ELEVATION_OUTCOMES = Counter(
    "elevation_outcomes_total",
    "Finished elevation attempts by outcome",
    ["outcome"],
)
SENSITIVE_ACTIONS = Counter(
    "sensitive_action_total",
    "Gated sensitive actions by outcome",
    ["outcome"],
)
ACTIVE_FLOWS = Gauge(
    "elevation_active_flows",
    "Elevation flows held in this process",
)
APP_INFO = Info("app", "Application info")
UPTIME_SECONDS = Gauge("process_uptime_seconds", "Process uptime in seconds")

_START_TIME = time.monotonic()


def _route_path(request: Request) -> str:
    route = request.scope.get("route")
    if route and getattr(route, "path", None):
        return route.path
    return request.url.path


def record_mfa_success() -> None:
    MFA_SUCCESSES.inc()


def record_mfa_failure(category: str) -> None:
    MFA_FAILURES.labels(category=category).inc()


def record_challenge(kind: str, outcome: str) -> None:
    MFA_CHALLENGES.labels(kind=kind, outcome=outcome).inc()


def record_elevation(outcome: str) -> None:
    ELEVATION_OUTCOMES.labels(outcome=outcome).inc()


def record_sensitive_action(outcome: str) -> None:
    SENSITIVE_ACTIONS.labels(outcome=outcome).inc()


def set_active_flows(n: int) -> None:
    ACTIVE_FLOWS.set(n)


async def metrics_middleware(request: Request, call_next: Callable[[Request], Response]) -> Response:
    path = _route_path(request)
    method = request.method
    start = time.perf_counter()
    status_code = 500
    response: Optional[Response] = None
    try:
        response = await call_next(request)
        status_code = response.status_code
        return response
    finally:
        REQUEST_LATENCY.labels(method=method, path=path).observe(time.perf_counter() - start)
        REQUEST_COUNT.labels(method=method, path=path, status=str(status_code)).inc()
        if status_code >= 500:
            REQUEST_ERRORS.labels(method=method, path=path, status=str(status_code)).inc()


def set_app_info(name: str, version: str) -> None:
    APP_INFO.info({"name": name, "version": version})


def metrics_endpoint() -> Response:
    UPTIME_SECONDS.set(time.monotonic() - _START_TIME)
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
