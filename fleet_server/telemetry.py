from __future__ import annotations

import time

from fastapi import APIRouter, HTTPException, Request
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from fleet_server.security import constant_time_equals

REQUEST_COUNT = Counter(
    "fleet_http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_LATENCY = Histogram(
    "fleet_http_request_duration_seconds",
    "Request duration seconds",
    ["method", "path"],
)
INGEST_ACCEPTED = Counter("fleet_ingest_accepted_total", "Accepted telemetry payloads", ["source"])
INGEST_REJECTED = Counter("fleet_ingest_rejected_total", "Rejected telemetry payloads", ["source", "reason"])
INGEST_POINTS = Counter("fleet_ingest_points_total", "Telemetry points written", ["source"])
INGEST_SKIPPED = Counter("fleet_ingest_skipped_total", "Telemetry payloads without metric values", ["source"])
FEED_RECONNECTS = Counter("fleet_feed_reconnects_scheduled_total", "Scheduled feed reconnect attempts")
ALERTS_RAISED = Counter("fleet_alerts_raised_total", "New alert episodes", ["type", "severity"])
ALERTS_CLEARED = Counter("fleet_alerts_cleared_total", "Cleared alert episodes", ["type"])
ALERT_CYCLES = Counter("fleet_alert_cycles_total", "Rule engine cycles", ["outcome"])
ALERT_CYCLE_DURATION = Histogram("fleet_alert_cycle_duration_seconds", "Rule engine cycle duration seconds")
CONTROL_COMMANDS = Counter("fleet_control_commands_total", "Control command outcomes", ["command_type", "status"])
PUSH_DISPATCH = Counter("fleet_push_dispatch_total", "Push dispatch attempts", ["outcome"])


class MetricsMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:  # type: ignore[override]
        start = time.monotonic()
        response = await call_next(request)
        duration = time.monotonic() - start
        method = request.method
        route = request.scope.get("route")
        path = getattr(route, "path", request.url.path)
        REQUEST_COUNT.labels(method=method, path=path, status=str(response.status_code)).inc()
        REQUEST_LATENCY.labels(method=method, path=path).observe(duration)
        return response


router = APIRouter()


@router.get("/internal/metrics")
def metrics(request: Request) -> Response:
    token = request.app.state.config.metrics_token
    if token:
        supplied = request.headers.get("X-Metrics-Token", "")
        if not constant_time_equals(supplied, token):
            raise HTTPException(status_code=401, detail="metrics token required")
    payload = generate_latest()
    return Response(content=payload, media_type=CONTENT_TYPE_LATEST)
