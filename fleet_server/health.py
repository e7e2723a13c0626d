from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any, Callable

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from fleet_core.health import (
    CONTROL_WINDOW,
    HEAT_PUMP_HISTORY_WINDOW,
    MQTT_WINDOW,
    PUSH_WINDOW,
    StatusSnapshot,
    aggregate_ok,
    alerts_worker_window,
    evaluate_subsystem,
)
from fleet_core.models import HealthReport
from fleet_server.config import ServerConfig
from fleet_server.db import ServerDatabase
from fleet_shared.constants import (
    STATUS_ALERTS_WORKER,
    STATUS_CONTROL_CHANNEL,
    STATUS_HEAT_PUMP_HISTORY,
    STATUS_MQTT_INGEST,
    STATUS_PUSH,
)

logger = logging.getLogger("fleet_server.health")

STATUS_KEYS = [
    STATUS_MQTT_INGEST,
    STATUS_CONTROL_CHANNEL,
    STATUS_ALERTS_WORKER,
    STATUS_PUSH,
    STATUS_HEAT_PUMP_HISTORY,
]


def control_configured(config: ServerConfig) -> bool:
    if config.control.disabled:
        return False
    return config.control.http_configured or config.feed.configured


class HealthAggregator:
    """Builds the ``/health-plus`` report.

    The datastore ping and the status read are guarded separately so a
    failing status table still yields a db verdict and vice versa.
    """

    def __init__(
        self,
        db: ServerDatabase,
        config: ServerConfig,
        push_check: Callable[[datetime], Any] | None = None,
        history_check: Callable[[datetime], Any] | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.db = db
        self.config = config
        self.push_check = push_check
        self.history_check = history_check
        self.clock = clock

    def build_report(self) -> HealthReport:
        now = self.clock()

        db_ok = False
        db_latency_ms: float | None = None
        try:
            db_latency_ms = round(self.db.ping(), 2)
            db_ok = True
        except Exception:
            logger.exception("health datastore ping failed")

        push_details: dict[str, Any] = {}
        if self.push_check is not None:
            try:
                sample = self.push_check(now)
                if sample is not None:
                    push_details = {"sample": sample.status, "detail": sample.detail}
            except Exception:
                logger.warning("push self-test failed during health check", exc_info=True)

        if self.history_check is not None:
            try:
                self.history_check(now)
            except Exception:
                logger.warning("heat pump history check failed during health check", exc_info=True)

        statuses: dict[str, StatusSnapshot] = {}
        status_available = True
        try:
            statuses = self.db.load_status(STATUS_KEYS)
        except Exception:
            status_available = False
            logger.exception("health status load failed")

        def subsystem(configured: bool, key: str, window, details: dict[str, Any] | None = None):  # type: ignore[no-untyped-def]
            return evaluate_subsystem(
                configured,
                statuses.get(key),
                window,
                now,
                status_available=status_available,
                details=details,
            )

        mqtt = subsystem(self.config.feed.configured, STATUS_MQTT_INGEST, MQTT_WINDOW)
        control = subsystem(control_configured(self.config), STATUS_CONTROL_CHANNEL, CONTROL_WINDOW)
        alerts_worker = subsystem(
            self.config.alerts.worker_enabled,
            STATUS_ALERTS_WORKER,
            alerts_worker_window(self.config.alerts.interval_seconds),
        )
        push = subsystem(self.config.push.configured, STATUS_PUSH, PUSH_WINDOW, push_details)
        heat_pump_history = subsystem(
            self.config.health.heat_pump_history_configured,
            STATUS_HEAT_PUMP_HISTORY,
            HEAT_PUMP_HISTORY_WINDOW,
        )

        return HealthReport(
            ok=aggregate_ok(db_ok, [mqtt, control, alerts_worker, push, heat_pump_history]),
            env=self.config.environment,
            version=self.config.version,
            db="ok" if db_ok else "error",
            db_latency_ms=db_latency_ms,
            status_available=status_available,
            mqtt=mqtt,
            control=control,
            alerts_worker=alerts_worker,
            push=push,
            heat_pump_history=heat_pump_history,
            checked_at=now,
        )


router = APIRouter(tags=["health"])


@router.get("/health-plus")
def health_plus(request: Request) -> JSONResponse:
    aggregator: HealthAggregator = request.app.state.health_aggregator
    try:
        report = aggregator.build_report()
    except Exception:
        logger.exception("health-plus failed")
        return JSONResponse(status_code=500, content={"ok": False, "error": "Internal Server Error"})
    return JSONResponse(content=report.model_dump(mode="json", by_alias=True))
