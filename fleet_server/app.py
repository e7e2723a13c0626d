from __future__ import annotations

import logging

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from fleet_server.cache import RedisCommandLease, RedisRateLimiter
from fleet_server.config import ServerConfig, load_config
from fleet_server.control import ControlGateway, build_control_transport
from fleet_server.db import ServerDatabase
from fleet_server.health import HealthAggregator
from fleet_server.health import router as health_router
from fleet_server.history import HeatPumpHistoryCheck
from fleet_server.ingest import TelemetryIngestService
from fleet_server.ingest import router as ingest_router
from fleet_server.push import NotificationDispatcher
from fleet_server.security import EnforceHTTPSMiddleware, SecurityHeadersMiddleware
from fleet_server.status import StatusRecorder
from fleet_server.telemetry import MetricsMiddleware
from fleet_server.telemetry import router as telemetry_router

logger = logging.getLogger("fleet_server.app")


def create_app(config: ServerConfig | None = None) -> FastAPI:
    cfg = config or load_config()

    app = FastAPI(
        title="Greenbro Fleet Core",
        version=cfg.version,
        docs_url="/docs" if cfg.dev_enable_docs else None,
        redoc_url="/redoc" if cfg.dev_enable_docs else None,
        openapi_url="/openapi.json" if cfg.dev_enable_docs else None,
    )

    db = ServerDatabase(cfg.database_url)
    if cfg.database_url.lower().startswith("sqlite://"):
        db.init_for_tests()
    status = StatusRecorder(db)
    limiter = RedisRateLimiter(cfg.redis_url, fail_closed=not cfg.is_test)
    lease = RedisCommandLease(cfg.redis_url, cfg.control.throttle_ms)
    dispatcher = NotificationDispatcher(db, cfg.push, status)
    gateway = ControlGateway(
        db,
        build_control_transport(cfg),
        status,
        lease=lease,
        timeout_seconds=cfg.control.timeout_ms / 1000.0,
    )

    app.state.config = cfg
    app.state.db = db
    app.state.status = status
    app.state.rate_limiter = limiter
    app.state.ingest_service = TelemetryIngestService(db, status)
    app.state.dispatcher = dispatcher
    app.state.control_gateway = gateway
    history_check = HeatPumpHistoryCheck(cfg.health, status)
    app.state.health_aggregator = HealthAggregator(
        db,
        cfg,
        push_check=dispatcher.run_health_check,
        history_check=history_check.run,
    )

    app.add_middleware(EnforceHTTPSMiddleware, enabled=cfg.enforce_https)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(MetricsMiddleware)

    app.include_router(ingest_router)
    app.include_router(health_router)
    app.include_router(telemetry_router)

    @app.get("/healthz")
    def healthz() -> JSONResponse:
        try:
            db.ping()
        except SQLAlchemyError as exc:
            return JSONResponse(status_code=500, content={"status": "error", "detail": str(exc.__class__.__name__)})
        return JSONResponse(content={"status": "ok"})

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        gateway.shutdown()

    return app


try:
    app = create_app()
except Exception:
    logger.exception("failed to create default app; configure environment variables before startup")
    app = FastAPI()
