from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Callable

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from fleet_core.metrics import build_snapshot_document, derive_metrics, present_metrics
from fleet_server.db import ServerDatabase
from fleet_server.security import constant_time_equals
from fleet_server.status import StatusRecorder
from fleet_server.telemetry import INGEST_ACCEPTED, INGEST_POINTS, INGEST_REJECTED, INGEST_SKIPPED
from fleet_shared.constants import STATUS_HTTP_INGEST, STATUS_MQTT_INGEST, TOPIC_ROOT, TOPIC_SUFFIX
from fleet_shared.enums import IngestSource
from fleet_shared.schemas import HttpTelemetryRequest, TelemetryPayload

logger = logging.getLogger("fleet_server.ingest")

MAX_HTTP_BODY_BYTES = 64 * 1024


@dataclass(frozen=True, slots=True)
class TopicAddress:
    site_external_id: str
    device_external_id: str


def parse_topic(topic: str) -> TopicAddress | None:
    parts = topic.split("/")
    if len(parts) != 4:
        return None
    root, site_external_id, device_external_id, suffix = parts
    if root != TOPIC_ROOT or suffix != TOPIC_SUFFIX:
        return None
    if not site_external_id or not device_external_id:
        return None
    return TopicAddress(site_external_id=site_external_id, device_external_id=device_external_id)


class IngestOutcome(str, Enum):
    STORED = "stored"
    NO_METRICS = "no_metrics"
    REJECTED = "rejected"


HTTP_ID_FIELDS = ("siteExternalId", "deviceExternalId", "site_external_id", "device_external_id")


class TelemetryIngestService:
    """Validates, normalizes and stores telemetry from the feed and HTTP paths.

    Every entry point returns ``True`` only when telemetry was written. A
    payload carrying no metric values is a silent no-op: ``False``, with no
    status row touched in either direction. Malformed input never raises.
    """

    def __init__(
        self,
        db: ServerDatabase,
        status: StatusRecorder,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.db = db
        self.status = status
        self.clock = clock

    def ingest_message(self, topic: str, body: bytes | str) -> bool:
        return self.message_outcome(topic, body) is IngestOutcome.STORED

    def handle_feed_message(self, topic: str, body: bytes | str) -> bool:
        """Feed callback: false only for rejected payloads, so a no-op is not reported as a feed error."""
        return self.message_outcome(topic, body) is not IngestOutcome.REJECTED

    def message_outcome(self, topic: str, body: bytes | str) -> IngestOutcome:
        source = IngestSource.MQTT
        address = parse_topic(topic)
        if address is None:
            return self._reject(source, "invalid_topic", f"unexpected topic {topic!r}")

        try:
            raw = json.loads(body)
        except (UnicodeDecodeError, json.JSONDecodeError):
            return self._reject(source, "invalid_json", "payload is not valid JSON")
        if not isinstance(raw, dict):
            return self._reject(source, "invalid_json", "payload is not a JSON object")

        try:
            payload = TelemetryPayload.model_validate(raw)
        except ValidationError as exc:
            return self._reject(source, "invalid_schema", f"schema validation failed: {exc.error_count()} error(s)")

        return self._store(
            source,
            device_external_id=address.device_external_id,
            topic_site_external_id=address.site_external_id,
            payload=payload,
            raw=raw,
        )

    def ingest_http(self, request: HttpTelemetryRequest, raw: dict[str, Any] | None = None) -> bool:
        return self.http_outcome(request, raw) is IngestOutcome.STORED

    def http_outcome(self, request: HttpTelemetryRequest, raw: dict[str, Any] | None = None) -> IngestOutcome:
        """``raw`` is the request body as received; the snapshot keeps it minus the routing ids."""
        if raw is None:
            raw = request.model_dump(mode="json", by_alias=True, exclude_unset=True)
        original = {key: value for key, value in raw.items() if key not in HTTP_ID_FIELDS}
        return self._store(
            IngestSource.HTTP,
            device_external_id=request.device_external_id,
            topic_site_external_id=None,
            payload=request.telemetry(),
            raw=original,
        )

    def _store(
        self,
        source: IngestSource,
        device_external_id: str,
        topic_site_external_id: str | None,
        payload: TelemetryPayload,
        raw: dict[str, Any],
    ) -> IngestOutcome:
        received_at = self.clock()
        metrics = derive_metrics(payload.sensor)
        points = present_metrics(metrics)

        try:
            device = self.db.resolve_device_by_external_id(device_external_id)
        except SQLAlchemyError as exc:
            logger.exception("device lookup failed", extra={"device_external_id": device_external_id})
            return self._reject(source, "store_error", exc)
        if device is None:
            return self._reject(source, "unknown_device", f"no device mapped for external id {device_external_id}")

        if topic_site_external_id is not None and device.site_external_id != topic_site_external_id:
            logger.warning(
                "telemetry topic site does not match device site",
                extra={
                    "device_external_id": device_external_id,
                    "topic_site": topic_site_external_id,
                    "device_site": device.site_external_id,
                },
            )
            return self._reject(source, "site_mismatch", "topic site does not match device site")

        if not points:
            logger.debug("telemetry without metrics ignored", extra={"device_id": device.id})
            INGEST_SKIPPED.labels(source=source.value).inc()
            return IngestOutcome.NO_METRICS

        observed_at = payload.observed_at(received_at)
        try:
            written = self.db.write_telemetry(
                device_id=device.id,
                observed_at=observed_at,
                metrics=points,
                document=build_snapshot_document(metrics, raw),
            )
        except SQLAlchemyError as exc:
            logger.exception("telemetry write failed", extra={"device_id": device.id})
            return self._reject(source, "store_error", exc)

        INGEST_ACCEPTED.labels(source=source.value).inc()
        INGEST_POINTS.labels(source=source.value).inc(written)
        self.status.mark_success(self._status_key(source), received_at)
        return IngestOutcome.STORED

    def _reject(self, source: IngestSource, reason: str, error: BaseException | str) -> IngestOutcome:
        INGEST_REJECTED.labels(source=source.value, reason=reason).inc()
        if reason != "store_error":
            logger.warning("telemetry rejected", extra={"source": source.value, "reason": reason})
        self.status.mark_error(self._status_key(source), error, self.clock())
        return IngestOutcome.REJECTED

    @staticmethod
    def _status_key(source: IngestSource) -> str:
        return STATUS_MQTT_INGEST if source is IngestSource.MQTT else STATUS_HTTP_INGEST


router = APIRouter(prefix="", tags=["ingest"])


@router.post("/telemetry/http")
async def ingest_http(request: Request) -> JSONResponse:
    config = request.app.state.config
    service: TelemetryIngestService = request.app.state.ingest_service
    limiter = request.app.state.rate_limiter

    if not config.ingest_api_key:
        raise HTTPException(status_code=501, detail="http telemetry ingest is not configured")

    supplied = request.headers.get("x-api-key", "")
    if not constant_time_equals(supplied, config.ingest_api_key):
        INGEST_REJECTED.labels(source=IngestSource.HTTP.value, reason="bad_api_key").inc()
        raise HTTPException(status_code=401, detail="invalid api key")

    if not limiter.allow(key="telemetry:http", limit=config.ingest_rate_limit_per_minute, window_seconds=60):
        INGEST_REJECTED.labels(source=IngestSource.HTTP.value, reason="rate_limit").inc()
        raise HTTPException(status_code=429, detail="rate limit exceeded")

    body = await request.body()
    if len(body) == 0:
        INGEST_REJECTED.labels(source=IngestSource.HTTP.value, reason="empty_body").inc()
        raise HTTPException(status_code=400, detail="empty request body")
    if len(body) > MAX_HTTP_BODY_BYTES:
        INGEST_REJECTED.labels(source=IngestSource.HTTP.value, reason="payload_too_large").inc()
        raise HTTPException(status_code=400, detail="payload too large")

    try:
        payload = HttpTelemetryRequest.model_validate_json(body)
    except ValidationError as exc:
        INGEST_REJECTED.labels(source=IngestSource.HTTP.value, reason="invalid_schema").inc()
        raise HTTPException(status_code=400, detail="invalid telemetry payload") from exc

    outcome = service.http_outcome(payload, raw=json.loads(body))
    if outcome is IngestOutcome.REJECTED:
        raise HTTPException(status_code=400, detail="telemetry rejected")
    if outcome is IngestOutcome.NO_METRICS:
        return JSONResponse(content={"ok": True, "stored": False})
    return JSONResponse(content={"ok": True})
