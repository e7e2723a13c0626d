from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from fleet_shared.constants import MAX_EXTERNAL_ID_LEN
from fleet_shared.sanitization import sanitize_meta, sanitize_text


def _strict_reading() -> Any:
    return Field(default=None, strict=True, allow_inf_nan=False)


class SensorReading(BaseModel):
    """Raw controller readings. Every field is optional; unknown fields fail the payload."""

    model_config = ConfigDict(extra="forbid")

    supply_temperature_c: float | None = _strict_reading()
    return_temperature_c: float | None = _strict_reading()
    power_w: float | None = _strict_reading()
    flow_lps: float | None = _strict_reading()
    cop: float | None = _strict_reading()


class TelemetryPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    # epoch milliseconds or ISO-8601; receive time when absent
    timestamp: datetime | None = None
    sensor: SensorReading = Field(default_factory=SensorReading)
    meta: dict[str, Any] | None = None

    @field_validator("meta", mode="before")
    @classmethod
    def validate_meta(cls, value: Any) -> dict[str, Any] | None:
        return sanitize_meta(value)

    def observed_at(self, received_at: datetime) -> datetime:
        if self.timestamp is None:
            return received_at
        if self.timestamp.tzinfo is None:
            return self.timestamp.replace(tzinfo=UTC)
        return self.timestamp.astimezone(UTC)


class HttpTelemetryRequest(TelemetryPayload):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    site_external_id: str = Field(alias="siteExternalId", min_length=1, max_length=MAX_EXTERNAL_ID_LEN)
    device_external_id: str = Field(alias="deviceExternalId", min_length=1, max_length=MAX_EXTERNAL_ID_LEN)

    @field_validator("site_external_id", "device_external_id")
    @classmethod
    def sanitize_identifier(cls, value: str) -> str:
        cleaned = sanitize_text(value).strip()
        if not cleaned:
            raise ValueError("identifier cannot be empty")
        return cleaned

    def telemetry(self) -> TelemetryPayload:
        return TelemetryPayload(timestamp=self.timestamp, sensor=self.sensor, meta=self.meta)
