from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class SubsystemHealth(BaseModel):
    model_config = ConfigDict(extra="forbid")

    configured: bool
    healthy: bool
    last_success_at: datetime | None = None
    last_error_at: datetime | None = None
    last_error: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)


class HealthReport(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    ok: bool
    env: str
    version: str
    db: Literal["ok", "error"]
    db_latency_ms: float | None = None
    status_available: bool = True
    mqtt: SubsystemHealth
    control: SubsystemHealth
    alerts_worker: SubsystemHealth = Field(alias="alertsWorker")
    push: SubsystemHealth
    heat_pump_history: SubsystemHealth = Field(alias="heatPumpHistory")
    checked_at: datetime
