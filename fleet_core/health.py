from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from fleet_core.models import SubsystemHealth


@dataclass(frozen=True, slots=True)
class HealthWindow:
    """Staleness and error windows for one subsystem; ``None`` disables that check."""

    stale_after: timedelta | None = None
    error_window: timedelta | None = None


@dataclass(frozen=True, slots=True)
class StatusSnapshot:
    key: str
    last_success_at: datetime | None = None
    last_error_at: datetime | None = None
    last_error: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)


MQTT_WINDOW = HealthWindow(stale_after=timedelta(minutes=5), error_window=timedelta(minutes=5))
CONTROL_WINDOW = HealthWindow(error_window=timedelta(minutes=10))
PUSH_WINDOW = HealthWindow()
HEAT_PUMP_HISTORY_WINDOW = HealthWindow(stale_after=timedelta(hours=6), error_window=timedelta(hours=6))


def alerts_worker_window(interval_seconds: int) -> HealthWindow:
    return HealthWindow(stale_after=timedelta(seconds=max(2 * interval_seconds, 60)))


def evaluate_subsystem(
    configured: bool,
    status: StatusSnapshot | None,
    window: HealthWindow,
    now: datetime,
    status_available: bool = True,
    details: dict[str, Any] | None = None,
) -> SubsystemHealth:
    """Apply the uniform health rule to one subsystem.

    A subsystem that is not configured is healthy. A configured one is
    unhealthy when its last success is older than ``window.stale_after`` or
    when it recorded an error more recent than its last success (and inside
    ``window.error_window`` when set). If status rows could not be read at
    all, configured subsystems are reported unhealthy.
    """
    success_at = status.last_success_at if status else None
    error_at = status.last_error_at if status else None
    base = {
        "configured": configured,
        "last_success_at": success_at,
        "last_error_at": error_at,
        "last_error": status.last_error if status else None,
        "details": details or {},
    }
    if not configured:
        return SubsystemHealth(healthy=True, **base)
    if not status_available:
        return SubsystemHealth(healthy=False, **base)

    stale = False
    if window.stale_after is not None:
        stale = success_at is None or now - success_at > window.stale_after

    errored = False
    if error_at is not None and (success_at is None or error_at > success_at):
        errored = window.error_window is None or now - error_at <= window.error_window

    return SubsystemHealth(healthy=not (stale or errored), **base)


def aggregate_ok(db_ok: bool, subsystems: list[SubsystemHealth]) -> bool:
    return db_ok and all(item.healthy for item in subsystems if item.configured)
