from __future__ import annotations

from typing import Any

from fleet_shared.constants import CANONICAL_METRICS, SENSOR_METRIC_MAP
from fleet_shared.schemas import SensorReading


def derive_metrics(sensor: SensorReading) -> dict[str, float | None]:
    """Map raw sensor fields onto canonical metric names.

    ``power_w`` is converted to kilowatts; the others pass through unchanged.
    Every canonical metric is present in the result, ``None`` when absent.
    Keys follow sensor field order so telemetry rows keep payload order.
    """
    metrics: dict[str, float | None] = {name: None for name in CANONICAL_METRICS}
    for field_name, metric in SENSOR_METRIC_MAP.items():
        value = getattr(sensor, field_name)
        if value is None:
            continue
        if field_name == "power_w":
            metrics[metric] = float(value) / 1000.0
        else:
            metrics[metric] = float(value)
    return metrics


def present_metrics(metrics: dict[str, float | None]) -> list[tuple[str, float]]:
    return [(name, value) for name, value in metrics.items() if value is not None]


def build_snapshot_document(metrics: dict[str, float | None], raw: dict[str, Any]) -> dict[str, Any]:
    return {"metrics": dict(metrics), "raw": raw}


def snapshot_metric(document: dict[str, Any], metric: str) -> float | None:
    metrics = document.get("metrics")
    if not isinstance(metrics, dict):
        return None
    return _as_number(metrics.get(metric))


def raw_sensor_value(document: dict[str, Any], field_name: str) -> float | None:
    raw = document.get("raw")
    if not isinstance(raw, dict):
        return None
    sensor = raw.get("sensor")
    if not isinstance(sensor, dict):
        return None
    return _as_number(sensor.get(field_name))


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)
