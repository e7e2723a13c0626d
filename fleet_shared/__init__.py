"""Shared enums and telemetry payload schemas for the heat-pump fleet core."""

from fleet_shared.enums import AlertSeverity, AlertStatus, AlertType, CommandStatus, CommandType, OperatingMode
from fleet_shared.schemas import HttpTelemetryRequest, SensorReading, TelemetryPayload

__all__ = [
    "AlertSeverity",
    "AlertStatus",
    "AlertType",
    "CommandStatus",
    "CommandType",
    "OperatingMode",
    "HttpTelemetryRequest",
    "SensorReading",
    "TelemetryPayload",
]
