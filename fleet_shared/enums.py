from __future__ import annotations

from enum import Enum


class AlertSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    HIGH = "high"
    CRITICAL = "critical"


class AlertStatus(str, Enum):
    ACTIVE = "active"
    CLEARED = "cleared"


class AlertType(str, Enum):
    OFFLINE = "offline"
    HIGH_TEMP = "high_temp"
    RULE = "rule"


class RuleType(str, Enum):
    THRESHOLD_ABOVE = "threshold_above"
    THRESHOLD_BELOW = "threshold_below"
    RATE_OF_CHANGE = "rate_of_change"
    OFFLINE_WINDOW = "offline_window"
    COMPOSITE = "composite"


class CommandType(str, Enum):
    SETPOINT = "setpoint"
    MODE = "mode"


class CommandStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class OperatingMode(str, Enum):
    OFF = "OFF"
    HEATING = "HEATING"
    COOLING = "COOLING"
    AUTO = "AUTO"


class DeviceStatus(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"
    UNKNOWN = "unknown"


class IngestSource(str, Enum):
    MQTT = "mqtt"
    HTTP = "http"
