from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from fleet_shared.enums import OperatingMode

DEFAULT_MIN_SETPOINT = 30.0
DEFAULT_MAX_SETPOINT = 60.0
SETPOINT_METRIC = "flow_temp"
ALL_MODES: tuple[str, ...] = tuple(mode.value for mode in OperatingMode)


class ControlErrorCode(str, Enum):
    BELOW_MIN = "BELOW_MIN"
    ABOVE_MAX = "ABOVE_MAX"
    INVALID_VALUE = "INVALID_VALUE"
    DEVICE_NOT_CAPABLE = "DEVICE_NOT_CAPABLE"
    DEVICE_NOT_FOUND = "DEVICE_NOT_FOUND"
    DEVICE_NOT_CONTROLLABLE = "DEVICE_NOT_CONTROLLABLE"
    THROTTLED = "THROTTLED"
    COMMAND_FAILED = "COMMAND_FAILED"
    CONTROL_CHANNEL_UNCONFIGURED = "CONTROL_CHANNEL_UNCONFIGURED"


VALIDATION_ERRORS = frozenset(
    {
        ControlErrorCode.BELOW_MIN,
        ControlErrorCode.ABOVE_MAX,
        ControlErrorCode.INVALID_VALUE,
        ControlErrorCode.DEVICE_NOT_CAPABLE,
    }
)

_HTTP_STATUS = {
    ControlErrorCode.THROTTLED: 429,
    ControlErrorCode.DEVICE_NOT_FOUND: 404,
    ControlErrorCode.DEVICE_NOT_CONTROLLABLE: 400,
    ControlErrorCode.COMMAND_FAILED: 502,
    ControlErrorCode.CONTROL_CHANNEL_UNCONFIGURED: 503,
}


def http_status_for(code: ControlErrorCode) -> int:
    """Status code the REST layer should answer with for a rejected command."""
    if code in VALIDATION_ERRORS:
        return 400
    return _HTTP_STATUS.get(code, 500)


@dataclass(frozen=True, slots=True)
class DeviceCapabilities:
    min_setpoint: float | None = None
    max_setpoint: float | None = None
    allowed_modes: tuple[str, ...] | None = None
    supports_heating: bool | None = None
    supports_cooling: bool | None = None
    supports_auto: bool | None = None


@dataclass(frozen=True, slots=True)
class SetpointRequest:
    value: Any
    metric: str = SETPOINT_METRIC


@dataclass(frozen=True, slots=True)
class ModeRequest:
    mode: str


@dataclass(frozen=True, slots=True)
class ValidationPassed:
    ok: bool = field(default=True, init=False)


@dataclass(frozen=True, slots=True)
class ValidationFailed:
    reason: ControlErrorCode
    message: str
    ok: bool = field(default=False, init=False)


ValidationResult = ValidationPassed | ValidationFailed


@dataclass(frozen=True, slots=True)
class CommandAccepted:
    command_id: str
    device_id: str
    command_type: str
    status: str
    payload: dict[str, Any]
    ok: bool = field(default=True, init=False)


@dataclass(frozen=True, slots=True)
class CommandRejected:
    reason: ControlErrorCode
    message: str
    command_id: str | None = None
    ok: bool = field(default=False, init=False)

    @property
    def http_status(self) -> int:
        return http_status_for(self.reason)


CommandResult = CommandAccepted | CommandRejected


def _is_finite_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def _format_limit(value: float) -> str:
    return f"{value:g}"


def setpoint_bounds(capabilities: DeviceCapabilities) -> tuple[float, float]:
    low = capabilities.min_setpoint if _is_finite_number(capabilities.min_setpoint) else DEFAULT_MIN_SETPOINT
    high = capabilities.max_setpoint if _is_finite_number(capabilities.max_setpoint) else DEFAULT_MAX_SETPOINT
    if low >= high:
        return DEFAULT_MIN_SETPOINT, DEFAULT_MAX_SETPOINT
    return float(low), float(high)


def allowed_modes(capabilities: DeviceCapabilities) -> tuple[str, ...]:
    if capabilities.allowed_modes:
        return tuple(capabilities.allowed_modes)
    modes = list(ALL_MODES)
    if capabilities.supports_heating is False:
        modes.remove(OperatingMode.HEATING.value)
    if capabilities.supports_cooling is False:
        modes.remove(OperatingMode.COOLING.value)
    if capabilities.supports_auto is False:
        modes.remove(OperatingMode.AUTO.value)
    return tuple(modes)


def validate_setpoint(capabilities: DeviceCapabilities, request: SetpointRequest) -> ValidationResult:
    if request.metric != SETPOINT_METRIC:
        return ValidationFailed(ControlErrorCode.DEVICE_NOT_CAPABLE, "Unsupported setpoint metric")
    if not _is_finite_number(request.value):
        return ValidationFailed(ControlErrorCode.INVALID_VALUE, "Setpoint must be a valid number")

    low, high = setpoint_bounds(capabilities)
    if request.value < low:
        return ValidationFailed(ControlErrorCode.BELOW_MIN, f"Setpoint below minimum of {_format_limit(low)}C")
    if request.value > high:
        return ValidationFailed(ControlErrorCode.ABOVE_MAX, f"Setpoint above maximum of {_format_limit(high)}C")
    return ValidationPassed()


def validate_mode(capabilities: DeviceCapabilities, request: ModeRequest) -> ValidationResult:
    if request.mode not in ALL_MODES:
        return ValidationFailed(ControlErrorCode.INVALID_VALUE, "Unsupported mode value")
    if request.mode not in allowed_modes(capabilities):
        return ValidationFailed(ControlErrorCode.DEVICE_NOT_CAPABLE, f"Device does not support {request.mode} mode")
    return ValidationPassed()
