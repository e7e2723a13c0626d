from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from fleet_core.metrics import raw_sensor_value, snapshot_metric
from fleet_shared.enums import AlertSeverity, AlertType, RuleType


@dataclass(frozen=True, slots=True)
class AlertThresholds:
    offline_minutes: int = 10
    offline_critical_minutes: int = 60
    high_temp_threshold: float = 60.0


@dataclass(frozen=True, slots=True)
class AlertCondition:
    """A condition that currently holds for one device."""

    alert_type: AlertType
    severity: AlertSeverity
    message: str
    rule_id: str | None = None


@dataclass(frozen=True, slots=True)
class RuleSpec:
    id: str
    rule_type: RuleType
    metric: str
    severity: AlertSeverity
    name: str | None = None
    threshold: float | None = None
    roc_window_sec: int | None = None
    offline_grace_sec: int | None = None

    @property
    def label(self) -> str:
        return self.name or f"{self.metric} {self.rule_type.value}"


def _fmt(value: float) -> str:
    return f"{value:g}"


def evaluate_offline(last_seen_at: datetime, now: datetime, thresholds: AlertThresholds) -> AlertCondition | None:
    age = now - last_seen_at
    if age <= timedelta(minutes=thresholds.offline_minutes):
        return None
    if age >= timedelta(minutes=thresholds.offline_critical_minutes):
        severity = AlertSeverity.CRITICAL
        limit = thresholds.offline_critical_minutes
    else:
        severity = AlertSeverity.WARNING
        limit = thresholds.offline_minutes
    return AlertCondition(
        alert_type=AlertType.OFFLINE,
        severity=severity,
        message=f"Device offline for more than {limit} minutes",
    )


def supply_temperature(document: dict[str, Any]) -> float | None:
    value = snapshot_metric(document, "supply_temp")
    if value is None:
        value = raw_sensor_value(document, "supply_temperature_c")
    return value


def evaluate_high_temp(document: dict[str, Any], threshold: float) -> AlertCondition | None:
    value = supply_temperature(document)
    if value is None or value <= threshold:
        return None
    return AlertCondition(
        alert_type=AlertType.HIGH_TEMP,
        severity=AlertSeverity.CRITICAL,
        message=f"Supply temperature high: {value:.1f}C (limit {_fmt(threshold)}C)",
    )


def evaluate_threshold_rule(rule: RuleSpec, latest_value: float | None) -> AlertCondition | None:
    if rule.threshold is None or latest_value is None:
        return None
    if rule.rule_type is RuleType.THRESHOLD_ABOVE:
        triggered = latest_value > rule.threshold
        detail = f"value {latest_value:.2f} above threshold {_fmt(rule.threshold)}"
    elif rule.rule_type is RuleType.THRESHOLD_BELOW:
        triggered = latest_value < rule.threshold
        detail = f"value {latest_value:.2f} below threshold {_fmt(rule.threshold)}"
    else:
        raise ValueError(f"not a threshold rule: {rule.rule_type.value}")
    if not triggered:
        return None
    return AlertCondition(AlertType.RULE, rule.severity, f"{rule.label}: {detail}", rule_id=rule.id)


def evaluate_rate_of_change_rule(
    rule: RuleSpec,
    first: tuple[datetime, float] | None,
    last: tuple[datetime, float] | None,
) -> AlertCondition | None:
    if not rule.threshold or not rule.roc_window_sec or first is None or last is None:
        return None
    elapsed = (last[0] - first[0]).total_seconds()
    if elapsed <= 0:
        return None
    delta = last[1] - first[1]
    if abs(delta) < rule.threshold:
        return None
    name = rule.name or "Rapid change"
    message = f"{name}: {delta:.2f} over {elapsed / 60:.1f}m (threshold {_fmt(rule.threshold)})"
    return AlertCondition(AlertType.RULE, rule.severity, message, rule_id=rule.id)


def evaluate_offline_window_rule(
    rule: RuleSpec,
    last_seen_at: datetime,
    now: datetime,
    default_grace_sec: int,
) -> AlertCondition | None:
    grace_sec = rule.offline_grace_sec or default_grace_sec
    offline_sec = (now - last_seen_at).total_seconds()
    if offline_sec < grace_sec:
        return None
    name = rule.name or "Device offline"
    message = f"{name}: offline for {offline_sec / 60:.1f} minutes (grace {round(grace_sec / 60)}m)"
    return AlertCondition(AlertType.RULE, rule.severity, message, rule_id=rule.id)


def covers_builtin_offline(rules: list[RuleSpec]) -> bool:
    return any(rule.rule_type is RuleType.OFFLINE_WINDOW for rule in rules)


def covers_builtin_high_temp(rules: list[RuleSpec]) -> bool:
    return any(
        rule.rule_type is RuleType.THRESHOLD_ABOVE and rule.metric == "supply_temp"
        for rule in rules
    )
