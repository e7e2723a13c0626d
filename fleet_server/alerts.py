from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Callable

from fleet_core.alerts import (
    AlertCondition,
    AlertThresholds,
    RuleSpec,
    covers_builtin_high_temp,
    covers_builtin_offline,
    evaluate_high_temp,
    evaluate_offline,
    evaluate_offline_window_rule,
    evaluate_rate_of_change_rule,
    evaluate_threshold_rule,
)
from fleet_server.config import AlertConfig
from fleet_server.db import ServerDatabase, SnapshotRecord
from fleet_server.models import Alert, AlertRule
from fleet_server.status import StatusRecorder
from fleet_server.telemetry import ALERT_CYCLE_DURATION, ALERT_CYCLES, ALERTS_CLEARED, ALERTS_RAISED
from fleet_shared.constants import STATUS_ALERTS_WORKER
from fleet_shared.enums import AlertSeverity, AlertType, RuleType

logger = logging.getLogger("fleet_server.alerts")

AlertNotifier = Callable[[Alert], object]


@dataclass(slots=True)
class CycleSummary:
    ran: bool = True
    devices: int = 0
    rules: int = 0
    raised: int = 0
    updated: int = 0
    cleared: int = 0
    notified: int = 0
    rule_errors: int = 0
    error: str | None = None
    notified_alert_ids: list[str] = field(default_factory=list)

    def as_payload(self) -> dict[str, int]:
        return {
            "devices": self.devices,
            "rules": self.rules,
            "raised": self.raised,
            "updated": self.updated,
            "cleared": self.cleared,
            "notified": self.notified,
            "rule_errors": self.rule_errors,
        }


class AlertRuleEngine:
    """Evaluates built-in and stored alert conditions over device snapshots.

    ``run_once`` is guarded by a non-blocking lock: a tick that starts while
    the previous one is still running is skipped rather than queued.
    """

    def __init__(
        self,
        db: ServerDatabase,
        config: AlertConfig,
        notifier: AlertNotifier | None = None,
        status: StatusRecorder | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.db = db
        self.config = config
        self.notifier = notifier
        self.status = status or StatusRecorder(db)
        self.clock = clock
        self.thresholds = AlertThresholds(
            offline_minutes=config.offline_minutes,
            offline_critical_minutes=config.offline_critical_minutes,
            high_temp_threshold=config.high_temp_threshold,
        )
        self._running = threading.Lock()

    def run_once(self, now: datetime | None = None) -> CycleSummary:
        if not self._running.acquire(blocking=False):
            logger.warning("alert cycle still running; skipping tick")
            ALERT_CYCLES.labels(outcome="skipped").inc()
            return CycleSummary(ran=False)
        try:
            return self._run_cycle(now or self.clock())
        finally:
            self._running.release()

    def _run_cycle(self, now: datetime) -> CycleSummary:
        summary = CycleSummary()
        started = time.perf_counter()
        try:
            snapshots = self.db.list_snapshots()
            rules = self.db.list_enabled_rules()
            summary.devices = len(snapshots)
            summary.rules = len(rules)
            specs = [spec for _, spec in rules]

            self._evaluate_rules(rules, snapshots, now, summary)
            if not covers_builtin_offline(specs):
                self._evaluate_offline(snapshots, now, summary)
            if not covers_builtin_high_temp(specs):
                self._evaluate_high_temp(snapshots, now, summary)
        except Exception as exc:
            logger.exception("alert cycle failed")
            ALERT_CYCLES.labels(outcome="error").inc()
            self.status.mark_error(STATUS_ALERTS_WORKER, exc, now, summary.as_payload())
            summary.error = str(exc) or exc.__class__.__name__
            return summary
        finally:
            ALERT_CYCLE_DURATION.observe(time.perf_counter() - started)

        ALERT_CYCLES.labels(outcome="ok").inc()
        self.status.mark_success(STATUS_ALERTS_WORKER, now, summary.as_payload())
        logger.info("alert cycle complete", extra=summary.as_payload())
        return summary

    # -- built-in checks -----------------------------------------------------

    def _evaluate_offline(self, snapshots: list[SnapshotRecord], now: datetime, summary: CycleSummary) -> None:
        for snapshot in snapshots:
            condition = evaluate_offline(snapshot.last_seen_at, now, self.thresholds)
            if condition is None:
                self._clear(snapshot.device_id, AlertType.OFFLINE, now, summary)
            else:
                self._raise(snapshot.device_id, snapshot.site_id, condition, now, summary)

    def _evaluate_high_temp(self, snapshots: list[SnapshotRecord], now: datetime, summary: CycleSummary) -> None:
        for snapshot in snapshots:
            condition = evaluate_high_temp(snapshot.document, self.thresholds.high_temp_threshold)
            if condition is None:
                self._clear(snapshot.device_id, AlertType.HIGH_TEMP, now, summary)
            else:
                self._raise(snapshot.device_id, snapshot.site_id, condition, now, summary)

    # -- stored rules --------------------------------------------------------

    def _evaluate_rules(
        self,
        rules: list[tuple[AlertRule, RuleSpec]],
        snapshots: list[SnapshotRecord],
        now: datetime,
        summary: CycleSummary,
    ) -> None:
        if not rules:
            return
        scopes = self.db.list_device_scopes()
        by_device = {snapshot.device_id: snapshot for snapshot in snapshots}
        default_grace_sec = self.config.offline_minutes * 60

        for rule, spec in rules:
            if spec.rule_type is RuleType.COMPOSITE:
                continue
            targets = _rule_targets(rule, scopes)
            try:
                conditions = self._rule_conditions(spec, targets, by_device, now, default_grace_sec)
                for device_id, site_id in targets:
                    condition = conditions.get(device_id)
                    if condition is None:
                        self._clear(device_id, AlertType.RULE, now, summary, rule_id=spec.id)
                    else:
                        self._raise(device_id, site_id, condition, now, summary)
            except Exception:
                summary.rule_errors += 1
                logger.exception("alert rule evaluation failed", extra={"rule_id": spec.id})

    def _rule_conditions(
        self,
        spec: RuleSpec,
        targets: list[tuple[str, str]],
        snapshots: dict[str, SnapshotRecord],
        now: datetime,
        default_grace_sec: int,
    ) -> dict[str, AlertCondition]:
        device_ids = [device_id for device_id, _ in targets]
        found: dict[str, AlertCondition | None] = {}

        if spec.rule_type in {RuleType.THRESHOLD_ABOVE, RuleType.THRESHOLD_BELOW}:
            latest = self.db.latest_metric_values(spec.metric, device_ids)
            for device_id in device_ids:
                found[device_id] = evaluate_threshold_rule(spec, latest.get(device_id))
        elif spec.rule_type is RuleType.RATE_OF_CHANGE:
            if spec.roc_window_sec:
                since = now - timedelta(seconds=spec.roc_window_sec)
                for device_id in device_ids:
                    first, last = self.db.telemetry_window_bounds(device_id, spec.metric, since)
                    found[device_id] = evaluate_rate_of_change_rule(spec, first, last)
        elif spec.rule_type is RuleType.OFFLINE_WINDOW:
            for device_id in device_ids:
                snapshot = snapshots.get(device_id)
                if snapshot is not None:
                    found[device_id] = evaluate_offline_window_rule(spec, snapshot.last_seen_at, now, default_grace_sec)

        return {device_id: condition for device_id, condition in found.items() if condition is not None}

    # -- lifecycle -----------------------------------------------------------

    def _raise(
        self,
        device_id: str,
        site_id: str | None,
        condition: AlertCondition,
        now: datetime,
        summary: CycleSummary,
    ) -> None:
        alert, is_new = self.db.upsert_active_alert(device_id, site_id, condition, now)
        if not is_new:
            summary.updated += 1
            return

        summary.raised += 1
        ALERTS_RAISED.labels(type=alert.type, severity=alert.severity).inc()
        logger.info(
            "alert raised",
            extra={"alert_id": alert.id, "device_id": device_id, "type": alert.type, "severity": alert.severity},
        )
        if alert.severity == AlertSeverity.CRITICAL.value:
            self._notify(alert, summary)

    def _clear(
        self,
        device_id: str,
        alert_type: AlertType,
        now: datetime,
        summary: CycleSummary,
        rule_id: str | None = None,
    ) -> None:
        if self.db.clear_active_alert(device_id, alert_type.value, now, rule_id=rule_id):
            summary.cleared += 1
            ALERTS_CLEARED.labels(type=alert_type.value).inc()
            logger.info("alert cleared", extra={"device_id": device_id, "type": alert_type.value, "rule_id": rule_id})

    def _notify(self, alert: Alert, summary: CycleSummary) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier(alert)
        except Exception:
            logger.exception("alert notification failed", extra={"alert_id": alert.id})
            return
        summary.notified += 1
        summary.notified_alert_ids.append(alert.id)


def _rule_targets(rule: AlertRule, scopes: list[tuple[str, str, str]]) -> list[tuple[str, str]]:
    """(device_id, site_id) pairs a rule applies to: its device, else its site, else its org."""
    if rule.device_id:
        return [(device_id, site_id) for device_id, site_id, _ in scopes if device_id == rule.device_id]
    if rule.site_id:
        return [(device_id, site_id) for device_id, site_id, _ in scopes if site_id == rule.site_id]
    return [(device_id, site_id) for device_id, site_id, org_id in scopes if org_id == rule.org_id]


class AlertScheduler:
    def __init__(self, engine: AlertRuleEngine, interval_seconds: int) -> None:
        self.engine = engine
        self.interval_seconds = max(1, interval_seconds)
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="alerts-worker", daemon=True)
        self._thread.start()
        logger.info("alerts worker started", extra={"interval_seconds": self.interval_seconds})

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5)

    def run_forever(self) -> None:
        self._loop()

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.engine.run_once()
            except Exception:
                logger.exception("alert tick failed")
            self._stop_event.wait(timeout=self.interval_seconds)
