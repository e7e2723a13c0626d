from __future__ import annotations

import json
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Iterator

from sqlalchemy import Engine, create_engine, desc, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from fleet_core.alerts import AlertCondition, RuleSpec
from fleet_core.control import DeviceCapabilities
from fleet_core.health import StatusSnapshot
from fleet_server.models import (
    Alert,
    AlertRule,
    AuditEvent,
    Base,
    ControlCommand,
    Device,
    DeviceSnapshot,
    Organisation,
    PushToken,
    Site,
    SystemStatus,
    TelemetryPoint,
    UserAccount,
    as_utc,
)
from fleet_shared.enums import AlertSeverity, AlertStatus, CommandStatus, DeviceStatus, RuleType
from fleet_shared.serialization import canonical_json_text, load_json_object


@dataclass(frozen=True, slots=True)
class DeviceRecord:
    id: str
    site_id: str
    org_id: str
    external_id: str | None
    site_external_id: str | None


@dataclass(frozen=True, slots=True)
class ControlTarget:
    id: str
    org_id: str
    external_id: str | None
    capabilities: DeviceCapabilities


@dataclass(frozen=True, slots=True)
class SnapshotRecord:
    device_id: str
    site_id: str
    org_id: str
    last_seen_at: datetime
    document: dict[str, Any]


@dataclass(frozen=True, slots=True)
class RecipientToken:
    user_id: str
    token: str


class ServerDatabase:
    def __init__(self, database_url: str) -> None:
        self.engine: Engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(
            bind=self.engine,
            autoflush=False,
            autocommit=False,
            expire_on_commit=False,
            future=True,
        )

    def init_for_tests(self) -> None:
        Base.metadata.create_all(self.engine)

    def ping(self) -> float:
        """Round-trip a trivial query; returns latency in milliseconds."""
        started = time.perf_counter()
        with self.session() as db:
            db.execute(select(1))
        return (time.perf_counter() - started) * 1000.0

    @contextmanager
    def session(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # -- provisioning ------------------------------------------------------

    def create_org(self, name: str) -> Organisation:
        with self.session() as db:
            org = Organisation(name=name)
            db.add(org)
            db.flush()
            return org

    def create_site(self, org_id: str, name: str, external_id: str | None = None) -> Site:
        with self.session() as db:
            site = Site(org_id=org_id, name=name, external_id=external_id)
            db.add(site)
            db.flush()
            return site

    def create_device(
        self,
        site_id: str,
        name: str,
        external_id: str | None = None,
        mac: str | None = None,
        min_setpoint: float | None = None,
        max_setpoint: float | None = None,
        allowed_modes: list[str] | None = None,
        supports_heating: bool | None = None,
        supports_cooling: bool | None = None,
        supports_auto: bool | None = None,
    ) -> Device:
        with self.session() as db:
            device = Device(
                site_id=site_id,
                name=name,
                external_id=external_id,
                mac=mac,
                status=DeviceStatus.UNKNOWN.value,
                min_setpoint=min_setpoint,
                max_setpoint=max_setpoint,
                allowed_modes_json=json.dumps(allowed_modes) if allowed_modes else None,
                supports_heating=supports_heating,
                supports_cooling=supports_cooling,
                supports_auto=supports_auto,
            )
            db.add(device)
            db.flush()
            return device

    def create_user(self, org_id: str, email: str, role: str, name: str = "", is_active: bool = True) -> UserAccount:
        with self.session() as db:
            user = UserAccount(org_id=org_id, email=email, role=role, name=name, is_active=is_active)
            db.add(user)
            db.flush()
            return user

    def add_push_token(
        self,
        user_id: str,
        token: str,
        org_id: str | None = None,
        platform: str | None = None,
        last_used_at: datetime | None = None,
        is_active: bool = True,
    ) -> PushToken:
        with self.session() as db:
            row = PushToken(
                user_id=user_id,
                org_id=org_id,
                token=token,
                platform=platform,
                last_used_at=last_used_at,
                is_active=is_active,
            )
            db.add(row)
            db.flush()
            return row

    def create_alert_rule(
        self,
        org_id: str,
        metric: str,
        rule_type: RuleType,
        severity: AlertSeverity = AlertSeverity.WARNING,
        site_id: str | None = None,
        device_id: str | None = None,
        name: str | None = None,
        threshold: float | None = None,
        roc_window_sec: int | None = None,
        offline_grace_sec: int | None = None,
        enabled: bool = True,
    ) -> AlertRule:
        with self.session() as db:
            rule = AlertRule(
                org_id=org_id,
                site_id=site_id,
                device_id=device_id,
                name=name,
                metric=metric,
                rule_type=rule_type.value,
                threshold=threshold,
                roc_window_sec=roc_window_sec,
                offline_grace_sec=offline_grace_sec,
                severity=severity.value,
                enabled=enabled,
            )
            db.add(rule)
            db.flush()
            return rule

    # -- telemetry store ---------------------------------------------------

    def resolve_device_by_external_id(self, external_id: str) -> DeviceRecord | None:
        with self.session() as db:
            row = db.execute(
                select(Device.id, Device.site_id, Site.org_id, Device.external_id, Site.external_id)
                .join(Site, Site.id == Device.site_id)
                .where(Device.external_id == external_id)
            ).first()
            if row is None:
                return None
            return DeviceRecord(
                id=row[0],
                site_id=row[1],
                org_id=row[2],
                external_id=row[3],
                site_external_id=row[4],
            )

    def write_telemetry(
        self,
        device_id: str,
        observed_at: datetime,
        metrics: list[tuple[str, float]],
        document: dict[str, Any],
    ) -> int:
        """Append one point per metric and upsert the snapshot in one transaction."""
        if not metrics:
            return 0
        with self.session() as db:
            for metric, value in metrics:
                db.add(TelemetryPoint(device_id=device_id, metric=metric, ts=observed_at, value=value, quality="good"))

            snapshot = db.get(DeviceSnapshot, device_id)
            if snapshot is None:
                db.add(
                    DeviceSnapshot(
                        device_id=device_id,
                        last_seen_at=observed_at,
                        data_json=canonical_json_text(document),
                        updated_at=datetime.now(UTC),
                    )
                )
            else:
                snapshot.last_seen_at = max(as_utc(snapshot.last_seen_at), observed_at)
                snapshot.data_json = canonical_json_text(document)
                snapshot.updated_at = datetime.now(UTC)

            device = db.get(Device, device_id)
            if device is not None:
                previous = as_utc(device.last_seen_at)
                device.last_seen_at = observed_at if previous is None else max(previous, observed_at)
                device.status = DeviceStatus.ONLINE.value
        return len(metrics)

    def get_snapshot(self, device_id: str) -> SnapshotRecord | None:
        with self.session() as db:
            row = db.execute(
                select(DeviceSnapshot, Device.site_id, Site.org_id)
                .join(Device, Device.id == DeviceSnapshot.device_id)
                .join(Site, Site.id == Device.site_id)
                .where(DeviceSnapshot.device_id == device_id)
            ).first()
            if row is None:
                return None
            return self._snapshot_record(row[0], row[1], row[2])

    def list_snapshots(self) -> list[SnapshotRecord]:
        with self.session() as db:
            rows = db.execute(
                select(DeviceSnapshot, Device.site_id, Site.org_id)
                .join(Device, Device.id == DeviceSnapshot.device_id)
                .join(Site, Site.id == Device.site_id)
                .order_by(DeviceSnapshot.device_id)
            ).all()
            return [self._snapshot_record(row[0], row[1], row[2]) for row in rows]

    @staticmethod
    def _snapshot_record(snapshot: DeviceSnapshot, site_id: str, org_id: str) -> SnapshotRecord:
        return SnapshotRecord(
            device_id=snapshot.device_id,
            site_id=site_id,
            org_id=org_id,
            last_seen_at=as_utc(snapshot.last_seen_at),
            document=load_json_object(snapshot.data_json),
        )

    def count_telemetry(self, device_id: str, metric: str | None = None) -> int:
        with self.session() as db:
            stmt = select(func.count(TelemetryPoint.id)).where(TelemetryPoint.device_id == device_id)
            if metric is not None:
                stmt = stmt.where(TelemetryPoint.metric == metric)
            return int(db.execute(stmt).scalar_one())

    def latest_metric_values(self, metric: str, device_ids: list[str]) -> dict[str, float]:
        if not device_ids:
            return {}
        with self.session() as db:
            latest = (
                select(TelemetryPoint.device_id, func.max(TelemetryPoint.ts).label("ts"))
                .where(TelemetryPoint.metric == metric, TelemetryPoint.device_id.in_(device_ids))
                .group_by(TelemetryPoint.device_id)
                .subquery()
            )
            rows = db.execute(
                select(TelemetryPoint.device_id, TelemetryPoint.value)
                .join(
                    latest,
                    (latest.c.device_id == TelemetryPoint.device_id) & (latest.c.ts == TelemetryPoint.ts),
                )
                .where(TelemetryPoint.metric == metric)
                .order_by(TelemetryPoint.id)
            ).all()
            return {device_id: float(value) for device_id, value in rows}

    def telemetry_window_bounds(
        self,
        device_id: str,
        metric: str,
        since: datetime,
    ) -> tuple[tuple[datetime, float] | None, tuple[datetime, float] | None]:
        with self.session() as db:
            base = select(TelemetryPoint.ts, TelemetryPoint.value).where(
                TelemetryPoint.device_id == device_id,
                TelemetryPoint.metric == metric,
                TelemetryPoint.ts >= since,
            )
            first = db.execute(base.order_by(TelemetryPoint.ts, TelemetryPoint.id).limit(1)).first()
            last = db.execute(base.order_by(desc(TelemetryPoint.ts), desc(TelemetryPoint.id)).limit(1)).first()

        def _pair(row: Any) -> tuple[datetime, float] | None:
            if row is None:
                return None
            return as_utc(row[0]), float(row[1])

        return _pair(first), _pair(last)

    # -- alerts ------------------------------------------------------------

    def list_enabled_rules(self) -> list[tuple[AlertRule, RuleSpec]]:
        with self.session() as db:
            rows = db.execute(select(AlertRule).where(AlertRule.enabled.is_(True)).order_by(AlertRule.created_at)).scalars()
            output: list[tuple[AlertRule, RuleSpec]] = []
            for rule in rows:
                try:
                    spec = RuleSpec(
                        id=rule.id,
                        rule_type=RuleType(rule.rule_type),
                        metric=rule.metric,
                        severity=AlertSeverity(rule.severity),
                        name=rule.name,
                        threshold=rule.threshold,
                        roc_window_sec=rule.roc_window_sec,
                        offline_grace_sec=rule.offline_grace_sec,
                    )
                except ValueError:
                    continue
                output.append((rule, spec))
            return output

    def list_device_scopes(self) -> list[tuple[str, str, str]]:
        """(device_id, site_id, org_id) for every device."""
        with self.session() as db:
            rows = db.execute(
                select(Device.id, Device.site_id, Site.org_id).join(Site, Site.id == Device.site_id).order_by(Device.id)
            ).all()
            return [(row[0], row[1], row[2]) for row in rows]

    def _upsert_active_alert_once(
        self,
        device_id: str,
        site_id: str | None,
        condition: AlertCondition,
        now: datetime,
    ) -> tuple[Alert, bool]:
        with self.session() as db:
            stmt = select(Alert).where(
                Alert.device_id == device_id,
                Alert.type == condition.alert_type.value,
                Alert.status == AlertStatus.ACTIVE.value,
            )
            if condition.rule_id is None:
                stmt = stmt.where(Alert.rule_id.is_(None))
            else:
                stmt = stmt.where(Alert.rule_id == condition.rule_id)
            existing = db.execute(stmt).scalar_one_or_none()
            if existing is not None:
                existing.severity = condition.severity.value
                existing.message = condition.message
                existing.last_seen_at = now
                return existing, False

            alert = Alert(
                device_id=device_id,
                site_id=site_id,
                type=condition.alert_type.value,
                severity=condition.severity.value,
                message=condition.message,
                status=AlertStatus.ACTIVE.value,
                rule_id=condition.rule_id,
                first_seen_at=now,
                last_seen_at=now,
            )
            db.add(alert)
            db.flush()
            return alert, True

    def upsert_active_alert(
        self,
        device_id: str,
        site_id: str | None,
        condition: AlertCondition,
        now: datetime,
    ) -> tuple[Alert, bool]:
        """Update the open episode for (device, type, rule) or open a new one.

        Returns the row and whether it was created by this call.
        """
        try:
            return self._upsert_active_alert_once(device_id, site_id, condition, now)
        except IntegrityError:
            # lost the race on the partial unique index; the row exists now
            return self._upsert_active_alert_once(device_id, site_id, condition, now)

    def clear_active_alert(self, device_id: str, alert_type: str, now: datetime, rule_id: str | None = None) -> bool:
        with self.session() as db:
            stmt = select(Alert).where(
                Alert.device_id == device_id,
                Alert.type == alert_type,
                Alert.status == AlertStatus.ACTIVE.value,
            )
            if rule_id is None:
                stmt = stmt.where(Alert.rule_id.is_(None))
            else:
                stmt = stmt.where(Alert.rule_id == rule_id)
            existing = db.execute(stmt).scalar_one_or_none()
            if existing is None:
                return False
            existing.status = AlertStatus.CLEARED.value
            existing.last_seen_at = now
            return True

    def get_alert(self, alert_id: str) -> Alert | None:
        with self.session() as db:
            return db.get(Alert, alert_id)

    def list_alerts(self, device_id: str, alert_type: str | None = None) -> list[Alert]:
        with self.session() as db:
            stmt = select(Alert).where(Alert.device_id == device_id)
            if alert_type is not None:
                stmt = stmt.where(Alert.type == alert_type)
            return list(db.execute(stmt.order_by(Alert.first_seen_at)).scalars())

    def mute_alert(self, alert_id: str, until: datetime) -> None:
        with self.session() as db:
            alert = db.get(Alert, alert_id)
            if alert is not None:
                alert.muted_until = until

    def count_active_alerts(self) -> int:
        with self.session() as db:
            return int(
                db.execute(select(func.count(Alert.id)).where(Alert.status == AlertStatus.ACTIVE.value)).scalar_one()
            )

    # -- control commands --------------------------------------------------

    def get_control_target(self, device_id: str, org_id: str) -> ControlTarget | None:
        with self.session() as db:
            row = db.execute(
                select(Device, Site.org_id)
                .join(Site, Site.id == Device.site_id)
                .where(Device.id == device_id, Site.org_id == org_id)
            ).first()
            if row is None:
                return None
            device: Device = row[0]
            modes = json.loads(device.allowed_modes_json) if device.allowed_modes_json else None
            return ControlTarget(
                id=device.id,
                org_id=row[1],
                external_id=device.external_id,
                capabilities=DeviceCapabilities(
                    min_setpoint=device.min_setpoint,
                    max_setpoint=device.max_setpoint,
                    allowed_modes=tuple(modes) if modes else None,
                    supports_heating=device.supports_heating,
                    supports_cooling=device.supports_cooling,
                    supports_auto=device.supports_auto,
                ),
            )

    def create_command(
        self,
        device_id: str,
        user_id: str,
        command_type: str,
        payload: dict[str, Any],
        requested_value: float | None,
        requested_at: datetime,
    ) -> ControlCommand:
        with self.session() as db:
            command = ControlCommand(
                device_id=device_id,
                user_id=user_id,
                command_type=command_type,
                payload_json=canonical_json_text(payload),
                requested_value=requested_value,
                status=CommandStatus.PENDING.value,
                requested_at=requested_at,
                source="api",
            )
            db.add(command)
            db.flush()
            return command

    def complete_command(
        self,
        command_id: str,
        status: CommandStatus,
        completed_at: datetime,
        error_message: str | None = None,
        failure_reason: str | None = None,
    ) -> ControlCommand | None:
        with self.session() as db:
            command = db.get(ControlCommand, command_id)
            if command is None:
                return None
            if command.status != CommandStatus.PENDING.value:
                # terminal rows are immutable
                return command
            command.status = status.value
            command.completed_at = completed_at
            command.error_message = error_message
            command.failure_reason = failure_reason
            return command

    def list_commands(self, device_id: str) -> list[ControlCommand]:
        with self.session() as db:
            return list(
                db.execute(
                    select(ControlCommand).where(ControlCommand.device_id == device_id).order_by(ControlCommand.requested_at)
                ).scalars()
            )

    # -- system status -----------------------------------------------------

    def _status_row(self, db: Session, key: str) -> SystemStatus:
        row = db.get(SystemStatus, key)
        if row is None:
            row = SystemStatus(key=key, payload_json="{}")
            db.add(row)
        return row

    def record_status_success(self, key: str, at: datetime, payload: dict[str, Any] | None = None) -> None:
        with self.session() as db:
            row = self._status_row(db, key)
            row.last_success_at = at
            if payload is not None:
                row.payload_json = canonical_json_text(payload)
            row.updated_at = datetime.now(UTC)

    def record_status_error(self, key: str, at: datetime, error: str, payload: dict[str, Any] | None = None) -> None:
        with self.session() as db:
            row = self._status_row(db, key)
            row.last_error_at = at
            row.last_error = error
            if payload is not None:
                row.payload_json = canonical_json_text(payload)
            row.updated_at = datetime.now(UTC)

    def load_status(self, keys: list[str]) -> dict[str, StatusSnapshot]:
        with self.session() as db:
            rows = db.execute(select(SystemStatus).where(SystemStatus.key.in_(keys))).scalars()
            return {
                row.key: StatusSnapshot(
                    key=row.key,
                    last_success_at=as_utc(row.last_success_at),
                    last_error_at=as_utc(row.last_error_at),
                    last_error=row.last_error,
                    payload=load_json_object(row.payload_json),
                )
                for row in rows
            }

    # -- notification lookups ----------------------------------------------

    def resolve_alert_org(self, alert: Alert) -> str | None:
        with self.session() as db:
            if alert.site_id:
                org_id = db.execute(select(Site.org_id).where(Site.id == alert.site_id)).scalar_one_or_none()
                if org_id:
                    return org_id
            return db.execute(
                select(Site.org_id).join(Device, Device.site_id == Site.id).where(Device.id == alert.device_id)
            ).scalar_one_or_none()

    def list_recipient_tokens(self, org_id: str, roles: tuple[str, ...]) -> tuple[list[str], list[RecipientToken]]:
        """Active users of ``org_id`` holding one of ``roles`` and their active push tokens."""
        with self.session() as db:
            user_ids = list(
                db.execute(
                    select(UserAccount.id)
                    .where(
                        UserAccount.org_id == org_id,
                        UserAccount.is_active.is_(True),
                        func.lower(UserAccount.role).in_(roles),
                    )
                    .order_by(UserAccount.created_at)
                ).scalars()
            )
            if not user_ids:
                return [], []
            rows = db.execute(
                select(PushToken.user_id, PushToken.token)
                .where(PushToken.user_id.in_(user_ids), PushToken.is_active.is_(True))
                .order_by(PushToken.id)
            ).all()
            return user_ids, [RecipientToken(user_id=row[0], token=row[1]) for row in rows]

    def latest_active_push_token(self) -> str | None:
        with self.session() as db:
            return db.execute(
                select(PushToken.token)
                .where(PushToken.is_active.is_(True))
                .order_by(desc(func.coalesce(PushToken.last_used_at, PushToken.created_at)), desc(PushToken.id))
                .limit(1)
            ).scalar_one_or_none()

    def record_audit(
        self,
        action: str,
        metadata: dict[str, Any],
        org_id: str | None = None,
        user_id: str | None = None,
        entity_type: str | None = None,
        entity_id: str | None = None,
    ) -> None:
        with self.session() as db:
            db.add(
                AuditEvent(
                    org_id=org_id,
                    user_id=user_id,
                    action=action,
                    entity_type=entity_type,
                    entity_id=entity_id,
                    metadata_json=canonical_json_text(metadata),
                )
            )

    def list_audit_events(self, action: str | None = None) -> list[AuditEvent]:
        with self.session() as db:
            stmt = select(AuditEvent).order_by(AuditEvent.id)
            if action is not None:
                stmt = stmt.where(AuditEvent.action == action)
            return list(db.execute(stmt).scalars())
