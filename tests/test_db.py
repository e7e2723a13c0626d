from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from fleet_core.alerts import AlertCondition
from fleet_server.db import ServerDatabase
from fleet_server.models import Alert
from fleet_shared.enums import AlertSeverity, AlertStatus, AlertType, CommandStatus

from conftest import FakeClock, SeededFleet


def test_partial_index_allows_only_one_active_alert_per_key(
    db: ServerDatabase, fleet: SeededFleet, clock: FakeClock
) -> None:
    with pytest.raises(IntegrityError):
        with db.session() as session:
            for _ in range(2):
                session.add(
                    Alert(
                        device_id=fleet.device_id,
                        site_id=fleet.site_id,
                        type=AlertType.OFFLINE.value,
                        severity=AlertSeverity.WARNING.value,
                        message="offline",
                        status=AlertStatus.ACTIVE.value,
                        first_seen_at=clock.now,
                        last_seen_at=clock.now,
                    )
                )
                session.flush()


def test_cleared_rows_do_not_block_a_new_episode(db: ServerDatabase, fleet: SeededFleet, clock: FakeClock) -> None:
    condition = AlertCondition(AlertType.OFFLINE, AlertSeverity.WARNING, "Device offline for more than 10 minutes")
    first, created = db.upsert_active_alert(fleet.device_id, fleet.site_id, condition, clock.now)
    assert created is True
    again, created = db.upsert_active_alert(fleet.device_id, fleet.site_id, condition, clock.now)
    assert created is False
    assert again.id == first.id

    assert db.clear_active_alert(fleet.device_id, AlertType.OFFLINE.value, clock.now) is True
    assert db.clear_active_alert(fleet.device_id, AlertType.OFFLINE.value, clock.now) is False

    second, created = db.upsert_active_alert(fleet.device_id, fleet.site_id, condition, clock.advance(minutes=5))
    assert created is True
    assert second.id != first.id
    assert db.count_active_alerts() == 1


def test_rule_alerts_are_keyed_by_rule(db: ServerDatabase, fleet: SeededFleet, clock: FakeClock) -> None:
    one = AlertCondition(AlertType.RULE, AlertSeverity.HIGH, "rule one", rule_id=None)
    _, created_one = db.upsert_active_alert(fleet.device_id, fleet.site_id, one, clock.now)
    builtin = AlertCondition(AlertType.HIGH_TEMP, AlertSeverity.CRITICAL, "hot")
    _, created_two = db.upsert_active_alert(fleet.device_id, fleet.site_id, builtin, clock.now)
    assert created_one and created_two
    assert db.count_active_alerts() == 2


def test_snapshot_document_round_trips(db: ServerDatabase, fleet: SeededFleet, clock: FakeClock) -> None:
    document = {"metrics": {"supply_temp": 44.5, "cop": None}, "raw": {"sensor": {"supply_temperature_c": 44.5}}}
    written = db.write_telemetry(fleet.device_id, clock.now, [("supply_temp", 44.5)], document)

    assert written == 1
    snapshot = db.get_snapshot(fleet.device_id)
    assert snapshot is not None
    assert snapshot.document == document
    assert snapshot.org_id == fleet.org_id
    assert [item.device_id for item in db.list_snapshots()] == [fleet.device_id]


def test_latest_metric_value_uses_newest_point(db: ServerDatabase, fleet: SeededFleet, clock: FakeClock) -> None:
    doc = {"metrics": {}, "raw": {}}
    db.write_telemetry(fleet.device_id, clock.now - timedelta(minutes=5), [("cop", 2.1)], doc)
    db.write_telemetry(fleet.device_id, clock.now, [("cop", 3.4)], doc)
    db.write_telemetry(fleet.device_id, clock.now - timedelta(minutes=10), [("cop", 1.0)], doc)

    assert db.latest_metric_values("cop", [fleet.device_id]) == {fleet.device_id: 3.4}
    assert db.latest_metric_values("cop", []) == {}


def test_terminal_command_rows_are_immutable(db: ServerDatabase, fleet: SeededFleet, clock: FakeClock) -> None:
    command = db.create_command(fleet.device_id, "user-1", "mode", {"mode": "OFF"}, None, clock.now)
    assert command.status == CommandStatus.PENDING.value

    db.complete_command(command.id, CommandStatus.FAILED, clock.now, error_message="CONTROL_TIMEOUT:10s")
    after = db.complete_command(command.id, CommandStatus.SUCCESS, clock.now)

    assert after is not None
    assert after.status == CommandStatus.FAILED.value
    assert after.error_message == "CONTROL_TIMEOUT:10s"


def test_status_rows_are_last_write_wins(db: ServerDatabase, clock: FakeClock) -> None:
    db.record_status_error("push", clock.now, "expo down")
    db.record_status_success("push", clock.advance(minutes=1), {"sample": "ok"})

    row = db.load_status(["push", "mqtt_ingest"])
    assert set(row) == {"push"}
    assert row["push"].last_success_at == clock.now
    assert row["push"].last_error == "expo down"
    assert row["push"].payload == {"sample": "ok"}
