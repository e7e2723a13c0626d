from __future__ import annotations

import json
from datetime import timedelta
from typing import Any

import httpx
import pytest

from fleet_core.alerts import AlertCondition
from fleet_server.config import PushConfig
from fleet_server.db import ServerDatabase
from fleet_server.models import Alert
from fleet_server.push import EXPO_PUSH_URL, ExpoPushClient, NotificationDispatcher, is_expo_push_token
from fleet_server.status import StatusRecorder
from fleet_server.tasks import AlertNotifier
from fleet_shared.constants import STATUS_PUSH
from fleet_shared.enums import AlertSeverity, AlertType

from conftest import FakeClock, SeededFleet

TOKEN_A = "ExponentPushToken[aaaaaaaaaaaa]"
TOKEN_B = "ExpoPushToken[bbbbbbbbbbbb]"
CONFIGURED = PushConfig(access_token="expo-access-token")


class FakeExpoClient:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.batches: list[list[dict[str, Any]]] = []

    def send(self, messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
        self.batches.append(messages)
        if self.error is not None:
            raise self.error
        return [{"status": "ok", "id": f"ticket-{index}"} for index, _ in enumerate(messages)]


def _alert(
    db: ServerDatabase,
    fleet: SeededFleet,
    clock: FakeClock,
    severity: AlertSeverity = AlertSeverity.CRITICAL,
) -> Alert:
    condition = AlertCondition(AlertType.HIGH_TEMP, severity, "Supply temperature high: 65.0C (limit 60C)")
    alert, _ = db.upsert_active_alert(fleet.device_id, fleet.site_id, condition, clock.now)
    return alert


def _dispatcher(
    db: ServerDatabase,
    clock: FakeClock,
    client: FakeExpoClient | None,
    config: PushConfig = CONFIGURED,
) -> NotificationDispatcher:
    return NotificationDispatcher(db, config, StatusRecorder(db), client=client, clock=clock)  # type: ignore[arg-type]


def _audit(db: ServerDatabase) -> list[dict[str, Any]]:
    return [json.loads(event.metadata_json) for event in db.list_audit_events("push_notification_sent")]


def test_expo_token_format() -> None:
    assert is_expo_push_token(TOKEN_A)
    assert is_expo_push_token(TOKEN_B)
    assert not is_expo_push_token("fcm:abcdef")
    assert not is_expo_push_token("ExponentPushToken[]")
    assert not is_expo_push_token(None)


def test_critical_alert_fans_out_to_deduplicated_valid_tokens(
    db: ServerDatabase, fleet: SeededFleet, clock: FakeClock
) -> None:
    owner = db.create_user(fleet.org_id, "owner@example.com", role="owner")
    admin = db.create_user(fleet.org_id, "admin@example.com", role="admin")
    contractor = db.create_user(fleet.org_id, "contractor@example.com", role="contractor")
    db.add_push_token(owner.id, TOKEN_A)
    db.add_push_token(owner.id, "not-an-expo-token")
    db.add_push_token(admin.id, TOKEN_B)
    db.add_push_token(admin.id, "ExpoPushToken[inactive]", is_active=False)
    db.add_push_token(contractor.id, "ExpoPushToken[contractor]")
    client = FakeExpoClient()
    alert = _alert(db, fleet, clock)

    result = _dispatcher(db, clock, client).send_alert_notification(alert)

    assert result.success is True
    assert result.attempted == 2
    assert result.sent == 2
    [batch] = client.batches
    assert [message["to"] for message in batch] == [TOKEN_A, TOKEN_B]
    message = batch[0]
    assert message["title"] == "[CRITICAL] high_temp"
    assert message["body"] == alert.message
    assert message["data"]["alertId"] == alert.id
    assert message["data"]["orgId"] == fleet.org_id

    [audit] = _audit(db)
    assert audit["success"] is True
    assert audit["token_count"] == 2
    assert sorted(audit["user_ids"]) == sorted([owner.id, admin.id])


def test_low_severity_alert_is_not_pushed_or_audited(
    db: ServerDatabase, fleet: SeededFleet, clock: FakeClock
) -> None:
    client = FakeExpoClient()
    alert = _alert(db, fleet, clock, severity=AlertSeverity.WARNING)

    result = _dispatcher(db, clock, client).send_alert_notification(alert)

    assert result.skipped_reason == "severity_not_eligible"
    assert client.batches == []
    assert _audit(db) == []


def test_disabled_push_is_audited(db: ServerDatabase, fleet: SeededFleet, clock: FakeClock) -> None:
    config = PushConfig(access_token="expo-access-token", disabled=True)
    result = _dispatcher(db, clock, FakeExpoClient(), config).send_alert_notification(_alert(db, fleet, clock))

    assert result.skipped_reason == "disabled"
    [audit] = _audit(db)
    assert audit["reason"] == "disabled"
    assert audit["success"] is False


def test_muted_alert_is_skipped(db: ServerDatabase, fleet: SeededFleet, clock: FakeClock) -> None:
    alert = _alert(db, fleet, clock)
    db.mute_alert(alert.id, clock.now + timedelta(hours=1))
    muted = db.get_alert(alert.id)
    assert muted is not None

    result = _dispatcher(db, clock, FakeExpoClient()).send_alert_notification(muted)

    assert result.skipped_reason == "muted"
    assert _audit(db)[0]["reason"] == "muted"


def test_expired_mute_does_not_block(db: ServerDatabase, fleet: SeededFleet, clock: FakeClock) -> None:
    user = db.create_user(fleet.org_id, "owner@example.com", role="owner")
    db.add_push_token(user.id, TOKEN_A)
    alert = _alert(db, fleet, clock)
    db.mute_alert(alert.id, clock.now - timedelta(minutes=1))

    result = _dispatcher(db, clock, FakeExpoClient()).send_alert_notification(db.get_alert(alert.id))  # type: ignore[arg-type]

    assert result.success is True


def test_recipient_and_token_gaps_are_reported(db: ServerDatabase, fleet: SeededFleet, clock: FakeClock) -> None:
    alert = _alert(db, fleet, clock)
    dispatcher = _dispatcher(db, clock, FakeExpoClient())

    assert dispatcher.send_alert_notification(alert).skipped_reason == "no_recipients"

    user = db.create_user(fleet.org_id, "facilities@example.com", role="facilities")
    db.add_push_token(user.id, "legacy-token")
    assert dispatcher.send_alert_notification(alert).skipped_reason == "no_valid_tokens"

    reasons = [entry["reason"] for entry in _audit(db)]
    assert reasons == ["no_recipients", "no_valid_tokens"]


def test_missing_access_token_is_not_configured(db: ServerDatabase, fleet: SeededFleet, clock: FakeClock) -> None:
    user = db.create_user(fleet.org_id, "owner@example.com", role="owner")
    db.add_push_token(user.id, TOKEN_A)

    result = _dispatcher(db, clock, None, PushConfig()).send_alert_notification(_alert(db, fleet, clock))

    assert result.skipped_reason == "not_configured"
    assert result.success is False


def test_send_failure_is_recorded_not_raised(db: ServerDatabase, fleet: SeededFleet, clock: FakeClock) -> None:
    user = db.create_user(fleet.org_id, "owner@example.com", role="owner")
    db.add_push_token(user.id, TOKEN_A)
    client = FakeExpoClient(error=RuntimeError("expo responded 503"))

    result = _dispatcher(db, clock, client).send_alert_notification(_alert(db, fleet, clock))

    assert result.success is False
    assert result.errors == ["expo responded 503"]
    [audit] = _audit(db)
    assert audit["reason"] == "expo responded 503"


def test_health_check_is_interval_gated(db: ServerDatabase, fleet: SeededFleet, clock: FakeClock) -> None:
    user = db.create_user(fleet.org_id, "owner@example.com", role="owner")
    db.add_push_token(user.id, TOKEN_A)
    config = PushConfig(access_token="expo-access-token", healthcheck_enabled=True, healthcheck_interval_minutes=30)
    client = FakeExpoClient()
    dispatcher = _dispatcher(db, clock, client, config)

    first = dispatcher.run_health_check()
    assert first.status == "ok"
    assert client.batches[0][0]["to"] == TOKEN_A
    assert client.batches[0][0]["data"] == {"type": "healthcheck"}

    clock.advance(minutes=10)
    assert dispatcher.run_health_check() is first
    assert len(client.batches) == 1

    clock.advance(minutes=25)
    dispatcher.run_health_check()
    assert len(client.batches) == 2

    row = db.load_status([STATUS_PUSH])[STATUS_PUSH]
    assert row.last_success_at == clock.now


def test_health_check_failure_marks_push_status(db: ServerDatabase, fleet: SeededFleet, clock: FakeClock) -> None:
    config = PushConfig(
        access_token="expo-access-token",
        healthcheck_enabled=True,
        healthcheck_token=TOKEN_B,
    )
    dispatcher = _dispatcher(db, clock, FakeExpoClient(error=RuntimeError("expo unreachable")), config)

    sample = dispatcher.run_health_check()

    assert sample.status == "error"
    row = db.load_status([STATUS_PUSH])[STATUS_PUSH]
    assert row.last_error == "expo unreachable"


def test_health_check_skips_when_disabled_or_unconfigured(db: ServerDatabase, clock: FakeClock) -> None:
    assert _dispatcher(db, clock, FakeExpoClient(), PushConfig()).run_health_check().status == "skipped"
    assert _dispatcher(db, clock, FakeExpoClient(), CONFIGURED).run_health_check().status == "skipped"
    enabled = PushConfig(access_token="expo-access-token", healthcheck_enabled=True)
    assert _dispatcher(db, clock, FakeExpoClient(), enabled).run_health_check().status == "skipped"
    assert db.load_status([STATUS_PUSH]) == {}


def test_health_check_without_tokens_is_cached_for_the_interval(
    db: ServerDatabase, clock: FakeClock, monkeypatch: pytest.MonkeyPatch
) -> None:
    lookups: list[None] = []
    original = db.latest_active_push_token

    def counting_lookup() -> str | None:
        lookups.append(None)
        return original()

    monkeypatch.setattr(db, "latest_active_push_token", counting_lookup)
    config = PushConfig(access_token="expo-access-token", healthcheck_enabled=True, healthcheck_interval_minutes=30)
    client = FakeExpoClient()
    dispatcher = _dispatcher(db, clock, client, config)

    first = dispatcher.run_health_check()
    clock.advance(minutes=10)
    second = dispatcher.run_health_check()

    assert first.status == "skipped"
    assert second is first
    assert len(lookups) == 1
    assert client.batches == []

    clock.advance(minutes=25)
    assert dispatcher.run_health_check() is not first
    assert len(lookups) == 2


def test_expo_client_sends_batches_of_one_hundred() -> None:
    seen: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert str(request.url) == EXPO_PUSH_URL
        assert request.headers["Authorization"] == "Bearer expo-access-token"
        batch = json.loads(request.content)
        seen.append(len(batch))
        return httpx.Response(200, json={"data": [{"status": "ok"} for _ in batch]})

    client = ExpoPushClient("expo-access-token", client=httpx.Client(transport=httpx.MockTransport(handler)))
    tickets = client.send([{"to": f"ExpoPushToken[{index}]"} for index in range(230)])

    assert seen == [100, 100, 30]
    assert len(tickets) == 230


def test_celery_mode_falls_back_to_inline_when_enqueue_fails(
    db: ServerDatabase, fleet: SeededFleet, clock: FakeClock
) -> None:
    user = db.create_user(fleet.org_id, "owner@example.com", role="owner")
    db.add_push_token(user.id, TOKEN_A)
    client = FakeExpoClient()
    enqueued: list[str] = []

    def failing_enqueue(alert_id: str) -> bool:
        enqueued.append(alert_id)
        return False

    notifier = AlertNotifier(_dispatcher(db, clock, client), mode="celery", enqueue=failing_enqueue)
    alert = _alert(db, fleet, clock)
    notifier(alert)

    assert enqueued == [alert.id]
    assert len(client.batches) == 1


def test_celery_mode_skips_inline_dispatch_when_enqueued(
    db: ServerDatabase, fleet: SeededFleet, clock: FakeClock
) -> None:
    client = FakeExpoClient()
    notifier = AlertNotifier(_dispatcher(db, clock, client), mode="celery", enqueue=lambda alert_id: True)

    notifier(_alert(db, fleet, clock))

    assert client.batches == []


@pytest.mark.parametrize("role", ["OWNER", "Admin"])
def test_roles_match_case_insensitively(db: ServerDatabase, fleet: SeededFleet, clock: FakeClock, role: str) -> None:
    user = db.create_user(fleet.org_id, f"{role}@example.com", role=role)
    db.add_push_token(user.id, TOKEN_A)

    result = _dispatcher(db, clock, FakeExpoClient()).send_alert_notification(_alert(db, fleet, clock))

    assert result.sent == 1
