from __future__ import annotations

from fleet_core.backoff import ReconnectBackoff
from fleet_server.config import FeedConfig
from fleet_server.db import ServerDatabase
from fleet_server.feed import TelemetryFeedSession
from fleet_server.status import StatusRecorder
from fleet_shared.constants import STATUS_MQTT_INGEST

from conftest import FakeClientFactory, FakeClock, FakeTimerFactory

FEED = FeedConfig(url="mqtts://broker.example.com", username="fleet", password="s3cret")


class RecordingHandler:
    def __init__(self, result: bool = True) -> None:
        self.result = result
        self.calls: list[tuple[str, bytes]] = []

    def __call__(self, topic: str, payload: bytes) -> bool:
        self.calls.append((topic, payload))
        return self.result


def _session(
    handler: RecordingHandler | None = None,
    status: StatusRecorder | None = None,
) -> tuple[TelemetryFeedSession, FakeClientFactory, FakeTimerFactory]:
    clients = FakeClientFactory()
    timers = FakeTimerFactory()
    session = TelemetryFeedSession(
        FEED,
        handler or RecordingHandler(),
        status=status,
        client_factory=clients,
        timer_factory=timers,
        clock=FakeClock(),
    )
    return session, clients, timers


def test_backoff_doubles_and_caps() -> None:
    backoff = ReconnectBackoff(1.0, 5.0)
    assert [backoff.next_delay() for _ in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]
    backoff.reset()
    assert backoff.next_delay() == 1.0


def test_unconfigured_feed_does_not_start() -> None:
    clients = FakeClientFactory()
    session = TelemetryFeedSession(FeedConfig(), RecordingHandler(), client_factory=clients)
    assert session.start() is False
    assert clients.clients == []


def test_connect_applies_credentials_tls_and_subscribes() -> None:
    session, clients, _ = _session()
    assert session.start() is True

    client = clients.clients[0]
    assert client.connected_to == ("broker.example.com", 8883)
    assert client.credentials == ("fleet", "s3cret")
    assert client.tls is True
    assert client.loop_started is True

    session.on_connect()
    assert client.subscriptions == [(FEED.telemetry_topic, 1)]
    assert session.snapshot().connected is True


def test_reconnect_delays_grow_then_reset_after_connect() -> None:
    session, clients, timers = _session()
    session.start()

    for _ in range(3):
        session.on_error("connection refused")
        timers.timers[-1].fire()
    assert timers.delays == [1.0, 2.0, 4.0]
    assert len(clients.clients) == 4

    session.on_connect()
    session.on_close()
    assert timers.delays[-1] == 1.0


def test_only_one_reconnect_timer_is_pending() -> None:
    session, _, timers = _session()
    session.start()

    session.on_error("first failure")
    session.on_close()
    session.on_error("second failure")

    assert len(timers.timers) == 1


def test_stop_cancels_pending_reconnect() -> None:
    session, clients, timers = _session()
    session.start()
    session.on_error("broker gone")

    session.stop()
    assert timers.timers[0].cancelled is True
    timers.timers[0].fire()
    assert len(clients.clients) == 1


def test_callbacks_from_discarded_clients_are_ignored() -> None:
    handler = RecordingHandler()
    session, clients, timers = _session(handler)
    session.start()
    stale = clients.clients[0]
    session.on_error("drop")
    timers.timers[0].fire()

    stale.on_message(stale, None, type("Msg", (), {"topic": "greenbro/s/d/telemetry", "payload": b"{}"})())
    assert handler.calls == []

    current = clients.clients[1]
    current.on_message(current, None, type("Msg", (), {"topic": "greenbro/s/d/telemetry", "payload": b"{}"})())
    assert handler.calls == [("greenbro/s/d/telemetry", b"{}")]


def test_handler_rejection_is_noted_but_not_persisted(db: ServerDatabase) -> None:
    status = StatusRecorder(db)
    session, _, _ = _session(RecordingHandler(result=False), status=status)
    session.start()

    assert session.on_message("greenbro/site-1/hp-1/telemetry", b"{}") is False
    assert session.snapshot().last_error == "telemetry ingest returned false"
    assert db.load_status([STATUS_MQTT_INGEST]) == {}


def test_transport_error_is_recorded_to_status(db: ServerDatabase) -> None:
    status = StatusRecorder(db)
    session, _, _ = _session(status=status)
    session.start()

    session.on_error(ConnectionError("connection   reset\nby peer"))

    row = db.load_status([STATUS_MQTT_INGEST])[STATUS_MQTT_INGEST]
    assert row.last_error == "connection reset by peer"
    assert session.snapshot().connected is False
