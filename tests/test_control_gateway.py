from __future__ import annotations

import json
import threading
from typing import Any

import httpx
import pytest

from fleet_core.control import CommandAccepted, CommandRejected, ControlErrorCode, ModeRequest, SetpointRequest
from fleet_server.cache import RedisCommandLease
from fleet_server.config import ControlConfig, FeedConfig, ServerConfig
from fleet_server.control import (
    ControlGateway,
    ControlTimeoutError,
    ControlTransportError,
    HttpControlTransport,
    MqttControlTransport,
    build_control_transport,
)
from fleet_server.db import ServerDatabase
from fleet_server.status import StatusRecorder
from fleet_shared.constants import STATUS_CONTROL_CHANNEL
from fleet_shared.enums import CommandStatus

from conftest import FakeClientFactory, FakeClock, SeededFleet, with_overrides

USER_ID = "user-1"


class FakeTransport:
    name = "fake"

    def __init__(self, error: Exception | None = None, block: threading.Event | None = None) -> None:
        self.error = error
        self.block = block
        self.sent: list[tuple[str, str, dict[str, Any]]] = []

    def send(self, device_external_id: str, command_type: str, payload: dict[str, Any], timeout: float) -> None:
        self.sent.append((device_external_id, command_type, payload))
        if self.block is not None:
            self.block.wait(5)
        if self.error is not None:
            raise self.error


class FakeLeaseStore:
    def __init__(self) -> None:
        self.keys: dict[str, tuple[str, int]] = {}

    def set(self, key: str, value: str, nx: bool = False, px: int | None = None) -> bool | None:
        if nx and key in self.keys:
            return None
        self.keys[key] = (value, px or 0)
        return True


def _gateway(
    db: ServerDatabase,
    transport: Any,
    clock: FakeClock,
    lease: RedisCommandLease | None = None,
    timeout_seconds: float = 2.0,
) -> ControlGateway:
    return ControlGateway(db, transport, StatusRecorder(db), lease=lease, timeout_seconds=timeout_seconds, clock=clock)


def test_unconfigured_channel_rejects_before_touching_the_store(
    db: ServerDatabase, fleet: SeededFleet, clock: FakeClock
) -> None:
    result = _gateway(db, None, clock).set_setpoint(fleet.device_id, USER_ID, SetpointRequest(45), fleet.org_id)

    assert isinstance(result, CommandRejected)
    assert result.reason is ControlErrorCode.CONTROL_CHANNEL_UNCONFIGURED
    assert result.http_status == 503
    assert db.list_commands(fleet.device_id) == []


def test_device_lookup_is_scoped_to_org(db: ServerDatabase, fleet: SeededFleet, clock: FakeClock) -> None:
    other_org = db.create_org("Someone Else")
    transport = FakeTransport()

    result = _gateway(db, transport, clock).set_setpoint(fleet.device_id, USER_ID, SetpointRequest(45), other_org.id)

    assert isinstance(result, CommandRejected)
    assert result.reason is ControlErrorCode.DEVICE_NOT_FOUND
    assert transport.sent == []


def test_device_without_external_id_is_not_controllable(
    db: ServerDatabase, fleet: SeededFleet, clock: FakeClock
) -> None:
    device = db.create_device(fleet.site_id, "Unmapped pump")

    result = _gateway(db, FakeTransport(), clock).set_mode(device.id, USER_ID, ModeRequest("OFF"), fleet.org_id)

    assert isinstance(result, CommandRejected)
    assert result.reason is ControlErrorCode.DEVICE_NOT_CONTROLLABLE


def test_validation_failure_writes_nothing(db: ServerDatabase, fleet: SeededFleet, clock: FakeClock) -> None:
    transport = FakeTransport()

    result = _gateway(db, transport, clock).set_setpoint(fleet.device_id, USER_ID, SetpointRequest(70), fleet.org_id)

    assert isinstance(result, CommandRejected)
    assert result.reason is ControlErrorCode.ABOVE_MAX
    assert result.message == "Setpoint above maximum of 60C"
    assert transport.sent == []
    assert db.list_commands(fleet.device_id) == []


def test_successful_setpoint_is_recorded(db: ServerDatabase, fleet: SeededFleet, clock: FakeClock) -> None:
    transport = FakeTransport()

    result = _gateway(db, transport, clock).set_setpoint(fleet.device_id, USER_ID, SetpointRequest(45), fleet.org_id)

    assert isinstance(result, CommandAccepted)
    assert result.status == CommandStatus.SUCCESS.value
    assert transport.sent == [("hp-1", "setpoint", {"metric": "flow_temp", "value": 45})]

    [command] = db.list_commands(fleet.device_id)
    assert command.id == result.command_id
    assert command.status == CommandStatus.SUCCESS.value
    assert command.requested_value == 45.0
    assert command.completed_at is not None
    assert command.user_id == USER_ID

    status = db.load_status([STATUS_CONTROL_CHANNEL])[STATUS_CONTROL_CHANNEL]
    assert status.last_success_at == clock.now


def test_transport_failure_becomes_command_failed(db: ServerDatabase, fleet: SeededFleet, clock: FakeClock) -> None:
    transport = FakeTransport(error=ControlTransportError("CONTROL_HTTP_FAILED:500:boom"))

    result = _gateway(db, transport, clock).set_mode(fleet.device_id, USER_ID, ModeRequest("HEATING"), fleet.org_id)

    assert isinstance(result, CommandRejected)
    assert result.reason is ControlErrorCode.COMMAND_FAILED
    assert result.http_status == 502
    [command] = db.list_commands(fleet.device_id)
    assert command.id == result.command_id
    assert command.status == CommandStatus.FAILED.value
    assert command.error_message == "CONTROL_HTTP_FAILED:500:boom"
    assert command.failure_reason == ControlErrorCode.COMMAND_FAILED.value

    status = db.load_status([STATUS_CONTROL_CHANNEL])[STATUS_CONTROL_CHANNEL]
    assert status.last_error == "CONTROL_HTTP_FAILED:500:boom"


def test_unexpected_transport_exception_is_contained(
    db: ServerDatabase, fleet: SeededFleet, clock: FakeClock
) -> None:
    transport = FakeTransport(error=RuntimeError("socket closed"))

    result = _gateway(db, transport, clock).set_mode(fleet.device_id, USER_ID, ModeRequest("AUTO"), fleet.org_id)

    assert isinstance(result, CommandRejected)
    assert result.reason is ControlErrorCode.COMMAND_FAILED


def test_deadline_expiry_fails_the_command(db: ServerDatabase, fleet: SeededFleet, clock: FakeClock) -> None:
    release = threading.Event()
    gateway = _gateway(db, FakeTransport(block=release), clock, timeout_seconds=0.05)
    try:
        result = gateway.set_setpoint(fleet.device_id, USER_ID, SetpointRequest(40), fleet.org_id)
    finally:
        release.set()
        gateway.shutdown()

    assert isinstance(result, CommandRejected)
    assert result.reason is ControlErrorCode.COMMAND_FAILED
    [command] = db.list_commands(fleet.device_id)
    assert command.status == CommandStatus.FAILED.value
    assert command.error_message == "CONTROL_TIMEOUT:0.05s"


def test_per_device_lease_throttles_rapid_commands(db: ServerDatabase, fleet: SeededFleet, clock: FakeClock) -> None:
    store = FakeLeaseStore()
    lease = RedisCommandLease("redis://unused", interval_ms=5000, client=store)  # type: ignore[arg-type]
    gateway = _gateway(db, FakeTransport(), clock, lease=lease)

    first = gateway.set_setpoint(fleet.device_id, USER_ID, SetpointRequest(45), fleet.org_id)
    second = gateway.set_setpoint(fleet.device_id, "user-2", SetpointRequest(46), fleet.org_id)

    assert isinstance(first, CommandAccepted)
    assert isinstance(second, CommandRejected)
    assert second.reason is ControlErrorCode.THROTTLED
    assert second.http_status == 429
    assert store.keys[f"control:lease:{fleet.device_id}"] == (USER_ID, 5000)
    assert len(db.list_commands(fleet.device_id)) == 1


def test_http_transport_posts_command_with_bearer_key() -> None:
    captured: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(202, json={"accepted": True})

    client = httpx.Client(transport=httpx.MockTransport(handler))
    transport = HttpControlTransport("https://control.example.com/", "ctl-key", client=client)

    transport.send("hp-1", "mode", {"mode": "HEATING"}, timeout=1.0)

    [request] = captured
    assert str(request.url) == "https://control.example.com/devices/hp-1/commands"
    assert request.headers["Authorization"] == "Bearer ctl-key"
    assert json.loads(request.content) == {"type": "mode", "payload": {"mode": "HEATING"}}


def test_http_transport_raises_on_error_status() -> None:
    client = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(500, text="device offline")))
    transport = HttpControlTransport("https://control.example.com", "ctl-key", client=client)

    with pytest.raises(ControlTransportError, match="CONTROL_HTTP_FAILED:500:device offline"):
        transport.send("hp-1", "setpoint", {"metric": "flow_temp", "value": 45}, timeout=1.0)


def test_mqtt_transport_publishes_on_device_command_topic() -> None:
    clients = FakeClientFactory(connects_on_start=True)
    transport = MqttControlTransport(
        "broker.example.com",
        1883,
        "greenbro/{device_external_id}/commands",
        client_factory=clients,
    )

    transport.send("hp-1", "mode", {"mode": "COOLING"}, timeout=1.0)

    [client] = clients.clients
    [(topic, payload, qos)] = client.published
    assert topic == "greenbro/hp-1/commands"
    assert json.loads(payload) == {"type": "mode", "mode": "COOLING"}
    assert qos == 1


def test_mqtt_transport_waits_for_broker_before_publishing() -> None:
    clients = FakeClientFactory()
    transport = MqttControlTransport("broker.example.com", 1883, "greenbro/{device_external_id}/commands", client_factory=clients)

    with pytest.raises(ControlTimeoutError, match="CONTROL_MQTT_NOT_CONNECTED"):
        transport.send("hp-1", "mode", {"mode": "OFF"}, timeout=0.05)

    [client] = clients.clients
    assert client.published == []
    assert client.queued == []

    client.accept_connection()
    transport.send("hp-1", "mode", {"mode": "AUTO"}, timeout=1.0)

    assert len(clients.clients) == 1
    [(topic, payload, _)] = client.published
    assert topic == "greenbro/hp-1/commands"
    assert json.loads(payload) == {"type": "mode", "mode": "AUTO"}


def test_mqtt_transport_drops_client_when_publish_is_refused() -> None:
    clients = FakeClientFactory(connects_on_start=True)
    transport = MqttControlTransport("broker.example.com", 1883, "greenbro/{device_external_id}/commands", client_factory=clients)
    transport.send("hp-1", "mode", {"mode": "HEATING"}, timeout=1.0)

    [first] = clients.clients
    # connection lost before paho's disconnect callback ran
    first.connected = False

    with pytest.raises(ControlTransportError, match="CONTROL_MQTT_PUBLISH_FAILED:4"):
        transport.send("hp-1", "mode", {"mode": "OFF"}, timeout=1.0)

    assert first.disconnected is True
    assert first.loop_stopped is True

    transport.send("hp-1", "mode", {"mode": "COOLING"}, timeout=1.0)
    assert len(clients.clients) == 2
    assert [json.loads(payload)["mode"] for _, payload, _ in clients.clients[1].published] == ["COOLING"]


def test_mqtt_transport_drops_client_when_publish_is_not_acknowledged() -> None:
    clients = FakeClientFactory(publish_succeeds=False, connects_on_start=True)
    transport = MqttControlTransport("broker.example.com", 1883, "greenbro/{device_external_id}/commands", client_factory=clients)

    with pytest.raises(ControlTimeoutError, match="CONTROL_MQTT_PUBLISH_TIMEOUT"):
        transport.send("hp-1", "mode", {"mode": "OFF"}, timeout=0.1)

    [client] = clients.clients
    assert client.disconnected is True


def test_transport_selection(server_config: ServerConfig) -> None:
    http_cfg = with_overrides(server_config, control=ControlConfig(api_url="https://ctl", api_key="k"))
    mqtt_cfg = with_overrides(server_config, feed=FeedConfig(url="mqtt://broker:1883"))
    disabled_cfg = with_overrides(
        server_config,
        feed=FeedConfig(url="mqtt://broker:1883"),
        control=ControlConfig(api_url="https://ctl", api_key="k", disabled=True),
    )

    assert isinstance(build_control_transport(http_cfg), HttpControlTransport)
    assert isinstance(build_control_transport(mqtt_cfg), MqttControlTransport)
    assert build_control_transport(disabled_cfg) is None
    assert build_control_transport(server_config) is None
