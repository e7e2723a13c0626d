from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Callable

import pytest
from fastapi.testclient import TestClient

from fleet_server.app import create_app
from fleet_server.config import AlertConfig, ServerConfig
from fleet_server.db import ServerDatabase

UNREACHABLE_REDIS = "redis://127.0.0.1:6399/0"
INGEST_KEY = "test-ingest-key"


@dataclass(frozen=True)
class SeededFleet:
    org_id: str
    site_id: str
    device_id: str
    site_external_id: str
    device_external_id: str


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeTimer:
    def __init__(self, delay: float, callback: Callable[[], None]) -> None:
        self.delay = delay
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        self.callback()


class FakeTimerFactory:
    def __init__(self) -> None:
        self.timers: list[FakeTimer] = []

    def __call__(self, delay: float, callback: Callable[[], None]) -> FakeTimer:
        timer = FakeTimer(delay, callback)
        self.timers.append(timer)
        return timer

    @property
    def delays(self) -> list[float]:
        return [timer.delay for timer in self.timers]


class FakePublishInfo:
    def __init__(self, published: bool = True, rc: int = 0) -> None:
        self.rc = rc
        self.published = published
        self.timeouts: list[float | None] = []

    def wait_for_publish(self, timeout: float | None = None) -> None:
        self.timeouts.append(timeout)

    def is_published(self) -> bool:
        return self.published


class FakeMqttClient:
    def __init__(self, client_id: str = "fake", publish_succeeds: bool = True, connects_on_start: bool = False) -> None:
        self.client_id = client_id
        self.publish_succeeds = publish_succeeds
        self.connects_on_start = connects_on_start
        self.connected = False
        self.connected_to: tuple[str, int] | None = None
        self.credentials: tuple[str, str | None] | None = None
        self.tls = False
        self.loop_started = False
        self.loop_stopped = False
        self.disconnected = False
        self.subscriptions: list[tuple[str, int]] = []
        self.published: list[tuple[str, str, int]] = []
        self.queued: list[tuple[str, str, int]] = []
        self.connect_timeout: float | None = None
        self.on_connect: Any = None
        self.on_connect_fail: Any = None
        self.on_disconnect: Any = None
        self.on_message: Any = None

    def username_pw_set(self, username: str, password: str | None = None) -> None:
        self.credentials = (username, password)

    def tls_set(self) -> None:
        self.tls = True

    def connect_async(self, host: str, port: int, keepalive: int = 60) -> None:
        self.connected_to = (host, port)

    def loop_start(self) -> None:
        self.loop_started = True
        if self.connects_on_start:
            self.accept_connection()

    def accept_connection(self) -> None:
        self.connected = True
        if self.on_connect is not None:
            self.on_connect(self, None, None, 0, None)

    def loop_stop(self) -> None:
        self.loop_stopped = True

    def disconnect(self) -> None:
        self.disconnected = True
        self.connected = False

    def subscribe(self, topic: str, qos: int = 0) -> None:
        self.subscriptions.append((topic, qos))

    def publish(self, topic: str, payload: str, qos: int = 0) -> FakePublishInfo:
        if not self.connected:
            # MQTT_ERR_NO_CONN; paho keeps the message queued for the next connection
            self.queued.append((topic, payload, qos))
            return FakePublishInfo(False, rc=4)
        self.published.append((topic, payload, qos))
        return FakePublishInfo(self.publish_succeeds)


class FakeClientFactory:
    def __init__(self, publish_succeeds: bool = True, connects_on_start: bool = False) -> None:
        self.publish_succeeds = publish_succeeds
        self.connects_on_start = connects_on_start
        self.clients: list[FakeMqttClient] = []

    def __call__(self, client_id: str) -> FakeMqttClient:
        client = FakeMqttClient(client_id, publish_succeeds=self.publish_succeeds, connects_on_start=self.connects_on_start)
        self.clients.append(client)
        return client


@pytest.fixture()
def server_config(tmp_path: Path) -> ServerConfig:
    return ServerConfig(
        environment="test",
        database_url=f"sqlite:///{str(tmp_path / 'fleet.db')}",
        redis_url=UNREACHABLE_REDIS,
        host="127.0.0.1",
        port=8000,
        dev_enable_docs=False,
        enforce_https=False,
        metrics_token="",
        ingest_api_key=INGEST_KEY,
        ingest_rate_limit_per_minute=120,
        alerts=AlertConfig(worker_enabled=False),
    )


@pytest.fixture()
def db(server_config: ServerConfig) -> ServerDatabase:
    database = ServerDatabase(server_config.database_url)
    database.init_for_tests()
    return database


@pytest.fixture()
def fleet(db: ServerDatabase) -> SeededFleet:
    org = db.create_org("Acme Facilities")
    site = db.create_site(org.id, "Plant Room", external_id="site-1")
    device = db.create_device(site.id, "Heat Pump 1", external_id="hp-1")
    return SeededFleet(
        org_id=org.id,
        site_id=site.id,
        device_id=device.id,
        site_external_id="site-1",
        device_external_id="hp-1",
    )


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def client(server_config: ServerConfig):
    app = create_app(server_config)
    with TestClient(app) as tc:
        yield tc


def with_overrides(config: ServerConfig, **changes: Any) -> ServerConfig:
    return replace(config, **changes)
