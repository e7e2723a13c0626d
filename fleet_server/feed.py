from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Callable, Protocol

import paho.mqtt.client as mqtt

from fleet_core.backoff import ReconnectBackoff
from fleet_server.config import FeedConfig
from fleet_server.status import StatusRecorder, normalize_error
from fleet_server.telemetry import FEED_RECONNECTS
from fleet_shared.constants import STATUS_MQTT_INGEST

logger = logging.getLogger("fleet_server.feed")

INITIAL_RECONNECT_DELAY = 1.0
MAX_RECONNECT_DELAY = 30.0
KEEPALIVE_SECONDS = 60


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


TimerFactory = Callable[[float, Callable[[], None]], TimerHandle]
ClientFactory = Callable[[str], Any]
MessageHandler = Callable[[str, bytes], bool]


def thread_timer(delay: float, callback: Callable[[], None]) -> threading.Timer:
    timer = threading.Timer(delay, callback)
    timer.daemon = True
    timer.start()
    return timer


def paho_client(client_id: str) -> mqtt.Client:
    return mqtt.Client(client_id=client_id, callback_api_version=mqtt.CallbackAPIVersion.VERSION2)


def reason_code_failed(reason_code: Any) -> bool:
    if reason_code is None:
        return False
    flag = getattr(reason_code, "is_failure", None)
    if isinstance(flag, bool):
        return flag
    try:
        return int(getattr(reason_code, "value", reason_code)) != 0
    except (TypeError, ValueError):
        return True


@dataclass(frozen=True, slots=True)
class FeedSnapshot:
    configured: bool
    connected: bool
    broker: str | None
    last_message_at: datetime | None
    last_connect_at: datetime | None
    last_disconnect_at: datetime | None
    last_error: str | None


class TelemetryFeedSession:
    """Owns the broker connection for the telemetry subscription.

    Lifecycle entry points are ``connect``, ``on_connect``, ``on_message``,
    ``on_error`` and ``on_close``. Paho callbacks are thin adapters onto these
    and ignore events from clients this session has already discarded.
    Reconnects are scheduled through the injected timer factory with
    exponential backoff; at most one reconnect timer is pending.
    """

    def __init__(
        self,
        config: FeedConfig,
        handler: MessageHandler,
        status: StatusRecorder | None = None,
        client_factory: ClientFactory = paho_client,
        timer_factory: TimerFactory = thread_timer,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
        backoff: ReconnectBackoff | None = None,
    ) -> None:
        self.config = config
        self.handler = handler
        self.status = status
        self.client_factory = client_factory
        self.timer_factory = timer_factory
        self.clock = clock
        self.backoff = backoff or ReconnectBackoff(INITIAL_RECONNECT_DELAY, MAX_RECONNECT_DELAY)

        self._lock = threading.RLock()
        self._client: Any | None = None
        self._reconnect_timer: TimerHandle | None = None
        self._stopped = False
        self._connected = False
        self._last_message_at: datetime | None = None
        self._last_connect_at: datetime | None = None
        self._last_disconnect_at: datetime | None = None
        self._last_error: str | None = None

    # -- lifecycle -----------------------------------------------------------

    def start(self) -> bool:
        if not self.config.configured:
            logger.info("telemetry feed not configured; subscription disabled")
            return False
        with self._lock:
            self._stopped = False
        self.connect()
        return True

    def stop(self) -> None:
        with self._lock:
            self._stopped = True
            timer, self._reconnect_timer = self._reconnect_timer, None
            client, self._client = self._client, None
            self._connected = False
        if timer is not None:
            timer.cancel()
        if client is not None:
            self._close_client(client, disconnect=True)

    def connect(self) -> None:
        with self._lock:
            if self._stopped:
                return
            previous, self._client = self._client, None
        if previous is not None:
            self._close_client(previous, disconnect=True)

        try:
            client = self.client_factory(f"fleet-feed-{uuid.uuid4().hex[:12]}")
            if self.config.username:
                client.username_pw_set(self.config.username, self.config.password)
            if self.config.use_tls:
                client.tls_set()
            client.connect_timeout = self.config.connect_timeout_ms / 1000.0
            client.on_connect = self._paho_on_connect
            client.on_connect_fail = self._paho_on_connect_fail
            client.on_disconnect = self._paho_on_disconnect
            client.on_message = self._paho_on_message
            with self._lock:
                self._client = client
            client.connect_async(self.config.host, self.config.port, keepalive=KEEPALIVE_SECONDS)
            client.loop_start()
            logger.info("connecting telemetry feed", extra={"broker": self._broker_label()})
        except Exception as exc:
            self.on_error(exc)

    def on_connect(self) -> None:
        with self._lock:
            client = self._client
            self._connected = True
            self._last_connect_at = self.clock()
            self._last_error = None
            self.backoff.reset()
        if client is not None:
            client.subscribe(self.config.telemetry_topic, qos=1)
        logger.info("telemetry feed connected", extra={"topic": self.config.telemetry_topic})

    def on_message(self, topic: str, payload: bytes) -> bool:
        with self._lock:
            self._last_message_at = self.clock()
        try:
            handled = bool(self.handler(topic, payload))
        except Exception as exc:
            logger.exception("telemetry handler raised", extra={"topic": topic})
            self._record_error(exc)
            return False
        if not handled:
            self._record_error("telemetry ingest returned false", persist=False)
        return handled

    def on_error(self, error: BaseException | str) -> None:
        logger.warning("telemetry feed error: %s", normalize_error(error))
        self._record_error(error)
        self._drop_connection()
        self._schedule_reconnect()

    def on_close(self) -> None:
        logger.warning("telemetry feed connection closed")
        self._drop_connection()
        self._schedule_reconnect()

    def snapshot(self) -> FeedSnapshot:
        with self._lock:
            return FeedSnapshot(
                configured=self.config.configured,
                connected=self._connected,
                broker=self._broker_label() if self.config.url else None,
                last_message_at=self._last_message_at,
                last_connect_at=self._last_connect_at,
                last_disconnect_at=self._last_disconnect_at,
                last_error=self._last_error,
            )

    # -- internals -----------------------------------------------------------

    def _schedule_reconnect(self) -> None:
        with self._lock:
            if self._stopped or self._reconnect_timer is not None:
                return
            delay = self.backoff.next_delay()
            self._reconnect_timer = self.timer_factory(delay, self._fire_reconnect)
        FEED_RECONNECTS.inc()
        logger.info("telemetry feed reconnect scheduled", extra={"delay_seconds": delay})

    def _fire_reconnect(self) -> None:
        with self._lock:
            self._reconnect_timer = None
            if self._stopped:
                return
        self.connect()

    def _drop_connection(self) -> None:
        with self._lock:
            client, self._client = self._client, None
            self._connected = False
            self._last_disconnect_at = self.clock()
        if client is not None:
            self._close_client(client, disconnect=False)

    def _close_client(self, client: Any, disconnect: bool) -> None:
        try:
            if disconnect:
                client.disconnect()
            client.loop_stop()
        except Exception:
            logger.debug("ignoring error while closing feed client", exc_info=True)

    def _record_error(self, error: BaseException | str, persist: bool = True) -> None:
        message = normalize_error(error)
        with self._lock:
            self._last_error = message
        if persist and self.status is not None:
            self.status.mark_error(STATUS_MQTT_INGEST, message, self.clock())

    def _broker_label(self) -> str:
        return f"{self.config.host}:{self.config.port}"

    def _is_current(self, client: Any) -> bool:
        with self._lock:
            return client is self._client

    # -- paho adapters (CallbackAPIVersion.VERSION2) -------------------------

    def _paho_on_connect(self, client, userdata, flags, reason_code, properties) -> None:  # type: ignore[no-untyped-def]
        if not self._is_current(client):
            return
        if reason_code_failed(reason_code):
            self.on_error(f"broker refused connection: {reason_code}")
            return
        self.on_connect()

    def _paho_on_connect_fail(self, client, userdata) -> None:  # type: ignore[no-untyped-def]
        if not self._is_current(client):
            return
        self.on_error("broker connection failed")

    def _paho_on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties) -> None:  # type: ignore[no-untyped-def]
        if not self._is_current(client):
            return
        if reason_code_failed(reason_code):
            self.on_error(f"broker disconnected: {reason_code}")
        else:
            self.on_close()

    def _paho_on_message(self, client, userdata, message) -> None:  # type: ignore[no-untyped-def]
        if not self._is_current(client):
            return
        self.on_message(message.topic, message.payload)
