from __future__ import annotations

import json
import logging
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from datetime import UTC, datetime
from typing import Any, Callable, Protocol

import httpx

from fleet_core.control import (
    CommandAccepted,
    CommandRejected,
    CommandResult,
    ControlErrorCode,
    ModeRequest,
    SetpointRequest,
    ValidationFailed,
    validate_mode,
    validate_setpoint,
)
from fleet_server.cache import RedisCommandLease
from fleet_server.config import ServerConfig
from fleet_server.db import ServerDatabase
from fleet_server.feed import ClientFactory, paho_client, reason_code_failed
from fleet_server.status import StatusRecorder, normalize_error
from fleet_server.telemetry import CONTROL_COMMANDS
from fleet_shared.constants import STATUS_CONTROL_CHANNEL
from fleet_shared.enums import CommandStatus, CommandType

logger = logging.getLogger("fleet_server.control")


class ControlTransportError(RuntimeError):
    """Raised when a device transport fails to deliver a command."""


class ControlTimeoutError(ControlTransportError):
    """Raised when a command is not delivered before its deadline."""


class ControlTransport(Protocol):
    name: str

    def send(self, device_external_id: str, command_type: str, payload: dict[str, Any], timeout: float) -> None: ...


class HttpControlTransport:
    name = "http"

    def __init__(self, base_url: str, api_key: str, client: httpx.Client | None = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.client = client or httpx.Client()

    def send(self, device_external_id: str, command_type: str, payload: dict[str, Any], timeout: float) -> None:
        url = f"{self.base_url}/devices/{device_external_id}/commands"
        try:
            response = self.client.post(
                url,
                json={"type": command_type, "payload": payload},
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=timeout,
            )
        except httpx.TimeoutException as exc:
            raise ControlTimeoutError(f"CONTROL_HTTP_TIMEOUT:{exc.__class__.__name__}") from exc
        except httpx.HTTPError as exc:
            raise ControlTransportError(f"CONTROL_HTTP_ERROR:{exc.__class__.__name__}") from exc

        if not response.is_success:
            detail = response.text[:120]
            raise ControlTransportError(f"CONTROL_HTTP_FAILED:{response.status_code}:{detail}")

    def close(self) -> None:
        self.client.close()


class MqttControlTransport:
    """Publishes commands on the device command topic over its own broker connection.

    A command is only published once the broker has acknowledged the
    connection. If a publish is refused or not acknowledged in time the
    client is dropped, so paho cannot deliver the queued message after the
    command row has already been marked failed.
    """

    name = "mqtt"

    def __init__(
        self,
        host: str,
        port: int,
        topic_template: str,
        username: str | None = None,
        password: str | None = None,
        use_tls: bool = False,
        client_factory: ClientFactory = paho_client,
    ) -> None:
        self.host = host
        self.port = port
        self.topic_template = topic_template
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.client_factory = client_factory
        self._client: Any | None = None
        self._connected = threading.Event()
        self._lock = threading.Lock()

    def topic_for(self, device_external_id: str) -> str:
        return self.topic_template.format(device_external_id=device_external_id, deviceExternalId=device_external_id)

    def _ensure_client(self) -> tuple[Any, threading.Event]:
        with self._lock:
            if self._client is None:
                connected = threading.Event()

                def on_connect(client, userdata, flags, reason_code, properties) -> None:  # type: ignore[no-untyped-def]
                    if reason_code_failed(reason_code):
                        logger.warning("control broker refused connection", extra={"reason": str(reason_code)})
                        return
                    connected.set()

                def on_disconnect(client, userdata, disconnect_flags, reason_code, properties) -> None:  # type: ignore[no-untyped-def]
                    connected.clear()

                client = self.client_factory(f"fleet-control-{uuid.uuid4().hex[:12]}")
                client.on_connect = on_connect
                client.on_disconnect = on_disconnect
                if self.username:
                    client.username_pw_set(self.username, self.password)
                if self.use_tls:
                    client.tls_set()
                client.connect_async(self.host, self.port)
                client.loop_start()
                self._client = client
                self._connected = connected
            return self._client, self._connected

    def send(self, device_external_id: str, command_type: str, payload: dict[str, Any], timeout: float) -> None:
        deadline = time.monotonic() + timeout
        client, connected = self._ensure_client()
        if not connected.wait(timeout=timeout):
            raise ControlTimeoutError("CONTROL_MQTT_NOT_CONNECTED")

        message = json.dumps({"type": command_type, **payload}, separators=(",", ":"))
        info = client.publish(self.topic_for(device_external_id), message, qos=1)
        if getattr(info, "rc", 0) != 0:
            self._discard(client)
            raise ControlTransportError(f"CONTROL_MQTT_PUBLISH_FAILED:{info.rc}")
        try:
            info.wait_for_publish(timeout=max(0.0, deadline - time.monotonic()))
        except (RuntimeError, ValueError) as exc:
            self._discard(client)
            raise ControlTransportError(f"CONTROL_MQTT_PUBLISH_FAILED:{exc}") from exc
        if not info.is_published():
            self._discard(client)
            raise ControlTimeoutError("CONTROL_MQTT_PUBLISH_TIMEOUT")

    def _discard(self, client: Any) -> None:
        # queued qos-1 messages live on the client; dropping it drops them
        with self._lock:
            if self._client is client:
                self._client = None
                self._connected = threading.Event()
        client.disconnect()
        client.loop_stop()

    def close(self) -> None:
        with self._lock:
            client, self._client = self._client, None
        if client is not None:
            client.disconnect()
            client.loop_stop()


def build_control_transport(config: ServerConfig) -> ControlTransport | None:
    """Pick the outbound command channel once, from configuration."""
    control = config.control
    if control.disabled:
        logger.info("control channel disabled")
        return None
    if control.http_configured:
        return HttpControlTransport(str(control.api_url), str(control.api_key))
    if config.feed.configured:
        return MqttControlTransport(
            host=config.feed.host,
            port=config.feed.port,
            topic_template=control.mqtt_topic_template,
            username=config.feed.username,
            password=config.feed.password,
            use_tls=config.feed.use_tls,
        )
    logger.info("no control transport configured")
    return None


class ControlGateway:
    """Validates operator commands, dispatches them and records the outcome.

    Order of checks: configured transport, device in caller's org, device
    external id, capability validation, per-device throttle lease. Only then
    is a ``pending`` row written and the transport invoked under a deadline.
    """

    def __init__(
        self,
        db: ServerDatabase,
        transport: ControlTransport | None,
        status: StatusRecorder,
        lease: RedisCommandLease | None = None,
        timeout_seconds: float = 10.0,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
        executor: ThreadPoolExecutor | None = None,
    ) -> None:
        self.db = db
        self.transport = transport
        self.status = status
        self.lease = lease
        self.timeout_seconds = timeout_seconds
        self.clock = clock
        self._executor = executor or ThreadPoolExecutor(max_workers=4, thread_name_prefix="control-dispatch")

    def set_setpoint(self, device_id: str, user_id: str, request: SetpointRequest, org_id: str) -> CommandResult:
        payload = {"metric": request.metric, "value": request.value}
        requested_value = float(request.value) if isinstance(request.value, (int, float)) else None
        return self._execute(
            device_id,
            user_id,
            org_id,
            CommandType.SETPOINT,
            payload,
            requested_value,
            lambda caps: validate_setpoint(caps, request),
        )

    def set_mode(self, device_id: str, user_id: str, request: ModeRequest, org_id: str) -> CommandResult:
        return self._execute(
            device_id,
            user_id,
            org_id,
            CommandType.MODE,
            {"mode": request.mode},
            None,
            lambda caps: validate_mode(caps, request),
        )

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    def _execute(
        self,
        device_id: str,
        user_id: str,
        org_id: str,
        command_type: CommandType,
        payload: dict[str, Any],
        requested_value: float | None,
        validate: Callable[[Any], Any],
    ) -> CommandResult:
        if self.transport is None:
            return self._rejected(command_type, ControlErrorCode.CONTROL_CHANNEL_UNCONFIGURED, "Control channel not configured")

        target = self.db.get_control_target(device_id, org_id)
        if target is None:
            return self._rejected(command_type, ControlErrorCode.DEVICE_NOT_FOUND, "Device not found")
        if not target.external_id:
            return self._rejected(
                command_type, ControlErrorCode.DEVICE_NOT_CONTROLLABLE, "Device has no external id for control"
            )

        outcome = validate(target.capabilities)
        if isinstance(outcome, ValidationFailed):
            return self._rejected(command_type, outcome.reason, outcome.message)

        if self.lease is not None and not self.lease.acquire(target.id, holder=user_id):
            return self._rejected(command_type, ControlErrorCode.THROTTLED, "Too many commands for this device; retry shortly")

        command = self.db.create_command(
            device_id=target.id,
            user_id=user_id,
            command_type=command_type.value,
            payload=payload,
            requested_value=requested_value,
            requested_at=self.clock(),
        )

        try:
            self._send_with_deadline(self.transport, target.external_id, command_type.value, payload)
        except ControlTransportError as exc:
            error = normalize_error(exc)
            now = self.clock()
            self.db.complete_command(
                command.id,
                CommandStatus.FAILED,
                now,
                error_message=error,
                failure_reason=ControlErrorCode.COMMAND_FAILED.value,
            )
            self.status.mark_error(STATUS_CONTROL_CHANNEL, error, now)
            CONTROL_COMMANDS.labels(command_type=command_type.value, status=CommandStatus.FAILED.value).inc()
            logger.warning(
                "control command failed",
                extra={"command_id": command.id, "device_id": target.id, "transport": self.transport.name, "error": error},
            )
            return CommandRejected(ControlErrorCode.COMMAND_FAILED, "Command could not be delivered", command_id=command.id)

        now = self.clock()
        completed = self.db.complete_command(command.id, CommandStatus.SUCCESS, now)
        self.status.mark_success(STATUS_CONTROL_CHANNEL, now, {"last_command_id": command.id})
        CONTROL_COMMANDS.labels(command_type=command_type.value, status=CommandStatus.SUCCESS.value).inc()
        logger.info(
            "control command delivered",
            extra={"command_id": command.id, "device_id": target.id, "transport": self.transport.name},
        )
        final = completed or command
        return CommandAccepted(
            command_id=final.id,
            device_id=final.device_id,
            command_type=final.command_type,
            status=final.status,
            payload=payload,
        )

    def _send_with_deadline(
        self,
        transport: ControlTransport,
        device_external_id: str,
        command_type: str,
        payload: dict[str, Any],
    ) -> None:
        future = self._executor.submit(
            transport.send,
            device_external_id,
            command_type,
            payload,
            self.timeout_seconds,
        )
        try:
            future.result(timeout=self.timeout_seconds)
        except FutureTimeoutError as exc:
            future.cancel()
            raise ControlTimeoutError(f"CONTROL_TIMEOUT:{self.timeout_seconds:g}s") from exc
        except ControlTransportError:
            raise
        except Exception as exc:
            raise ControlTransportError(f"CONTROL_TRANSPORT_ERROR:{exc.__class__.__name__}:{exc}") from exc

    def _rejected(self, command_type: CommandType, reason: ControlErrorCode, message: str) -> CommandRejected:
        CONTROL_COMMANDS.labels(command_type=command_type.value, status=f"rejected_{reason.value.lower()}").inc()
        logger.info("control command rejected", extra={"reason": reason.value, "command_type": command_type.value})
        return CommandRejected(reason, message)
