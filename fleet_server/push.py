from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, Callable

import httpx

from fleet_server.config import PushConfig
from fleet_server.db import ServerDatabase
from fleet_server.logging import mask_token
from fleet_server.models import Alert, as_utc
from fleet_server.status import StatusRecorder, normalize_error
from fleet_server.telemetry import PUSH_DISPATCH
from fleet_shared.constants import STATUS_PUSH
from fleet_shared.enums import AlertSeverity

logger = logging.getLogger("fleet_server.push")

EXPO_PUSH_URL = "https://exp.host/--/api/v2/push/send"
EXPO_BATCH_SIZE = 100
ELIGIBLE_SEVERITIES = frozenset({AlertSeverity.CRITICAL.value, AlertSeverity.HIGH.value})
AUDIT_ACTION = "push_notification_sent"

_EXPO_TOKEN_RE = re.compile(r"^(ExponentPushToken|ExpoPushToken)\[[^\]]+\]$")


def is_expo_push_token(token: str | None) -> bool:
    return bool(token) and bool(_EXPO_TOKEN_RE.match(str(token)))


class PushSendError(RuntimeError):
    """Raised when the push provider rejects or cannot accept a batch."""


class ExpoPushClient:
    """Minimal client for the Expo push HTTP API."""

    def __init__(self, access_token: str, client: httpx.Client | None = None, timeout_seconds: float = 10.0) -> None:
        self.access_token = access_token
        self.client = client or httpx.Client(timeout=timeout_seconds)

    def send(self, messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
        tickets: list[dict[str, Any]] = []
        for start in range(0, len(messages), EXPO_BATCH_SIZE):
            chunk = messages[start : start + EXPO_BATCH_SIZE]
            try:
                response = self.client.post(
                    EXPO_PUSH_URL,
                    json=chunk,
                    headers={
                        "Authorization": f"Bearer {self.access_token}",
                        "Accept": "application/json",
                        "Accept-Encoding": "gzip, deflate",
                    },
                )
            except httpx.HTTPError as exc:
                logger.error("failed to send expo push chunk", extra={"error": exc.__class__.__name__})
                raise PushSendError(f"expo request failed: {exc.__class__.__name__}") from exc
            if not response.is_success:
                raise PushSendError(f"expo responded {response.status_code}: {response.text[:120]}")
            body = response.json()
            data = body.get("data") if isinstance(body, dict) else None
            if isinstance(data, list):
                tickets.extend(item for item in data if isinstance(item, dict))
        return tickets


@dataclass(slots=True)
class DispatchResult:
    attempted: int = 0
    sent: int = 0
    errors: list[str] = field(default_factory=list)
    skipped_reason: str | None = None

    @property
    def success(self) -> bool:
        return not self.errors and self.skipped_reason is None

    @property
    def reason(self) -> str | None:
        return self.skipped_reason or (self.errors[0] if self.errors else None)


@dataclass(frozen=True, slots=True)
class PushHealthSample:
    status: str
    detail: str
    at: datetime


class NotificationDispatcher:
    """Fans new alerts out to push tokens of the owning organisation's responders."""

    def __init__(
        self,
        db: ServerDatabase,
        config: PushConfig,
        status: StatusRecorder,
        client: ExpoPushClient | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.db = db
        self.config = config
        self.status = status
        self.clock = clock
        if client is None and config.access_token:
            client = ExpoPushClient(config.access_token)
        self.client = client
        self._last_sample: PushHealthSample | None = None
        self._sample_lock = threading.Lock()

    @property
    def last_sample(self) -> PushHealthSample | None:
        return self._last_sample

    def send_alert_notification(self, alert: Alert) -> DispatchResult:
        org_id = self.db.resolve_alert_org(alert)
        if not org_id:
            logger.warning("skipping alert push because organisation is unknown", extra={"alert_id": alert.id})
            PUSH_DISPATCH.labels(outcome="org_unknown").inc()
            return DispatchResult(skipped_reason="org_unknown")

        if self.config.disabled:
            return self._finish(alert, org_id, [], DispatchResult(skipped_reason="disabled"))

        if alert.severity not in ELIGIBLE_SEVERITIES:
            PUSH_DISPATCH.labels(outcome="severity_not_eligible").inc()
            return DispatchResult(skipped_reason="severity_not_eligible")

        muted_until = as_utc(alert.muted_until)
        if muted_until is not None and muted_until > self.clock():
            logger.info(
                "skipping notification for muted alert",
                extra={"alert_id": alert.id, "muted_until": muted_until.isoformat()},
            )
            return self._finish(alert, org_id, [], DispatchResult(skipped_reason="muted"))

        user_ids, tokens = self.db.list_recipient_tokens(org_id, self.config.roles)
        if not user_ids:
            return self._finish(alert, org_id, [], DispatchResult(skipped_reason="no_recipients"))

        result = self._dispatch([token.token for token in tokens], lambda token: self._alert_message(alert, org_id, token))
        return self._finish(alert, org_id, user_ids, result)

    def run_health_check(self, now: datetime | None = None) -> PushHealthSample:
        """Interval-gated synthetic push to the most recently used token."""
        now = now or self.clock()
        if not self.config.configured:
            return PushHealthSample("skipped", "push provider not configured", now)
        if not self.config.healthcheck_enabled:
            return PushHealthSample("skipped", "push health check disabled", now)

        with self._sample_lock:
            last = self._last_sample
            interval = timedelta(minutes=max(1, self.config.healthcheck_interval_minutes))
            if last is not None and now - last.at < interval:
                return last

            token = self.config.healthcheck_token or self.db.latest_active_push_token()
            if not token:
                self._last_sample = PushHealthSample("skipped", "no push tokens registered", now)
                return self._last_sample

            message = {
                "to": token,
                "sound": "default",
                "title": "Greenbro health check",
                "body": "Push delivery path verified",
                "data": {"type": "healthcheck"},
            }
            try:
                if self.client is None:
                    raise PushSendError("push provider not configured")
                self.client.send([message])
            except Exception as exc:
                sample = PushHealthSample("error", normalize_error(exc), now)
                self.status.mark_error(STATUS_PUSH, exc, now, {"sample": sample.status})
                logger.warning("push health check failed", extra={"error": sample.detail})
            else:
                sample = PushHealthSample("ok", f"sent to token {mask_token(token)}", now)
                self.status.mark_success(STATUS_PUSH, now, {"sample": sample.status})
            self._last_sample = sample
            return sample

    def _dispatch(self, tokens: list[str], build: Callable[[str], dict[str, Any]]) -> DispatchResult:
        seen: set[str] = set()
        messages: list[dict[str, Any]] = []
        for token in tokens:
            if token in seen:
                continue
            seen.add(token)
            if not is_expo_push_token(token):
                logger.warning("invalid expo push token", extra={"masked": mask_token(token)})
                continue
            messages.append(build(token))

        if not messages:
            return DispatchResult(skipped_reason="no_valid_tokens")
        if self.client is None:
            logger.warning("expo access token not configured; skipping push send")
            return DispatchResult(attempted=len(messages), errors=["expo access token missing"], skipped_reason="not_configured")

        try:
            tickets = self.client.send(messages)
        except Exception as exc:
            return DispatchResult(attempted=len(messages), errors=[normalize_error(exc)])
        return DispatchResult(attempted=len(messages), sent=len(tickets))

    @staticmethod
    def _alert_message(alert: Alert, org_id: str, token: str) -> dict[str, Any]:
        return {
            "to": token,
            "sound": "default",
            "title": f"[{alert.severity.upper()}] {alert.type}",
            "body": alert.message,
            "data": {
                "type": "alert",
                "alertId": alert.id,
                "deviceId": alert.device_id,
                "siteId": alert.site_id,
                "orgId": org_id,
                "severity": alert.severity,
                "alertType": alert.type,
            },
        }

    def _finish(self, alert: Alert, org_id: str, user_ids: list[str], result: DispatchResult) -> DispatchResult:
        try:
            self.db.record_audit(
                AUDIT_ACTION,
                {
                    "severity": alert.severity,
                    "token_count": result.attempted,
                    "sent": result.sent,
                    "user_ids": user_ids,
                    "success": result.success,
                    "reason": result.reason,
                },
                org_id=org_id,
                entity_type="alert",
                entity_id=alert.id,
            )
        except Exception:
            logger.exception("failed to record push audit event", extra={"alert_id": alert.id})

        outcome = "sent" if result.success else (result.skipped_reason or "send_failed")
        PUSH_DISPATCH.labels(outcome=outcome).inc()
        if result.errors:
            logger.error("error sending push notifications for alert", extra={"alert_id": alert.id, "errors": result.errors})
        elif result.sent:
            logger.info("push tickets sent for alert", extra={"alert_id": alert.id, "sent": result.sent})
        return result
