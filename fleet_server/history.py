from __future__ import annotations

import logging
import threading
from datetime import UTC, datetime, timedelta
from typing import Callable

import httpx

from fleet_server.config import HealthConfig
from fleet_server.status import StatusRecorder, normalize_error
from fleet_shared.constants import STATUS_HEAT_PUMP_HISTORY

logger = logging.getLogger("fleet_server.history")

REQUEST_TIMEOUT_SECONDS = 10.0


class HistoryCheckError(RuntimeError):
    """Raised when the heat-pump history service cannot be reached or fails."""


class HeatPumpHistoryCheck:
    """Interval-gated reachability check for the vendor heat-pump history API.

    The check query names no device, so the service may reject it; any
    non-5xx response still counts as reachable. Outcomes land on the
    ``heat_pump_history`` status row that the health report reads.
    """

    def __init__(
        self,
        config: HealthConfig,
        status: StatusRecorder,
        client: httpx.Client | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.config = config
        self.status = status
        self.client = client or httpx.Client(timeout=REQUEST_TIMEOUT_SECONDS)
        self.clock = clock
        self._last_run_at: datetime | None = None
        self._lock = threading.Lock()

    def run(self, now: datetime | None = None) -> bool | None:
        """Returns None when skipped, else whether the service answered."""
        now = now or self.clock()
        if not self.config.heat_pump_history_configured:
            return None
        with self._lock:
            interval = timedelta(minutes=max(1, self.config.heat_pump_history_check_minutes))
            if self._last_run_at is not None and now - self._last_run_at < interval:
                return None
            self._last_run_at = now
            try:
                self._request(now)
            except HistoryCheckError as exc:
                logger.warning("heat pump history check failed", extra={"error": normalize_error(exc)})
                self.status.mark_error(STATUS_HEAT_PUMP_HISTORY, exc, now)
                return False
            self.status.mark_success(STATUS_HEAT_PUMP_HISTORY, now)
            return True

    def _request(self, now: datetime) -> None:
        headers = {"accept": "application/json,text/plain"}
        if self.config.heat_pump_history_api_key:
            headers["x-api-key"] = self.config.heat_pump_history_api_key
        body = {
            "mac": "",
            "from": (now - timedelta(minutes=5)).isoformat(),
            "to": now.isoformat(),
            "aggregation": "raw",
            "mode": "live",
            "fields": [],
        }
        try:
            response = self.client.post(str(self.config.heat_pump_history_url), json=body, headers=headers)
        except httpx.HTTPError as exc:
            raise HistoryCheckError(f"history request failed: {exc.__class__.__name__}") from exc
        if response.status_code >= 500:
            raise HistoryCheckError(f"history service responded {response.status_code}")
