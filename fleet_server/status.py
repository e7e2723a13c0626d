from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from fleet_server.db import ServerDatabase
from fleet_shared.constants import MAX_STATUS_ERROR_LEN

logger = logging.getLogger("fleet_server.status")


def normalize_error(error: BaseException | str | None) -> str:
    if error is None:
        return "unknown error"
    if isinstance(error, BaseException):
        text = str(error) or error.__class__.__name__
    else:
        text = error
    text = " ".join(text.split())
    return text[:MAX_STATUS_ERROR_LEN] or "unknown error"


class StatusRecorder:
    """Best-effort writer for ``system_status`` rows.

    Status bookkeeping must never take down the subsystem reporting it, so
    every failure here is logged and swallowed.
    """

    def __init__(self, db: ServerDatabase) -> None:
        self.db = db

    def mark_success(self, key: str, at: datetime | None = None, payload: dict[str, Any] | None = None) -> None:
        try:
            self.db.record_status_success(key, at or datetime.now(UTC), payload)
        except Exception:
            logger.exception("failed to record status success", extra={"status_key": key})

    def mark_error(
        self,
        key: str,
        error: BaseException | str | None,
        at: datetime | None = None,
        payload: dict[str, Any] | None = None,
    ) -> None:
        try:
            self.db.record_status_error(key, at or datetime.now(UTC), normalize_error(error), payload)
        except Exception:
            logger.exception("failed to record status error", extra={"status_key": key})
