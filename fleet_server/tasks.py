from __future__ import annotations

import logging

from celery import shared_task

from fleet_server.celery_app import celery_app
from fleet_server.config import load_config
from fleet_server.db import ServerDatabase
from fleet_server.models import Alert
from fleet_server.push import NotificationDispatcher
from fleet_server.status import StatusRecorder

logger = logging.getLogger("fleet_server.tasks")

SEND_ALERT_NOTIFICATION = "fleet_server.send_alert_notification"


@shared_task(name=SEND_ALERT_NOTIFICATION)
def send_alert_notification_task(alert_id: str) -> dict[str, object]:
    config = load_config()
    db = ServerDatabase(config.database_url)
    alert = db.get_alert(alert_id)
    if alert is None:
        logger.warning("alert for push notification not found", extra={"alert_id": alert_id})
        return {"sent": 0, "reason": "alert_not_found"}
    dispatcher = NotificationDispatcher(db, config.push, StatusRecorder(db))
    result = dispatcher.send_alert_notification(alert)
    return {"sent": result.sent, "reason": result.reason}


def enqueue_alert_notification(alert_id: str) -> bool:
    try:
        celery_app.send_task(SEND_ALERT_NOTIFICATION, args=[alert_id])
        return True
    except Exception:
        logger.exception("failed to enqueue alert notification", extra={"alert_id": alert_id})
        return False


class AlertNotifier:
    """Routes new critical alerts to the dispatcher, inline or through celery."""

    def __init__(
        self,
        dispatcher: NotificationDispatcher,
        mode: str = "inline",
        enqueue=enqueue_alert_notification,  # type: ignore[no-untyped-def]
    ) -> None:
        self.dispatcher = dispatcher
        self.mode = mode
        self.enqueue = enqueue

    def __call__(self, alert: Alert) -> None:
        if self.mode == "celery" and self.enqueue(alert.id):
            return
        self.dispatcher.send_alert_notification(alert)
