from __future__ import annotations

import json
import logging
import urllib.error
import urllib.request
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from cabinet_lending import config
from cabinet_lending.models.lending_models import NotificationQueue
from cabinet_lending.services.errors import NotificationFailed


NOTIFY_LOGGER = logging.getLogger("cabinet_lending.notifications")

CHANNEL_WHATSAPP = "whatsapp"
CHANNEL_EMAIL = "email"


@dataclass(frozen=True)
class SendResult:
    success: bool
    error: str | None = None


class Notifier:
    def send(self, channel: str, recipient: str, message: str) -> SendResult:
        raise NotImplementedError


class LogNotifier(Notifier):
    """Writes messages to the log instead of delivering them."""

    def send(self, channel: str, recipient: str, message: str) -> SendResult:
        NOTIFY_LOGGER.info("Notification channel=%s recipient=%s message=%s", channel, recipient, message)
        return SendResult(success=True)


class WebhookNotifier(Notifier):
    def __init__(self, url: str, token: str | None = None, timeout: int = 10):
        self.url = url
        self.token = token
        self.timeout = timeout

    def _post(self, body: dict) -> None:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        request = urllib.request.Request(
            url=self.url,
            data=json.dumps(body, ensure_ascii=True).encode("utf-8"),
            headers=headers,
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self.timeout) as response:
                if response.status >= 300:
                    raise NotificationFailed(f"Notification webhook returned status {response.status}")
        except urllib.error.HTTPError as exc:
            raise NotificationFailed(f"Notification webhook HTTP error: {exc.code}") from exc
        except urllib.error.URLError as exc:
            raise NotificationFailed(f"Notification webhook connection error: {exc.reason}") from exc

    def send(self, channel: str, recipient: str, message: str) -> SendResult:
        try:
            self._post({"channel": channel, "recipient": recipient, "message": message})
        except NotificationFailed as exc:
            return SendResult(success=False, error=exc.detail)
        return SendResult(success=True)


def build_notifier() -> Notifier:
    if config.NOTIFY_WEBHOOK_URL:
        return WebhookNotifier(
            config.NOTIFY_WEBHOOK_URL,
            token=config.NOTIFY_WEBHOOK_TOKEN or None,
            timeout=config.NOTIFY_TIMEOUT_SECONDS,
        )
    return LogNotifier()


def enqueue_notification(
    db: Session,
    notification_type: str,
    channel: str,
    recipient: str | None,
    payload: str,
    request_id: int | None = None,
    station_id: int | None = None,
) -> NotificationQueue:
    notification = NotificationQueue(
        RequestID=request_id,
        StationID=station_id,
        NotificationType=notification_type,
        Channel=channel,
        Recipient=recipient,
        Payload=payload,
        Attempts=0,
        CreatedAt=datetime.now(),
    )
    db.add(notification)
    return notification


def deliver(db: Session, notifier: Notifier, notification: NotificationQueue) -> bool:
    """Try one outbox row once. Never raises; the outcome is stored on the row."""
    if not notification.Recipient:
        NOTIFY_LOGGER.warning(
            "Notification skipped id=%s type=%s reason=no_recipient",
            notification.NotificationID,
            notification.NotificationType,
        )
        result = SendResult(success=False, error="No recipient")
    else:
        try:
            result = notifier.send(notification.Channel, notification.Recipient, notification.Payload or "")
        except Exception as exc:
            NOTIFY_LOGGER.exception(
                "Notifier raised id=%s type=%s",
                notification.NotificationID,
                notification.NotificationType,
            )
            result = SendResult(success=False, error=str(exc) or exc.__class__.__name__)

    notification.Attempts = int(notification.Attempts or 0) + 1
    if result.success:
        notification.SentAt = datetime.now()
        notification.LastError = None
    else:
        notification.LastError = (result.error or "Unknown error")[:1000]
        NOTIFY_LOGGER.warning(
            "Notification failed id=%s type=%s error=%s",
            notification.NotificationID,
            notification.NotificationType,
            notification.LastError,
        )
    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        NOTIFY_LOGGER.exception("Could not store delivery outcome id=%s", notification.NotificationID)
    return result.success


def dispatch_pending(
    db: Session,
    notifier: Notifier,
    request_id: int | None = None,
    station_id: int | None = None,
    limit: int = 100,
) -> dict[str, int]:
    stmt = select(NotificationQueue).where(NotificationQueue.SentAt.is_(None))
    if request_id is not None:
        stmt = stmt.where(NotificationQueue.RequestID == request_id)
    if station_id is not None:
        stmt = stmt.where(NotificationQueue.StationID == station_id)
    stmt = stmt.order_by(NotificationQueue.NotificationID).limit(max(1, limit))

    sent = 0
    failed = 0
    try:
        pending = db.execute(stmt).scalars().all()
    except SQLAlchemyError:
        db.rollback()
        NOTIFY_LOGGER.exception("Could not load pending notifications")
        return {"sent": 0, "failed": 0}

    for notification in pending:
        if deliver(db, notifier, notification):
            sent += 1
        else:
            failed += 1
    return {"sent": sent, "failed": failed}


def serialize_notification(notification: NotificationQueue) -> dict:
    return {
        "notificationID": notification.NotificationID,
        "requestID": notification.RequestID,
        "stationID": notification.StationID,
        "type": notification.NotificationType,
        "channel": notification.Channel,
        "recipient": notification.Recipient,
        "payload": notification.Payload,
        "attempts": notification.Attempts,
        "lastError": notification.LastError,
        "createdAt": notification.CreatedAt,
        "sentAt": notification.SentAt,
    }
