# services/notification_service.py
"""
Notifier implementations consumed by the dispatcher.

- ConsoleNotifier: logs the message (dev default when SMTP is not configured)
- ChannelNotifier: email first, then SMS when the recipient has a phone and
  Twilio is configured. The send result is the email result; an SMS failure
  is logged and does not fail the notification.
"""
import asyncio
import logging
from collections import deque
from typing import Deque, List, Optional, Protocol

from core.exceptions import DeliveryError
from models.notification import AlertKind, DedupKey, RenderedContent, SendResult
from models.user import User
from tools.notifier import EmailSender, SmsSender

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    async def send(self, recipient: User, kind: AlertKind, content: RenderedContent) -> SendResult: ...


class FailureReporter(Protocol):
    async def report(self, key: DedupKey, reason: str) -> None: ...


class ConsoleNotifier:
    def __init__(self, keep: int = 20):
        # last `keep` sends only
        self.sent_notifications: Deque[dict] = deque(maxlen=keep)

    async def send(self, recipient: User, kind: AlertKind, content: RenderedContent) -> SendResult:
        logger.info("[NOTIFY] To %s <%s> (%s): %s", recipient.id, recipient.email, kind.value, content.subject)
        self.sent_notifications.append({"user_id": recipient.id, "kind": kind.value, "subject": content.subject})
        return SendResult.success()

    def recent_notifications(self) -> List[dict]:
        """Return the most recent notifications, oldest first."""
        return list(self.sent_notifications)


class ChannelNotifier:
    def __init__(self, email: EmailSender, sms: Optional[SmsSender] = None):
        self.email = email
        self.sms = sms

    async def send(self, recipient: User, kind: AlertKind, content: RenderedContent) -> SendResult:
        try:
            await asyncio.to_thread(self.email.send, recipient.email, content.subject, content.body)
        except DeliveryError as e:
            if e.permanent:
                return SendResult.permanent_failure(e.reason)
            return SendResult.transient(e.reason)

        if self.sms and recipient.phone:
            try:
                await asyncio.to_thread(self.sms.send, recipient.phone, content.sms)
            except DeliveryError as e:
                logger.warning("Secondary SMS to %s failed (%s): %s", recipient.id, kind.value, e.reason)
        return SendResult.success()


class LoggingFailureReporter:
    """Default failure reporter: surfaces permanent failures in the logs only."""

    async def report(self, key: DedupKey, reason: str) -> None:
        logger.error(
            "Permanent delivery failure sub=%s recipient=%s kind=%s day=%s: %s",
            key.subscription_id, key.recipient_id, key.kind.value, key.day.isoformat(), reason,
        )
