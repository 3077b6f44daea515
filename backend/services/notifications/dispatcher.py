"""
Procurement Hub - Notification Dispatcher

Worker that claims due queue entries and hands them to the channel
transports. Delivery failures go through the queue's retry policy and are
never surfaced to the workflow action that produced the notification.
"""

import logging
import uuid
from datetime import datetime
from typing import Optional, Dict

from services.notifications.email_service import EmailService
from services.notifications.mappings import NotificationChannel
from services.notifications.queue import NotificationQueue
from services.portal_config import utc_now, to_iso

logger = logging.getLogger(__name__)


class DeliveryFailure(Exception):
    """A channel transport could not deliver a message."""

    def __init__(self, message: str, queue_id: str = None, channel: str = None):
        self.message = message
        self.queue_id = queue_id
        self.channel = channel
        super().__init__(self.message)


class NotificationDispatcher:

    def __init__(self, db, queue: NotificationQueue, email_service: EmailService):
        self.db = db
        self.queue = queue
        self.email_service = email_service
        self.worker_id = f"dispatcher-{uuid.uuid4().hex[:8]}"

    async def deliver(self, entry: Dict) -> Optional[str]:
        """Send one claimed entry. Returns the provider message id."""
        channel = entry.get("channel")

        if channel == NotificationChannel.EMAIL.value:
            result = await self.email_service.send_email(
                to=[entry["recipient_email"]],
                subject=entry.get("subject", ""),
                html_body=entry.get("body", ""),
                correlation_id=entry.get("correlation_id"),
            )
            if not result.success:
                raise DeliveryFailure(result.error or "Email provider error", entry["queue_id"], channel)
            return result.message_id

        if channel == NotificationChannel.IN_APP.value:
            notification_id = f"INA-{uuid.uuid4().hex[:10].upper()}"
            await self.db.in_app_notifications.insert_one({
                "id": notification_id,
                "company_id": entry.get("company_id"),
                "recipient_email": entry["recipient_email"],
                "title": entry.get("subject"),
                "body": entry.get("body"),
                "event_code": entry.get("event_code"),
                "correlation_id": entry.get("correlation_id"),
                "is_read": False,
                "created_at": to_iso(utc_now()),
            })
            return notification_id

        raise DeliveryFailure(f"Channel {channel} is not configured", entry["queue_id"], channel)

    async def run_once(self, limit: int = 50, now: Optional[datetime] = None) -> Dict[str, int]:
        """Claim one batch and deliver it."""
        summary = {"claimed": 0, "sent": 0, "retrying": 0, "failed": 0}

        await self.queue.release_stale_claims(now=now)
        entries = await self.queue.claim_batch(limit=limit, now=now, worker_id=self.worker_id)
        summary["claimed"] = len(entries)

        for entry in entries:
            try:
                message_id = await self.deliver(entry)
            except DeliveryFailure as e:
                status = await self.queue.mark_failed(entry["queue_id"], e.message, now=now)
                summary["failed" if status == "FAILED" else "retrying"] += 1
                continue
            except Exception as e:
                logger.exception("Unexpected error delivering %s", entry["queue_id"])
                status = await self.queue.mark_failed(entry["queue_id"], str(e), now=now)
                summary["failed" if status == "FAILED" else "retrying"] += 1
                continue

            await self.queue.mark_sent(entry["queue_id"], provider_message_id=message_id)
            summary["sent"] += 1

        if entries:
            logger.info("Dispatcher %s run: %s", self.worker_id, summary)
        return summary
