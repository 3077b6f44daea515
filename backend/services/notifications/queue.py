"""
Procurement Hub - Notification Queue

Durable delivery queue (notification_queue) with write-once delivery logs
(notification_logs).

Entry lifecycle:
    PENDING -> PROCESSING (claimed) -> SENT
                                    -> PENDING (retry, attempts += 1)
                                    -> FAILED (attempts >= max_attempts)
    PENDING -> CANCELLED

Claiming is one conditional update per entry, so concurrent dispatchers
never deliver the same entry twice.
"""

import logging
from enum import Enum
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Dict, List

from pymongo import ReturnDocument

from services.notifications.company_config import CompanyNotificationConfig
from services.notifications.mappings import DispatchInstruction
from services.portal_config import (
    NOTIFICATION_MAX_ATTEMPTS, NOTIFICATION_RETRY_BASE_MINUTES,
    NOTIFICATION_CLAIM_LEASE_MINUTES, utc_now, to_iso,
)
from services.validation import generate_id, generate_numeric_id

logger = logging.getLogger(__name__)


class QueueStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SENT = "SENT"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class DeliveryOutcome(str, Enum):
    SENT = "SENT"
    FAILED = "FAILED"
    BOUNCED = "BOUNCED"
    REJECTED = "REJECTED"


@dataclass
class RenderedMessage:
    """Subject and body rendered for one recipient of an instruction."""
    recipient_email: str
    recipient_name: Optional[str]
    recipient_type: Optional[str]
    subject: str
    body: str


def retry_delay(attempts: int, base_minutes: int = NOTIFICATION_RETRY_BASE_MINUTES) -> timedelta:
    """Exponential backoff after the given number of failed attempts."""
    return timedelta(minutes=base_minutes * 2 ** (attempts - 1))


class NotificationQueue:

    def __init__(
        self,
        db,
        max_attempts: int = NOTIFICATION_MAX_ATTEMPTS,
        retry_base_minutes: int = NOTIFICATION_RETRY_BASE_MINUTES,
    ):
        self.db = db
        self.collection = db.notification_queue
        self.max_attempts = max_attempts
        self.retry_base_minutes = retry_base_minutes

    async def enqueue(
        self,
        instruction: DispatchInstruction,
        messages: List[RenderedMessage],
        company_id: str,
        event_code: str,
        company_config: Optional[CompanyNotificationConfig] = None,
        correlation_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> List[str]:
        """Create one PENDING entry per recipient. Returns the queue ids."""
        now = now or utc_now()
        scheduled = now + timedelta(minutes=instruction.delay_minutes or 0)
        reason = "DELAYED" if instruction.delay_minutes else None

        if company_config is not None:
            deferred = company_config.defer_for_quiet_hours(scheduled)
            if deferred is not None:
                logger.info(
                    "Quiet hours for company %s: %s deferred to %s",
                    company_id, event_code, to_iso(deferred)
                )
                scheduled = deferred
                reason = "QUIET_HOURS"

        queue_ids = []
        for message in messages:
            entry = {
                "queue_id": generate_id("NQ", 12),
                "company_id": company_id,
                "event_code": event_code,
                "channel": instruction.channel,
                "template_key": instruction.template_key,
                "mapping_id": instruction.mapping_id,
                "priority": instruction.priority,
                "recipient_email": message.recipient_email,
                "recipient_name": message.recipient_name,
                "recipient_type": message.recipient_type,
                "subject": message.subject,
                "body": message.body,
                "status": QueueStatus.PENDING.value,
                "reason": reason,
                "scheduled_for": to_iso(scheduled),
                "attempts": 0,
                "max_attempts": self.max_attempts,
                "last_error": None,
                "correlation_id": correlation_id,
                "created_at": to_iso(now),
                "updated_at": to_iso(now),
            }
            await self.collection.insert_one(entry)
            queue_ids.append(entry["queue_id"])
        return queue_ids

    async def claim_batch(self, limit: int = 50, now: Optional[datetime] = None, worker_id: str = None) -> List[Dict]:
        """Atomically move up to limit due PENDING entries to PROCESSING, oldest first."""
        now_iso = to_iso(now or utc_now())
        claimed = []
        while len(claimed) < limit:
            claim = {
                "status": QueueStatus.PROCESSING.value,
                "claimed_at": now_iso,
                "claimed_by": worker_id,
                "updated_at": now_iso,
            }
            # The pre-image is returned; the claim is applied to it locally.
            entry = await self.collection.find_one_and_update(
                {"status": QueueStatus.PENDING.value, "scheduled_for": {"$lte": now_iso}},
                {"$set": claim},
                sort=[("scheduled_for", 1)],
                projection={"_id": 0},
                return_document=ReturnDocument.BEFORE,
            )
            if entry is None:
                break
            claimed.append({**entry, **claim})
        return claimed

    async def mark_sent(self, queue_id: str, provider_message_id: str = None) -> bool:
        now_iso = to_iso(utc_now())
        sent = {
            "status": QueueStatus.SENT.value,
            "sent_at": now_iso,
            "provider_message_id": provider_message_id,
            "updated_at": now_iso,
        }
        entry = await self.collection.find_one_and_update(
            {"queue_id": queue_id, "status": QueueStatus.PROCESSING.value},
            {"$set": sent, "$inc": {"attempts": 1}},
            projection={"_id": 0},
            return_document=ReturnDocument.BEFORE,
        )
        if entry is None:
            logger.warning("mark_sent ignored for %s: entry is not PROCESSING", queue_id)
            return False
        entry = {**entry, **sent, "attempts": entry.get("attempts", 0) + 1}
        await self._write_log(entry, DeliveryOutcome.SENT.value, provider_message_id=provider_message_id)
        return True

    async def mark_failed(self, queue_id: str, error: str, now: Optional[datetime] = None) -> Optional[str]:
        """
        Record a failed delivery attempt.

        Returns the entry's new status: PENDING when a retry is scheduled,
        FAILED once max_attempts is reached, None if the entry was not claimed.
        """
        now = now or utc_now()
        entry = await self.collection.find_one(
            {"queue_id": queue_id, "status": QueueStatus.PROCESSING.value}, {"_id": 0}
        )
        if entry is None:
            logger.warning("mark_failed ignored for %s: entry is not PROCESSING", queue_id)
            return None

        attempts = entry.get("attempts", 0) + 1
        max_attempts = entry.get("max_attempts", self.max_attempts)
        update = {"attempts": attempts, "last_error": error, "updated_at": to_iso(now)}

        if attempts < max_attempts:
            update["status"] = QueueStatus.PENDING.value
            update["scheduled_for"] = to_iso(now + retry_delay(attempts, self.retry_base_minutes))
            update["reason"] = "RETRY"
        else:
            update["status"] = QueueStatus.FAILED.value
            update["failed_at"] = to_iso(now)

        result = await self.collection.update_one(
            {"queue_id": queue_id, "status": QueueStatus.PROCESSING.value},
            {"$set": update},
        )
        if result.matched_count == 0:
            return None

        if update["status"] == QueueStatus.FAILED.value:
            logger.error(
                "Notification %s to %s failed permanently after %d attempts: %s",
                queue_id, entry.get("recipient_email"), attempts, error
            )
            await self._write_log({**entry, **update}, DeliveryOutcome.FAILED.value, error=error)
        else:
            logger.warning(
                "Notification %s attempt %d failed, retry at %s: %s",
                queue_id, attempts, update["scheduled_for"], error
            )
        return update["status"]

    async def cancel(self, queue_id: str, reason: str = "CANCELLED") -> bool:
        result = await self.collection.update_one(
            {"queue_id": queue_id, "status": QueueStatus.PENDING.value},
            {"$set": {
                "status": QueueStatus.CANCELLED.value,
                "reason": reason,
                "updated_at": to_iso(utc_now()),
            }},
        )
        return result.modified_count == 1

    async def release_stale_claims(
        self,
        lease_minutes: int = NOTIFICATION_CLAIM_LEASE_MINUTES,
        now: Optional[datetime] = None,
    ) -> int:
        """Return entries stuck in PROCESSING past the lease to PENDING (crashed dispatcher)."""
        now = now or utc_now()
        cutoff = to_iso(now - timedelta(minutes=lease_minutes))
        result = await self.collection.update_many(
            {"status": QueueStatus.PROCESSING.value, "claimed_at": {"$lte": cutoff}},
            {"$set": {
                "status": QueueStatus.PENDING.value,
                "reason": "CLAIM_EXPIRED",
                "updated_at": to_iso(now),
            }},
        )
        if result.modified_count:
            logger.warning("Released %d stale notification claim(s)", result.modified_count)
        return result.modified_count

    async def _write_log(self, entry: Dict, outcome: str, error: str = None, provider_message_id: str = None):
        await self.db.notification_logs.insert_one({
            "log_id": generate_numeric_id(),
            "queue_id": entry["queue_id"],
            "company_id": entry.get("company_id"),
            "event_code": entry.get("event_code"),
            "channel": entry.get("channel"),
            "recipient_email": entry.get("recipient_email"),
            "recipient_type": entry.get("recipient_type"),
            "subject": entry.get("subject"),
            "status": outcome,
            "error_message": error,
            "provider_message_id": provider_message_id,
            "attempts": entry.get("attempts", 0),
            "correlation_id": entry.get("correlation_id"),
            "created_at": to_iso(utc_now()),
        })
