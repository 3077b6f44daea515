"""
Procurement Hub - Email Transport

Email delivery behind a provider-neutral interface, used by the
notification dispatcher for the EMAIL channel.

Providers:
- mock: stores messages in the email_logs collection (default)
- sendgrid: SendGrid v3 mail/send over httpx
"""

import os
import uuid
import logging
from typing import List, Optional, Dict, Any
from enum import Enum
from dataclasses import dataclass, asdict

import httpx

from services.portal_config import utc_now, to_iso

logger = logging.getLogger(__name__)


class EmailProvider(str, Enum):
    MOCK = "mock"
    SENDGRID = "sendgrid"


@dataclass
class EmailMessage:
    to: List[str]
    subject: str
    html_body: str
    text_body: Optional[str] = None
    from_address: str = "noreply@procurement-hub.local"
    reply_to: Optional[str] = None
    correlation_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class EmailResult:
    success: bool
    message_id: Optional[str] = None
    provider: str = EmailProvider.MOCK.value
    error: Optional[str] = None
    timestamp: str = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = to_iso(utc_now())

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# =============================================================================
# CONFIGURATION
# =============================================================================

CURRENT_EMAIL_PROVIDER = EmailProvider(os.environ.get("EMAIL_PROVIDER", "mock").lower())

DEFAULT_FROM_ADDRESS = os.environ.get(
    "EMAIL_FROM_ADDRESS",
    "Procurement Hub <noreply@procurement-hub.local>"
)

SENDGRID_API_URL = "https://api.sendgrid.com/v3/mail/send"
SENDGRID_TIMEOUT = 20


# =============================================================================
# PROVIDERS
# =============================================================================

class MockEmailProvider:
    """Records messages in email_logs instead of sending them."""

    def __init__(self, db=None):
        self.db = db

    async def send(self, message: EmailMessage) -> EmailResult:
        message_id = f"mock_{uuid.uuid4().hex[:12]}"
        timestamp = to_iso(utc_now())

        record = {
            "message_id": message_id,
            "provider": EmailProvider.MOCK.value,
            "to": message.to,
            "subject": message.subject,
            "from_address": message.from_address,
            "html_body": message.html_body,
            "correlation_id": message.correlation_id,
            "sent_at": timestamp,
            "status": "sent",
        }
        logger.info(f"[MOCK EMAIL] To: {', '.join(message.to)} | Subject: {message.subject} | ID: {message_id}")

        if self.db is not None:
            await self.db.email_logs.insert_one(dict(record))

        return EmailResult(success=True, message_id=message_id, timestamp=timestamp)


class SendGridEmailProvider:

    def __init__(self, api_key: str):
        self.api_key = api_key

    async def send(self, message: EmailMessage) -> EmailResult:
        payload = {
            "personalizations": [{"to": [{"email": addr} for addr in message.to]}],
            "from": {"email": message.from_address},
            "subject": message.subject,
            "content": [{"type": "text/html", "value": message.html_body}],
        }
        if message.reply_to:
            payload["reply_to"] = {"email": message.reply_to}

        try:
            async with httpx.AsyncClient(timeout=SENDGRID_TIMEOUT) as client:
                resp = await client.post(
                    SENDGRID_API_URL,
                    json=payload,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )
        except httpx.HTTPError as e:
            logger.warning("SendGrid request failed: %s", str(e))
            return EmailResult(success=False, provider=EmailProvider.SENDGRID.value, error=str(e))

        if resp.status_code in (200, 202):
            return EmailResult(
                success=True,
                message_id=resp.headers.get("X-Message-Id"),
                provider=EmailProvider.SENDGRID.value,
            )
        logger.warning("SendGrid rejected message: %d - %s", resp.status_code, resp.text[:200])
        return EmailResult(
            success=False,
            provider=EmailProvider.SENDGRID.value,
            error=f"HTTP {resp.status_code}: {resp.text[:200]}",
        )


# =============================================================================
# EMAIL SERVICE (Main Interface)
# =============================================================================

class EmailService:
    """
    Usage:
        service = EmailService(db=database)
        result = await service.send_email(to=["user@example.com"], subject="Test", html_body="<p>Hi</p>")
    """

    def __init__(self, db=None, provider: EmailProvider = None):
        self.db = db
        self.provider_type = provider or CURRENT_EMAIL_PROVIDER
        self._provider = None

    def _get_provider(self):
        if self._provider is None:
            if self.provider_type == EmailProvider.SENDGRID:
                api_key = os.environ.get("SENDGRID_API_KEY")
                if not api_key:
                    raise RuntimeError("EMAIL_PROVIDER=sendgrid but SENDGRID_API_KEY is not set")
                self._provider = SendGridEmailProvider(api_key)
            else:
                self._provider = MockEmailProvider(db=self.db)
        return self._provider

    async def send_email(
        self,
        to: List[str],
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
        from_address: Optional[str] = None,
        reply_to: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> EmailResult:
        message = EmailMessage(
            to=to,
            subject=subject,
            html_body=html_body,
            text_body=text_body,
            from_address=from_address or DEFAULT_FROM_ADDRESS,
            reply_to=reply_to,
            correlation_id=correlation_id,
        )
        return await self._get_provider().send(message)
