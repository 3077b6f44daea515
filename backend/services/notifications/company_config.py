"""
Procurement Hub - Company Notification Settings

Per-company switches (company_notification_configs): master enablement,
per-event enablement, quiet hours and branding.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone
from typing import Optional, Dict, List, Any

from dateutil import tz

from services.portal_config import (
    DEFAULT_QUIET_HOURS_TIMEZONE, DEFAULT_BRAND_NAME, DEFAULT_BRAND_COLOR,
)

logger = logging.getLogger(__name__)


def _parse_hhmm(value: Optional[str]) -> Optional[time]:
    if not value:
        return None
    hours, minutes = value.split(":")
    return time(int(hours), int(minutes))


@dataclass
class CompanyNotificationConfig:
    company_id: str
    notifications_enabled: bool = True
    event_configs: List[Dict[str, Any]] = field(default_factory=list)
    quiet_hours_enabled: bool = False
    quiet_hours_start: Optional[str] = None
    quiet_hours_end: Optional[str] = None
    quiet_hours_timezone: str = DEFAULT_QUIET_HOURS_TIMEZONE
    brand_name: str = DEFAULT_BRAND_NAME
    brand_color: str = DEFAULT_BRAND_COLOR

    @classmethod
    def from_document(cls, company_id: str, doc: Optional[Dict]) -> "CompanyNotificationConfig":
        if not doc:
            return cls(company_id=company_id)
        known = {k: v for k, v in doc.items() if k in cls.__dataclass_fields__ and v is not None}
        known["company_id"] = company_id
        return cls(**known)

    def is_event_enabled(self, event_code: str) -> bool:
        """Events are on unless the company turned notifications or this event off."""
        if not self.notifications_enabled:
            return False
        for event_config in self.event_configs:
            if event_config.get("event_code") == event_code:
                return bool(event_config.get("is_enabled", True))
        return True

    # ---- quiet hours ---------------------------------------------------------

    def _window(self):
        if not self.quiet_hours_enabled:
            return None
        start = _parse_hhmm(self.quiet_hours_start)
        end = _parse_hhmm(self.quiet_hours_end)
        if start is None or end is None or start == end:
            return None
        return start, end

    def _zone(self):
        zone = tz.gettz(self.quiet_hours_timezone)
        if zone is None:
            logger.warning(
                "Unknown quiet hours timezone '%s' for company %s, using %s",
                self.quiet_hours_timezone, self.company_id, DEFAULT_QUIET_HOURS_TIMEZONE
            )
            zone = tz.gettz(DEFAULT_QUIET_HOURS_TIMEZONE)
        return zone

    def is_quiet_time(self, moment: datetime) -> bool:
        window = self._window()
        if window is None:
            return False
        start, end = window
        local = moment.astimezone(self._zone()).time()
        if start < end:
            return start <= local < end
        # Overnight window, e.g. 22:00-07:00
        return local >= start or local < end

    def quiet_hours_end_after(self, moment: datetime) -> datetime:
        """The first end of the quiet window at or after moment, in UTC."""
        _, end = self._window()
        zone = self._zone()
        local = moment.astimezone(zone)
        candidate = datetime.combine(local.date(), end, tzinfo=zone)
        if candidate <= local:
            candidate = datetime.combine(local.date() + timedelta(days=1), end, tzinfo=zone)
        return candidate.astimezone(timezone.utc)

    def defer_for_quiet_hours(self, moment: datetime) -> Optional[datetime]:
        """Where a delivery planned for moment should move to, or None if it can go out."""
        if not self.is_quiet_time(moment):
            return None
        return self.quiet_hours_end_after(moment)


class CompanyNotificationConfigStore:

    def __init__(self, db):
        self.db = db

    async def get(self, company_id: str) -> CompanyNotificationConfig:
        doc = await self.db.company_notification_configs.find_one(
            {"company_id": company_id}, {"_id": 0}
        )
        return CompanyNotificationConfig.from_document(company_id, doc)
