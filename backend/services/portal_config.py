"""
Procurement Hub - Portal Configuration

Environment-driven switches for the workflow orchestration core.

Feature Flags:
- ENABLE_EMAIL_NOTIFICATIONS: master switch for the notification orchestrator.
  When False, workflow events are still logged but nothing is queued.
- SHIPPING_INTEGRATION_ENABLED: system-wide switch for carrier API shipments.
  When False, no company has API shipment enabled.
- ALLOW_MULTIPLE_PROVIDERS_PER_COMPANY: when False, enabling a provider for a
  company disables the company's other providers.
"""

import os
from datetime import datetime, timezone
from typing import Dict, Any


def _env_flag(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() in ("true", "1", "yes")


# =============================================================================
# NOTIFICATIONS
# =============================================================================

NOTIFICATIONS_ENABLED = _env_flag("ENABLE_EMAIL_NOTIFICATIONS", "true")

# Delivery retry policy
NOTIFICATION_MAX_ATTEMPTS = int(os.environ.get("NOTIFICATION_MAX_ATTEMPTS", "3"))
NOTIFICATION_RETRY_BASE_MINUTES = int(os.environ.get("NOTIFICATION_RETRY_BASE_MINUTES", "5"))

# Entries left in PROCESSING longer than this are returned to PENDING
NOTIFICATION_CLAIM_LEASE_MINUTES = int(os.environ.get("NOTIFICATION_CLAIM_LEASE_MINUTES", "15"))

DEFAULT_QUIET_HOURS_TIMEZONE = os.environ.get("DEFAULT_QUIET_HOURS_TIMEZONE", "Asia/Kolkata")

DEFAULT_BRAND_NAME = os.environ.get("DEFAULT_BRAND_NAME", "Procurement Hub")
DEFAULT_BRAND_COLOR = os.environ.get("DEFAULT_BRAND_COLOR", "#1F4E79")


# =============================================================================
# WORKFLOW
# =============================================================================

# Actor id recorded on transitions performed by the engine itself
SYSTEM_ACTOR_ID = "SYSTEM"
SYSTEM_ACTOR_ROLE = "SYSTEM"

MAX_REMARKS_LENGTH = 2000


# =============================================================================
# SHIPPING
# =============================================================================

SHIPPING_INTEGRATION_ENABLED = _env_flag("SHIPPING_INTEGRATION_ENABLED", "true")
ALLOW_MULTIPLE_PROVIDERS_PER_COMPANY = _env_flag("ALLOW_MULTIPLE_PROVIDERS_PER_COMPANY", "true")


def get_system_shipping_config() -> Dict[str, Any]:
    """Snapshot of the system shipping switches, in the shape stored per request."""
    return {
        "shipping_integration_enabled": SHIPPING_INTEGRATION_ENABLED,
        "allow_multiple_providers_per_company": ALLOW_MULTIPLE_PROVIDERS_PER_COMPANY,
    }


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    """
    Serialize a datetime for storage.

    All timestamps are stored as fixed-width UTC ISO strings so that range
    queries (e.g. scheduled_for <= now) compare correctly as strings.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def get_portal_status() -> Dict[str, Any]:
    """Current configuration, for the health endpoint."""
    return {
        "notifications_enabled": NOTIFICATIONS_ENABLED,
        "notification_max_attempts": NOTIFICATION_MAX_ATTEMPTS,
        "notification_retry_base_minutes": NOTIFICATION_RETRY_BASE_MINUTES,
        "default_quiet_hours_timezone": DEFAULT_QUIET_HOURS_TIMEZONE,
        **get_system_shipping_config(),
        "checked_at": to_iso(utc_now()),
    }
