"""
Procurement Hub - Notification Templates

Stored templates (notification_templates) with built-in defaults per event
type. Placeholders use the {{name}} syntax; unknown placeholders render as
an empty string.
"""

import re
import logging
from typing import Dict, Any, Optional, Tuple

logger = logging.getLogger(__name__)

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*(\w+)\s*\}\}")

_FOOTER = "<p style=\"color:{{brand_color}}\">{{brand_name}}</p>"

DEFAULT_TEMPLATES: Dict[str, Tuple[str, str]] = {
    "ENTITY_SUBMITTED": (
        "{{entity_label}} {{entity_id}} submitted for approval",
        "<p>Hi {{recipient_name}},</p><p>{{entity_label}} {{entity_id}} was submitted by "
        "{{actor_name}} and is awaiting {{stage_name}}.</p>" + _FOOTER,
    ),
    "ENTITY_APPROVED_AT_STAGE": (
        "{{entity_label}} {{entity_id}} approved at {{from_stage_name}}",
        "<p>Hi {{recipient_name}},</p><p>{{actor_name}} approved {{entity_label}} {{entity_id}}. "
        "It now awaits {{stage_name}}.</p>" + _FOOTER,
    ),
    "ENTITY_APPROVED": (
        "{{entity_label}} {{entity_id}} approved",
        "<p>Hi {{recipient_name}},</p><p>{{entity_label}} {{entity_id}} has been fully approved "
        "(status: {{new_status}}).</p>" + _FOOTER,
    ),
    "ENTITY_REJECTED": (
        "{{entity_label}} {{entity_id}} rejected",
        "<p>Hi {{recipient_name}},</p><p>{{entity_label}} {{entity_id}} was rejected by {{actor_name}} "
        "at {{stage_name}}.</p><p>Reason: {{reason_code}}</p><p>{{remarks}}</p>" + _FOOTER,
    ),
    "ENTITY_RESUBMITTED": (
        "{{entity_label}} {{entity_id}} resubmitted",
        "<p>Hi {{recipient_name}},</p><p>{{entity_label}} {{entity_id}} was resubmitted and awaits "
        "{{stage_name}}.</p>" + _FOOTER,
    ),
    "APPROVAL_REMINDER": (
        "Reminder: {{entity_label}} {{entity_id}} awaits your approval",
        "<p>Hi {{recipient_name}},</p><p>{{entity_label}} {{entity_id}} has been waiting at "
        "{{stage_name}} for longer than expected.</p>" + _FOOTER,
    ),
    "APPROVAL_ESCALATION": (
        "Escalated: {{entity_label}} {{entity_id}}",
        "<p>Hi {{recipient_name}},</p><p>{{entity_label}} {{entity_id}} was escalated from "
        "{{from_stage_name}} to {{stage_name}}.</p>" + _FOOTER,
    ),
    "ENTITY_SENT_BACK": (
        "{{entity_label}} {{entity_id}} sent back for changes",
        "<p>Hi {{recipient_name}},</p><p>{{actor_name}} sent {{entity_label}} {{entity_id}} back "
        "for changes.</p><p>Reason: {{reason_code}}</p><p>{{remarks}}</p>" + _FOOTER,
    ),
    "ENTITY_CANCELLED": (
        "{{entity_label}} {{entity_id}} cancelled",
        "<p>Hi {{recipient_name}},</p><p>{{entity_label}} {{entity_id}} was cancelled by "
        "{{actor_name}}.</p>" + _FOOTER,
    ),
    "ENTITY_ON_HOLD": (
        "{{entity_label}} {{entity_id}} put on hold",
        "<p>Hi {{recipient_name}},</p><p>{{entity_label}} {{entity_id}} was put on hold at "
        "{{stage_name}}.</p>" + _FOOTER,
    ),
    "ENTITY_MOVED_TO_STAGE": (
        "{{entity_label}} {{entity_id}} is back at {{stage_name}}",
        "<p>Hi {{recipient_name}},</p><p>{{entity_label}} {{entity_id}} was released and awaits "
        "{{stage_name}}.</p>" + _FOOTER,
    ),
}

GENERIC_TEMPLATE = (
    "{{entity_label}} {{entity_id}}: {{event_label}}",
    "<p>Hi {{recipient_name}},</p><p>{{entity_label}} {{entity_id}}: {{event_label}} "
    "(status: {{new_status}}).</p>" + _FOOTER,
)


def render(template: str, values: Dict[str, Any]) -> str:
    def _sub(match):
        value = values.get(match.group(1))
        return "" if value is None else str(value)
    return PLACEHOLDER_PATTERN.sub(_sub, template or "")


class TemplateStore:

    def __init__(self, db):
        self.db = db

    async def get(self, template_key: str, channel: str) -> Tuple[str, str]:
        """(subject_template, body_template) for a key, falling back to the defaults."""
        doc = await self.db.notification_templates.find_one(
            {"template_key": template_key, "channel": channel, "is_active": True},
            {"_id": 0},
        )
        if doc:
            return doc.get("subject_template", ""), doc.get("body_template", "")

        if template_key in DEFAULT_TEMPLATES:
            return DEFAULT_TEMPLATES[template_key]
        logger.debug("No template '%s' for %s, using generic template", template_key, channel)
        return GENERIC_TEMPLATE

    async def render(
        self, template_key: str, channel: str, values: Dict[str, Any]
    ) -> Tuple[str, str]:
        subject_template, body_template = await self.get(template_key, channel)
        return render(subject_template, values), render(body_template, values)


def humanize(code: Optional[str]) -> str:
    return (code or "").replace("_", " ").title()
