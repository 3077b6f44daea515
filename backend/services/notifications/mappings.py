"""
Procurement Hub - Notification Mapping Resolver

Decides, per workflow event, who is notified on which channel with which
template. Mappings live in workflow_notification_mappings.

Resolution tiers:
1. company mappings for the exact stage
2. company mappings for all stages (stage_key null)
3. global ('*') mappings for the exact stage
4. global mappings for all stages

Resolution stops at the first tier holding an active mapping. Global tiers
are consulted only when the company has no active mapping at all for the
(entity_type, event_type); company and global mappings are never merged.
The resolver never sends anything.
"""

import logging
from enum import Enum
from dataclasses import dataclass, field
from typing import Optional, Dict, List, Any

from services.notifications.recipients import (
    RecipientDescriptor, WorkflowContext, resolve_recipients,
)
from services.status_adapter import read_status_code

logger = logging.getLogger(__name__)

GLOBAL_SCOPE = "*"


class NotificationChannel(str, Enum):
    EMAIL = "EMAIL"
    IN_APP = "IN_APP"
    WHATSAPP = "WHATSAPP"
    SMS = "SMS"
    PUSH = "PUSH"


@dataclass
class ChannelConfig:
    channel: str
    template_key: Optional[str] = None
    priority: int = 0
    delay_minutes: int = 0


@dataclass
class MappingConditions:
    min_amount: Optional[float] = None
    entity_statuses: List[str] = field(default_factory=list)
    roles: List[str] = field(default_factory=list)

    def matches(self, entity_type: str, snapshot: Dict, actor_role: Optional[str]) -> bool:
        if self.min_amount is not None:
            amount = snapshot.get("total_amount", snapshot.get("amount"))
            if amount is None or float(amount) < float(self.min_amount):
                return False
        if self.entity_statuses:
            if read_status_code(entity_type, snapshot) not in self.entity_statuses:
                return False
        if self.roles and actor_role not in self.roles:
            return False
        return True


@dataclass
class NotificationMapping:
    id: str
    company_id: str
    entity_type: str
    event_type: str
    stage_key: Optional[str] = None
    recipient_resolvers: List[str] = field(default_factory=list)
    custom_recipients: List[Any] = field(default_factory=list)
    exclude_action_performer: bool = False
    channels: List[ChannelConfig] = field(default_factory=list)
    conditions: MappingConditions = field(default_factory=MappingConditions)
    is_active: bool = True
    priority: int = 0

    @classmethod
    def from_document(cls, doc: Dict) -> "NotificationMapping":
        return cls(
            id=doc["id"],
            company_id=doc.get("company_id", GLOBAL_SCOPE),
            entity_type=doc.get("entity_type", GLOBAL_SCOPE),
            event_type=doc["event_type"],
            stage_key=doc.get("stage_key"),
            recipient_resolvers=doc.get("recipient_resolvers") or [],
            custom_recipients=doc.get("custom_recipients") or [],
            exclude_action_performer=doc.get("exclude_action_performer", False),
            channels=[ChannelConfig(**c) for c in doc.get("channels") or []],
            conditions=MappingConditions(**(doc.get("conditions") or {})),
            is_active=doc.get("is_active", True),
            priority=doc.get("priority", 0),
        )


@dataclass
class DispatchInstruction:
    channel: str
    template_key: str
    recipients: List[RecipientDescriptor]
    priority: int
    delay_minutes: int
    mapping_id: str
    mapping_priority: int


class NotificationMappingResolver:

    def __init__(self, db):
        self.db = db

    async def _load(self, company_id: str, entity_type: str, event_type: str) -> List[NotificationMapping]:
        docs = await self.db.workflow_notification_mappings.find(
            {
                "company_id": company_id,
                "entity_type": {"$in": [entity_type, GLOBAL_SCOPE]},
                "event_type": event_type,
                "is_active": True,
            },
            {"_id": 0},
        ).to_list(length=500)
        return [NotificationMapping.from_document(d) for d in docs]

    async def select_tier(
        self,
        company_id: str,
        entity_type: str,
        event_type: str,
        stage_key: Optional[str],
    ) -> List[NotificationMapping]:
        """Active mappings of the winning tier, before condition filtering."""
        scopes = [company_id] if company_id == GLOBAL_SCOPE else [company_id, GLOBAL_SCOPE]
        for scope in scopes:
            mappings = await self._load(scope, entity_type, event_type)
            if not mappings:
                continue

            exact = [m for m in mappings if stage_key and m.stage_key == stage_key]
            if exact:
                return exact
            # A company owning this event shadows global mappings even when
            # none of its own applies to this stage
            return [m for m in mappings if m.stage_key is None]
        return []

    async def resolve(
        self,
        company_id: str,
        entity_type: str,
        event_type: str,
        stage_key: Optional[str],
        entity_snapshot: Dict,
        context: WorkflowContext,
    ) -> List[DispatchInstruction]:
        event_code = getattr(event_type, "value", event_type)
        tier = await self.select_tier(company_id, entity_type, event_code, stage_key)

        matched = [
            m for m in tier
            if m.conditions.matches(entity_type, entity_snapshot, context.actor_role)
        ]
        matched.sort(key=lambda m: (-m.priority, m.id))

        instructions = []
        for mapping in matched:
            context.custom_recipients = mapping.custom_recipients
            recipients = resolve_recipients(
                mapping.recipient_resolvers,
                entity_snapshot,
                context,
                exclude_action_performer=mapping.exclude_action_performer,
            )
            if not recipients:
                logger.debug("Mapping %s resolved no recipients for %s", mapping.id, event_code)
                continue
            for channel in sorted(mapping.channels, key=lambda c: -c.priority):
                instructions.append(DispatchInstruction(
                    channel=channel.channel,
                    template_key=channel.template_key or event_code,
                    recipients=recipients,
                    priority=channel.priority,
                    delay_minutes=channel.delay_minutes,
                    mapping_id=mapping.id,
                    mapping_priority=mapping.priority,
                ))

        logger.info(
            "Resolved %d dispatch instruction(s) for %s %s (company=%s, stage=%s, tier=%d mapping(s))",
            len(instructions), entity_type, event_code, company_id, stage_key, len(tier)
        )
        return instructions
