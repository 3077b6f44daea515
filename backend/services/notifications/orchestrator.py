"""
Procurement Hub - Notification Orchestrator

Entry point for workflow events: checks enablement, builds the recipient
context, resolves mappings, renders templates and enqueues. Every failure is
caught and logged here so that notifications never fail the workflow action
that raised the event.
"""

import logging
from collections import defaultdict
from datetime import datetime
from typing import Optional, Dict, Any

from services import portal_config
from services.entity_store import UserDirectory
from services.notifications.company_config import CompanyNotificationConfigStore
from services.notifications.events import WorkflowEvent
from services.notifications.mappings import NotificationMappingResolver
from services.notifications.queue import NotificationQueue, RenderedMessage
from services.notifications.recipients import WorkflowContext, roles_needed
from services.notifications.templates import TemplateStore, humanize
from services.workflow_engine import WorkflowConfiguration

logger = logging.getLogger(__name__)


class NotificationOrchestrator:

    def __init__(self, db, queue: NotificationQueue = None):
        self.db = db
        self.queue = queue or NotificationQueue(db)
        self.resolver = NotificationMappingResolver(db)
        self.templates = TemplateStore(db)
        self.company_configs = CompanyNotificationConfigStore(db)
        self.directory = UserDirectory(db)

    async def build_context(
        self,
        event: WorkflowEvent,
        snapshot: Dict[str, Any],
        config: Optional[WorkflowConfiguration],
    ) -> WorkflowContext:
        users_by_role = defaultdict(list)
        for user in await self.directory.active_users(
            event.company_id, roles_needed(config), location_id=snapshot.get("location_id")
        ):
            users_by_role[user["role"]].append(user)

        requestor_id = snapshot.get("employee_id") or snapshot.get("requested_by") or snapshot.get("created_by")
        owner_id = snapshot.get("owner_id") or snapshot.get("created_by")

        context = WorkflowContext(
            company_id=event.company_id,
            actor_id=event.triggered_by_user_id,
            actor_role=event.triggered_by_role,
            actor=await self.directory.get_user(event.triggered_by_user_id),
            requestor=await self.directory.get_user(requestor_id),
            owner=await self.directory.get_user(owner_id) if owner_id != requestor_id else None,
            vendor=await self.directory.get_vendor(snapshot.get("vendor_id")),
            config=config,
            users_by_role=dict(users_by_role),
        )

        if config is not None:
            current = config.get_stage(event.stage_key)
            if current is not None:
                context.current_stage = current
                if event.from_stage and event.from_stage != current.stage_key:
                    context.previous_stage = config.get_stage(event.from_stage)
                else:
                    context.previous_stage = config.previous_stage(current)
                context.next_stage = config.next_stage(current)
        return context

    def _template_values(self, event: WorkflowEvent, context: WorkflowContext, company_config) -> Dict[str, Any]:
        from_stage = context.config.get_stage(event.from_stage) if context.config else None
        actor = context.actor or {}
        return {
            "entity_label": humanize(event.entity_type),
            "entity_type": event.entity_type,
            "entity_id": event.entity_id,
            "event_label": humanize(event.event_type),
            "stage_name": context.current_stage.stage_name if context.current_stage else "",
            "from_stage_name": from_stage.stage_name if from_stage else "",
            "previous_status": event.previous_status,
            "new_status": event.new_status,
            "actor_name": actor.get("name") or event.triggered_by_user_id,
            "reason_code": event.reason_code,
            "remarks": event.remarks,
            "brand_name": company_config.brand_name,
            "brand_color": company_config.brand_color,
        }

    async def handle_event(
        self,
        event: WorkflowEvent,
        snapshot: Dict[str, Any],
        config: Optional[WorkflowConfiguration] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Resolve and enqueue notifications for one event. Never raises."""
        event_code = getattr(event.event_type, "value", event.event_type)
        result = {"event_id": event.event_id, "event_type": event_code, "queued": [], "skipped_reason": None}

        if not portal_config.NOTIFICATIONS_ENABLED:
            result["skipped_reason"] = "notifications_disabled"
            logger.debug("Notifications disabled, skipping %s for %s", event_code, event.entity_id)
            return result

        try:
            company_config = await self.company_configs.get(event.company_id)
            if not company_config.is_event_enabled(event_code):
                result["skipped_reason"] = "event_disabled_for_company"
                logger.info("Event %s disabled for company %s", event_code, event.company_id)
                return result

            context = await self.build_context(event, snapshot, config)
            instructions = await self.resolver.resolve(
                event.company_id, event.entity_type, event_code, event.stage_key, snapshot, context
            )
            values = self._template_values(event, context, company_config)

            for instruction in instructions:
                messages = []
                for recipient in instruction.recipients:
                    subject, body = await self.templates.render(
                        instruction.template_key,
                        instruction.channel,
                        {**values, "recipient_name": recipient.name or recipient.email},
                    )
                    messages.append(RenderedMessage(
                        recipient_email=recipient.email,
                        recipient_name=recipient.name,
                        recipient_type=recipient.recipient_type,
                        subject=subject,
                        body=body,
                    ))
                result["queued"].extend(await self.queue.enqueue(
                    instruction,
                    messages,
                    company_id=event.company_id,
                    event_code=event_code,
                    company_config=company_config,
                    correlation_id=event.event_id,
                    now=now,
                ))
        except Exception as e:
            logger.exception(
                "Notification handling failed for %s %s (%s, company=%s)",
                event.entity_type, event.entity_id, event_code, event.company_id
            )
            result["error"] = str(e)

        return result
