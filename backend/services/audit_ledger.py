"""
Procurement Hub - Audit Ledger

Append-only store for workflow outcomes:
- workflow_approval_audits: one row per forward transition
- workflow_rejections: one row per negative outcome
- workflow_logs: one row per emitted workflow event

Rows are inserted and never updated or deleted. The single exception is the
resolution sub-document of a rejection, which moves from unresolved to
resolved exactly once through a conditional update.
"""

import logging
from typing import Optional, Dict, List, Any

from services.portal_config import utc_now, to_iso
from services.validation import generate_id
from services.workflow_engine import TransitionPlan, WorkflowConfiguration

logger = logging.getLogger(__name__)


class AuditLedger:

    def __init__(self, db):
        self.db = db

    async def record_approval(
        self,
        config: WorkflowConfiguration,
        entity: Dict[str, Any],
        entity_type: str,
        plan: TransitionPlan,
        actor_id: str,
        actor_role: str,
        metadata: Optional[Dict] = None,
    ) -> Dict:
        row = {
            "id": generate_id("APR"),
            "company_id": entity.get("company_id"),
            "entity_type": entity_type,
            "entity_id": entity["id"],
            "workflow_config_id": config.id,
            "workflow_version": config.version,
            "from_stage": plan.from_stage,
            "to_stage": plan.to_stage,
            "action": plan.action,
            "approved_by": actor_id,
            "approved_by_role": actor_role,
            "previous_status": plan.previous_status,
            "new_status": plan.new_status,
            "approved_at": to_iso(utc_now()),
            "entity_snapshot": entity,
            "remarks": plan.remarks,
            "metadata": metadata or {},
        }
        await self.db.workflow_approval_audits.insert_one(row)
        row.pop("_id", None)
        logger.info(
            "Audit %s: %s %s %s -> %s by %s (%s)",
            row["id"], entity_type, entity["id"], plan.from_stage, plan.to_stage,
            actor_id, plan.action
        )
        return row

    async def record_rejection(
        self,
        config: WorkflowConfiguration,
        entity: Dict[str, Any],
        entity_type: str,
        plan: TransitionPlan,
        actor_id: str,
        actor_role: str,
        reason_label: Optional[str] = None,
    ) -> Dict:
        row = {
            "id": generate_id("REJ"),
            "company_id": entity.get("company_id"),
            "entity_type": entity_type,
            "entity_id": entity["id"],
            "workflow_config_id": config.id,
            "workflow_version": config.version,
            "workflow_stage": plan.from_stage,
            "action": plan.action,
            "reason_code": plan.reason_code,
            "reason_label": reason_label or plan.reason_code,
            "remarks": plan.remarks,
            "rejected_by": actor_id,
            "rejected_by_role": actor_role,
            "rejected_at": to_iso(utc_now()),
            "previous_status": plan.previous_status,
            "new_status": plan.new_status,
            "entity_snapshot": entity,
            "is_resolved": False,
            "resolved_at": None,
            "resolved_by": None,
            "resolution_action": None,
        }
        await self.db.workflow_rejections.insert_one(row)
        row.pop("_id", None)
        logger.info(
            "Rejection %s: %s %s at %s (%s, reason=%s) by %s",
            row["id"], entity_type, entity["id"], plan.from_stage, plan.action,
            plan.reason_code, actor_id
        )
        return row

    async def resolve_rejection(
        self,
        entity_type: str,
        entity_id: str,
        resolved_by: str,
        resolution_action: str,
        actions: Optional[List[str]] = None,
    ) -> Optional[str]:
        """
        Mark the open rejection for an entity as resolved.

        Returns the resolved rejection id, or None when nothing was open.
        The is_resolved=False filter makes a second resolution a no-op.
        """
        query = {"entity_type": entity_type, "entity_id": entity_id, "is_resolved": False}
        if actions:
            query["action"] = {"$in": actions}

        open_rejection = await self.db.workflow_rejections.find_one(
            query, {"_id": 0, "id": 1}, sort=[("rejected_at", -1)]
        )
        if not open_rejection:
            return None

        result = await self.db.workflow_rejections.update_one(
            {"id": open_rejection["id"], "is_resolved": False},
            {"$set": {
                "is_resolved": True,
                "resolved_at": to_iso(utc_now()),
                "resolved_by": resolved_by,
                "resolution_action": resolution_action,
            }},
        )
        if result.modified_count == 0:
            return None
        return open_rejection["id"]

    async def record_event(self, event: Dict[str, Any]) -> Dict:
        row = {**event, "logged_at": to_iso(utc_now())}
        await self.db.workflow_logs.insert_one(row)
        row.pop("_id", None)
        return row

    async def get_history(self, entity_type: str, entity_id: str) -> List[Dict]:
        """Approvals and rejections for one entity, oldest first."""
        approvals = await self.db.workflow_approval_audits.find(
            {"entity_type": entity_type, "entity_id": entity_id},
            {"_id": 0, "entity_snapshot": 0},
        ).to_list(length=1000)
        rejections = await self.db.workflow_rejections.find(
            {"entity_type": entity_type, "entity_id": entity_id},
            {"_id": 0, "entity_snapshot": 0},
        ).to_list(length=1000)

        history = [{"kind": "APPROVAL", "at": a["approved_at"], **a} for a in approvals]
        history += [{"kind": "REJECTION", "at": r["rejected_at"], **r} for r in rejections]
        history.sort(key=lambda h: h["at"])
        return history
