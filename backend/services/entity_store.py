"""
Procurement Hub - Entity Snapshot Store

Thin accessors over the entity collections owned by the CRUD layer.
The workflow core only reads snapshots and mutates workflow/status fields;
it never creates or deletes entities.
"""

import logging
from typing import Optional, Dict, List, Any

from services.status_adapter import EntityStatus, field_names, read_status_code
from services.workflow_engine import EntityType, EntityWorkflowState, LOCATION_SCOPED_ROLES

logger = logging.getLogger(__name__)


ENTITY_COLLECTIONS = {
    EntityType.ORDER.value: "orders",
    EntityType.PURCHASE_ORDER.value: "purchase_orders",
    EntityType.GRN.value: "grns",
    EntityType.INVOICE.value: "invoices",
    EntityType.RETURN_REQUEST.value: "return_requests",
}

# Fields written by the workflow engine
WORKFLOW_FIELDS = (
    "current_stage",
    "workflow_state",
    "workflow_config_id",
    "workflow_version",
    "stage_entered_at",
    "last_reminder_at",
    "sent_back_from_stage",
)


class EntityRepository:

    def __init__(self, db):
        self.db = db

    def _collection(self, entity_type: str):
        return self.db[ENTITY_COLLECTIONS[entity_type]]

    async def find(self, entity_type: str, entity_id: str) -> Optional[Dict[str, Any]]:
        return await self._collection(entity_type).find_one({"id": entity_id}, {"_id": 0})

    @staticmethod
    def workflow_state(entity_type: str, entity: Dict[str, Any]) -> EntityWorkflowState:
        return EntityWorkflowState(
            entity_type=entity_type,
            entity_id=entity["id"],
            company_id=entity.get("company_id"),
            current_stage=entity.get("current_stage"),
            workflow_state=entity.get("workflow_state"),
            status=read_status_code(entity_type, entity),
            location_id=entity.get("location_id"),
            sent_back_from_stage=entity.get("sent_back_from_stage"),
        )

    async def update_workflow_state(
        self,
        entity_type: str,
        entity_id: str,
        expected_stage: Optional[str],
        expected_state: Optional[str],
        fields: Dict[str, Any],
        status: Optional[EntityStatus] = None,
        updated_by: Optional[str] = None,
    ) -> bool:
        """
        Compare-and-set update of the workflow fields.

        Only applies when the entity is still at (expected_stage,
        expected_state). Returns False when another writer got there first.
        """
        update = dict(fields)
        if status is not None:
            update.update(status.to_fields(updated_by=updated_by))

        result = await self._collection(entity_type).update_one(
            {
                "id": entity_id,
                "current_stage": expected_stage,
                "workflow_state": expected_state,
            },
            {"$set": update},
        )
        return result.matched_count == 1

    async def restore_workflow_state(
        self,
        entity_type: str,
        entity: Dict[str, Any],
        applied_stage: Optional[str],
        applied_state: Optional[str],
    ) -> bool:
        """
        Put back the workflow and status fields from a snapshot taken before an update.

        Only applies while the entity is still at the (stage, state) the
        failed update wrote; a later writer's change is left in place.
        """
        legacy_field, unified_field = field_names(entity_type)
        restore = {f: entity.get(f) for f in WORKFLOW_FIELDS + (legacy_field, unified_field)}
        result = await self._collection(entity_type).update_one(
            {"id": entity["id"], "current_stage": applied_stage, "workflow_state": applied_state},
            {"$set": restore},
        )
        if result.matched_count == 0:
            logger.warning(
                "Not restoring %s %s: it moved past %s/%s before the rollback",
                entity_type, entity["id"], applied_stage, applied_state
            )
            return False
        return True

    async def find_waiting(self, entity_type: str, stage_key: str, entered_before: str) -> List[Dict]:
        """Active entities that entered stage_key before the given timestamp."""
        cursor = self._collection(entity_type).find(
            {
                "current_stage": stage_key,
                "workflow_state": "ACTIVE",
                "stage_entered_at": {"$lte": entered_before},
            },
            {"_id": 0},
        )
        return await cursor.to_list(length=500)

    async def set_reminder_sent(self, entity_type: str, entity_id: str, at: str):
        await self._collection(entity_type).update_one(
            {"id": entity_id}, {"$set": {"last_reminder_at": at}}
        )


class UserDirectory:
    """Read-only lookups of portal users and vendor contacts."""

    def __init__(self, db):
        self.db = db

    async def active_users(
        self,
        company_id: str,
        roles: List[str],
        location_id: Optional[str] = None,
    ) -> List[Dict]:
        """
        Active users of the company holding any of the roles.

        Location-scoped roles only count when they administer the entity's
        location.
        """
        users = await self.db.users.find(
            {"company_id": company_id, "role": {"$in": list(roles)}, "is_active": True},
            {"_id": 0},
        ).to_list(length=500)

        eligible = []
        for user in users:
            if user["role"] in LOCATION_SCOPED_ROLES and location_id and user.get("location_id") != location_id:
                continue
            eligible.append(user)
        return eligible

    async def get_user(self, user_id: str) -> Optional[Dict]:
        if not user_id:
            return None
        return await self.db.users.find_one({"id": user_id}, {"_id": 0})

    async def get_vendor(self, vendor_id: str) -> Optional[Dict]:
        if not vendor_id:
            return None
        return await self.db.vendors.find_one({"id": vendor_id}, {"_id": 0})
