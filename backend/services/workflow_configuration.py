"""
Procurement Hub - Workflow Configuration Store

Versioned approval workflow definitions per (company_id, entity_type).
Exactly one version is active per scope; '*' is the global fallback scope
consulted when a company has no active configuration of its own.
"""

import logging
import uuid
from typing import Optional, Dict, List

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from services.portal_config import utc_now, to_iso
from services.validation import validate_scope_id, ValidationError
from services.workflow_engine import (
    EntityType, WorkflowConfiguration, WorkflowStage, WorkflowNotConfigured,
    WorkflowRole, ResubmissionStrategy,
)

logger = logging.getLogger(__name__)

GLOBAL_SCOPE = "*"


class WorkflowConfigurationStore:
    """Reads and publishes documents in the workflow_configurations collection."""

    def __init__(self, db):
        self.db = db
        self.collection = db.workflow_configurations

    async def get_active(self, company_id: str, entity_type: str) -> WorkflowConfiguration:
        """
        Resolve the active configuration: company scope first, then '*'.

        Raises:
            WorkflowNotConfigured: neither scope has an active configuration.
        """
        for scope in (company_id, GLOBAL_SCOPE):
            doc = await self.collection.find_one(
                {"company_id": scope, "entity_type": entity_type, "is_active": True},
                {"_id": 0},
            )
            if doc:
                if scope == GLOBAL_SCOPE and company_id != GLOBAL_SCOPE:
                    logger.debug(
                        "No %s workflow for company %s, using global default %s",
                        entity_type, company_id, doc["id"]
                    )
                return WorkflowConfiguration.from_document(doc)

        raise WorkflowNotConfigured(
            f"No active {entity_type} workflow for company {company_id}",
            details={"company_id": company_id, "entity_type": entity_type},
        )

    async def get_by_id(self, config_id: str) -> Optional[WorkflowConfiguration]:
        doc = await self.collection.find_one({"id": config_id}, {"_id": 0})
        return WorkflowConfiguration.from_document(doc) if doc else None

    async def publish_configuration(self, payload: Dict, published_by: str = None) -> WorkflowConfiguration:
        """
        Validate and publish a new version for the payload's scope.

        The previous active version is deactivated first, so at most one
        version per (company_id, entity_type) is ever active. A unique partial
        index on active rows rejects a concurrent second publisher; when the
        insert fails the previous version is reactivated.
        """
        company_id = validate_scope_id(payload.get("company_id"))
        entity_type = payload.get("entity_type")
        if entity_type not in {e.value for e in EntityType}:
            raise ValidationError(f"Unknown entity_type '{entity_type}'", field="entity_type")

        config = WorkflowConfiguration(
            id=payload.get("id") or f"WFC-{uuid.uuid4().hex[:10].upper()}",
            company_id=company_id,
            entity_type=entity_type,
            workflow_name=payload.get("workflow_name") or f"{entity_type} approval",
            stages=[WorkflowStage.from_dict(s) for s in payload.get("stages", [])],
            status_on_submission=payload.get("status_on_submission"),
            status_on_approval=payload.get("status_on_approval") or {},
            status_on_rejection=payload.get("status_on_rejection") or {},
            global_rejection_config=payload.get("global_rejection_config"),
        )
        config.validate()

        previous = await self.collection.find_one_and_update(
            {"company_id": company_id, "entity_type": entity_type, "is_active": True},
            {"$set": {"is_active": False, "deactivated_at": to_iso(utc_now())}},
            projection={"_id": 0, "id": 1, "version": 1},
            return_document=ReturnDocument.BEFORE,
        )
        deactivated = previous
        if previous is None:
            latest = await self.collection.find_one(
                {"company_id": company_id, "entity_type": entity_type},
                {"_id": 0, "version": 1},
                sort=[("version", -1)],
            )
            previous = latest
        config.version = (previous or {}).get("version", 0) + 1

        doc = config.to_dict()
        doc["created_at"] = to_iso(utc_now())
        doc["created_by"] = published_by
        try:
            await self.collection.insert_one(doc)
        except PyMongoError:
            if deactivated is not None:
                try:
                    await self.collection.update_one(
                        {"id": deactivated["id"], "is_active": False},
                        {"$set": {"is_active": True}, "$unset": {"deactivated_at": ""}},
                    )
                except DuplicateKeyError:
                    # a concurrent publisher already activated its own version
                    logger.info("Not reactivating %s: scope has another active version", deactivated["id"])
            logger.exception(
                "Publishing %s workflow v%d for company %s failed",
                entity_type, config.version, company_id
            )
            raise

        logger.info(
            "Published %s workflow %s v%d for company %s",
            entity_type, config.id, config.version, company_id
        )
        return config

    async def seed_default_configurations(self) -> int:
        """Install the global defaults for any entity type without one. Returns the count added."""
        added = 0
        for payload in default_configurations():
            existing = await self.collection.find_one(
                {"company_id": GLOBAL_SCOPE, "entity_type": payload["entity_type"], "is_active": True},
                {"_id": 0, "id": 1},
            )
            if existing:
                continue
            await self.publish_configuration(payload, published_by="SYSTEM")
            added += 1
        return added


def default_configurations() -> List[Dict]:
    """Global '*' workflows installed on first start."""
    single_stage = {
        EntityType.GRN.value: ("GRN_COMPANY_APPROVAL", "RAISED", "APPROVED"),
        EntityType.INVOICE.value: ("INVOICE_COMPANY_APPROVAL", "RAISED", "APPROVED"),
        EntityType.PURCHASE_ORDER.value: ("PO_COMPANY_APPROVAL", "PENDING_APPROVAL", "APPROVED"),
    }

    configs = [{
        "company_id": GLOBAL_SCOPE,
        "entity_type": EntityType.ORDER.value,
        "workflow_name": "Order two-stage approval",
        "status_on_submission": "PENDING_SITE_ADMIN_APPROVAL",
        "status_on_approval": {
            "LOCATION_APPROVAL": "PENDING_COMPANY_ADMIN_APPROVAL",
            "COMPANY_APPROVAL": "COMPANY_ADMIN_APPROVED",
        },
        "status_on_rejection": {
            "LOCATION_APPROVAL": "REJECTED_BY_SITE_ADMIN",
            "COMPANY_APPROVAL": "REJECTED_BY_COMPANY_ADMIN",
        },
        "global_rejection_config": {
            "is_reason_code_mandatory": True,
            "is_terminal_on_reject": True,
            "resubmission_strategy": ResubmissionStrategy.NEW_ENTITY.value,
        },
        "stages": [
            {
                "stage_key": "LOCATION_APPROVAL",
                "stage_name": "Location Admin Approval",
                "allowed_roles": [WorkflowRole.LOCATION_ADMIN.value, WorkflowRole.SITE_ADMIN.value],
                "order": 1,
                "timeout_hours": 48,
            },
            {
                "stage_key": "COMPANY_APPROVAL",
                "stage_name": "Company Admin Approval",
                "allowed_roles": [WorkflowRole.COMPANY_ADMIN.value, WorkflowRole.SUPER_ADMIN.value],
                "order": 2,
                "is_terminal": True,
                "timeout_hours": 48,
            },
        ],
    }]

    for entity_type, (stage_key, submitted, approved) in single_stage.items():
        configs.append({
            "company_id": GLOBAL_SCOPE,
            "entity_type": entity_type,
            "workflow_name": f"{entity_type.replace('_', ' ').title()} approval",
            "status_on_submission": submitted,
            "status_on_approval": {stage_key: approved},
            "stages": [{
                "stage_key": stage_key,
                "stage_name": "Company Admin Approval",
                "allowed_roles": [WorkflowRole.COMPANY_ADMIN.value, WorkflowRole.FINANCE_ADMIN.value],
                "order": 1,
                "is_terminal": True,
            }],
        })
    return configs
