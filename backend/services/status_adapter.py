"""
Procurement Hub - Status Dual-Write Adapter

Entities carry two parallel status fields during the unification migration:
the legacy ``status`` (free-form labels for orders) and ``unified_status``.
Internally a status is a single tagged value (``EntityStatus``); this adapter
projects it into both field names on write. Workflow logic never reads the
legacy field - it is write-only output, consulted only to hydrate documents
that were written before the unified field existed.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Any, Optional, Tuple

from services.portal_config import utc_now, to_iso

logger = logging.getLogger(__name__)


# (legacy field, unified field) per entity type
STATUS_FIELDS: Dict[str, Tuple[str, str]] = {
    "SHIPMENT": ("shipment_status", "unified_shipment_status"),
}
DEFAULT_STATUS_FIELDS = ("status", "unified_status")

# Orders predate the unified model and used human-readable labels
ORDER_LEGACY_LABELS: Dict[str, str] = {
    "DRAFT": "Awaiting approval",
    "CREATED": "Awaiting approval",
    "PENDING_APPROVAL": "Awaiting approval",
    "SENT_BACK": "Awaiting approval",
    "APPROVED": "Awaiting fulfilment",
    "IN_FULFILMENT": "Awaiting fulfilment",
    "LINKED_TO_PO": "Awaiting fulfilment",
    "IN_SHIPMENT": "Dispatched",
    "DISPATCHED": "Dispatched",
    "PARTIALLY_DELIVERED": "Delivered",
    "FULLY_DELIVERED": "Delivered",
    "DELIVERED": "Delivered",
    "REJECTED": "Rejected",
    "CANCELLED": "Cancelled",
    "ON_HOLD": "On hold",
}

ORDER_LEGACY_TO_UNIFIED: Dict[str, str] = {
    "Awaiting approval": "PENDING_APPROVAL",
    "Awaiting fulfilment": "IN_FULFILMENT",
    "Dispatched": "DISPATCHED",
    "Delivered": "DELIVERED",
    "Rejected": "REJECTED",
    "Cancelled": "CANCELLED",
    "On hold": "ON_HOLD",
}


def _order_legacy_label(code: str) -> str:
    if code in ORDER_LEGACY_LABELS:
        return ORDER_LEGACY_LABELS[code]
    # Stage-specific workflow statuses, e.g. PENDING_SITE_ADMIN_APPROVAL
    if code.startswith("PENDING_"):
        return "Awaiting approval"
    if code.endswith("_APPROVED"):
        return "Awaiting fulfilment"
    return code


@dataclass(frozen=True)
class EntityStatus:
    """A status value tagged with the entity type it belongs to."""
    entity_type: str
    code: str

    @property
    def legacy_value(self) -> str:
        if self.entity_type == "ORDER":
            return _order_legacy_label(self.code)
        return self.code

    def to_fields(
        self,
        updated_by: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Project into both external field names (for a $set)."""
        legacy_field, unified_field = field_names(self.entity_type)
        fields = {
            unified_field: self.code,
            legacy_field: self.legacy_value,
            f"{unified_field}_updated_at": to_iso(now or utc_now()),
        }
        if updated_by:
            fields[f"{unified_field}_updated_by"] = updated_by
        return fields

    @classmethod
    def from_document(cls, entity_type: str, document: Dict[str, Any]) -> Optional["EntityStatus"]:
        """Read the status of a stored document, preferring the unified field."""
        legacy_field, unified_field = field_names(entity_type)
        unified = document.get(unified_field)
        if unified:
            return cls(entity_type, unified)

        legacy = document.get(legacy_field)
        if not legacy:
            return None
        if entity_type == "ORDER":
            code = ORDER_LEGACY_TO_UNIFIED.get(legacy, legacy)
        else:
            code = legacy
        logger.debug(
            "Hydrated %s %s status from legacy field: %s -> %s",
            entity_type, document.get("id"), legacy, code
        )
        return cls(entity_type, code)


def field_names(entity_type: str) -> Tuple[str, str]:
    return STATUS_FIELDS.get(entity_type, DEFAULT_STATUS_FIELDS)


def read_status_code(entity_type: str, document: Dict[str, Any]) -> Optional[str]:
    status = EntityStatus.from_document(entity_type, document)
    return status.code if status else None
