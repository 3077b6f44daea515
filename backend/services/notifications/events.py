"""
Procurement Hub - Workflow Events

Typed events emitted by the workflow engine and consumed by the
notification orchestrator.
"""

import uuid
from enum import Enum
from dataclasses import dataclass, field, asdict
from typing import Optional, Dict, Any

from services.portal_config import utc_now, to_iso


class WorkflowEventType(str, Enum):
    ENTITY_SUBMITTED = "ENTITY_SUBMITTED"
    ENTITY_APPROVED_AT_STAGE = "ENTITY_APPROVED_AT_STAGE"
    ENTITY_APPROVED = "ENTITY_APPROVED"
    ENTITY_REJECTED = "ENTITY_REJECTED"
    ENTITY_RESUBMITTED = "ENTITY_RESUBMITTED"
    APPROVAL_REMINDER = "APPROVAL_REMINDER"
    APPROVAL_ESCALATION = "APPROVAL_ESCALATION"
    ENTITY_SENT_BACK = "ENTITY_SENT_BACK"
    ENTITY_CANCELLED = "ENTITY_CANCELLED"
    ENTITY_ON_HOLD = "ENTITY_ON_HOLD"
    ENTITY_MOVED_TO_STAGE = "ENTITY_MOVED_TO_STAGE"


# Event raised for each action outcome
ACTION_EVENTS = {
    "REJECT": WorkflowEventType.ENTITY_REJECTED,
    "SEND_BACK": WorkflowEventType.ENTITY_SENT_BACK,
    "CANCEL": WorkflowEventType.ENTITY_CANCELLED,
    "HOLD": WorkflowEventType.ENTITY_ON_HOLD,
    "ESCALATE": WorkflowEventType.APPROVAL_ESCALATION,
    "SUBMIT": WorkflowEventType.ENTITY_SUBMITTED,
    "RESUBMIT": WorkflowEventType.ENTITY_RESUBMITTED,
    "RELEASE_HOLD": WorkflowEventType.ENTITY_MOVED_TO_STAGE,
}


def event_for_action(action: str, is_completion: bool) -> WorkflowEventType:
    """Forward actions raise APPROVED on the final stage, APPROVED_AT_STAGE otherwise."""
    if action in ACTION_EVENTS:
        return ACTION_EVENTS[action]
    if is_completion:
        return WorkflowEventType.ENTITY_APPROVED
    return WorkflowEventType.ENTITY_APPROVED_AT_STAGE


@dataclass
class WorkflowEvent:
    event_type: str
    entity_type: str
    entity_id: str
    company_id: str
    triggered_by_user_id: str
    triggered_by_role: str
    from_stage: Optional[str] = None
    to_stage: Optional[str] = None
    previous_status: Optional[str] = None
    new_status: Optional[str] = None
    action: Optional[str] = None
    reason_code: Optional[str] = None
    remarks: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    event_id: str = field(default_factory=lambda: f"WFE-{uuid.uuid4().hex[:12].upper()}")
    occurred_at: str = field(default_factory=lambda: to_iso(utc_now()))

    @property
    def stage_key(self) -> Optional[str]:
        """The stage the event concerns: where the entity is now, else where it was."""
        return self.to_stage or self.from_stage

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["event_type"] = getattr(self.event_type, "value", self.event_type)
        return data
