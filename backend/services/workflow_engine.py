"""
Procurement Hub - Multi-Stage Approval Workflow Engine

This module implements a configuration-driven state machine for approval
workflows across entity types (orders/PRs, purchase orders, GRNs, invoices,
return requests). Stages, allowed roles and status labels come from a
versioned WorkflowConfiguration per (company, entity type).

The workflow engine is pure business logic with no direct HTTP or DB calls.
Every transition is planned deterministically from (configuration, current
entity state, action, actor role) and can be covered by unit tests.
Persistence of the plan lives in services/workflow_service.py.

Entity Types Supported:
- ORDER: Purchase requests raised by employees (two-stage by default)
- PURCHASE_ORDER, GRN, INVOICE, RETURN_REQUEST: single-stage by default
"""

from enum import Enum
from dataclasses import dataclass, field, asdict
from typing import Optional, Dict, List, Tuple, Any
import logging

from services.portal_config import MAX_REMARKS_LENGTH
from services.validation import ValidationError

logger = logging.getLogger(__name__)


# =============================================================================
# ENTITY / ROLE / ACTION DEFINITIONS
# =============================================================================

class EntityType(str, Enum):
    """Entity types that can be routed through an approval workflow."""
    ORDER = "ORDER"
    PURCHASE_ORDER = "PURCHASE_ORDER"
    GRN = "GRN"
    INVOICE = "INVOICE"
    RETURN_REQUEST = "RETURN_REQUEST"


class WorkflowRole(str, Enum):
    EMPLOYEE = "EMPLOYEE"
    LOCATION_ADMIN = "LOCATION_ADMIN"
    SITE_ADMIN = "SITE_ADMIN"
    COMPANY_ADMIN = "COMPANY_ADMIN"
    FINANCE_ADMIN = "FINANCE_ADMIN"
    SUPER_ADMIN = "SUPER_ADMIN"
    VENDOR = "VENDOR"
    SYSTEM = "SYSTEM"


# Roles whose eligibility is scoped to the entity's location
LOCATION_SCOPED_ROLES = {WorkflowRole.LOCATION_ADMIN.value, WorkflowRole.SITE_ADMIN.value}


class ApprovalAction(str, Enum):
    """Actions that move an entity forward. Recorded as WorkflowApprovalAudit."""
    APPROVE = "APPROVE"
    AUTO_APPROVE = "AUTO_APPROVE"
    SKIP_STAGE = "SKIP_STAGE"
    ESCALATE = "ESCALATE"


class RejectionAction(str, Enum):
    """Negative outcomes. Recorded as WorkflowRejection."""
    REJECT = "REJECT"
    SEND_BACK = "SEND_BACK"
    CANCEL = "CANCEL"
    HOLD = "HOLD"


APPROVAL_ACTIONS = {a.value for a in ApprovalAction}
REJECTION_ACTIONS = {a.value for a in RejectionAction}


class WorkflowState(str, Enum):
    """Lifecycle of an entity inside its workflow (stored as workflow_state)."""
    ACTIVE = "ACTIVE"
    ON_HOLD = "ON_HOLD"
    SENT_BACK = "SENT_BACK"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


TERMINAL_STATES = {
    WorkflowState.APPROVED.value,
    WorkflowState.REJECTED.value,
    WorkflowState.CANCELLED.value,
}


class ResubmissionStrategy(str, Enum):
    NOT_ALLOWED = "NOT_ALLOWED"
    SAME_ENTITY = "SAME_ENTITY"     # Rejected entity may re-enter at the first stage
    NEW_ENTITY = "NEW_ENTITY"       # Requestor must raise a fresh entity


class ResolutionAction(str, Enum):
    RESUBMITTED = "RESUBMITTED"
    RELEASED = "RELEASED"


# Statuses forced by negative actions; REJECT may be overridden per stage
PARKED_STATUSES = {
    RejectionAction.SEND_BACK.value: "SENT_BACK",
    RejectionAction.HOLD.value: "ON_HOLD",
    RejectionAction.CANCEL.value: "CANCELLED",
}
DEFAULT_REJECTED_STATUS = "REJECTED"
DEFAULT_APPROVED_STATUS = "APPROVED"


# =============================================================================
# ERRORS
# =============================================================================

class WorkflowError(Exception):
    """Workflow precondition violated. Fatal to the request, never retried."""

    code = "workflow_error"

    def __init__(self, message: str, status_code: int = 400, details: Dict = None):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict:
        return {"error": self.message, "type": self.code, **self.details}


class InvalidTransition(WorkflowError):
    code = "invalid_transition"

    def __init__(self, message: str, details: Dict = None):
        super().__init__(message, status_code=409, details=details)


class UnauthorizedRole(WorkflowError):
    code = "unauthorized_role"

    def __init__(self, message: str, details: Dict = None):
        super().__init__(message, status_code=403, details=details)


class EntityAlreadyTerminal(WorkflowError):
    code = "entity_already_terminal"

    def __init__(self, message: str, details: Dict = None):
        super().__init__(message, status_code=409, details=details)


class EntityNotFound(WorkflowError):
    code = "entity_not_found"

    def __init__(self, message: str, details: Dict = None):
        super().__init__(message, status_code=404, details=details)


class WorkflowNotConfigured(WorkflowError):
    code = "workflow_not_configured"

    def __init__(self, message: str, details: Dict = None):
        super().__init__(message, status_code=404, details=details)


# =============================================================================
# CONFIGURATION MODEL
# =============================================================================

@dataclass
class RejectionConfig:
    is_reason_code_mandatory: bool = True
    is_remarks_mandatory: bool = False
    max_remarks_length: int = MAX_REMARKS_LENGTH
    allowed_reason_codes: List[str] = field(default_factory=list)  # empty = any code
    allowed_actions: List[str] = field(default_factory=lambda: sorted(REJECTION_ACTIONS))
    is_terminal_on_reject: bool = True
    rejected_status: Optional[str] = None
    resubmission_strategy: str = ResubmissionStrategy.NEW_ENTITY.value

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> "RejectionConfig":
        if not data:
            return cls()
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)

    def allows_same_entity_resubmission(self) -> bool:
        return (
            not self.is_terminal_on_reject
            and self.resubmission_strategy == ResubmissionStrategy.SAME_ENTITY.value
        )


@dataclass
class WorkflowStage:
    stage_key: str
    stage_name: str
    allowed_roles: List[str]
    order: int
    can_approve: bool = True
    can_reject: bool = True
    is_terminal: bool = False
    is_optional: bool = False
    auto_approve: bool = False
    timeout_hours: Optional[int] = None
    escalate_to: Optional[str] = None
    rejection_config: Optional[Dict] = None

    @classmethod
    def from_dict(cls, data: Dict) -> "WorkflowStage":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class WorkflowConfiguration:
    id: str
    company_id: str
    entity_type: str
    workflow_name: str
    stages: List[WorkflowStage]
    version: int = 1
    is_active: bool = True
    status_on_submission: Optional[str] = None
    status_on_approval: Dict[str, str] = field(default_factory=dict)
    status_on_rejection: Dict[str, str] = field(default_factory=dict)
    global_rejection_config: Optional[Dict] = None

    def __post_init__(self):
        self.stages = sorted(self.stages, key=lambda s: s.order)

    @classmethod
    def from_document(cls, doc: Dict) -> "WorkflowConfiguration":
        return cls(
            id=doc["id"],
            company_id=doc["company_id"],
            entity_type=doc["entity_type"],
            workflow_name=doc.get("workflow_name", ""),
            stages=[WorkflowStage.from_dict(s) for s in doc.get("stages", [])],
            version=doc.get("version", 1),
            is_active=doc.get("is_active", True),
            status_on_submission=doc.get("status_on_submission"),
            status_on_approval=doc.get("status_on_approval") or {},
            status_on_rejection=doc.get("status_on_rejection") or {},
            global_rejection_config=doc.get("global_rejection_config"),
        )

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "company_id": self.company_id,
            "entity_type": self.entity_type,
            "workflow_name": self.workflow_name,
            "version": self.version,
            "is_active": self.is_active,
            "stages": [s.to_dict() for s in self.stages],
            "status_on_submission": self.status_on_submission,
            "status_on_approval": self.status_on_approval,
            "status_on_rejection": self.status_on_rejection,
            "global_rejection_config": self.global_rejection_config,
        }

    def validate(self):
        """Reject structurally broken configurations before they are published."""
        if self.entity_type not in {e.value for e in EntityType}:
            raise ValidationError(f"Unknown entity_type '{self.entity_type}'", field="entity_type")
        if not self.stages:
            raise ValidationError("A workflow needs at least one stage", field="stages")

        keys = [s.stage_key for s in self.stages]
        if len(set(keys)) != len(keys):
            raise ValidationError("stage_key values must be unique", field="stages")
        orders = [s.order for s in self.stages]
        if len(set(orders)) != len(orders) or min(orders) < 1:
            raise ValidationError("stage order values must be unique and >= 1", field="stages")

        terminal = [s for s in self.stages if s.is_terminal]
        if len(terminal) != 1:
            raise ValidationError("Exactly one stage must be terminal", field="stages")
        if terminal[0] is not self.stages[-1]:
            raise ValidationError("The terminal stage must be the last stage", field="stages")

        for stage in self.stages:
            if not stage.allowed_roles:
                raise ValidationError(
                    f"Stage '{stage.stage_key}' has no allowed roles", field="allowed_roles"
                )
            if stage.escalate_to and (
                stage.escalate_to == stage.stage_key or stage.escalate_to not in keys
            ):
                raise ValidationError(
                    f"Stage '{stage.stage_key}' escalates to unknown stage '{stage.escalate_to}'",
                    field="escalate_to",
                )

    # ---- lookups -------------------------------------------------------------

    @property
    def first_stage(self) -> WorkflowStage:
        return self.stages[0]

    def get_stage(self, stage_key: Optional[str]) -> Optional[WorkflowStage]:
        for stage in self.stages:
            if stage.stage_key == stage_key:
                return stage
        return None

    def next_stage(self, stage: WorkflowStage) -> Optional[WorkflowStage]:
        for candidate in self.stages:
            if candidate.order > stage.order:
                return candidate
        return None

    def previous_stage(self, stage: WorkflowStage) -> Optional[WorkflowStage]:
        previous = None
        for candidate in self.stages:
            if candidate.order >= stage.order:
                break
            previous = candidate
        return previous

    def entering_status(self, stage: WorkflowStage) -> str:
        """Status an entity carries while waiting at a stage."""
        previous = self.previous_stage(stage)
        if previous is None:
            return self.status_on_submission or f"PENDING_{stage.stage_key}"
        return self.status_on_approval.get(previous.stage_key) or f"PENDING_{stage.stage_key}"

    def completion_status(self) -> str:
        terminal = self.stages[-1]
        return self.status_on_approval.get(terminal.stage_key) or DEFAULT_APPROVED_STATUS

    def rejection_config_for(self, stage: WorkflowStage) -> RejectionConfig:
        return RejectionConfig.from_dict(stage.rejection_config or self.global_rejection_config)


# =============================================================================
# ENTITY STATE & TRANSITION PLAN
# =============================================================================

@dataclass
class EntityWorkflowState:
    """The workflow-relevant slice of an entity document."""
    entity_type: str
    entity_id: str
    company_id: str
    current_stage: Optional[str]
    workflow_state: Optional[str]
    status: Optional[str]
    location_id: Optional[str] = None
    sent_back_from_stage: Optional[str] = None


@dataclass
class TransitionPlan:
    """The fully-validated outcome of an action, ready to be persisted."""
    action: str
    from_stage: Optional[str]
    to_stage: Optional[str]
    previous_status: Optional[str]
    new_status: str
    previous_state: Optional[str]
    new_state: str
    is_rejection: bool = False
    reason_code: Optional[str] = None
    remarks: Optional[str] = None

    @property
    def is_completion(self) -> bool:
        return self.new_state == WorkflowState.APPROVED.value

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# =============================================================================
# MAIN WORKFLOW ENGINE
# =============================================================================

class WorkflowEngine:
    """
    Configuration-driven approval state machine.

    Path table per stage:
    - APPROVE iff can_approve
    - REJECT / SEND_BACK / HOLD / CANCEL iff can_reject (and listed in the
      stage's rejection config)
    - SKIP_STAGE iff is_optional
    - ESCALATE iff escalate_to names another stage
    - AUTO_APPROVE always (callers gate it with the auto-approval rule)

    Role checks are skipped for AUTO_APPROVE and for ESCALATE performed by
    the SYSTEM role (stage timeouts).
    """

    @staticmethod
    def available_actions(config: WorkflowConfiguration, stage: WorkflowStage) -> List[str]:
        actions = [ApprovalAction.AUTO_APPROVE.value]
        if stage.can_approve:
            actions.append(ApprovalAction.APPROVE.value)
        if stage.is_optional:
            actions.append(ApprovalAction.SKIP_STAGE.value)
        if stage.escalate_to and stage.escalate_to != stage.stage_key:
            actions.append(ApprovalAction.ESCALATE.value)
        if stage.can_reject:
            allowed = config.rejection_config_for(stage).allowed_actions
            actions.extend(a.value for a in RejectionAction if a.value in allowed)
        return actions

    @staticmethod
    def can_transition(
        config: WorkflowConfiguration,
        state: EntityWorkflowState,
        action: str,
        actor_role: str,
    ) -> Tuple[bool, str]:
        """
        Check whether an action is valid without raising.

        Returns:
            (can_transition, reason)
        """
        try:
            WorkflowEngine._check_preconditions(config, state, action, actor_role)
        except WorkflowError as e:
            return (False, e.message)
        return (True, "Transition allowed")

    @staticmethod
    def _check_preconditions(
        config: WorkflowConfiguration,
        state: EntityWorkflowState,
        action: str,
        actor_role: str,
    ) -> WorkflowStage:
        details = {
            "entity_type": state.entity_type,
            "entity_id": state.entity_id,
            "company_id": state.company_id,
            "current_stage": state.current_stage,
            "action": action,
        }

        if state.workflow_state in TERMINAL_STATES:
            raise EntityAlreadyTerminal(
                f"{state.entity_type} {state.entity_id} is already {state.workflow_state}",
                details=details,
            )
        if state.workflow_state != WorkflowState.ACTIVE.value:
            raise InvalidTransition(
                f"{state.entity_type} {state.entity_id} is not awaiting approval "
                f"(workflow_state={state.workflow_state})",
                details=details,
            )

        stage = config.get_stage(state.current_stage)
        if stage is None:
            raise InvalidTransition(
                f"Stage '{state.current_stage}' is not defined in workflow {config.id} v{config.version}",
                details=details,
            )

        valid = WorkflowEngine.available_actions(config, stage)
        if action not in valid:
            raise InvalidTransition(
                f"Action '{action}' not valid at stage '{stage.stage_key}'. Valid: {valid}",
                details=details,
            )

        bypass_role_check = action == ApprovalAction.AUTO_APPROVE.value or (
            action == ApprovalAction.ESCALATE.value and actor_role == WorkflowRole.SYSTEM.value
        )
        if not bypass_role_check and actor_role not in stage.allowed_roles:
            raise UnauthorizedRole(
                f"Role '{actor_role}' may not act at stage '{stage.stage_key}'",
                details={**details, "allowed_roles": stage.allowed_roles},
            )
        return stage

    @staticmethod
    def plan_transition(
        config: WorkflowConfiguration,
        state: EntityWorkflowState,
        action: str,
        actor_role: str,
        reason_code: Optional[str] = None,
        remarks: Optional[str] = None,
    ) -> TransitionPlan:
        """
        Validate an action against the current stage and compute its outcome.

        Raises:
            EntityAlreadyTerminal, InvalidTransition, UnauthorizedRole,
            ValidationError (rejection reason / remarks rules)
        """
        action = action.value if isinstance(action, Enum) else action
        stage = WorkflowEngine._check_preconditions(config, state, action, actor_role)

        if remarks and len(remarks) > MAX_REMARKS_LENGTH:
            raise ValidationError(
                f"remarks must be at most {MAX_REMARKS_LENGTH} characters", field="remarks"
            )

        if action in REJECTION_ACTIONS:
            return WorkflowEngine._plan_rejection(config, state, stage, action, reason_code, remarks)

        if action == ApprovalAction.ESCALATE.value:
            target = config.get_stage(stage.escalate_to)
            return TransitionPlan(
                action=action,
                from_stage=stage.stage_key,
                to_stage=target.stage_key,
                previous_status=state.status,
                new_status=config.entering_status(target),
                previous_state=state.workflow_state,
                new_state=WorkflowState.ACTIVE.value,
                remarks=remarks,
            )

        # APPROVE / AUTO_APPROVE / SKIP_STAGE advance to the next stage
        next_stage = None if stage.is_terminal else config.next_stage(stage)
        if next_stage is None:
            return TransitionPlan(
                action=action,
                from_stage=stage.stage_key,
                to_stage=None,
                previous_status=state.status,
                new_status=config.completion_status(),
                previous_state=state.workflow_state,
                new_state=WorkflowState.APPROVED.value,
                remarks=remarks,
            )
        return TransitionPlan(
            action=action,
            from_stage=stage.stage_key,
            to_stage=next_stage.stage_key,
            previous_status=state.status,
            new_status=config.entering_status(next_stage),
            previous_state=state.workflow_state,
            new_state=WorkflowState.ACTIVE.value,
            remarks=remarks,
        )

    @staticmethod
    def _plan_rejection(
        config: WorkflowConfiguration,
        state: EntityWorkflowState,
        stage: WorkflowStage,
        action: str,
        reason_code: Optional[str],
        remarks: Optional[str],
    ) -> TransitionPlan:
        rejection_config = config.rejection_config_for(stage)

        if rejection_config.is_reason_code_mandatory and not reason_code:
            raise ValidationError("reason_code is required", field="reason_code")
        if (
            reason_code
            and rejection_config.allowed_reason_codes
            and reason_code not in rejection_config.allowed_reason_codes
        ):
            raise ValidationError(
                f"reason_code '{reason_code}' is not allowed at stage '{stage.stage_key}'",
                field="reason_code",
                details={"allowed_reason_codes": rejection_config.allowed_reason_codes},
            )
        if rejection_config.is_remarks_mandatory and not (remarks or "").strip():
            raise ValidationError("remarks are required", field="remarks")
        if remarks and len(remarks) > rejection_config.max_remarks_length:
            raise ValidationError(
                f"remarks must be at most {rejection_config.max_remarks_length} characters",
                field="remarks",
            )

        if action == RejectionAction.REJECT.value:
            new_status = (
                rejection_config.rejected_status
                or config.status_on_rejection.get(stage.stage_key)
                or DEFAULT_REJECTED_STATUS
            )
            new_state = WorkflowState.REJECTED.value
            to_stage = None
        elif action == RejectionAction.CANCEL.value:
            new_status = PARKED_STATUSES[action]
            new_state = WorkflowState.CANCELLED.value
            to_stage = None
        else:
            # SEND_BACK and HOLD park the entity at its current stage
            new_status = PARKED_STATUSES[action]
            new_state = (
                WorkflowState.SENT_BACK.value
                if action == RejectionAction.SEND_BACK.value
                else WorkflowState.ON_HOLD.value
            )
            to_stage = stage.stage_key

        return TransitionPlan(
            action=action,
            from_stage=stage.stage_key,
            to_stage=to_stage,
            previous_status=state.status,
            new_status=new_status,
            previous_state=state.workflow_state,
            new_state=new_state,
            is_rejection=True,
            reason_code=reason_code,
            remarks=remarks,
        )

    @staticmethod
    def plan_submission(config: WorkflowConfiguration, state: EntityWorkflowState) -> TransitionPlan:
        if state.workflow_state is not None:
            raise InvalidTransition(
                f"{state.entity_type} {state.entity_id} was already submitted "
                f"(workflow_state={state.workflow_state})",
                details={"entity_id": state.entity_id, "company_id": state.company_id},
            )
        first = config.first_stage
        return TransitionPlan(
            action="SUBMIT",
            from_stage=None,
            to_stage=first.stage_key,
            previous_status=state.status,
            new_status=config.entering_status(first),
            previous_state=None,
            new_state=WorkflowState.ACTIVE.value,
        )

    @staticmethod
    def plan_resubmission(config: WorkflowConfiguration, state: EntityWorkflowState) -> TransitionPlan:
        """
        SENT_BACK entities return to the stage they were sent back from.
        REJECTED entities restart at the first stage, only when the rejecting
        stage allows same-entity resubmission.
        """
        details = {"entity_id": state.entity_id, "company_id": state.company_id}

        if state.workflow_state == WorkflowState.SENT_BACK.value:
            stage = config.get_stage(state.sent_back_from_stage or state.current_stage)
            if stage is None:
                stage = config.first_stage
        elif state.workflow_state == WorkflowState.REJECTED.value:
            rejected_at = config.get_stage(state.current_stage) or config.first_stage
            if not config.rejection_config_for(rejected_at).allows_same_entity_resubmission():
                raise EntityAlreadyTerminal(
                    f"{state.entity_type} {state.entity_id} was rejected and cannot be resubmitted",
                    details=details,
                )
            stage = config.first_stage
        else:
            raise InvalidTransition(
                f"Only sent-back or rejected entities can be resubmitted "
                f"(workflow_state={state.workflow_state})",
                details=details,
            )

        return TransitionPlan(
            action="RESUBMIT",
            from_stage=state.current_stage,
            to_stage=stage.stage_key,
            previous_status=state.status,
            new_status=config.entering_status(stage),
            previous_state=state.workflow_state,
            new_state=WorkflowState.ACTIVE.value,
        )

    @staticmethod
    def plan_release(config: WorkflowConfiguration, state: EntityWorkflowState) -> TransitionPlan:
        if state.workflow_state != WorkflowState.ON_HOLD.value:
            raise InvalidTransition(
                f"{state.entity_type} {state.entity_id} is not on hold",
                details={"entity_id": state.entity_id, "workflow_state": state.workflow_state},
            )
        stage = config.get_stage(state.current_stage) or config.first_stage
        return TransitionPlan(
            action="RELEASE_HOLD",
            from_stage=stage.stage_key,
            to_stage=stage.stage_key,
            previous_status=state.status,
            new_status=config.entering_status(stage),
            previous_state=state.workflow_state,
            new_state=WorkflowState.ACTIVE.value,
        )
