"""
Unit tests for the approval state machine.
Tests the planning logic in services/workflow_engine.py (no database).
"""
import pytest

from services.validation import ValidationError
from services.workflow_engine import (
    WorkflowEngine,
    WorkflowConfiguration,
    WorkflowStage,
    EntityWorkflowState,
    WorkflowState,
    EntityAlreadyTerminal,
    InvalidTransition,
    UnauthorizedRole,
)


def make_config(**overrides):
    stages = overrides.pop("stages", None) or [
        WorkflowStage(
            stage_key="LOCATION_APPROVAL",
            stage_name="Location Admin Approval",
            allowed_roles=["LOCATION_ADMIN", "SITE_ADMIN"],
            order=1,
            escalate_to="COMPANY_APPROVAL",
        ),
        WorkflowStage(
            stage_key="COMPANY_APPROVAL",
            stage_name="Company Admin Approval",
            allowed_roles=["COMPANY_ADMIN"],
            order=2,
            is_terminal=True,
        ),
    ]
    fields = dict(
        id="WFC-TEST",
        company_id="C1",
        entity_type="ORDER",
        workflow_name="Order approval",
        stages=stages,
        status_on_submission="PENDING_SITE_ADMIN_APPROVAL",
        status_on_approval={
            "LOCATION_APPROVAL": "PENDING_COMPANY_ADMIN_APPROVAL",
            "COMPANY_APPROVAL": "COMPANY_ADMIN_APPROVED",
        },
        status_on_rejection={"LOCATION_APPROVAL": "REJECTED_BY_SITE_ADMIN"},
        global_rejection_config={"is_reason_code_mandatory": True},
    )
    fields.update(overrides)
    return WorkflowConfiguration(**fields)


def make_state(stage="LOCATION_APPROVAL", workflow_state="ACTIVE", status="PENDING_SITE_ADMIN_APPROVAL", **kw):
    return EntityWorkflowState(
        entity_type="ORDER",
        entity_id="ORD-1",
        company_id="C1",
        current_stage=stage,
        workflow_state=workflow_state,
        status=status,
        **kw,
    )


class TestConfigurationValidation:
    """Structural checks applied before a configuration is published."""

    def test_default_shape_is_valid(self):
        make_config().validate()

    def test_stages_sorted_by_order(self):
        """Stages are kept in order regardless of how they were listed."""
        config = make_config()
        reordered = make_config(stages=list(reversed(config.stages)))
        assert [s.stage_key for s in reordered.stages] == ["LOCATION_APPROVAL", "COMPANY_APPROVAL"]

    def test_requires_single_terminal_stage(self):
        config = make_config()
        config.stages[0].is_terminal = True
        with pytest.raises(ValidationError):
            config.validate()

    def test_terminal_stage_must_be_last(self):
        config = make_config()
        config.stages[0].is_terminal = True
        config.stages[1].is_terminal = False
        with pytest.raises(ValidationError):
            config.validate()

    def test_duplicate_stage_keys_rejected(self):
        config = make_config()
        config.stages[1].stage_key = "LOCATION_APPROVAL"
        with pytest.raises(ValidationError):
            config.validate()

    def test_escalation_target_must_exist(self):
        config = make_config()
        config.stages[0].escalate_to = "NOWHERE"
        with pytest.raises(ValidationError) as exc:
            config.validate()
        assert exc.value.field == "escalate_to"

    def test_unknown_entity_type_rejected(self):
        with pytest.raises(ValidationError):
            make_config(entity_type="SPACESHIP").validate()


class TestStatusDerivation:
    """Statuses an entity carries while waiting at each stage."""

    def test_first_stage_uses_submission_status(self):
        config = make_config()
        assert config.entering_status(config.first_stage) == "PENDING_SITE_ADMIN_APPROVAL"

    def test_later_stage_uses_previous_stage_approval_status(self):
        config = make_config()
        assert config.entering_status(config.stages[1]) == "PENDING_COMPANY_ADMIN_APPROVAL"

    def test_fallback_pending_status(self):
        config = make_config(status_on_submission=None, status_on_approval={})
        assert config.entering_status(config.first_stage) == "PENDING_LOCATION_APPROVAL"
        assert config.completion_status() == "APPROVED"


class TestAvailableActions:
    """The path table per stage."""

    def test_full_stage(self):
        config = make_config()
        actions = WorkflowEngine.available_actions(config, config.first_stage)
        for action in ("APPROVE", "AUTO_APPROVE", "ESCALATE", "REJECT", "SEND_BACK", "HOLD", "CANCEL"):
            assert action in actions
        assert "SKIP_STAGE" not in actions

    def test_optional_stage_can_be_skipped(self):
        config = make_config()
        config.stages[0].is_optional = True
        assert "SKIP_STAGE" in WorkflowEngine.available_actions(config, config.first_stage)

    def test_no_reject_paths_when_can_reject_false(self):
        config = make_config()
        config.stages[1].can_reject = False
        actions = WorkflowEngine.available_actions(config, config.stages[1])
        assert "REJECT" not in actions
        assert "SEND_BACK" not in actions

    def test_rejection_config_limits_negative_actions(self):
        config = make_config(global_rejection_config={"allowed_actions": ["REJECT"]})
        actions = WorkflowEngine.available_actions(config, config.first_stage)
        assert "REJECT" in actions
        assert "HOLD" not in actions


class TestPlanTransition:
    """Planning approvals and negative actions."""

    def test_approve_advances_to_next_stage(self):
        plan = WorkflowEngine.plan_transition(make_config(), make_state(), "APPROVE", "LOCATION_ADMIN")
        assert plan.to_stage == "COMPANY_APPROVAL"
        assert plan.new_status == "PENDING_COMPANY_ADMIN_APPROVAL"
        assert plan.new_state == WorkflowState.ACTIVE.value
        assert plan.is_completion is False

    def test_approve_on_terminal_stage_completes(self):
        state = make_state(stage="COMPANY_APPROVAL", status="PENDING_COMPANY_ADMIN_APPROVAL")
        plan = WorkflowEngine.plan_transition(make_config(), state, "APPROVE", "COMPANY_ADMIN")
        assert plan.to_stage is None
        assert plan.new_status == "COMPANY_ADMIN_APPROVED"
        assert plan.is_completion is True

    def test_unauthorized_role_rejected(self):
        """An employee cannot approve at the location stage."""
        with pytest.raises(UnauthorizedRole) as exc:
            WorkflowEngine.plan_transition(make_config(), make_state(), "APPROVE", "EMPLOYEE")
        assert exc.value.status_code == 403
        assert exc.value.to_dict()["type"] == "unauthorized_role"

    def test_can_transition_reports_without_raising(self):
        ok, reason = WorkflowEngine.can_transition(make_config(), make_state(), "APPROVE", "EMPLOYEE")
        assert ok is False
        assert "EMPLOYEE" in reason

    def test_action_not_on_path_table(self):
        with pytest.raises(InvalidTransition):
            WorkflowEngine.plan_transition(make_config(), make_state(), "SKIP_STAGE", "LOCATION_ADMIN")

    def test_terminal_entity_refuses_actions(self):
        state = make_state(workflow_state="APPROVED", stage=None)
        with pytest.raises(EntityAlreadyTerminal):
            WorkflowEngine.plan_transition(make_config(), state, "APPROVE", "COMPANY_ADMIN")

    def test_parked_entity_refuses_actions(self):
        with pytest.raises(InvalidTransition):
            WorkflowEngine.plan_transition(
                make_config(), make_state(workflow_state="ON_HOLD"), "APPROVE", "LOCATION_ADMIN"
            )

    def test_system_escalation_bypasses_role_check(self):
        plan = WorkflowEngine.plan_transition(make_config(), make_state(), "ESCALATE", "SYSTEM")
        assert plan.to_stage == "COMPANY_APPROVAL"
        assert plan.new_status == "PENDING_COMPANY_ADMIN_APPROVAL"

    def test_human_escalation_needs_stage_role(self):
        with pytest.raises(UnauthorizedRole):
            WorkflowEngine.plan_transition(make_config(), make_state(), "ESCALATE", "EMPLOYEE")

    def test_reject_requires_reason_code(self):
        with pytest.raises(ValidationError) as exc:
            WorkflowEngine.plan_transition(make_config(), make_state(), "REJECT", "LOCATION_ADMIN")
        assert exc.value.field == "reason_code"

    def test_reject_uses_stage_rejection_status(self):
        plan = WorkflowEngine.plan_transition(
            make_config(), make_state(), "REJECT", "LOCATION_ADMIN", reason_code="BUDGET"
        )
        assert plan.new_state == WorkflowState.REJECTED.value
        assert plan.new_status == "REJECTED_BY_SITE_ADMIN"
        assert plan.is_rejection is True

    def test_reason_code_must_be_allowed(self):
        config = make_config(global_rejection_config={"allowed_reason_codes": ["BUDGET"]})
        with pytest.raises(ValidationError):
            WorkflowEngine.plan_transition(config, make_state(), "REJECT", "LOCATION_ADMIN", reason_code="OTHER")

    def test_mandatory_remarks(self):
        config = make_config(global_rejection_config={"is_remarks_mandatory": True})
        with pytest.raises(ValidationError) as exc:
            WorkflowEngine.plan_transition(
                config, make_state(), "SEND_BACK", "LOCATION_ADMIN", reason_code="FIX", remarks="  "
            )
        assert exc.value.field == "remarks"

    def test_send_back_parks_at_current_stage(self):
        plan = WorkflowEngine.plan_transition(
            make_config(), make_state(), "SEND_BACK", "LOCATION_ADMIN", reason_code="FIX"
        )
        assert plan.to_stage == "LOCATION_APPROVAL"
        assert plan.new_state == WorkflowState.SENT_BACK.value
        assert plan.new_status == "SENT_BACK"


class TestResubmissionAndRelease:

    def test_sent_back_returns_to_origin_stage(self):
        state = make_state(
            stage="COMPANY_APPROVAL", workflow_state="SENT_BACK", status="SENT_BACK",
            sent_back_from_stage="COMPANY_APPROVAL",
        )
        plan = WorkflowEngine.plan_resubmission(make_config(), state)
        assert plan.to_stage == "COMPANY_APPROVAL"
        assert plan.new_status == "PENDING_COMPANY_ADMIN_APPROVAL"

    def test_rejected_is_final_by_default(self):
        state = make_state(workflow_state="REJECTED", status="REJECTED_BY_SITE_ADMIN")
        with pytest.raises(EntityAlreadyTerminal):
            WorkflowEngine.plan_resubmission(make_config(), state)

    def test_rejected_restarts_when_same_entity_allowed(self):
        config = make_config(global_rejection_config={
            "is_terminal_on_reject": False,
            "resubmission_strategy": "SAME_ENTITY",
        })
        state = make_state(stage="COMPANY_APPROVAL", workflow_state="REJECTED", status="REJECTED")
        plan = WorkflowEngine.plan_resubmission(config, state)
        assert plan.to_stage == "LOCATION_APPROVAL"

    def test_active_entity_cannot_be_resubmitted(self):
        with pytest.raises(InvalidTransition):
            WorkflowEngine.plan_resubmission(make_config(), make_state())

    def test_release_requires_hold(self):
        with pytest.raises(InvalidTransition):
            WorkflowEngine.plan_release(make_config(), make_state())

    def test_submission_only_once(self):
        with pytest.raises(InvalidTransition):
            WorkflowEngine.plan_submission(make_config(), make_state())
        plan = WorkflowEngine.plan_submission(make_config(), make_state(stage=None, workflow_state=None, status="DRAFT"))
        assert plan.to_stage == "LOCATION_APPROVAL"
        assert plan.new_status == "PENDING_SITE_ADMIN_APPROVAL"
