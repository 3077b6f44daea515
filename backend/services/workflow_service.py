"""
Procurement Hub - Workflow Stage Engine Service

Applies the plans computed by services/workflow_engine.py to stored
entities: compare-and-set update of the entity's stage/status, then one
append-only ledger row, then a workflow event for the notification
orchestrator.

Write order per action:
1. plan (all validation; nothing written on failure)
2. compare-and-set on (current_stage, workflow_state); a losing writer gets
   InvalidTransition
3. audit / rejection row; if this insert fails the entity update is reverted
4. workflow log + notifications; failures here are logged, never raised
"""

import logging
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, List, Tuple

from services.audit_ledger import AuditLedger
from services.entity_store import EntityRepository, UserDirectory
from services.notifications.events import WorkflowEvent, WorkflowEventType, event_for_action
from services.portal_config import SYSTEM_ACTOR_ID, SYSTEM_ACTOR_ROLE, utc_now, to_iso
from services.status_adapter import EntityStatus
from services.validation import ValidationError, validate_id
from services.workflow_configuration import WorkflowConfigurationStore
from services.workflow_engine import (
    WorkflowEngine, WorkflowConfiguration, WorkflowStage, EntityWorkflowState, TransitionPlan,
    EntityType, ApprovalAction, RejectionAction, WorkflowState,
    ResolutionAction, APPROVAL_ACTIONS, REJECTION_ACTIONS,
    EntityNotFound, InvalidTransition, UnauthorizedRole,
)

logger = logging.getLogger(__name__)


class WorkflowStageEngine:

    def __init__(self, db, notifier=None):
        self.db = db
        self.configs = WorkflowConfigurationStore(db)
        self.entities = EntityRepository(db)
        self.directory = UserDirectory(db)
        self.ledger = AuditLedger(db)
        self.notifier = notifier

    # =========================================================================
    # LOADING
    # =========================================================================

    async def _load(
        self,
        entity_type: str,
        entity_id: str,
        company_id: Optional[str] = None,
        pinned: bool = True,
    ) -> Tuple[Dict, WorkflowConfiguration, EntityWorkflowState]:
        if entity_type not in {e.value for e in EntityType}:
            raise ValidationError(f"Unknown entity_type '{entity_type}'", field="entity_type")
        validate_id(entity_id, "entity_id")

        entity = await self.entities.find(entity_type, entity_id)
        if entity is None or (company_id and entity.get("company_id") != company_id):
            raise EntityNotFound(
                f"{entity_type} {entity_id} not found",
                details={"entity_type": entity_type, "entity_id": entity_id, "company_id": company_id},
            )

        config = None
        # In-flight entities keep the configuration version they were submitted under
        if pinned and entity.get("workflow_config_id"):
            config = await self.configs.get_by_id(entity["workflow_config_id"])
        if config is None:
            config = await self.configs.get_active(entity.get("company_id"), entity_type)

        return entity, config, self.entities.workflow_state(entity_type, entity)

    # =========================================================================
    # APPLYING A PLAN
    # =========================================================================

    async def _apply(
        self,
        entity_type: str,
        entity: Dict,
        config: WorkflowConfiguration,
        state: EntityWorkflowState,
        plan: TransitionPlan,
        actor_id: str,
        actor_role: str,
        reason_label: Optional[str] = None,
        metadata: Optional[Dict] = None,
    ) -> Dict[str, Any]:
        now = to_iso(utc_now())
        fields = {
            "current_stage": plan.to_stage or plan.from_stage,
            "workflow_state": plan.new_state,
            "workflow_config_id": config.id,
            "workflow_version": config.version,
        }
        if plan.new_state == WorkflowState.ACTIVE.value:
            fields["stage_entered_at"] = now
            fields["last_reminder_at"] = None
        if plan.action == RejectionAction.SEND_BACK.value:
            fields["sent_back_from_stage"] = plan.from_stage

        updated = await self.entities.update_workflow_state(
            entity_type,
            entity["id"],
            expected_stage=state.current_stage,
            expected_state=state.workflow_state,
            fields=fields,
            status=EntityStatus(entity_type, plan.new_status),
            updated_by=actor_id,
        )
        if not updated:
            raise InvalidTransition(
                f"{entity_type} {entity['id']} was modified concurrently; reload and retry",
                details={
                    "entity_type": entity_type,
                    "entity_id": entity["id"],
                    "company_id": entity.get("company_id"),
                    "expected_stage": state.current_stage,
                },
            )

        result = {
            "entity_type": entity_type,
            "entity_id": entity["id"],
            "action": plan.action,
            "previous_stage": plan.from_stage,
            "new_stage": fields["current_stage"],
            "previous_status": plan.previous_status,
            "new_status": plan.new_status,
            "workflow_state": plan.new_state,
        }

        try:
            if plan.action in APPROVAL_ACTIONS:
                row = await self.ledger.record_approval(
                    config, entity, entity_type, plan, actor_id, actor_role, metadata=metadata
                )
                result["audit_id"] = row["id"]
            elif plan.action in REJECTION_ACTIONS:
                row = await self.ledger.record_rejection(
                    config, entity, entity_type, plan, actor_id, actor_role, reason_label=reason_label
                )
                result["rejection_id"] = row["id"]
        except Exception:
            logger.exception(
                "Ledger write failed for %s %s (%s); reverting entity update",
                entity_type, entity["id"], plan.action
            )
            await self.entities.restore_workflow_state(
                entity_type, entity, fields["current_stage"], plan.new_state
            )
            raise

        return result

    async def _emit(
        self,
        entity_type: str,
        entity_id: str,
        config: WorkflowConfiguration,
        plan: TransitionPlan,
        actor_id: str,
        actor_role: str,
        event_type: Optional[WorkflowEventType] = None,
    ) -> Optional[str]:
        """Log and publish the event for an applied plan. Never raises."""
        try:
            snapshot = await self.entities.find(entity_type, entity_id) or {"id": entity_id}
            event = WorkflowEvent(
                event_type=(event_type or event_for_action(plan.action, plan.is_completion)).value,
                entity_type=entity_type,
                entity_id=entity_id,
                company_id=snapshot.get("company_id"),
                triggered_by_user_id=actor_id,
                triggered_by_role=actor_role,
                from_stage=plan.from_stage,
                to_stage=plan.to_stage,
                previous_status=plan.previous_status,
                new_status=plan.new_status,
                action=plan.action,
                reason_code=plan.reason_code,
                remarks=plan.remarks,
                metadata={"workflow_config_id": config.id, "workflow_version": config.version},
            )
            await self.ledger.record_event(event.to_dict())
            if self.notifier is not None:
                await self.notifier.handle_event(event, snapshot, config)
            return event.event_id
        except Exception:
            logger.exception(
                "Workflow event emission failed for %s %s (%s)", entity_type, entity_id, plan.action
            )
            return None

    # =========================================================================
    # AUTO-APPROVAL
    # =========================================================================

    async def auto_approval_reason(self, stage: WorkflowStage, entity: Dict) -> Optional[str]:
        """Why a stage should approve itself, or None if a human must act."""
        if stage.auto_approve:
            return "stage_auto_approve"
        approvers = await self.directory.active_users(
            entity.get("company_id"), stage.allowed_roles, location_id=entity.get("location_id")
        )
        if not approvers:
            return "no_eligible_approvers"
        return None

    async def _run_auto_approval(
        self, entity_type: str, entity_id: str, config: WorkflowConfiguration
    ) -> List[Dict]:
        """Advance through every stage that has no one to approve it."""
        applied = []
        for _ in range(len(config.stages)):
            entity = await self.entities.find(entity_type, entity_id)
            state = self.entities.workflow_state(entity_type, entity)
            if state.workflow_state != WorkflowState.ACTIVE.value:
                break
            stage = config.get_stage(state.current_stage)
            if stage is None:
                break
            reason = await self.auto_approval_reason(stage, entity)
            if reason is None:
                break

            plan = WorkflowEngine.plan_transition(
                config, state, ApprovalAction.AUTO_APPROVE.value, SYSTEM_ACTOR_ROLE
            )
            try:
                result = await self._apply(
                    entity_type, entity, config, state, plan, SYSTEM_ACTOR_ID, SYSTEM_ACTOR_ROLE,
                    metadata={"auto_approval_reason": reason},
                )
            except InvalidTransition:
                # Someone else advanced the entity first
                logger.info("Auto-approval of %s %s skipped: already advanced", entity_type, entity_id)
                break

            logger.info(
                "Auto-approved %s %s at stage %s (%s)", entity_type, entity_id, stage.stage_key, reason
            )
            await self._emit(entity_type, entity_id, config, plan, SYSTEM_ACTOR_ID, SYSTEM_ACTOR_ROLE)
            applied.append(result)
        return applied

    def _merge_auto(self, result: Dict, auto: List[Dict]) -> Dict:
        result["auto_approvals"] = auto
        if auto:
            last = auto[-1]
            result["new_stage"] = last["new_stage"]
            result["new_status"] = last["new_status"]
            result["workflow_state"] = last["workflow_state"]
        return result

    # =========================================================================
    # OPERATIONS
    # =========================================================================

    async def transition(
        self,
        entity_type: str,
        entity_id: str,
        action: str,
        actor_role: str,
        actor_id: str,
        remarks: Optional[str] = None,
        reason_code: Optional[str] = None,
        reason_label: Optional[str] = None,
        company_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Apply an approval or negative action to an entity.

        Returns a dict with new_stage and new_status (after any automatic
        approvals the move triggered).

        Raises:
            ValidationError, EntityNotFound, WorkflowNotConfigured,
            EntityAlreadyTerminal, InvalidTransition, UnauthorizedRole
        """
        if action not in APPROVAL_ACTIONS and action not in REJECTION_ACTIONS:
            raise ValidationError(f"Unknown action '{action}'", field="action")
        validate_id(actor_id, "actor_id")

        entity, config, state = await self._load(entity_type, entity_id, company_id)
        plan = WorkflowEngine.plan_transition(
            config, state, action, actor_role, reason_code=reason_code, remarks=remarks
        )

        if action == ApprovalAction.AUTO_APPROVE.value:
            stage = config.get_stage(state.current_stage)
            if await self.auto_approval_reason(stage, entity) is None:
                raise InvalidTransition(
                    f"Stage '{stage.stage_key}' has eligible approvers and cannot be auto-approved",
                    details={"entity_id": entity_id, "company_id": entity.get("company_id")},
                )

        result = await self._apply(
            entity_type, entity, config, state, plan, actor_id, actor_role, reason_label=reason_label
        )
        await self._emit(entity_type, entity_id, config, plan, actor_id, actor_role)

        auto = []
        if plan.new_state == WorkflowState.ACTIVE.value and plan.to_stage != plan.from_stage:
            auto = await self._run_auto_approval(entity_type, entity_id, config)
        return self._merge_auto(result, auto)

    async def submit(
        self,
        entity_type: str,
        entity_id: str,
        actor_id: str,
        actor_role: str,
        company_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Enter the workflow at the first stage of the active configuration."""
        validate_id(actor_id, "actor_id")
        entity, config, state = await self._load(entity_type, entity_id, company_id, pinned=False)
        plan = WorkflowEngine.plan_submission(config, state)

        result = await self._apply(entity_type, entity, config, state, plan, actor_id, actor_role)
        await self._emit(entity_type, entity_id, config, plan, actor_id, actor_role)
        logger.info(
            "%s %s submitted into workflow %s v%d at %s",
            entity_type, entity_id, config.id, config.version, plan.to_stage
        )
        return self._merge_auto(result, await self._run_auto_approval(entity_type, entity_id, config))

    async def resubmit(
        self,
        entity_type: str,
        entity_id: str,
        actor_id: str,
        actor_role: str,
        company_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        validate_id(actor_id, "actor_id")
        entity, config, state = await self._load(entity_type, entity_id, company_id)
        plan = WorkflowEngine.plan_resubmission(config, state)

        result = await self._apply(entity_type, entity, config, state, plan, actor_id, actor_role)
        result["resolved_rejection_id"] = await self.ledger.resolve_rejection(
            entity_type, entity_id, actor_id, ResolutionAction.RESUBMITTED.value,
            actions=[RejectionAction.SEND_BACK.value, RejectionAction.REJECT.value],
        )
        await self._emit(entity_type, entity_id, config, plan, actor_id, actor_role)
        return self._merge_auto(result, await self._run_auto_approval(entity_type, entity_id, config))

    async def release_hold(
        self,
        entity_type: str,
        entity_id: str,
        actor_id: str,
        actor_role: str,
        company_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        validate_id(actor_id, "actor_id")
        entity, config, state = await self._load(entity_type, entity_id, company_id)
        plan = WorkflowEngine.plan_release(config, state)

        stage = config.get_stage(plan.to_stage)
        if actor_role not in stage.allowed_roles:
            raise UnauthorizedRole(
                f"Role '{actor_role}' may not release holds at stage '{stage.stage_key}'",
                details={"entity_id": entity_id, "allowed_roles": stage.allowed_roles},
            )

        result = await self._apply(entity_type, entity, config, state, plan, actor_id, actor_role)
        result["resolved_rejection_id"] = await self.ledger.resolve_rejection(
            entity_type, entity_id, actor_id, ResolutionAction.RELEASED.value,
            actions=[RejectionAction.HOLD.value],
        )
        await self._emit(entity_type, entity_id, config, plan, actor_id, actor_role)
        return result

    async def get_history(self, entity_type: str, entity_id: str, company_id: Optional[str] = None) -> Dict:
        entity, _, state = await self._load(entity_type, entity_id, company_id)
        return {
            "entity_type": entity_type,
            "entity_id": entity_id,
            "current_stage": state.current_stage,
            "workflow_state": state.workflow_state,
            "status": state.status,
            "history": await self.ledger.get_history(entity_type, entity_id),
        }

    async def process_stage_timeouts(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Escalate or remind for entities waiting past a stage's timeout_hours.

        Stages with escalate_to are escalated by the SYSTEM actor; others get
        one APPROVAL_REMINDER per timeout window.
        """
        now = now or utc_now()
        summary = {"escalated": 0, "reminded": 0, "errors": 0}

        config_docs = await self.db.workflow_configurations.find(
            {"is_active": True}, {"_id": 0}
        ).to_list(length=500)

        for doc in config_docs:
            config = WorkflowConfiguration.from_document(doc)
            for stage in config.stages:
                if not stage.timeout_hours:
                    continue
                cutoff = to_iso(now - timedelta(hours=stage.timeout_hours))
                waiting = await self.entities.find_waiting(config.entity_type, stage.stage_key, cutoff)

                for entity in waiting:
                    if entity.get("workflow_config_id") != config.id:
                        continue
                    try:
                        if stage.escalate_to:
                            await self._escalate(config, entity)
                            summary["escalated"] += 1
                        elif await self._remind(config, stage, entity, cutoff, now):
                            summary["reminded"] += 1
                    except Exception as e:
                        summary["errors"] += 1
                        logger.warning(
                            "Timeout handling failed for %s %s: %s",
                            config.entity_type, entity.get("id"), str(e)
                        )

        if any(summary.values()):
            logger.info("Stage timeout run: %s", summary)
        return summary

    async def _escalate(self, config: WorkflowConfiguration, entity: Dict):
        state = self.entities.workflow_state(config.entity_type, entity)
        plan = WorkflowEngine.plan_transition(
            config, state, ApprovalAction.ESCALATE.value, SYSTEM_ACTOR_ROLE,
            remarks="Stage timeout exceeded",
        )
        await self._apply(
            config.entity_type, entity, config, state, plan, SYSTEM_ACTOR_ID, SYSTEM_ACTOR_ROLE,
            metadata={"trigger": "stage_timeout"},
        )
        await self._emit(config.entity_type, entity["id"], config, plan, SYSTEM_ACTOR_ID, SYSTEM_ACTOR_ROLE)

    async def _remind(
        self, config: WorkflowConfiguration, stage: WorkflowStage, entity: Dict, cutoff: str, now: datetime
    ) -> bool:
        last_reminder = entity.get("last_reminder_at")
        if last_reminder and last_reminder > cutoff:
            return False

        state = self.entities.workflow_state(config.entity_type, entity)
        plan = TransitionPlan(
            action="REMIND",
            from_stage=stage.stage_key,
            to_stage=stage.stage_key,
            previous_status=state.status,
            new_status=state.status,
            previous_state=state.workflow_state,
            new_state=state.workflow_state,
        )
        await self.entities.set_reminder_sent(config.entity_type, entity["id"], to_iso(now))
        await self._emit(
            config.entity_type, entity["id"], config, plan, SYSTEM_ACTOR_ID, SYSTEM_ACTOR_ROLE,
            event_type=WorkflowEventType.APPROVAL_REMINDER,
        )
        return True

