"""
Procurement Hub - Workflows Router

Entity workflow actions, history and the stage-timeout sweep.
"""

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from typing import Optional, Dict
from pydantic import BaseModel
import logging

from services.validation import ValidationError
from services.workflow_engine import WorkflowError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/workflows", tags=["workflows"])

# Database and workflow engine - set by main app
db = None
workflow_engine = None


def set_dependencies(database, engine):
    global db, workflow_engine
    db = database
    workflow_engine = engine


# ==================== MODELS ====================

class ActorRequest(BaseModel):
    actor_id: str
    actor_role: str
    company_id: Optional[str] = None


class TransitionRequest(ActorRequest):
    action: str
    remarks: Optional[str] = None
    reason_code: Optional[str] = None
    reason_label: Optional[str] = None


def _error_response(e) -> JSONResponse:
    return JSONResponse(status_code=e.status_code, content=e.to_dict())


# ==================== ACTIONS ====================

@router.post("/{entity_type}/{entity_id}/submit")
async def submit_entity(entity_type: str, entity_id: str, req: ActorRequest):
    """Enter the workflow at the first stage."""
    try:
        return await workflow_engine.submit(
            entity_type.upper(), entity_id, req.actor_id, req.actor_role, company_id=req.company_id
        )
    except (WorkflowError, ValidationError) as e:
        logger.info("Submit of %s %s refused: %s", entity_type, entity_id, e.message)
        return _error_response(e)


@router.post("/{entity_type}/{entity_id}/transition")
async def transition_entity(entity_type: str, entity_id: str, req: TransitionRequest):
    """Approve, reject, send back, hold, cancel, skip or escalate."""
    try:
        return await workflow_engine.transition(
            entity_type.upper(),
            entity_id,
            req.action.upper(),
            req.actor_role,
            req.actor_id,
            remarks=req.remarks,
            reason_code=req.reason_code,
            reason_label=req.reason_label,
            company_id=req.company_id,
        )
    except (WorkflowError, ValidationError) as e:
        logger.info("%s on %s %s refused: %s", req.action, entity_type, entity_id, e.message)
        return _error_response(e)


@router.post("/{entity_type}/{entity_id}/resubmit")
async def resubmit_entity(entity_type: str, entity_id: str, req: ActorRequest):
    try:
        return await workflow_engine.resubmit(
            entity_type.upper(), entity_id, req.actor_id, req.actor_role, company_id=req.company_id
        )
    except (WorkflowError, ValidationError) as e:
        return _error_response(e)


@router.post("/{entity_type}/{entity_id}/release-hold")
async def release_entity_hold(entity_type: str, entity_id: str, req: ActorRequest):
    try:
        return await workflow_engine.release_hold(
            entity_type.upper(), entity_id, req.actor_id, req.actor_role, company_id=req.company_id
        )
    except (WorkflowError, ValidationError) as e:
        return _error_response(e)


@router.get("/{entity_type}/{entity_id}/history")
async def get_entity_history(entity_type: str, entity_id: str, company_id: Optional[str] = None):
    """Approval audits and rejections, oldest first."""
    try:
        return await workflow_engine.get_history(entity_type.upper(), entity_id, company_id=company_id)
    except (WorkflowError, ValidationError) as e:
        return _error_response(e)


# ==================== SCHEDULED ====================

@router.post("/process-timeouts")
async def process_timeouts() -> Dict[str, int]:
    """Escalate or remind for entities waiting past their stage timeout."""
    return await workflow_engine.process_stage_timeouts()
