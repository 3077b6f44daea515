"""
Procurement Hub - Notifications Router

Manual trigger for the notification dispatcher and queue inspection.
"""

from fastapi import APIRouter, HTTPException, Query
from typing import Optional
import logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/notifications", tags=["notifications"])

# Set by main app
db = None
dispatcher = None


def set_dependencies(database, notification_dispatcher):
    global db, dispatcher
    db = database
    dispatcher = notification_dispatcher


@router.post("/dispatch")
async def run_dispatcher(limit: int = Query(50, ge=1, le=500)):
    """Claim and deliver one batch of due queue entries."""
    return await dispatcher.run_once(limit=limit)


@router.get("/queue")
async def list_queue(
    company_id: Optional[str] = Query(None),
    status: Optional[str] = Query(None),
    skip: int = Query(0),
    limit: int = Query(50),
):
    query = {}
    if company_id:
        query["company_id"] = company_id
    if status:
        query["status"] = status.upper()

    total = await db.notification_queue.count_documents(query)
    entries = await db.notification_queue.find(
        query, {"_id": 0, "body": 0}
    ).sort("scheduled_for", 1).skip(skip).limit(limit).to_list(limit)
    return {"entries": entries, "total": total}


@router.post("/queue/{queue_id}/cancel")
async def cancel_queue_entry(queue_id: str):
    if not await dispatcher.queue.cancel(queue_id):
        raise HTTPException(status_code=409, detail=f"Queue entry {queue_id} is not pending")
    return {"queue_id": queue_id, "status": "CANCELLED"}
