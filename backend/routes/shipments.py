"""
Procurement Hub - Shipments Router

Vendor dispatch of purchase requests. Mode resolution lives in
services/shipping/mode_resolver.py; this router only maps its outcome and
typed errors onto HTTP responses.
"""

from fastapi import APIRouter
from fastapi.responses import JSONResponse
import logging

from services.shipping import DispatchRequest, ShipmentResolutionError
from services.validation import ValidationError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/prs", tags=["shipments"])

# Set by main app
db = None
mode_resolver = None


def set_dependencies(database, resolver):
    global db, mode_resolver
    db = database
    mode_resolver = resolver


@router.post("/shipment")
async def create_shipment(req: DispatchRequest):
    """Vendor marks a PR as shipped; creates an API or MANUAL shipment."""
    try:
        outcome = await mode_resolver.dispatch(req)
    except ValidationError as e:
        return JSONResponse(status_code=e.status_code, content=e.to_dict())
    except ShipmentResolutionError as e:
        logger.warning("Shipment for %s refused (%s): %s", req.pr_id, e.error_type, e.message)
        return JSONResponse(status_code=e.status_code, content=e.to_dict())

    return outcome.to_response()
