"""
Procurement Hub - Request Error Handling

Malformed request bodies are reported in the same shape as service-level
ValidationError: status 400 with type "validation".
"""

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from services.validation import ValidationError

logger = logging.getLogger(__name__)


def _field_path(loc) -> str:
    parts = [str(p) for p in loc if p not in ("body", "query", "path")]
    return ".".join(parts) or "body"


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = _field_path(first.get("loc", ()))
    error = ValidationError(
        f"{field}: {first.get('msg', 'invalid request')}",
        field=field,
        details={"errors": [
            {"field": _field_path(e.get("loc", ())), "message": e.get("msg")} for e in errors
        ]},
    )
    logger.info("Rejected %s %s: %s", request.method, request.url.path, error.message)
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


def install_error_handlers(app: FastAPI):
    app.add_exception_handler(RequestValidationError, request_validation_handler)
