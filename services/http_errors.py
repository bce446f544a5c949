# services/http_errors.py
from __future__ import annotations

import logging

from fastapi import Request
from fastapi.responses import JSONResponse

from app.escrow.errors import (
    AuthorizationError,
    EscrowError,
    ExternalServiceError,
    InvalidTransition,
    NotFoundError,
    StaleStateError,
    ValidationError,
)
from services.observability import get_request_id

logger = logging.getLogger("escrow.http")

ERROR_HTTP_STATUS: dict[type[EscrowError], int] = {
    ValidationError: 422,
    AuthorizationError: 403,
    NotFoundError: 404,
    InvalidTransition: 409,
    StaleStateError: 409,
    ExternalServiceError: 502,
}

# codes whose status differs from their class default
CODE_HTTP_STATUS: dict[str, int] = {
    "ROLE_NOT_ALLOWED": 403,
    "INVITE_EXPIRED": 410,
}


def status_for(exc: EscrowError) -> int:
    if exc.code in CODE_HTTP_STATUS:
        return CODE_HTTP_STATUS[exc.code]
    for cls in type(exc).__mro__:
        if cls in ERROR_HTTP_STATUS:
            return ERROR_HTTP_STATUS[cls]
    return 400


def error_body(exc: EscrowError) -> dict:
    return {"detail": exc.code, "message": exc.message, "request_id": get_request_id()}


async def escrow_error_handler(request: Request, exc: EscrowError) -> JSONResponse:
    status = status_for(exc)
    if status >= 500:
        logger.warning("upstream failure path=%s code=%s", request.url.path, exc.code)
    else:
        logger.info("request rejected path=%s status=%s code=%s", request.url.path, status, exc.code)
    return JSONResponse(status_code=status, content=error_body(exc))


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled error path=%s", request.url.path)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
    )
