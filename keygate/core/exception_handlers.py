"""Translate errors raised by the key service into HTTP responses.

Every error body has the same envelope::

    {"error": {"code": ..., "message": ..., "request_id": ..., "details": {...}}}

``details`` is present only when the error carries it. Unexpected
exceptions are reduced to ``internal_server_error`` so internals never leak.
"""

import logging
import math
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from keygate.core.errors import (
    AppError,
    AuthenticationAppError,
    ConflictAppError,
    FormatError,
    NotFoundAppError,
    PersistenceAppError,
    RateLimitAppError,
    ValidationAppError,
)
from keygate.core.logging import get_request_id

logger = logging.getLogger(__name__)

# First matching kind wins
_STATUS_BY_KIND: tuple[tuple[type[AppError], int], ...] = (
    (ValidationAppError, 400),
    (FormatError, 400),
    (AuthenticationAppError, 403),
    (NotFoundAppError, 404),
    (ConflictAppError, 409),
    (RateLimitAppError, 429),
    (PersistenceAppError, 503),
)


def status_for(exc: AppError) -> int:
    """Return the HTTP status for an error kind (400 when unmapped)."""

    for kind, status_code in _STATUS_BY_KIND:
        if isinstance(exc, kind):
            return status_code
    return 400


def _envelope(code: str, message: str, details: Any = None) -> dict[str, Any]:
    body: dict[str, Any] = {"code": code, "message": message, "request_id": get_request_id()}
    if details:
        body["details"] = details
    return {"error": body}


def _retry_after_header(exc: AppError) -> dict[str, str] | None:
    retry_after = (exc.details or {}).get("retry_after")
    if retry_after is None:
        return None
    return {"Retry-After": str(int(math.ceil(retry_after)))}


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Render an ``AppError`` with the status of its kind.

    429 responses carry ``Retry-After`` (whole seconds) when the error knows
    when the action becomes possible again.
    """
    status_code = status_for(exc)

    logger.log(
        logging.ERROR if status_code >= 500 else logging.WARNING,
        "error.handled",
        extra={
            "error_code": exc.code,
            "status_code": status_code,
            "path": request.url.path,
        },
    )

    return JSONResponse(
        status_code=status_code,
        content=_envelope(exc.code, exc.message, exc.details),
        headers=_retry_after_header(exc) if status_code == 429 else None,
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "error.unhandled",
        extra={
            "error_type": type(exc).__name__,
            "error_msg": str(exc),
            "path": request.url.path,
            "method": request.method,
        },
    )

    return JSONResponse(
        status_code=500,
        content=_envelope(
            "internal_server_error",
            "An unexpected error occurred. Please try again later.",
        ),
    )


def setup_exception_handlers(app: FastAPI) -> None:
    app.exception_handler(AppError)(app_error_handler)
    app.exception_handler(Exception)(general_exception_handler)
