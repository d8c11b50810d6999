from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError

from src.storage.sqlite_store import InvalidTransitionError, LeaseLostError, NotFoundError, ResourceBusyError


logger = logging.getLogger(__name__)


@dataclass
class APIError(Exception):
    status_code: int
    code: str
    message: str
    details: dict[str, Any] | None = None


def error_response(*, status_code: int, code: str, message: str, details: dict[str, Any] | None = None) -> JSONResponse:
    payload: dict[str, Any] = {"error": {"code": code, "message": message}}
    if details:
        payload["error"]["details"] = details
    return JSONResponse(status_code=int(status_code), content=payload)


async def api_error_handler(_req: Request, exc: APIError) -> JSONResponse:
    return error_response(
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details=exc.details,
    )


async def validation_error_handler(_req: Request, exc: RequestValidationError) -> JSONResponse:
    # Normalize Pydantic validation errors into our contract envelope.
    return error_response(
        status_code=400,
        code="invalid_argument",
        message="Request validation failed.",
        details={"errors": exc.errors()},
    )


async def unhandled_error_handler(_req: Request, exc: Exception) -> JSONResponse:
    # Keep errors safe by default; details are still traceable via server logs / sqlite events.
    logger.error("Unhandled API error", exc_info=exc)
    return error_response(
        status_code=500,
        code="internal",
        message="Internal server error.",
        details={"type": type(exc).__name__},
    )


def api_error_from_store(exc: Exception) -> APIError:
    """Map repository errors onto the HTTP contract (404 / 409 / 400)."""
    if isinstance(exc, NotFoundError):
        return APIError(status_code=404, code="not_found", message=str(exc))
    if isinstance(exc, InvalidTransitionError):
        return APIError(
            status_code=409,
            code="invalid_transition",
            message=str(exc),
            details={"current": exc.current.value, "target": exc.target.value},
        )
    if isinstance(exc, ResourceBusyError):
        return APIError(status_code=409, code="resource_busy", message=str(exc))
    if isinstance(exc, LeaseLostError):
        return APIError(status_code=409, code="conflict", message=str(exc))
    return APIError(status_code=400, code="invalid_argument", message=str(exc))
