from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from orc.runtime.errors import (
    EngineError,
    InvalidTransition,
    NotFound,
    PoolShutdown,
    StoreUnavailable,
    UnknownKind,
)


logger = logging.getLogger(__name__)


@dataclass
class APIError(Exception):
    status_code: int
    code: str
    message: str
    details: dict[str, Any] | None = None


_ENGINE_STATUS: dict[type[EngineError], int] = {
    UnknownKind: 400,
    NotFound: 404,
    InvalidTransition: 409,
    StoreUnavailable: 503,
    PoolShutdown: 503,
}


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


async def engine_error_handler(_req: Request, exc: EngineError) -> JSONResponse:
    status_code = next((s for t, s in _ENGINE_STATUS.items() if isinstance(exc, t)), 500)
    return error_response(
        status_code=status_code,
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


async def unhandled_error_handler(req: Request, exc: Exception) -> JSONResponse:
    logger.error("unhandled error on %s %s", req.method, req.url.path, exc_info=exc)
    return error_response(
        status_code=500,
        code="internal",
        message="Internal server error.",
        details={"type": type(exc).__name__},
    )
