from __future__ import annotations

import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Awaitable, Callable

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import PlainTextResponse

from orc.api.errors import (
    APIError,
    api_error_handler,
    engine_error_handler,
    unhandled_error_handler,
    validation_error_handler,
)
from orc.config.load_config import load_app_config
from orc.handlers.builtin import default_registry
from orc.runtime.engine import Engine
from orc.runtime.errors import EngineError

from .routers.health import router as health_router
from .routers.jobs import router as jobs_router


access_logger = logging.getLogger("orc.api.access")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    v = raw.strip().lower()
    if v in {"1", "true", "yes", "y", "on"}:
        return True
    if v in {"0", "false", "no", "n", "off"}:
        return False
    return default


def create_app(engine: Engine | None = None) -> FastAPI:
    """Build the HTTP app.

    Without an explicit `engine`, one is built from `load_app_config()` with the
    built-in handlers. The lifespan starts it (store check + recovery + workers)
    and stops it on shutdown; a store that cannot be reached aborts startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):  # noqa: ANN202
        eng = engine
        if eng is None:
            eng = Engine.from_config(load_app_config(), default_registry())
        eng.start(workers=_env_bool("ORC_ENABLE_WORKERS", True))
        app.state.engine = eng
        try:
            yield
        finally:
            eng.stop()

    app = FastAPI(title="Orc Orchestration Engine", version="0.1.0", lifespan=lifespan)

    app.add_exception_handler(APIError, api_error_handler)
    app.add_exception_handler(EngineError, engine_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    @app.middleware("http")
    async def log_requests(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        started = time.perf_counter()
        response = await call_next(request)
        access_logger.info(
            "%s %s -> %d (%.1fms)",
            request.method,
            request.url.path,
            response.status_code,
            (time.perf_counter() - started) * 1000.0,
        )
        return response

    @app.get("/", response_class=PlainTextResponse, include_in_schema=False)
    def welcome() -> str:
        return "welcome"

    app.include_router(health_router, prefix="/api/v1", tags=["system"])
    app.include_router(jobs_router, prefix="/api/v1", tags=["jobs"])

    return app


app = create_app()
