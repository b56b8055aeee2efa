from __future__ import annotations

from fastapi import Request

from orc.api.errors import APIError
from orc.runtime.engine import Engine


def get_engine(request: Request) -> Engine:
    """FastAPI dependency: the engine started by the app lifespan."""
    engine = getattr(request.app.state, "engine", None)
    if not isinstance(engine, Engine):
        raise APIError(status_code=503, code="unavailable", message="Engine is not running.")
    return engine
