from __future__ import annotations

import importlib.metadata
import time
from typing import Any

from fastapi import APIRouter, Depends

from orc.api.dependencies import get_engine
from orc.runtime.engine import Engine
from orc.storage.sqlite_store import SCHEMA_VERSION


router = APIRouter()


def _pkg_version(name: str) -> str | None:
    try:
        return str(importlib.metadata.version(name))
    except importlib.metadata.PackageNotFoundError:
        return None


@router.get("/healthz")
def healthz(engine: Engine = Depends(get_engine)) -> dict[str, str]:
    # StoreUnavailable maps to 503 via the engine error handler.
    engine.store.ping()
    return {"status": "ok"}


@router.get("/version")
def version() -> dict[str, Any]:
    return {
        "service": "orc",
        "version": _pkg_version("orc-engine"),
        "api": "v1",
        "schema_version": int(SCHEMA_VERSION),
        "deps": {
            "fastapi": _pkg_version("fastapi"),
            "pydantic": _pkg_version("pydantic"),
            "uvicorn": _pkg_version("uvicorn"),
        },
        "ts": time.time(),
    }


@router.get("/system/workers")
def system_workers(engine: Engine = Depends(get_engine)) -> dict[str, Any]:
    return {
        "ts": time.time(),
        "workers": engine.status_snapshot(),
        "jobs_by_status": engine.scheduler.counts(),
        "kinds": engine.registry.kinds(),
    }
