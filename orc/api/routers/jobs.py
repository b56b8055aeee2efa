from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from orc.api.dependencies import get_engine
from orc.api.errors import APIError
from orc.runtime.engine import Engine
from orc.runtime.models import JobStatus


router = APIRouter()


class SubmitJobRequest(BaseModel):
    kind: str = Field(min_length=1)
    payload: Any = Field(default=None)
    timeout_s: float | None = Field(default=None, gt=0, description="Per-attempt timeout; engine default if unset.")
    max_attempts: int | None = Field(default=None, ge=1)


@router.post("/jobs")
def submit_job(body: SubmitJobRequest, engine: Engine = Depends(get_engine)) -> dict[str, Any]:
    try:
        job_id = engine.scheduler.submit(
            body.kind.strip(),
            body.payload,
            timeout_s=body.timeout_s,
            max_attempts=body.max_attempts,
        )
    except ValueError as e:
        raise APIError(status_code=400, code="invalid_argument", message=str(e)) from e
    return {"job_id": job_id, "job": engine.scheduler.status(job_id).to_dict()}


@router.get("/jobs")
def list_jobs(
    status: str = Query(default="queued"),
    limit: int = Query(default=100, ge=1, le=1000),
    engine: Engine = Depends(get_engine),
) -> dict[str, Any]:
    try:
        st = JobStatus(status.strip().lower())
    except ValueError as e:
        raise APIError(
            status_code=400,
            code="invalid_argument",
            message=f"Unknown status: {status!r}",
            details={"allowed": [s.value for s in JobStatus]},
        ) from e
    jobs = engine.scheduler.list_jobs(st)
    has_more = len(jobs) > limit
    return {"items": [j.to_dict() for j in jobs[:limit]], "has_more": has_more}


@router.get("/jobs/{job_id}")
def get_job(job_id: str, engine: Engine = Depends(get_engine)) -> dict[str, Any]:
    return {"job": engine.scheduler.status(job_id).to_dict()}


@router.post("/jobs/{job_id}/cancel")
def cancel_job(job_id: str, engine: Engine = Depends(get_engine)) -> dict[str, Any]:
    job = engine.scheduler.cancel(job_id)
    return {"job": job.to_dict()}


@router.get("/jobs/{job_id}/events")
def list_job_events(job_id: str, engine: Engine = Depends(get_engine)) -> dict[str, Any]:
    events = engine.scheduler.events(job_id)
    return {
        "job_id": job_id,
        "items": [
            {"created_at": e.created_at, "event_type": e.event_type, "payload": e.payload} for e in events
        ],
    }
