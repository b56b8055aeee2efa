from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    CREATED = "created"
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.TIMED_OUT, JobStatus.CANCELLED}
)

# Persisted transitions. A failed/timed-out attempt that is retried goes
# running -> queued directly, so a stored terminal status is never left.
# running -> queued also covers pool shutdown and crash recovery.
ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.CREATED: frozenset({JobStatus.QUEUED, JobStatus.CANCELLED}),
    JobStatus.QUEUED: frozenset({JobStatus.RUNNING, JobStatus.CANCELLED}),
    JobStatus.RUNNING: frozenset(
        {
            JobStatus.SUCCEEDED,
            JobStatus.FAILED,
            JobStatus.TIMED_OUT,
            JobStatus.CANCELLED,
            JobStatus.QUEUED,
        }
    ),
    JobStatus.SUCCEEDED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.TIMED_OUT: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def _utc_ts() -> float:
    return time.time()


def new_job_id() -> str:
    return f"job_{uuid.uuid4().hex}"


@dataclass(frozen=True)
class Job:
    """Immutable job record. Every state change produces a new record."""

    job_id: str
    kind: str
    payload: Any
    max_attempts: int
    timeout_s: float
    status: JobStatus = JobStatus.CREATED
    attempt: int = 0
    created_at: float = field(default_factory=_utc_ts)
    updated_at: float | None = None
    started_at: float | None = None
    finished_at: float | None = None
    result: Any = None
    error: str | None = None
    cancel_requested: bool = False

    @property
    def terminal(self) -> bool:
        return self.status.terminal

    def with_status(self, status: JobStatus, *, ts: float | None = None, **changes: Any) -> "Job":
        """Return a copy moved to `status`, stamping timestamps that are set once."""
        now = _utc_ts() if ts is None else ts
        if status == JobStatus.RUNNING and self.started_at is None:
            changes.setdefault("started_at", now)
        if status.terminal and self.finished_at is None:
            changes.setdefault("finished_at", now)
        return replace(self, status=status, updated_at=now, **changes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "kind": self.kind,
            "payload": self.payload,
            "status": self.status.value,
            "attempt": int(self.attempt),
            "max_attempts": int(self.max_attempts),
            "timeout_s": float(self.timeout_s),
            "created_at": float(self.created_at),
            "updated_at": float(self.updated_at) if self.updated_at is not None else None,
            "started_at": float(self.started_at) if self.started_at is not None else None,
            "finished_at": float(self.finished_at) if self.finished_at is not None else None,
            "result": self.result,
            "error": self.error,
            "cancel_requested": bool(self.cancel_requested),
        }


@dataclass(frozen=True)
class JobEvent:
    job_id: str
    created_at: float
    event_type: str
    payload: dict[str, Any]
