from __future__ import annotations

from typing import Any


class EngineError(RuntimeError):
    """Base class for errors raised by the orchestration core."""

    code = "internal"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class UnknownKind(EngineError):
    """Submission references a kind with no registered handler."""

    code = "unknown_kind"

    def __init__(self, kind: str) -> None:
        super().__init__(f"No handler registered for kind {kind!r}.", details={"kind": kind})
        self.kind = kind


class NotFound(EngineError):
    code = "not_found"

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}", details={"job_id": job_id})
        self.job_id = job_id


class StoreUnavailable(EngineError):
    """The persistence backend could not be reached."""

    code = "store_unavailable"


class HandlerError(EngineError):
    """Job logic reported a failure. Recorded on the job, never raised to submitters."""

    code = "handler_error"


class JobTimeout(EngineError):
    """An attempt exceeded its deadline. Recorded on the job, never raised to submitters."""

    code = "timeout"


class PoolShutdown(EngineError):
    """The engine is stopping and rejects new work."""

    code = "shutting_down"


class QueueClosed(EngineError):
    code = "queue_closed"

    def __init__(self) -> None:
        super().__init__("Queue is closed.")


class InvalidTransition(EngineError):
    code = "invalid_transition"

    def __init__(self, job_id: str, current: str, target: str) -> None:
        super().__init__(
            f"Job {job_id}: transition {current} -> {target} is not allowed.",
            details={"job_id": job_id, "from": current, "to": target},
        )
