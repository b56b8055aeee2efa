from __future__ import annotations

from typing import Any, Iterable, Protocol

from orc.runtime.models import Job, JobEvent, JobStatus


class JobStore(Protocol):
    """Persistence contract used by the scheduler.

    Implementations must make every write atomic per record and be safe to call
    from many threads at once.
    """

    def put(self, job: Job) -> None: ...

    def compare_and_put(self, job: Job, *, expected: Iterable[JobStatus]) -> bool:
        """Write `job` only if the stored status is one of `expected`."""
        ...

    def get(self, job_id: str) -> Job: ...

    def list_by_status(self, status: JobStatus) -> Iterable[Job]:
        """Restartable iterable over jobs in `status`, oldest first."""
        ...

    def count_by_status(self) -> dict[str, int]: ...

    def append_event(self, job_id: str, event_type: str, payload: dict[str, Any]) -> None: ...

    def list_events(self, job_id: str) -> list[JobEvent]: ...

    def ping(self) -> None: ...

    def close(self) -> None: ...


class StatusListing:
    """Lazy listing that re-runs its query on every iteration."""

    def __init__(self, fetch: Any, status: JobStatus) -> None:
        self._fetch = fetch
        self.status = status

    def __iter__(self):  # noqa: ANN204
        return iter(self._fetch(self.status))
