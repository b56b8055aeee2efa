from __future__ import annotations

import threading
import time
from typing import Any, Iterable, Iterator

from orc.runtime.errors import NotFound, StoreUnavailable
from orc.runtime.models import Job, JobEvent, JobStatus
from orc.storage.base import StatusListing


class MemoryJobStore:
    """Process-local JobStore. Records are immutable, so readers never see a partial update."""

    def __init__(self) -> None:
        self._jobs: dict[str, Job] = {}
        self._events: dict[str, list[JobEvent]] = {}
        self._lock = threading.RLock()
        self._available = True

    def set_available(self, available: bool) -> None:
        """Simulate backend reachability (tests)."""
        self._available = bool(available)

    def _check(self) -> None:
        if not self._available:
            raise StoreUnavailable("In-memory store marked unavailable.")

    def put(self, job: Job) -> None:
        with self._lock:
            self._check()
            self._jobs[job.job_id] = job

    def compare_and_put(self, job: Job, *, expected: Iterable[JobStatus]) -> bool:
        allowed = set(expected)
        with self._lock:
            self._check()
            current = self._jobs.get(job.job_id)
            if current is None or current.status not in allowed:
                return False
            self._jobs[job.job_id] = job
            return True

    def get(self, job_id: str) -> Job:
        with self._lock:
            self._check()
            job = self._jobs.get(job_id)
        if job is None:
            raise NotFound(job_id)
        return job

    def _fetch_status(self, status: JobStatus) -> Iterator[Job]:
        with self._lock:
            self._check()
            snapshot = [j for j in self._jobs.values() if j.status == status]
        snapshot.sort(key=lambda j: (j.created_at, j.job_id))
        return iter(snapshot)

    def list_by_status(self, status: JobStatus) -> Iterable[Job]:
        return StatusListing(self._fetch_status, JobStatus(status))

    def count_by_status(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        with self._lock:
            self._check()
            for job in self._jobs.values():
                counts[job.status.value] = counts.get(job.status.value, 0) + 1
        return dict(sorted(counts.items()))

    def append_event(self, job_id: str, event_type: str, payload: dict[str, Any]) -> None:
        evt = JobEvent(job_id=job_id, created_at=time.time(), event_type=event_type, payload=dict(payload))
        with self._lock:
            self._check()
            self._events.setdefault(job_id, []).append(evt)

    def list_events(self, job_id: str) -> list[JobEvent]:
        with self._lock:
            self._check()
            return list(self._events.get(job_id, []))

    def ping(self) -> None:
        self._check()

    def close(self) -> None:
        return None
