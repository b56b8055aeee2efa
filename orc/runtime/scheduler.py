from __future__ import annotations

import json
import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable, Iterator, TypeVar

from orc.config.load_config import EngineConfig
from orc.runtime.errors import InvalidTransition, NotFound, PoolShutdown, StoreUnavailable, UnknownKind
from orc.runtime.models import Job, JobEvent, JobStatus, can_transition, new_job_id
from orc.runtime.queue import JobQueue
from orc.runtime.registry import HandlerRegistry, JobHandler
from orc.storage.base import JobStore
from orc.utils.cancel import CancellationToken


logger = logging.getLogger(__name__)

T = TypeVar("T")

# Token reasons set by the engine itself. Anything else is a user cancel.
REASON_TIMEOUT = "timeout"
REASON_SHUTDOWN = "shutdown"


class Outcome(str, Enum):
    """How a single attempt ended, as observed by the worker."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"
    # Pool shutdown stopped the attempt; the job goes back to `queued`.
    INTERRUPTED = "interrupted"


@dataclass(frozen=True)
class AttemptResult:
    outcome: Outcome
    finished_at: float
    result: Any = None
    error: str | None = None
    retryable: bool = True


@dataclass(frozen=True)
class Lease:
    """Exclusive right of one worker to execute one attempt of a job."""

    job: Job
    handler: JobHandler | None
    cancel: CancellationToken

    @property
    def job_id(self) -> str:
        return self.job.job_id


class _KeyedLocks:
    """One lock per job id, dropped once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, tuple[threading.Lock, int]] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock, refs = self._locks.get(key, (None, 0))
            if lock is None:
                lock = threading.Lock()
            self._locks[key] = (lock, refs + 1)
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                _, refs = self._locks[key]
                if refs <= 1:
                    del self._locks[key]
                else:
                    self._locks[key] = (lock, refs - 1)


class Scheduler:
    """Owns every job state transition.

    Mutations of one job id are serialized with a per-id lock; different ids
    proceed concurrently. The store's compare-and-put makes the
    queued -> running transition the lease itself, so two workers can never run
    the same job at once.
    """

    def __init__(
        self,
        *,
        store: JobStore,
        registry: HandlerRegistry,
        queue: JobQueue,
        config: EngineConfig,
    ) -> None:
        self._store = store
        self._registry = registry
        self._queue = queue
        self._config = config
        self._locks = _KeyedLocks()
        self._leases: dict[str, Lease] = {}
        self._leases_lock = threading.Lock()
        self._accepting = True

    @property
    def accepting(self) -> bool:
        return self._accepting

    def stop_accepting(self) -> None:
        self._accepting = False

    # --- Public operations
    def submit(
        self,
        kind: str,
        payload: Any = None,
        *,
        timeout_s: float | None = None,
        max_attempts: int | None = None,
    ) -> str:
        if not self._accepting:
            raise PoolShutdown("Engine is shutting down; submission rejected.")
        self._registry.lookup(kind)

        if timeout_s is not None and float(timeout_s) <= 0:
            raise ValueError(f"timeout_s must be > 0, got {timeout_s!r}")
        if max_attempts is not None and int(max_attempts) < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts!r}")
        try:
            json.dumps(payload)
        except (TypeError, ValueError) as e:
            raise ValueError(f"payload must be JSON-serializable: {e}") from e

        job = Job(
            job_id=new_job_id(),
            kind=kind,
            payload=payload,
            max_attempts=int(max_attempts) if max_attempts is not None else self._config.default_max_attempts,
            timeout_s=float(timeout_s) if timeout_s is not None else self._config.default_timeout_s,
        )
        with self._locks.hold(job.job_id):
            self._store.put(job)
            self._event(job.job_id, "created", {"kind": kind})
            queued = job.with_status(JobStatus.QUEUED)
            self._store.put(queued)
            self._enqueue(queued)
        logger.info("job %s submitted (kind=%s, timeout_s=%s)", job.job_id, kind, job.timeout_s)
        return job.job_id

    def cancel(self, job_id: str) -> Job:
        """Best-effort cancel. Queued jobs stop immediately, running ones are signalled."""
        with self._locks.hold(job_id):
            job = self._store.get(job_id)
            if job.terminal:
                return job

            if job.status in {JobStatus.CREATED, JobStatus.QUEUED}:
                self._queue.remove(job_id)
                cancelled = job.with_status(JobStatus.CANCELLED, cancel_requested=True, error="cancelled")
                if self._transition(job, cancelled):
                    self._event(job_id, "cancelled", {"from": job.status.value})
                    logger.info("job %s cancelled while %s", job_id, job.status.value)
                return self._store.get(job_id)

            # Running: persist the request first so recovery honours it after a crash.
            if not job.cancel_requested:
                marked = replace(job, cancel_requested=True, updated_at=time.time())
                self._transition(job, marked)
                self._event(job_id, "cancel_requested", {"attempt": job.attempt})
            with self._leases_lock:
                lease = self._leases.get(job_id)
            if lease is not None:
                lease.cancel.request_cancel("cancel_requested")
            logger.info("job %s cancellation requested while running", job_id)
            return self._store.get(job_id)

    def status(self, job_id: str) -> Job:
        return self._store.get(job_id)

    def list_jobs(self, status: JobStatus) -> list[Job]:
        return list(self._store.list_by_status(status))

    def events(self, job_id: str) -> list[JobEvent]:
        self._store.get(job_id)
        return self._store.list_events(job_id)

    def counts(self) -> dict[str, int]:
        return self._store.count_by_status()

    def recover(self) -> int:
        """Re-queue work left behind by a previous process. Run once, before workers start.

        `running` jobs were interrupted mid-attempt: they go back to `queued` with
        `attempt` unchanged (or to `cancelled` if a cancel was requested). Jobs are
        re-enqueued in `created_at` order. Returns the number re-enqueued.
        """
        def scan() -> list[Job]:
            found: list[Job] = []
            for status in (JobStatus.CREATED, JobStatus.QUEUED, JobStatus.RUNNING):
                found.extend(self._store.list_by_status(status))
            return found

        leftovers = self.with_store_retry(scan, what="recovery scan")
        leftovers.sort(key=lambda j: (j.created_at, j.job_id))

        requeued = 0
        for job in leftovers:
            with self._locks.hold(job.job_id):
                if job.status == JobStatus.RUNNING and job.cancel_requested:
                    target = job.with_status(JobStatus.CANCELLED, error="cancelled")
                elif job.status == JobStatus.RUNNING:
                    target = replace(job, status=JobStatus.QUEUED, updated_at=time.time())
                elif job.status == JobStatus.CREATED:
                    target = job.with_status(JobStatus.QUEUED)
                else:
                    target = job

                if target is not job:
                    written = self.with_store_retry(
                        lambda: self._transition(job, target),
                        what=f"recovery of {job.job_id}",
                    )
                    if not written:
                        continue
                    self._event(
                        job.job_id,
                        "recovered",
                        {"from": job.status.value, "to": target.status.value, "attempt": job.attempt},
                    )
                if target.status == JobStatus.QUEUED:
                    self._queue.enqueue(job.job_id)
                    requeued += 1

        if leftovers:
            logger.info("recovery re-enqueued %d job(s) (%d inspected)", requeued, len(leftovers))
        return requeued

    # --- Worker-facing transitions
    def lease(self, job_id: str) -> Lease | None:
        """Move a dequeued job to `running` and hand out its lease.

        Returns None when the job is no longer leasable (cancelled while waiting,
        already leased, or gone).
        """
        with self._locks.hold(job_id):
            try:
                job = self._store.get(job_id)
            except NotFound:
                logger.warning("dequeued unknown job %s; skipping", job_id)
                return None
            if job.status != JobStatus.QUEUED:
                return None

            handler: JobHandler | None
            try:
                handler = self._registry.lookup(job.kind)
            except UnknownKind:
                handler = None

            running = job.with_status(JobStatus.RUNNING, attempt=job.attempt + 1, error=None)
            if not self._transition(job, running):
                return None

            lease = Lease(job=running, handler=handler, cancel=CancellationToken())
            with self._leases_lock:
                self._leases[job_id] = lease
                if not self._accepting:
                    lease.cancel.request_cancel(REASON_SHUTDOWN)
            self._event(job_id, "started", {"attempt": running.attempt})
            logger.info("job %s running (attempt %d/%d)", job_id, running.attempt, running.max_attempts)
            return lease

    def complete(self, lease: Lease, attempt: AttemptResult) -> Job:
        """Record how an attempt ended and apply the retry policy."""
        job_id = lease.job_id
        with self._locks.hold(job_id):
            with self._leases_lock:
                if self._leases.get(job_id) is lease:
                    del self._leases[job_id]

            current = self._store.get(job_id)
            if current.status != JobStatus.RUNNING or current.attempt != lease.job.attempt:
                logger.warning(
                    "discarding stale result for job %s (status=%s, attempt=%d)",
                    job_id, current.status.value, current.attempt,
                )
                return current

            target = self._next_state(current, attempt)
            if not self._transition(current, target):
                return self._store.get(job_id)

            payload: dict[str, Any] = {"attempt": current.attempt, "outcome": attempt.outcome.value}
            if attempt.error:
                payload["error"] = attempt.error
            if target.status == JobStatus.QUEUED:
                self._event(job_id, "requeued", payload)
                if attempt.outcome == Outcome.INTERRUPTED:
                    logger.info("job %s interrupted by shutdown; left queued", job_id)
                else:
                    logger.warning(
                        "job %s attempt %d/%d %s; retrying: %s",
                        job_id, current.attempt, current.max_attempts, attempt.outcome.value, attempt.error,
                    )
                    self._enqueue(target)
            else:
                self._event(job_id, target.status.value, payload)
                log = logger.info if target.status == JobStatus.SUCCEEDED else logger.warning
                log("job %s %s after %d attempt(s)", job_id, target.status.value, current.attempt)
            return target

    def _next_state(self, current: Job, attempt: AttemptResult) -> Job:
        outcome = attempt.outcome
        if outcome == Outcome.SUCCEEDED:
            return current.with_status(
                JobStatus.SUCCEEDED, ts=attempt.finished_at, result=attempt.result, error=None
            )
        if outcome == Outcome.CANCELLED or current.cancel_requested:
            return current.with_status(JobStatus.CANCELLED, ts=attempt.finished_at, error="cancelled")
        if outcome == Outcome.INTERRUPTED:
            return replace(current, status=JobStatus.QUEUED, updated_at=time.time())

        status = JobStatus.TIMED_OUT if outcome == Outcome.TIMED_OUT else JobStatus.FAILED
        if attempt.retryable and current.attempt < current.max_attempts:
            return replace(current, status=JobStatus.QUEUED, updated_at=time.time())
        return current.with_status(status, ts=attempt.finished_at, error=attempt.error)

    def cancel_leases(self, reason: str = REASON_SHUTDOWN) -> int:
        with self._leases_lock:
            leases = list(self._leases.values())
        for lease in leases:
            lease.cancel.request_cancel(reason)
        return len(leases)

    def active_leases(self) -> list[str]:
        with self._leases_lock:
            return sorted(self._leases)

    # --- Helpers
    def _transition(self, current: Job, target: Job) -> bool:
        """Persist `target` iff the stored record is still in `current.status`."""
        if target.status != current.status and not can_transition(current.status, target.status):
            raise InvalidTransition(current.job_id, current.status.value, target.status.value)
        if target.attempt < current.attempt:
            raise InvalidTransition(current.job_id, f"attempt {current.attempt}", f"attempt {target.attempt}")
        return self._store.compare_and_put(target, expected={current.status})

    def _enqueue(self, job: Job) -> None:
        try:
            self._queue.enqueue(job.job_id)
        except PoolShutdown:
            # Still `queued` in the store; the next start's recovery picks it up.
            logger.info("queue closed; job %s stays queued for recovery", job.job_id)

    def _event(self, job_id: str, event_type: str, payload: dict[str, Any]) -> None:
        try:
            self._store.append_event(job_id, event_type, payload)
        except StoreUnavailable:
            # Trace only; the job record itself is already written.
            logger.warning("could not record %s event for job %s", event_type, job_id, exc_info=True)

    def with_store_retry(self, fn: Callable[[], T], *, what: str) -> T:
        """Call `fn`, retrying `StoreUnavailable` with exponential backoff."""
        retries = int(self._config.recover_max_retries)
        delay = float(self._config.recover_backoff_s)
        n = 0
        while True:
            try:
                return fn()
            except StoreUnavailable:
                if n >= retries:
                    raise
                n += 1
                logger.warning("%s failed (store unavailable); retry %d/%d in %.2fs", what, n, retries, delay)
                time.sleep(delay)
                delay *= 2
