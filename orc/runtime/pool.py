from __future__ import annotations

import json
import logging
import threading
import time
from typing import Any

from orc.runtime.errors import EngineError, JobTimeout, QueueClosed
from orc.runtime.queue import JobQueue
from orc.runtime.scheduler import (
    REASON_SHUTDOWN,
    REASON_TIMEOUT,
    AttemptResult,
    Lease,
    Outcome,
    Scheduler,
)
from orc.utils.cancel import CancelledError


logger = logging.getLogger(__name__)

# Upper bound on how long a worker waits on a handler before re-checking for shutdown.
_WAIT_SLICE_S = 0.05


class WorkerPool:
    """Fixed set of worker threads: dequeue -> lease -> execute -> report.

    Each attempt runs in its own daemon thread so the worker can enforce the
    deadline. On expiry the handler's token is cancelled and the handler gets
    `cancel_grace_s` to return; after that the slot is reclaimed and the thread
    is abandoned (it exits whenever the handler does, its result is discarded).
    """

    def __init__(
        self,
        *,
        scheduler: Scheduler,
        queue: JobQueue,
        worker_count: int,
        cancel_grace_s: float = 1.0,
        name: str = "orc-worker",
    ) -> None:
        if int(worker_count) < 1:
            raise ValueError(f"worker_count must be >= 1, got {worker_count!r}")
        self._scheduler = scheduler
        self._queue = queue
        self._worker_count = int(worker_count)
        self._cancel_grace_s = float(cancel_grace_s)
        self._name = name
        self._threads: list[threading.Thread] = []
        self._stop = threading.Event()
        self._stats_lock = threading.Lock()
        self._busy = 0
        self._abandoned = 0

    @property
    def worker_count(self) -> int:
        return self._worker_count

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def status_snapshot(self) -> dict[str, Any]:
        with self._stats_lock:
            busy, abandoned = self._busy, self._abandoned
        return {
            "running": self.running,
            "worker_count": self._worker_count,
            "alive_workers": sum(1 for t in self._threads if t.is_alive()),
            "busy_workers": busy,
            "abandoned_handlers": abandoned,
            "active_leases": self._scheduler.active_leases(),
            "queue_depth": len(self._queue),
        }

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._threads = [
            threading.Thread(target=self._run_loop, name=f"{self._name}-{i}", daemon=True)
            for i in range(self._worker_count)
        ]
        for t in self._threads:
            t.start()
        logger.info("worker pool started with %d worker(s)", self._worker_count)

    def stop(self, *, timeout_s: float = 5.0) -> bool:
        """Close the queue, cancel leased attempts and wait for workers to exit.

        Returns True if every worker exited within `timeout_s`.
        """
        self._stop.set()
        self._queue.close()
        cancelled = self._scheduler.cancel_leases(REASON_SHUTDOWN)
        if cancelled:
            logger.info("signalled cancellation to %d running job(s)", cancelled)

        deadline = time.monotonic() + max(0.0, float(timeout_s))
        for t in self._threads:
            t.join(timeout=max(0.0, deadline - time.monotonic()))
        alive = [t.name for t in self._threads if t.is_alive()]
        if alive:
            logger.warning("worker pool stop timed out; still alive: %s", ", ".join(alive))
            return False
        logger.info("worker pool stopped")
        return True

    def _run_loop(self) -> None:
        while True:
            try:
                job_id = self._queue.dequeue()
            except QueueClosed:
                return
            if job_id is None:
                continue

            try:
                lease = self._scheduler.lease(job_id)
            except EngineError:
                # Job stays queued in the store; recovery will pick it up.
                logger.exception("could not lease job %s", job_id)
                continue
            if lease is None:
                continue

            with self._stats_lock:
                self._busy += 1
            try:
                result = self._execute(lease)
                self._scheduler.with_store_retry(
                    lambda: self._scheduler.complete(lease, result),
                    what=f"completion of job {job_id}",
                )
            except Exception:
                # Never let one job take the worker down.
                logger.exception("worker failed to finish job %s", job_id)
            finally:
                with self._stats_lock:
                    self._busy -= 1

    def _execute(self, lease: Lease) -> AttemptResult:
        if lease.handler is None:
            return AttemptResult(
                outcome=Outcome.FAILED,
                finished_at=time.time(),
                error=f"UnknownKind: no handler registered for kind {lease.job.kind!r}",
                retryable=False,
            )

        box: dict[str, Any] = {}
        done = threading.Event()
        handler = lease.handler
        token = lease.cancel

        def target() -> None:
            try:
                box["result"] = handler.execute(lease.job.payload, token)
            except BaseException as e:  # noqa: BLE001 - reported back to the worker
                box["error"] = e
            finally:
                done.set()

        runner = threading.Thread(target=target, name=f"orc-job-{lease.job_id}", daemon=True)
        deadline = time.monotonic() + float(lease.job.timeout_s)
        runner.start()

        while not done.is_set():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return self._on_timeout(lease, done)
            if self._stop.is_set():
                return self._on_shutdown(lease, done)
            done.wait(min(remaining, _WAIT_SLICE_S))

        return self._collect(lease, box)

    def _on_timeout(self, lease: Lease, done: threading.Event) -> AttemptResult:
        expired_at = time.time()
        lease.cancel.request_cancel(REASON_TIMEOUT)
        if not done.wait(self._cancel_grace_s):
            self._abandon(lease)
        err = JobTimeout(f"attempt exceeded {lease.job.timeout_s:g}s")
        return AttemptResult(
            outcome=Outcome.TIMED_OUT,
            finished_at=expired_at,
            error=f"{type(err).__name__}: {err}",
        )

    def _on_shutdown(self, lease: Lease, done: threading.Event) -> AttemptResult:
        lease.cancel.request_cancel(REASON_SHUTDOWN)
        if not done.wait(self._cancel_grace_s):
            self._abandon(lease)
        return AttemptResult(outcome=Outcome.INTERRUPTED, finished_at=time.time(), error="shutdown")

    def _abandon(self, lease: Lease) -> None:
        with self._stats_lock:
            self._abandoned += 1
        logger.warning(
            "job %s handler ignored cancellation for %.2fs; reclaiming slot and abandoning its thread",
            lease.job_id,
            self._cancel_grace_s,
        )

    def _collect(self, lease: Lease, box: dict[str, Any]) -> AttemptResult:
        finished_at = time.time()
        if "error" not in box:
            result = box.get("result")
            try:
                json.dumps(result)
            except (TypeError, ValueError) as e:
                # Unstorable result; never retried.
                return AttemptResult(
                    outcome=Outcome.FAILED,
                    finished_at=finished_at,
                    error=f"result is not JSON-serializable: {e}",
                    retryable=False,
                )
            return AttemptResult(outcome=Outcome.SUCCEEDED, finished_at=finished_at, result=result)

        err = box["error"]
        if isinstance(err, CancelledError):
            reason = lease.cancel.reason
            if reason == REASON_SHUTDOWN:
                return AttemptResult(outcome=Outcome.INTERRUPTED, finished_at=finished_at, error="shutdown")
            return AttemptResult(outcome=Outcome.CANCELLED, finished_at=finished_at, error="cancelled")
        return AttemptResult(
            outcome=Outcome.FAILED,
            finished_at=finished_at,
            error=f"{type(err).__name__}: {err}",
        )
