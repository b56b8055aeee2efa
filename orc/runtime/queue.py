from __future__ import annotations

import logging
import threading
import time
from collections import deque

from orc.runtime.errors import PoolShutdown, QueueClosed


logger = logging.getLogger(__name__)


class JobQueue:
    """In-memory FIFO of ready job ids shared by all workers.

    - Duplicate enqueue of an id that is still waiting is a no-op.
    - Each enqueue wakes exactly one blocked `dequeue`.
    - After `close()`, waiting and future dequeues raise `QueueClosed`; ids still
      waiting are not handed out (they stay `queued` in the store for recovery).
    """

    def __init__(self) -> None:
        self._items: deque[str] = deque()
        self._members: set[str] = set()
        self._cond = threading.Condition(threading.Lock())
        self._closed = False

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    def __len__(self) -> int:
        with self._cond:
            return len(self._items)

    def __contains__(self, job_id: object) -> bool:
        with self._cond:
            return job_id in self._members

    def enqueue(self, job_id: str) -> bool:
        """Add a ready job. Returns False if it was already waiting."""
        with self._cond:
            if self._closed:
                raise PoolShutdown("Queue is closed; engine is shutting down.")
            if job_id in self._members:
                return False
            self._items.append(job_id)
            self._members.add(job_id)
            self._cond.notify()
            return True

    def dequeue(self, timeout: float | None = None) -> str | None:
        """Pop the oldest id, blocking while empty.

        Returns None only when `timeout` elapses with nothing available.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                if self._closed:
                    raise QueueClosed()
                if self._items:
                    job_id = self._items.popleft()
                    self._members.discard(job_id)
                    return job_id
                if deadline is None:
                    self._cond.wait()
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                self._cond.wait(remaining)

    def remove(self, job_id: str) -> bool:
        """Drop a waiting id (used by cancellation). Returns True if it was waiting."""
        with self._cond:
            if job_id not in self._members:
                return False
            self._members.discard(job_id)
            try:
                self._items.remove(job_id)
            except ValueError:
                pass
            return True

    def close(self) -> None:
        with self._cond:
            if self._closed:
                return
            self._closed = True
            pending = len(self._items)
            self._cond.notify_all()
        if pending:
            logger.info("queue closed with %d job(s) still waiting; they remain queued in the store", pending)
