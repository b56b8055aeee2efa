from __future__ import annotations

import threading
import time

import pytest

from orc.runtime.errors import PoolShutdown, QueueClosed
from orc.runtime.queue import JobQueue


def test_fifo_order_and_duplicate_enqueue_is_noop() -> None:
    q = JobQueue()
    assert q.enqueue("a") is True
    assert q.enqueue("b") is True
    assert q.enqueue("a") is False
    assert len(q) == 2

    assert q.dequeue(timeout=0.1) == "a"
    assert q.dequeue(timeout=0.1) == "b"
    assert q.dequeue(timeout=0.05) is None


def test_id_can_be_enqueued_again_after_dequeue() -> None:
    q = JobQueue()
    q.enqueue("a")
    assert q.dequeue(timeout=0.1) == "a"
    assert q.enqueue("a") is True
    assert "a" in q


def test_remove_drops_waiting_id() -> None:
    q = JobQueue()
    q.enqueue("a")
    q.enqueue("b")
    assert q.remove("a") is True
    assert q.remove("a") is False
    assert q.dequeue(timeout=0.1) == "b"


def test_close_wakes_blocked_dequeue_and_rejects_enqueue() -> None:
    q = JobQueue()
    errors: list[BaseException] = []

    def consumer() -> None:
        try:
            q.dequeue()
        except QueueClosed as e:
            errors.append(e)

    threads = [threading.Thread(target=consumer) for _ in range(3)]
    for t in threads:
        t.start()
    time.sleep(0.05)
    q.close()
    for t in threads:
        t.join(timeout=2.0)

    assert all(not t.is_alive() for t in threads)
    assert len(errors) == 3
    assert q.closed
    with pytest.raises(PoolShutdown):
        q.enqueue("late")
    with pytest.raises(QueueClosed):
        q.dequeue(timeout=0.01)


def test_each_item_delivered_to_exactly_one_waiter() -> None:
    q = JobQueue()
    n_consumers = 8
    n_items = 200
    seen: list[str] = []
    seen_lock = threading.Lock()

    def consumer() -> None:
        while True:
            try:
                job_id = q.dequeue()
            except QueueClosed:
                return
            with seen_lock:
                seen.append(job_id)

    threads = [threading.Thread(target=consumer) for _ in range(n_consumers)]
    for t in threads:
        t.start()
    for i in range(n_items):
        q.enqueue(f"job_{i}")

    deadline = time.monotonic() + 5.0
    while len(seen) < n_items and time.monotonic() < deadline:
        time.sleep(0.01)
    q.close()
    for t in threads:
        t.join(timeout=2.0)

    assert sorted(seen) == sorted(f"job_{i}" for i in range(n_items))
    assert len(set(seen)) == n_items
