from __future__ import annotations

import tempfile
import threading
import time
from typing import Any, Callable

import pytest

from orc.config.load_config import EngineConfig
from orc.handlers.builtin import register_builtin_handlers
from orc.runtime.engine import Engine
from orc.runtime.errors import HandlerError, PoolShutdown, StoreUnavailable
from orc.runtime.models import Job, JobStatus
from orc.runtime.registry import HandlerRegistry
from orc.storage.memory_store import MemoryJobStore
from orc.storage.sqlite_store import SQLiteJobStore
from orc.utils.cancel import CancellationToken


def _config(**overrides: Any) -> EngineConfig:
    base: dict[str, Any] = {
        "worker_count": 2,
        "default_timeout_s": 5.0,
        "default_max_attempts": 1,
        "cancel_grace_s": 0.2,
        "recover_max_retries": 2,
        "recover_backoff_s": 0.01,
    }
    base.update(overrides)
    return EngineConfig(**base)


def _wait_for(pred: Callable[[], bool], *, timeout_s: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout_s
    while time.monotonic() < deadline:
        if pred():
            return True
        time.sleep(0.01)
    return pred()


def _terminal(engine: Engine, job_ids: list[str]) -> Callable[[], bool]:
    return lambda: all(engine.scheduler.status(j).terminal for j in job_ids)


def test_two_workers_run_five_jobs_with_bounded_concurrency() -> None:
    store = MemoryJobStore()
    registry = HandlerRegistry()
    lock = threading.Lock()
    active = 0
    peak = 0
    peak_running_in_store = 0

    def slow(payload: Any, cancel: CancellationToken) -> Any:
        nonlocal active, peak, peak_running_in_store
        with lock:
            active += 1
            peak = max(peak, active)
            peak_running_in_store = max(peak_running_in_store, store.count_by_status().get("running", 0))
        time.sleep(0.05)
        with lock:
            active -= 1
        return payload

    registry.register("slow", slow)
    engine = Engine(store=store, registry=registry, config=_config(worker_count=2))
    engine.start()
    try:
        ids = [engine.scheduler.submit("slow", {"i": i}) for i in range(5)]
        assert _wait_for(_terminal(engine, ids))
        for job_id in ids:
            job = engine.scheduler.status(job_id)
            assert job.status == JobStatus.SUCCEEDED
            assert job.attempt == 1
            assert job.started_at is not None and job.finished_at is not None
        assert engine.scheduler.status(ids[3]).result == {"i": 3}
        assert peak <= 2
        assert peak_running_in_store <= 2
    finally:
        engine.stop()


def test_timeout_is_recorded_at_deadline_not_handler_end() -> None:
    registry = HandlerRegistry()
    # Ignores cancellation on purpose.
    registry.register("stubborn", lambda payload, cancel: time.sleep(0.1))
    engine = Engine(store=MemoryJobStore(), registry=registry, config=_config(worker_count=1))
    engine.start()
    try:
        job_id = engine.scheduler.submit("stubborn", None, timeout_s=0.01)
        assert _wait_for(_terminal(engine, [job_id]))
        job = engine.scheduler.status(job_id)
        assert job.status == JobStatus.TIMED_OUT
        assert job.error is not None and job.error.startswith("JobTimeout: ")
        elapsed = job.finished_at - job.started_at
        assert 0.005 <= elapsed < 0.08
    finally:
        engine.stop()


def test_unresponsive_handler_slot_is_reclaimed() -> None:
    release = threading.Event()
    registry = HandlerRegistry()
    registry.register("hang", lambda payload, cancel: release.wait(30))
    register_builtin_handlers(registry)
    engine = Engine(store=MemoryJobStore(), registry=registry, config=_config(worker_count=1, cancel_grace_s=0.05))
    engine.start()
    try:
        started = time.monotonic()
        hung = engine.scheduler.submit("hang", None, timeout_s=0.05)
        follow_up = engine.scheduler.submit("echo", {"ok": True})
        assert _wait_for(_terminal(engine, [hung, follow_up]), timeout_s=3.0)

        assert engine.scheduler.status(hung).status == JobStatus.TIMED_OUT
        assert engine.scheduler.status(follow_up).status == JobStatus.SUCCEEDED
        assert time.monotonic() - started < 2.0
        assert engine.pool.status_snapshot()["abandoned_handlers"] == 1
    finally:
        release.set()
        engine.stop()


def test_cooperative_handler_observes_timeout_cancellation() -> None:
    seen: list[str | None] = []
    registry = HandlerRegistry()

    def polite(payload: Any, cancel: CancellationToken) -> Any:
        cancel.wait(5.0)
        seen.append(cancel.reason)
        cancel.raise_if_cancelled()

    registry.register("polite", polite)
    engine = Engine(store=MemoryJobStore(), registry=registry, config=_config(worker_count=1))
    engine.start()
    try:
        job_id = engine.scheduler.submit("polite", None, timeout_s=0.05)
        assert _wait_for(_terminal(engine, [job_id]))
        assert engine.scheduler.status(job_id).status == JobStatus.TIMED_OUT
        assert seen == ["timeout"]
    finally:
        engine.stop()


def test_handler_failing_max_attempts_times_ends_failed() -> None:
    registry = HandlerRegistry()
    calls = {"n": 0}

    def always_fail(payload: Any, cancel: CancellationToken) -> Any:
        calls["n"] += 1
        raise HandlerError("nope")

    registry.register("always_fail", always_fail)
    engine = Engine(store=MemoryJobStore(), registry=registry, config=_config())
    engine.start()
    try:
        job_id = engine.scheduler.submit("always_fail", None, max_attempts=3)
        assert _wait_for(_terminal(engine, [job_id]))
        job = engine.scheduler.status(job_id)
        assert job.status == JobStatus.FAILED
        assert job.attempt == 3
        assert calls["n"] == 3
        assert job.error == "HandlerError: nope"

        events = [e.event_type for e in engine.scheduler.events(job_id)]
        assert events == ["created", "started", "requeued", "started", "requeued", "started", "failed"]
    finally:
        engine.stop()


def test_handler_succeeding_on_last_attempt_ends_succeeded() -> None:
    registry = HandlerRegistry()
    calls = {"n": 0}

    def flaky(payload: Any, cancel: CancellationToken) -> Any:
        calls["n"] += 1
        if calls["n"] < 3:
            raise RuntimeError(f"transient {calls['n']}")
        return "ok"

    registry.register("flaky", flaky)
    engine = Engine(store=MemoryJobStore(), registry=registry, config=_config())
    engine.start()
    try:
        job_id = engine.scheduler.submit("flaky", None, max_attempts=3)
        assert _wait_for(_terminal(engine, [job_id]))
        job = engine.scheduler.status(job_id)
        assert job.status == JobStatus.SUCCEEDED
        assert job.attempt == 3
        assert job.result == "ok"
        assert job.error is None
    finally:
        engine.stop()


def test_timed_out_job_is_retried() -> None:
    registry = HandlerRegistry()
    calls = {"n": 0}

    def slow_then_fast(payload: Any, cancel: CancellationToken) -> Any:
        calls["n"] += 1
        if calls["n"] == 1:
            cancel.wait(5.0)
            cancel.raise_if_cancelled()
        return calls["n"]

    registry.register("slow_then_fast", slow_then_fast)
    engine = Engine(store=MemoryJobStore(), registry=registry, config=_config(worker_count=1))
    engine.start()
    try:
        job_id = engine.scheduler.submit("slow_then_fast", None, timeout_s=0.05, max_attempts=2)
        assert _wait_for(_terminal(engine, [job_id]))
        job = engine.scheduler.status(job_id)
        assert job.status == JobStatus.SUCCEEDED
        assert job.attempt == 2
        assert job.result == 2
    finally:
        engine.stop()


def test_cancel_running_job() -> None:
    registry = register_builtin_handlers(HandlerRegistry())
    engine = Engine(store=MemoryJobStore(), registry=registry, config=_config(worker_count=1))
    engine.start()
    try:
        job_id = engine.scheduler.submit("sleep", {"seconds": 10})
        assert _wait_for(lambda: engine.scheduler.status(job_id).status == JobStatus.RUNNING)
        engine.scheduler.cancel(job_id)
        assert _wait_for(_terminal(engine, [job_id]))
        job = engine.scheduler.status(job_id)
        assert job.status == JobStatus.CANCELLED
        assert job.cancel_requested is True
        assert job.finished_at - job.started_at < 2.0
    finally:
        engine.stop()


def test_terminal_status_and_attempt_are_monotonic() -> None:
    registry = register_builtin_handlers(HandlerRegistry())
    store = MemoryJobStore()
    engine = Engine(store=store, registry=registry, config=_config(worker_count=3, default_max_attempts=2))
    history: dict[str, list[tuple[JobStatus, int]]] = {}
    stop = threading.Event()

    def sample() -> None:
        while not stop.is_set():
            for job_id in list(history):
                job = store.get(job_id)
                history[job_id].append((job.status, job.attempt))
            time.sleep(0.002)

    engine.start()
    sampler = threading.Thread(target=sample, daemon=True)
    try:
        ids = []
        for i in range(6):
            kind = ("echo", "fail", "sleep")[i % 3]
            job_id = engine.scheduler.submit(kind, {"seconds": 0.02})
            history[job_id] = []
            ids.append(job_id)
        sampler.start()
        assert _wait_for(_terminal(engine, ids))
    finally:
        stop.set()
        sampler.join(timeout=2.0)
        engine.stop()

    for job_id, seen in history.items():
        attempts = [a for _, a in seen]
        assert attempts == sorted(attempts), job_id
        first_terminal = next((i for i, (s, _) in enumerate(seen) if s.terminal), None)
        if first_terminal is not None:
            assert all(s == seen[first_terminal][0] for s, _ in seen[first_terminal:]), job_id


def test_crash_recovery_runs_leftover_jobs_to_completion() -> None:
    with tempfile.TemporaryDirectory() as td:
        db_path = f"{td}/orc.db"

        # Simulate a process that died mid-execution.
        crashed = SQLiteJobStore(db_path)
        for i in range(3):
            crashed.put(
                Job(
                    job_id=f"job_{i}",
                    kind="echo",
                    payload={"i": i},
                    max_attempts=3,
                    timeout_s=5.0,
                    status=JobStatus.RUNNING if i < 2 else JobStatus.QUEUED,
                    attempt=1 if i < 2 else 0,
                    created_at=100.0 + i,
                    started_at=100.5 + i if i < 2 else None,
                )
            )
        crashed.close()

        store = SQLiteJobStore(db_path)
        engine = Engine(store=store, registry=register_builtin_handlers(HandlerRegistry()), config=_config())
        try:
            engine.start()
            assert engine.recovered == 3
            ids = [f"job_{i}" for i in range(3)]
            assert _wait_for(_terminal(engine, ids))
            for i, job_id in enumerate(ids):
                job = engine.scheduler.status(job_id)
                assert job.status == JobStatus.SUCCEEDED
                assert job.result == {"i": i}
            # Interrupted attempts count: recovered running jobs are on attempt 2.
            assert engine.scheduler.status("job_0").attempt == 2
            assert engine.scheduler.status("job_0").started_at == 100.5
            assert engine.scheduler.status("job_2").attempt == 1
        finally:
            engine.stop()
            store.close()


def test_shutdown_leaves_unfinished_jobs_queued_for_restart() -> None:
    store = MemoryJobStore()
    engine = Engine(store=store, registry=register_builtin_handlers(HandlerRegistry()), config=_config(worker_count=1))
    engine.start()
    running = engine.scheduler.submit("sleep", {"seconds": 10})
    waiting = engine.scheduler.submit("echo", {"n": 1})
    assert _wait_for(lambda: engine.scheduler.status(running).status == JobStatus.RUNNING)

    assert engine.stop() is True
    assert store.get(running).status == JobStatus.QUEUED
    assert store.get(running).attempt == 1
    assert store.get(waiting).status == JobStatus.QUEUED
    with pytest.raises(PoolShutdown):
        engine.scheduler.submit("echo", {})

    restarted = Engine(store=store, registry=register_builtin_handlers(HandlerRegistry()), config=_config())
    restarted.start()
    try:
        assert restarted.recovered == 2
        restarted.scheduler.cancel(running)
        assert _wait_for(_terminal(restarted, [running, waiting]))
        assert store.get(running).status == JobStatus.CANCELLED
        assert store.get(waiting).status == JobStatus.SUCCEEDED
    finally:
        restarted.stop()


def test_start_fails_when_store_unreachable() -> None:
    store = MemoryJobStore()
    store.set_available(False)
    engine = Engine(store=store, registry=register_builtin_handlers(HandlerRegistry()), config=_config())
    with pytest.raises(StoreUnavailable):
        engine.start()
    assert not engine.started
    assert not engine.pool.running


def test_unserializable_result_fails_job_instead_of_stranding_it() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteJobStore(f"{td}/orc.db")
        registry = HandlerRegistry()
        registry.register("setter", lambda payload, cancel: {1, 2})
        engine = Engine(store=store, registry=registry, config=_config(default_max_attempts=3))
        engine.start()
        try:
            job_id = engine.scheduler.submit("setter", {})
            assert _wait_for(_terminal(engine, [job_id]), timeout_s=3.0)
            job = engine.scheduler.status(job_id)
            assert job.status == JobStatus.FAILED
            assert job.attempt == 1
            assert job.error is not None and job.error.startswith("result is not JSON-serializable")
            assert engine.scheduler.active_leases() == []
        finally:
            engine.stop()
            store.close()


def test_completion_survives_transient_store_outage() -> None:
    store = MemoryJobStore()
    registry = HandlerRegistry()

    def flaky_store(payload: Any, cancel: CancellationToken) -> Any:
        store.set_available(False)
        threading.Timer(0.05, store.set_available, args=(True,)).start()
        return "ok"

    registry.register("flaky", flaky_store)
    engine = Engine(store=store, registry=registry, config=_config(recover_max_retries=6))
    engine.start()
    try:
        job_id = engine.scheduler.submit("flaky", {})

        def finished() -> bool:
            try:
                return store.get(job_id).terminal
            except StoreUnavailable:
                return False

        assert _wait_for(finished)
        job = store.get(job_id)
        assert job.status == JobStatus.SUCCEEDED
        assert job.result == "ok"
        assert job.attempt == 1
    finally:
        engine.stop()


def test_stopped_engine_cannot_be_restarted() -> None:
    store = MemoryJobStore()
    engine = Engine(store=store, registry=register_builtin_handlers(HandlerRegistry()), config=_config())
    engine.start()
    engine.stop()
    with pytest.raises(RuntimeError):
        engine.start()
    assert not engine.started
