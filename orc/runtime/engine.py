from __future__ import annotations

import logging
from typing import Any

from orc.config.load_config import AppConfig, EngineConfig
from orc.runtime.pool import WorkerPool
from orc.runtime.queue import JobQueue
from orc.runtime.registry import HandlerRegistry
from orc.runtime.scheduler import Scheduler
from orc.storage.base import JobStore
from orc.storage.sqlite_store import SQLiteJobStore


logger = logging.getLogger(__name__)


class Engine:
    """Wires store, registry, queue, scheduler and worker pool together.

    `start()` checks the store (fatal if unreachable), freezes the registry,
    runs recovery and only then starts workers.
    """

    def __init__(
        self,
        *,
        store: JobStore,
        registry: HandlerRegistry,
        config: EngineConfig,
        owns_store: bool = False,
    ) -> None:
        self.store = store
        self.registry = registry
        self.config = config
        self.queue = JobQueue()
        self.scheduler = Scheduler(store=store, registry=registry, queue=self.queue, config=config)
        self.pool = WorkerPool(
            scheduler=self.scheduler,
            queue=self.queue,
            worker_count=config.worker_count,
            cancel_grace_s=config.cancel_grace_s,
        )
        self.recovered = 0
        self._owns_store = owns_store
        self._started = False
        self._stopped = False

    @classmethod
    def from_config(cls, config: AppConfig, registry: HandlerRegistry) -> "Engine":
        store = SQLiteJobStore(config.database.path)
        return cls(store=store, registry=registry, config=config.engine, owns_store=True)

    @property
    def started(self) -> bool:
        return self._started

    def start(self, *, workers: bool = True) -> None:
        """Start the engine. With `workers=False` jobs are accepted and stay queued.

        An engine is single-use: once stopped, build a new one over the same store.
        """
        if self._stopped:
            raise RuntimeError("Engine has been stopped; create a new Engine to restart.")
        if self._started:
            return
        self.store.ping()
        self.registry.freeze()
        self.recovered = self.scheduler.recover()
        if workers:
            self.pool.start()
        self._started = True
        logger.info(
            "engine started (workers=%d, default_timeout_s=%s, kinds=%s, recovered=%d)",
            self.config.worker_count if workers else 0,
            self.config.default_timeout_s,
            ",".join(self.registry.kinds()),
            self.recovered,
        )

    def stop(self, *, timeout_s: float | None = None) -> bool:
        """Cooperative shutdown. Store state is never discarded."""
        self._stopped = True
        self.scheduler.stop_accepting()
        wait_s = timeout_s if timeout_s is not None else 2 * self.config.cancel_grace_s + 1.0
        clean = self.pool.stop(timeout_s=wait_s)
        self._started = False
        if self._owns_store:
            self.store.close()
        logger.info("engine stopped (clean=%s)", clean)
        return clean

    def status_snapshot(self) -> dict[str, Any]:
        snap = self.pool.status_snapshot()
        snap["accepting"] = self.scheduler.accepting
        snap["recovered_on_startup"] = self.recovered
        return snap
