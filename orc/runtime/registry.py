from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Callable, Protocol, runtime_checkable

from orc.runtime.errors import UnknownKind
from orc.utils.cancel import CancellationToken


@runtime_checkable
class JobHandler(Protocol):
    """Executable logic for one job kind.

    `execute` receives the job payload and a cancellation token. It returns the
    job result (JSON-serializable) or raises to signal failure. Long-running
    handlers should poll `cancel.cancelled` / `cancel.raise_if_cancelled()` or
    block with `cancel.wait(...)`.
    """

    def execute(self, payload: Any, cancel: CancellationToken) -> Any: ...


@dataclass(frozen=True)
class FunctionHandler:
    """Adapts a plain `fn(payload, cancel)` callable to `JobHandler`."""

    fn: Callable[[Any, CancellationToken], Any]

    def execute(self, payload: Any, cancel: CancellationToken) -> Any:
        return self.fn(payload, cancel)


class HandlerRegistry:
    """Maps job kinds to handlers.

    Populated during process initialization, then frozen before the scheduler
    starts accepting submissions.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, JobHandler] = {}
        self._frozen = False
        self._lock = threading.Lock()

    @property
    def frozen(self) -> bool:
        return self._frozen

    def register(self, kind: str, handler: JobHandler | Callable[[Any, CancellationToken], Any]) -> None:
        k = (kind or "").strip()
        if not k:
            raise ValueError("Handler kind must be a non-empty string.")
        if not isinstance(handler, JobHandler):
            if not callable(handler):
                raise TypeError(f"Handler for {k!r} must implement execute() or be callable.")
            handler = FunctionHandler(handler)
        with self._lock:
            if self._frozen:
                raise RuntimeError("HandlerRegistry is frozen; register handlers before starting the engine.")
            if k in self._handlers:
                raise ValueError(f"Handler already registered for kind {k!r}.")
            self._handlers[k] = handler

    def freeze(self) -> None:
        with self._lock:
            self._frozen = True

    def lookup(self, kind: str) -> JobHandler:
        handler = self._handlers.get(kind)
        if handler is None:
            raise UnknownKind(kind)
        return handler

    def __contains__(self, kind: object) -> bool:
        return kind in self._handlers

    def kinds(self) -> list[str]:
        return sorted(self._handlers)
