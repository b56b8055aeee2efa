from __future__ import annotations

import threading


class CancelledError(RuntimeError):
    """Raised when a cancellation request should abort the current job attempt."""


class CancellationToken:
    """Thread-safe cooperative cancellation signal shared by a worker and its handler."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason: str | None = None
        self._lock = threading.Lock()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def request_cancel(self, reason: str = "cancel_requested") -> None:
        with self._lock:
            # First reason wins (timeout vs user cancel vs shutdown).
            if self._reason is None:
                self._reason = reason
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancelledError(self._reason or "cancel_requested")

    def wait(self, timeout: float | None = None) -> bool:
        """Block until cancelled or `timeout` elapses. Returns True if cancelled.

        Handlers should prefer this over `time.sleep` so they wake up promptly.
        """
        return self._event.wait(timeout)
