from __future__ import annotations

from typing import Any

from orc.runtime.errors import HandlerError
from orc.runtime.registry import HandlerRegistry
from orc.utils.cancel import CancellationToken, CancelledError


class EchoHandler:
    """Returns the payload unchanged."""

    def execute(self, payload: Any, cancel: CancellationToken) -> Any:
        cancel.raise_if_cancelled()
        return payload


class SleepHandler:
    """Sleeps `payload["seconds"]`, waking early on cancellation."""

    def execute(self, payload: Any, cancel: CancellationToken) -> Any:
        raw = payload.get("seconds", 1.0) if isinstance(payload, dict) else payload
        try:
            seconds = float(1.0 if raw is None else raw)
        except (TypeError, ValueError) as e:
            raise HandlerError(f"invalid seconds: {raw!r}") from e
        if seconds < 0:
            raise HandlerError(f"seconds must be >= 0, got {seconds!r}")
        if cancel.wait(seconds):
            raise CancelledError(cancel.reason or "cancel_requested")
        return {"slept_s": seconds}


class FailHandler:
    """Always fails; handy for exercising retries."""

    def execute(self, payload: Any, cancel: CancellationToken) -> Any:
        message = "requested failure"
        if isinstance(payload, dict) and payload.get("message"):
            message = str(payload["message"])
        raise HandlerError(message)


def register_builtin_handlers(registry: HandlerRegistry) -> HandlerRegistry:
    registry.register("echo", EchoHandler())
    registry.register("sleep", SleepHandler())
    registry.register("fail", FailHandler())
    return registry


def default_registry() -> HandlerRegistry:
    return register_builtin_handlers(HandlerRegistry())
