from __future__ import annotations

import pytest

from orc.handlers.builtin import EchoHandler, default_registry
from orc.runtime.errors import UnknownKind
from orc.runtime.registry import HandlerRegistry, JobHandler
from orc.utils.cancel import CancellationToken


def test_lookup_unknown_kind_raises() -> None:
    reg = HandlerRegistry()
    with pytest.raises(UnknownKind) as e:
        reg.lookup("missing")
    assert e.value.kind == "missing"
    assert e.value.code == "unknown_kind"


def test_plain_callable_is_wrapped() -> None:
    reg = HandlerRegistry()
    reg.register("double", lambda payload, cancel: payload * 2)
    handler = reg.lookup("double")
    assert isinstance(handler, JobHandler)
    assert handler.execute(21, CancellationToken()) == 42


def test_frozen_registry_rejects_registration() -> None:
    reg = HandlerRegistry()
    reg.register("echo", EchoHandler())
    reg.freeze()
    with pytest.raises(RuntimeError):
        reg.register("other", EchoHandler())
    assert reg.kinds() == ["echo"]


def test_duplicate_and_invalid_registration() -> None:
    reg = HandlerRegistry()
    reg.register("echo", EchoHandler())
    with pytest.raises(ValueError):
        reg.register("echo", EchoHandler())
    with pytest.raises(ValueError):
        reg.register("  ", EchoHandler())
    with pytest.raises(TypeError):
        reg.register("bad", 42)  # type: ignore[arg-type]


def test_default_registry_has_builtins() -> None:
    reg = default_registry()
    assert reg.kinds() == ["echo", "fail", "sleep"]
    assert "echo" in reg
