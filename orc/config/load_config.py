from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any


class ConfigError(RuntimeError):
    pass


def _as_int(value: Any, *, key: str) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"Invalid int for {key}: {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid int for {key}: {value!r}") from e


def _as_str(value: Any, *, key: str) -> str:
    if value is None:
        raise ConfigError(f"Missing required config key: {key}")
    return str(value)


def _as_float(value: Any, *, key: str) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"Invalid float for {key}: {value!r}")
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid float for {key}: {value!r}") from e


def _require_min(value: int | float, minimum: int | float, *, key: str, strict: bool = False) -> None:
    if (strict and value <= minimum) or (not strict and value < minimum):
        op = ">" if strict else ">="
        raise ConfigError(f"Invalid {key}: must be {op} {minimum}, got {value!r}")


@dataclass(frozen=True)
class DatabaseConfig:
    path: str


@dataclass(frozen=True)
class ServerConfig:
    host: str
    port: int
    shutdown_timeout_s: float


@dataclass(frozen=True)
class EngineConfig:
    worker_count: int
    default_timeout_s: float
    default_max_attempts: int = 3
    cancel_grace_s: float = 1.0
    recover_max_retries: int = 5
    recover_backoff_s: float = 0.5


@dataclass(frozen=True)
class AppConfig:
    database: DatabaseConfig
    server: ServerConfig
    engine: EngineConfig


_DEFAULTS: dict[str, dict[str, Any]] = {
    "database": {"path": "data/orc.db"},
    "server": {"host": "127.0.0.1", "port": 3000, "shutdown_timeout_s": 10.0},
    "engine": {
        "worker_count": 4,
        "default_timeout_s": 30.0,
        "default_max_attempts": 3,
        "cancel_grace_s": 1.0,
        "recover_max_retries": 5,
        "recover_backoff_s": 0.5,
    },
}


def default_config_path() -> Path:
    return Path(os.getenv("ORC_CONFIG_PATH", "config/default.toml")).expanduser().resolve()


def _section(raw: dict[str, Any], name: str) -> dict[str, Any]:
    section = raw.get(name, {})
    if not isinstance(section, dict):
        raise ConfigError(f"Config section [{name}] must be a table.")
    merged = dict(_DEFAULTS[name])
    merged.update(section)
    return merged


def build_engine_config(engine: dict[str, Any]) -> EngineConfig:
    cfg = EngineConfig(
        worker_count=_as_int(engine.get("worker_count"), key="engine.worker_count"),
        default_timeout_s=_as_float(engine.get("default_timeout_s"), key="engine.default_timeout_s"),
        default_max_attempts=_as_int(engine.get("default_max_attempts"), key="engine.default_max_attempts"),
        cancel_grace_s=_as_float(engine.get("cancel_grace_s"), key="engine.cancel_grace_s"),
        recover_max_retries=_as_int(engine.get("recover_max_retries"), key="engine.recover_max_retries"),
        recover_backoff_s=_as_float(engine.get("recover_backoff_s"), key="engine.recover_backoff_s"),
    )
    _require_min(cfg.worker_count, 1, key="engine.worker_count")
    _require_min(cfg.default_timeout_s, 0, key="engine.default_timeout_s", strict=True)
    _require_min(cfg.default_max_attempts, 1, key="engine.default_max_attempts")
    _require_min(cfg.cancel_grace_s, 0, key="engine.cancel_grace_s")
    _require_min(cfg.recover_max_retries, 0, key="engine.recover_max_retries")
    _require_min(cfg.recover_backoff_s, 0, key="engine.recover_backoff_s", strict=True)
    return cfg


def load_app_config(path: Path | None = None) -> AppConfig:
    """Load configuration from TOML.

    A missing file at the default location falls back to built-in defaults; an
    explicitly passed path must exist. `ORC_SQLITE_PATH`, `ORC_WORKER_COUNT` and
    `ORC_DEFAULT_TIMEOUT_S` override the file.
    """
    cfg_path = path or default_config_path()
    if cfg_path.exists():
        try:
            raw = tomllib.loads(cfg_path.read_text(encoding="utf-8"))
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"Invalid TOML in {cfg_path}: {e}") from e
    elif path is not None:
        raise ConfigError(f"Config file not found: {cfg_path}")
    else:
        raw = {}

    database = _section(raw, "database")
    server = _section(raw, "server")
    engine = _section(raw, "engine")

    if os.getenv("ORC_SQLITE_PATH"):
        database["path"] = os.environ["ORC_SQLITE_PATH"]
    if os.getenv("ORC_WORKER_COUNT"):
        engine["worker_count"] = os.environ["ORC_WORKER_COUNT"]
    if os.getenv("ORC_DEFAULT_TIMEOUT_S"):
        engine["default_timeout_s"] = os.environ["ORC_DEFAULT_TIMEOUT_S"]

    server_cfg = ServerConfig(
        host=_as_str(server.get("host"), key="server.host"),
        port=_as_int(server.get("port"), key="server.port"),
        shutdown_timeout_s=_as_float(server.get("shutdown_timeout_s"), key="server.shutdown_timeout_s"),
    )
    _require_min(server_cfg.port, 1, key="server.port")
    _require_min(server_cfg.shutdown_timeout_s, 0, key="server.shutdown_timeout_s")

    return AppConfig(
        database=DatabaseConfig(path=_as_str(database.get("path"), key="database.path")),
        server=server_cfg,
        engine=build_engine_config(engine),
    )
