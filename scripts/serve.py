#!/usr/bin/env python3
from __future__ import annotations

import logging
import os
import sys
from pathlib import Path


REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))

from orc.config.load_config import ConfigError, load_app_config  # noqa: E402


def main() -> int:
    log_level = os.getenv("ORC_LOG_LEVEL", "info")
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s [%(threadName)s] %(message)s",
    )

    try:
        cfg = load_app_config()
    except ConfigError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2

    host = os.getenv("ORC_HOST", cfg.server.host)
    port = int(os.getenv("ORC_PORT", str(cfg.server.port)))
    reload = os.getenv("ORC_RELOAD", "0").strip().lower() in {"1", "true", "yes", "y", "on"}

    try:
        import uvicorn  # type: ignore
    except ImportError as e:
        print("Missing dependency: uvicorn. Install it in your runtime environment.", file=sys.stderr)
        print(str(e), file=sys.stderr)
        return 1

    uvicorn.run(
        "orc.api.app:app",
        host=host,
        port=port,
        reload=reload,
        log_level=log_level,
        timeout_graceful_shutdown=int(cfg.server.shutdown_timeout_s),
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
