#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path


REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))

from orc.runtime.errors import StoreUnavailable  # noqa: E402
from orc.runtime.models import JobStatus  # noqa: E402
from orc.storage.sqlite_store import SQLiteJobStore  # noqa: E402


def _parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="List jobs in the SQLite job store (read-only).")
    p.add_argument(
        "--status",
        default="",
        choices=[""] + [s.value for s in JobStatus],
        help="Only list jobs in this status (default: print counts per status).",
    )
    p.add_argument("--db-path", default="", help="SQLite path (default: env ORC_SQLITE_PATH or data/orc.db).")
    return p.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv or sys.argv[1:])
    try:
        store = SQLiteJobStore(args.db_path or None)
    except StoreUnavailable as e:
        print(str(e), file=sys.stderr)
        return 1
    try:
        if not args.status:
            print(json.dumps(store.count_by_status(), indent=2))
            return 0
        for job in store.list_by_status(JobStatus(args.status)):
            print(json.dumps(job.to_dict(), ensure_ascii=False))
        return 0
    finally:
        store.close()


if __name__ == "__main__":
    raise SystemExit(main())
