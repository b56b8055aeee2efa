from __future__ import annotations

import json
import os
import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterable, Iterator

from orc.runtime.errors import NotFound, StoreUnavailable
from orc.runtime.models import Job, JobEvent, JobStatus
from orc.storage.base import StatusListing


SCHEMA_VERSION = 2

_JOB_COLUMNS = (
    "job_id, kind, payload_json, status, attempt, max_attempts, timeout_s, created_at, updated_at, "
    "started_at, finished_at, result_json, error, cancel_requested"
)


def _utc_ts() -> float:
    return time.time()


def _json_dumps(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":"))


def default_db_path() -> str:
    return os.getenv("ORC_SQLITE_PATH", "data/orc.db")


def _row_to_job(row: sqlite3.Row) -> Job:
    return Job(
        job_id=str(row["job_id"]),
        kind=str(row["kind"]),
        payload=json.loads(row["payload_json"]),
        status=JobStatus(row["status"]),
        attempt=int(row["attempt"]),
        max_attempts=int(row["max_attempts"]),
        timeout_s=float(row["timeout_s"]),
        created_at=float(row["created_at"]),
        updated_at=float(row["updated_at"]) if row["updated_at"] is not None else None,
        started_at=float(row["started_at"]) if row["started_at"] is not None else None,
        finished_at=float(row["finished_at"]) if row["finished_at"] is not None else None,
        result=json.loads(row["result_json"]) if row["result_json"] is not None else None,
        error=row["error"],
        cancel_requested=bool(row["cancel_requested"]),
    )


def _job_params(job: Job) -> tuple[Any, ...]:
    return (
        job.job_id,
        job.kind,
        _json_dumps(job.payload),
        job.status.value,
        int(job.attempt),
        int(job.max_attempts),
        float(job.timeout_s),
        float(job.created_at),
        job.updated_at,
        job.started_at,
        job.finished_at,
        _json_dumps(job.result) if job.result is not None else None,
        job.error,
        1 if job.cancel_requested else 0,
    )


class SQLiteJobStore:
    """SQLite-backed JobStore.

    - One connection shared by all threads, serialized by a lock; each write is
      a single statement committed on its own, so a record is never half-updated.
    - WAL journal so readers from other processes (scripts) don't block writers.
    - Backend errors surface as `StoreUnavailable`.
    """

    def __init__(self, db_path: str | Path | None = None, *, timeout_s: float = 5.0) -> None:
        self.db_path = Path(db_path or default_db_path()).expanduser().resolve()
        self._lock = threading.RLock()
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(self.db_path), timeout=timeout_s, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode = WAL;")
            self._conn.execute("PRAGMA synchronous = NORMAL;")
            self._init_schema()
        except (OSError, sqlite3.Error) as e:
            raise StoreUnavailable(f"Cannot open job store at {self.db_path}: {e}") from e

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @contextmanager
    def _guard(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                yield self._conn
            except sqlite3.Error as e:
                try:
                    self._conn.rollback()
                except sqlite3.Error:
                    pass
                raise StoreUnavailable(f"Job store error: {e}") from e

    def _init_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS meta (
              key TEXT PRIMARY KEY,
              value TEXT NOT NULL
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS jobs (
              job_id TEXT PRIMARY KEY,
              kind TEXT NOT NULL,
              payload_json TEXT NOT NULL,
              status TEXT NOT NULL,
              attempt INTEGER NOT NULL DEFAULT 0,
              max_attempts INTEGER NOT NULL,
              timeout_s REAL NOT NULL,
              created_at REAL NOT NULL,
              updated_at REAL,
              started_at REAL,
              finished_at REAL,
              result_json TEXT,
              error TEXT,
              cancel_requested INTEGER NOT NULL DEFAULT 0
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS job_events (
              event_id INTEGER PRIMARY KEY AUTOINCREMENT,
              job_id TEXT NOT NULL,
              created_at REAL NOT NULL,
              event_type TEXT NOT NULL,
              payload_json TEXT NOT NULL
            );
            """
        )
        # New databases start at schema_version=1, then migrate up to SCHEMA_VERSION.
        cur.execute(
            "INSERT OR IGNORE INTO meta(key, value) VALUES(?, ?);",
            ("schema_version", "1"),
        )
        self._conn.commit()

        self._migrate_if_needed()

    def _get_schema_version(self) -> int:
        row = self._conn.execute("SELECT value FROM meta WHERE key = ?;", ("schema_version",)).fetchone()
        if row is None:
            return 0
        try:
            return int(row["value"])
        except (TypeError, ValueError):
            return 0

    def _set_schema_version(self, version: int) -> None:
        self._conn.execute(
            "INSERT INTO meta(key, value) VALUES(?, ?) ON CONFLICT(key) DO UPDATE SET value = excluded.value;",
            ("schema_version", str(int(version))),
        )

    def _migrate_if_needed(self) -> None:
        current = self._get_schema_version()
        target = int(SCHEMA_VERSION)
        if current == target:
            return
        if current > target:
            raise RuntimeError(f"DB schema_version={current} is newer than code expects ({target}).")

        cur = self._conn.cursor()
        cur.execute("BEGIN;")
        try:
            while current < target:
                if current == 1:
                    self._migrate_1_to_2(cur)
                    current = 2
                    self._set_schema_version(current)
                else:
                    raise RuntimeError(f"Missing migration step for schema_version={current} -> {current+1}")
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise

    def _migrate_1_to_2(self, cur: sqlite3.Cursor) -> None:
        # Recovery scans and status listings filter by status, ordered by creation time.
        cur.execute("CREATE INDEX IF NOT EXISTS idx_jobs_status_created ON jobs(status, created_at, job_id);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_job_events_job_ts ON job_events(job_id, created_at, event_id);")

    def schema_version(self) -> int:
        with self._guard():
            return self._get_schema_version()

    # --- Jobs
    def put(self, job: Job) -> None:
        with self._guard() as conn:
            conn.execute(
                f"""
                INSERT INTO jobs({_JOB_COLUMNS})
                VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(job_id) DO UPDATE SET
                  status = excluded.status,
                  attempt = excluded.attempt,
                  max_attempts = excluded.max_attempts,
                  timeout_s = excluded.timeout_s,
                  updated_at = excluded.updated_at,
                  started_at = excluded.started_at,
                  finished_at = excluded.finished_at,
                  result_json = excluded.result_json,
                  error = excluded.error,
                  cancel_requested = excluded.cancel_requested;
                """,
                _job_params(job),
            )
            conn.commit()

    def compare_and_put(self, job: Job, *, expected: Iterable[JobStatus]) -> bool:
        statuses = [JobStatus(s).value for s in expected]
        if not statuses:
            return False
        params = _job_params(job)
        with self._guard() as conn:
            updated = conn.execute(
                f"""
                UPDATE jobs
                SET
                  status = ?,
                  attempt = ?,
                  max_attempts = ?,
                  timeout_s = ?,
                  updated_at = ?,
                  started_at = ?,
                  finished_at = ?,
                  result_json = ?,
                  error = ?,
                  cancel_requested = ?
                WHERE job_id = ? AND status IN ({",".join(["?"] * len(statuses))});
                """,
                (*params[3:7], *params[8:], job.job_id, *statuses),
            )
            conn.commit()
            return updated.rowcount == 1

    def get(self, job_id: str) -> Job:
        with self._guard() as conn:
            row = conn.execute(
                f"SELECT {_JOB_COLUMNS} FROM jobs WHERE job_id = ? LIMIT 1;",
                (job_id,),
            ).fetchone()
        if row is None:
            raise NotFound(job_id)
        return _row_to_job(row)

    def _fetch_status(self, status: JobStatus) -> Iterator[Job]:
        with self._guard() as conn:
            rows = conn.execute(
                f"""
                SELECT {_JOB_COLUMNS}
                FROM jobs
                WHERE status = ?
                ORDER BY created_at ASC, job_id ASC;
                """,
                (JobStatus(status).value,),
            ).fetchall()
        return (_row_to_job(r) for r in rows)

    def list_by_status(self, status: JobStatus) -> Iterable[Job]:
        return StatusListing(self._fetch_status, JobStatus(status))

    def count_by_status(self) -> dict[str, int]:
        with self._guard() as conn:
            rows = conn.execute(
                "SELECT status, COUNT(*) AS n FROM jobs GROUP BY status ORDER BY status;",
            ).fetchall()
        return {str(r["status"]): int(r["n"]) for r in rows}

    # --- Events (trace)
    def append_event(self, job_id: str, event_type: str, payload: dict[str, Any]) -> None:
        with self._guard() as conn:
            conn.execute(
                """
                INSERT INTO job_events(job_id, created_at, event_type, payload_json)
                VALUES(?, ?, ?, ?);
                """,
                (job_id, _utc_ts(), event_type, _json_dumps(payload)),
            )
            conn.commit()

    def list_events(self, job_id: str) -> list[JobEvent]:
        with self._guard() as conn:
            rows = conn.execute(
                """
                SELECT job_id, created_at, event_type, payload_json
                FROM job_events
                WHERE job_id = ?
                ORDER BY created_at ASC, event_id ASC;
                """,
                (job_id,),
            ).fetchall()
        return [
            JobEvent(
                job_id=str(r["job_id"]),
                created_at=float(r["created_at"]),
                event_type=str(r["event_type"]),
                payload=json.loads(r["payload_json"]),
            )
            for r in rows
        ]

    def ping(self) -> None:
        with self._guard() as conn:
            conn.execute("SELECT 1;").fetchone()
