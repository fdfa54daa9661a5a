from __future__ import annotations

"""
Print job persistence for Order Printer.

Features:
- JobStore: the interface the worker and the web API program against
- SqliteJobStore: SQLite-backed implementation
  - PRAGMAs for reliability: foreign_keys=ON, WAL, synchronous=NORMAL
  - Schema bootstrap (schema_version = 1)
  - Monotonic status transitions guarded in SQL
  - A per-job event trail (job_events) recording every status write
  - An insert change feed driven by the monotonic `seq` column
"""

import abc
import json
import logging
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

from order_printer.core.models import (
    COMPLETED,
    FAILED,
    ORDER_JOB,
    PENDING,
    PRINTING,
    STATUSES,
    PrintJob,
    format_timestamp,
    parse_timestamp,
    utc_now,
)

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

# Which statuses a row may be in before it moves to the key status.
ALLOWED_TRANSITIONS: Dict[str, Tuple[str, ...]] = {
    PRINTING: (PENDING,),
    COMPLETED: (PRINTING,),
    FAILED: (PRINTING,),
}


class StoreError(RuntimeError):
    """Raised when the job store cannot be read or written."""


class JobStore(abc.ABC):
    """
    Persistent store of PrintJob records.

    The worker is the only writer of status, printed_at and error_message.
    """

    @abc.abstractmethod
    def insert_job(
        self,
        payload: Mapping[str, Any],
        job_type: str = ORDER_JOB,
        *,
        job_id: Optional[str] = None,
        created_at: Optional[datetime] = None,
        retry_of: Optional[str] = None,
    ) -> PrintJob:
        """Create a job in `pending` and notify subscribers."""

    @abc.abstractmethod
    def get_job(self, job_id: str) -> Optional[PrintJob]:
        """Return one job or None."""

    @abc.abstractmethod
    def list_jobs(self, status: Optional[str] = None, limit: int = 200) -> List[PrintJob]:
        """Return jobs newest first, optionally filtered by status."""

    @abc.abstractmethod
    def list_pending(self) -> List[PrintJob]:
        """Return all pending jobs, oldest created_at first."""

    @abc.abstractmethod
    def update_status(
        self,
        job_id: str,
        status: str,
        *,
        printed_at: Optional[datetime] = None,
        error_message: Optional[str] = None,
        expected: Optional[str] = None,
    ) -> bool:
        """
        Move a job to `status`. Returns False when the row does not exist or is not
        in a status the transition is allowed from (or not in `expected`).
        """

    @abc.abstractmethod
    def subscribe_inserts(self) -> "InsertSubscription":
        """Return a blocking iterator over jobs inserted after this call."""


class InsertSubscription:
    """
    Infinite iterator over newly inserted jobs, in insert order.

    Starts after the newest row present when it was created and cannot be
    restarted; open a new subscription instead. Waits on the store's condition,
    woken by in-process inserts, and re-polls every `poll_interval` seconds to see
    rows written by other processes. close() ends iteration.
    """

    def __init__(self, store: "SqliteJobStore", after_seq: int, poll_interval: float) -> None:
        self._store = store
        self._cursor = after_seq
        self._poll_interval = poll_interval
        self._buffer: List[PrintJob] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        self._closed = True
        with self._store._changed:
            self._store._changed.notify_all()

    def __iter__(self) -> "InsertSubscription":
        return self

    def __next__(self) -> PrintJob:
        changed = self._store._changed
        while not self._closed:
            # Fetch and wait under one lock so an in-process insert cannot slip between them.
            with changed:
                if not self._buffer:
                    self._buffer = self._store._jobs_after(self._cursor)
                if self._buffer:
                    job = self._buffer.pop(0)
                    self._cursor = job.seq
                    return job
                changed.wait(timeout=self._poll_interval)
        raise StopIteration


def _apply_pragmas(db: sqlite3.Connection) -> None:
    db.execute("PRAGMA foreign_keys = ON")
    try:
        db.execute("PRAGMA journal_mode = WAL")
    except sqlite3.Error:
        pass
    db.execute("PRAGMA synchronous = NORMAL")


def _ensure_schema(db: sqlite3.Connection) -> None:
    """
    Create tables if not present and ensure schema_version is initialized.
    """
    with db:
        db.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER NOT NULL)")
        db.execute(
            """
            CREATE TABLE IF NOT EXISTS print_jobs (
              seq            INTEGER PRIMARY KEY AUTOINCREMENT,
              id             TEXT NOT NULL UNIQUE,
              job_type       TEXT NOT NULL DEFAULT 'order',
              payload        TEXT NOT NULL,
              status         TEXT NOT NULL DEFAULT 'pending'
                             CHECK (status IN ('pending', 'printing', 'completed', 'failed')),
              error_message  TEXT,
              printed_at     TEXT,
              retry_of       TEXT,
              created_at     TEXT NOT NULL,
              updated_at     TEXT NOT NULL
            )
            """,
        )
        db.execute("CREATE INDEX IF NOT EXISTS idx_print_jobs_status ON print_jobs(status, created_at)")
        db.execute(
            """
            CREATE TABLE IF NOT EXISTS job_events (
              id       INTEGER PRIMARY KEY AUTOINCREMENT,
              job_id   TEXT NOT NULL,
              status   TEXT NOT NULL,
              at       TEXT NOT NULL,
              detail   TEXT,
              FOREIGN KEY (job_id) REFERENCES print_jobs(id) ON DELETE CASCADE
            )
            """,
        )
        db.execute("CREATE INDEX IF NOT EXISTS idx_job_events_job ON job_events(job_id)")

        row = db.execute("SELECT version FROM schema_version ORDER BY version DESC LIMIT 1").fetchone()
        if row is None:
            db.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))


class SqliteJobStore(JobStore):
    """
    JobStore on a single SQLite file (or ":memory:").

    One connection is shared by the worker threads and guarded by a lock; other
    processes (e.g. the web API) may write the same file, and their inserts reach
    subscribers through polling.
    """

    def __init__(self, path: str, poll_interval: float = 1.0) -> None:
        self.path = path
        self.poll_interval = poll_interval
        self._lock = threading.RLock()
        self._changed = threading.Condition(self._lock)
        try:
            if path != ":memory:":
                Path(path).parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            _apply_pragmas(self._conn)
            _ensure_schema(self._conn)
        except (sqlite3.Error, OSError) as e:
            raise StoreError(f"cannot open job store at {path}: {e}") from e

    # ----- Connection helpers ------------------------------------------------

    @contextmanager
    def _guard(self, action: str) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                yield self._conn
            except sqlite3.Error as e:
                raise StoreError(f"{action} failed: {e}") from e

    def _max_seq(self) -> int:
        with self._guard("read sequence") as db:
            row = db.execute("SELECT COALESCE(MAX(seq), 0) AS seq FROM print_jobs").fetchone()
            return int(row["seq"])

    def _jobs_after(self, seq: int, limit: int = 100) -> List[PrintJob]:
        with self._guard("read inserts") as db:
            rows = db.execute(
                "SELECT * FROM print_jobs WHERE seq > ? ORDER BY seq ASC LIMIT ?",
                (seq, limit),
            ).fetchall()
        return [PrintJob.from_row(r) for r in rows]

    def close(self) -> None:
        with self._lock:
            self._changed.notify_all()
            self._conn.close()

    # ----- JobStore ----------------------------------------------------------

    def insert_job(
        self,
        payload: Mapping[str, Any],
        job_type: str = ORDER_JOB,
        *,
        job_id: Optional[str] = None,
        created_at: Optional[datetime] = None,
        retry_of: Optional[str] = None,
    ) -> PrintJob:
        job_id = job_id or uuid.uuid4().hex
        # Stored in UTC so created_at sorts as text.
        created = (parse_timestamp(created_at) or utc_now()).astimezone(timezone.utc)
        now = format_timestamp(utc_now())
        with self._guard("insert job") as db:
            with db:
                db.execute(
                    """
                    INSERT INTO print_jobs (id, job_type, payload, status, retry_of, created_at, updated_at)
                    VALUES (?,?,?,?,?,?,?)
                    """,
                    (job_id, job_type, json.dumps(dict(payload)), PENDING, retry_of, format_timestamp(created), now),
                )
                db.execute(
                    "INSERT INTO job_events (job_id, status, at) VALUES (?,?,?)",
                    (job_id, PENDING, now),
                )
            self._changed.notify_all()
        job = self.get_job(job_id)
        assert job is not None
        return job

    def get_job(self, job_id: str) -> Optional[PrintJob]:
        with self._guard("read job") as db:
            row = db.execute("SELECT * FROM print_jobs WHERE id = ?", (job_id,)).fetchone()
        return PrintJob.from_row(row) if row is not None else None

    def list_jobs(self, status: Optional[str] = None, limit: int = 200) -> List[PrintJob]:
        with self._guard("list jobs") as db:
            if status:
                rows = db.execute(
                    "SELECT * FROM print_jobs WHERE status = ? ORDER BY created_at DESC, seq DESC LIMIT ?",
                    (status, int(limit)),
                ).fetchall()
            else:
                rows = db.execute(
                    "SELECT * FROM print_jobs ORDER BY created_at DESC, seq DESC LIMIT ?",
                    (int(limit),),
                ).fetchall()
        return [PrintJob.from_row(r) for r in rows]

    def list_pending(self) -> List[PrintJob]:
        with self._guard("list pending jobs") as db:
            rows = db.execute(
                "SELECT * FROM print_jobs WHERE status = ? ORDER BY created_at ASC, seq ASC",
                (PENDING,),
            ).fetchall()
        return [PrintJob.from_row(r) for r in rows]

    def update_status(
        self,
        job_id: str,
        status: str,
        *,
        printed_at: Optional[datetime] = None,
        error_message: Optional[str] = None,
        expected: Optional[str] = None,
    ) -> bool:
        if status not in STATUSES or status == PENDING:
            raise ValueError(f"invalid target status: {status!r}")
        allowed = ALLOWED_TRANSITIONS[status]
        if expected:
            if expected not in allowed:
                raise ValueError(f"cannot move a {expected!r} job to {status!r}")
            allowed = (expected,)
        if status == COMPLETED:
            printed = format_timestamp(printed_at or utc_now())
            error_message = None
        else:
            printed = None
        if status == FAILED and not (error_message or "").strip():
            error_message = "unknown error"

        now = format_timestamp(utc_now())
        marks = ",".join("?" for _ in allowed)
        with self._guard(f"update job {job_id} to {status}") as db:
            with db:
                cur = db.execute(
                    f"""
                    UPDATE print_jobs
                       SET status = ?, printed_at = ?, error_message = ?, updated_at = ?
                     WHERE id = ? AND status IN ({marks})
                    """,
                    (status, printed, error_message, now, job_id, *allowed),
                )
                if cur.rowcount == 0:
                    return False
                db.execute(
                    "INSERT INTO job_events (job_id, status, at, detail) VALUES (?,?,?,?)",
                    (job_id, status, now, error_message),
                )
        return True

    def subscribe_inserts(self) -> InsertSubscription:
        start = self._max_seq()
        return InsertSubscription(self, after_seq=start, poll_interval=self.poll_interval)

    # ----- Extras -------------------------------------------------------------

    def count_by_status(self) -> Dict[str, int]:
        """
        Return the number of jobs in each status; statuses with no jobs are 0.
        """
        with self._guard("count jobs") as db:
            rows = db.execute("SELECT status, COUNT(*) AS n FROM print_jobs GROUP BY status").fetchall()
        counts = dict.fromkeys(STATUSES, 0)
        counts.update((r["status"], int(r["n"])) for r in rows)
        return counts

    def job_history(self, job_id: str) -> List[str]:
        """
        Return the statuses a job has been written with, oldest first.
        """
        with self._guard("read job history") as db:
            rows = db.execute("SELECT status FROM job_events WHERE job_id = ? ORDER BY id ASC", (job_id,)).fetchall()
        return [r["status"] for r in rows]


def open_store(path: str, poll_interval: float = 1.0) -> SqliteJobStore:
    """
    Open (creating if needed) the job store at `path`.
    """
    store = SqliteJobStore(path, poll_interval=poll_interval)
    logger.info("Job store opened at %s", path)
    return store


__all__ = [
    "ALLOWED_TRANSITIONS",
    "InsertSubscription",
    "JobStore",
    "SqliteJobStore",
    "StoreError",
    "open_store",
]
