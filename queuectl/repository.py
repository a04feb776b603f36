import logging
import sqlite3
import time
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple, Union

from .config import QueueConfig, validate_config_value
from .db import transaction
from .errors import JobConflictError, LogNotFoundError, StorageError, StoreBusyError
from .models import (
    COMPLETED, DEAD, FAILED, PENDING, PROCESSING,
    EnqueueRequest, Job, JobState, QueueCounts,
)
from .utils import now_iso, to_iso

logger = logging.getLogger(__name__)

# ~2s worst case before giving up on a contended claim
CLAIM_MAX_ATTEMPTS = 20
LOST_RACE_SLEEP_SECONDS = 0.05
BUSY_SLEEP_SECONDS = 0.1

LIVE_ORDER = "ORDER BY priority DESC, run_at ASC, created_at ASC, rowid ASC"
DLQ_ORDER = "ORDER BY created_at ASC, rowid ASC"

_ALL_COLUMNS = (
    "id", "command", "state", "attempts", "max_retries", "priority", "run_at",
    "timeout_seconds", "last_exit_code", "last_duration_ms", "last_output_path",
    "run_count", "success_count", "failure_count", "total_runtime_ms",
    "last_finished_at", "created_at", "updated_at",
)


def _is_busy(error: sqlite3.Error) -> bool:
    msg = str(error).lower()
    return "locked" in msg or "busy" in msg


@contextmanager
def _storage_errors(action: str) -> Iterator[None]:
    try:
        yield
    except sqlite3.Error as e:
        raise StorageError(f"DB error while {action}: {e}") from e


def _replace_row(conn: sqlite3.Connection, table: str, job: Job) -> None:
    """Write every column of `job` into `table`, replacing any row with its id."""
    values = job.to_dict()
    placeholders = ", ".join("?" for _ in _ALL_COLUMNS)
    conn.execute(
        f"INSERT OR REPLACE INTO {table} ({', '.join(_ALL_COLUMNS)}) VALUES ({placeholders})",
        tuple(values[c] for c in _ALL_COLUMNS),
    )


def _fetch(conn: sqlite3.Connection, table: str, job_id: str) -> Optional[Job]:
    row = conn.execute(f"SELECT * FROM {table} WHERE id=?", (job_id,)).fetchone()
    return Job.from_row(row) if row else None


# ---------- Config ----------
def get_config(conn) -> Dict[str, str]:
    with _storage_errors("reading config"):
        cur = conn.execute("SELECT key, value FROM config")
        return {r["key"]: r["value"] for r in cur.fetchall()}


def load_config(conn) -> QueueConfig:
    return QueueConfig.from_mapping(get_config(conn))


def set_config(conn, key: str, value: str) -> None:
    coerced = validate_config_value(key, value)
    with _storage_errors("updating config"):
        conn.execute(
            "INSERT INTO config(key,value) VALUES(?,?) "
            "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
            (key, str(coerced)),
        )


# ---------- Jobs: enqueue / claim ----------
def upsert_job(conn, job: Job) -> Job:
    """
    Insert `job`, or replace the mutable fields of the row with the same id.

    created_at survives from the first insert and the execution history
    counters are never touched here. An id parked in the DLQ is refused; it
    has to come back through retry_from_dlq.
    """
    ts = now_iso()
    with _storage_errors(f"upserting job {job.id}"), transaction(conn):
        if conn.execute("SELECT 1 FROM dead_letter_jobs WHERE id=?", (job.id,)).fetchone():
            raise JobConflictError(
                f"Job '{job.id}' is in the DLQ; use `queuectl dlq retry {job.id}` instead."
            )
        conn.execute(
            """INSERT INTO jobs
               (id, command, state, attempts, max_retries, priority, run_at,
                timeout_seconds, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(id) DO UPDATE SET
                   command=excluded.command,
                   state=excluded.state,
                   attempts=excluded.attempts,
                   max_retries=excluded.max_retries,
                   priority=excluded.priority,
                   run_at=excluded.run_at,
                   timeout_seconds=excluded.timeout_seconds,
                   updated_at=excluded.updated_at""",
            (
                job.id, job.command, JobState(job.state).value, job.attempts,
                job.max_retries, job.priority, job.run_at or ts,
                job.timeout_seconds, job.created_at or ts, ts,
            ),
        )
        stored = _fetch(conn, "jobs", job.id)
    logger.debug("Upserted job %s (state=%s)", job.id, stored.state.value)
    return stored


def enqueue_job(conn, request: EnqueueRequest) -> Job:
    return upsert_job(conn, request.to_job())


def _try_claim(conn, now: str) -> Tuple[str, Optional[str]]:
    """One claim round: ('empty', None), ('lost', id) or ('claimed', id)."""
    row = conn.execute(
        f"SELECT id FROM jobs WHERE state=? AND (run_at IS NULL OR run_at <= ?) {LIVE_ORDER} LIMIT 1",
        (PENDING.value, now),
    ).fetchone()
    if not row:
        return "empty", None
    job_id = row["id"]
    # compare-and-swap: only succeeds if nobody moved the row off pending
    updated = conn.execute(
        "UPDATE jobs SET state=?, updated_at=? WHERE id=? AND state=?",
        (PROCESSING.value, now_iso(), job_id, PENDING.value),
    )
    return ("claimed" if updated.rowcount == 1 else "lost"), job_id


def claim_next_pending(conn, now: Optional[datetime] = None) -> Optional[Job]:
    """
    Atomically move the best eligible pending job to processing and return it.

    Eligible means state=pending and run_at <= now. Losing the race to
    another worker or hitting a locked database restarts the selection, up to
    CLAIM_MAX_ATTEMPTS rounds. Lost races exhausted -> None. A database that
    stays locked for the whole budget raises StoreBusyError.
    """
    last_busy = None
    for attempt in range(1, CLAIM_MAX_ATTEMPTS + 1):
        cutoff = to_iso(now) if now is not None else now_iso()
        try:
            outcome, job_id = _try_claim(conn, cutoff)
        except sqlite3.OperationalError as e:
            if not _is_busy(e):
                raise StorageError(f"DB error while claiming a job: {e}") from e
            logger.debug("Store busy during claim (attempt %d): %s", attempt, e)
            last_busy = e
            time.sleep(BUSY_SLEEP_SECONDS)
            continue
        except sqlite3.Error as e:
            raise StorageError(f"DB error while claiming a job: {e}") from e

        if outcome == "empty":
            return None
        if outcome == "lost":
            logger.debug("Lost claim race for %s (attempt %d)", job_id, attempt)
            last_busy = None
            time.sleep(LOST_RACE_SLEEP_SECONDS)
            continue
        with _storage_errors(f"reading claimed job {job_id}"):
            return _fetch(conn, "jobs", job_id)

    if last_busy is not None:
        raise StoreBusyError(
            f"Store stayed locked for {CLAIM_MAX_ATTEMPTS} claim attempts: {last_busy}"
        ) from last_busy
    logger.debug("Giving up claim after %d lost races", CLAIM_MAX_ATTEMPTS)
    return None


# ---------- Jobs: outcomes ----------
def mark_success(conn, job_id: str, attempts: int, exit_code: int,
                 duration_ms: int, output_path: Optional[str]) -> None:
    ts = now_iso()
    with _storage_errors(f"completing job {job_id}"):
        conn.execute(
            """UPDATE jobs
               SET state=?, attempts=?, last_exit_code=?, last_duration_ms=?, last_output_path=?,
                   run_count=run_count+1, success_count=success_count+1,
                   total_runtime_ms=total_runtime_ms+?, last_finished_at=?, updated_at=?
               WHERE id=?""",
            (COMPLETED.value, attempts, exit_code, duration_ms, output_path,
             duration_ms, ts, ts, job_id),
        )


def mark_failure(conn, job_id: str, attempts: int, exit_code: int, duration_ms: int,
                 output_path: Optional[str], will_retry: bool) -> None:
    """
    Record a failed attempt and park the row in the transient `failed` state.

    The row is not claimable afterwards: schedule_retry or move_to_dlq must
    follow, depending on `will_retry`.
    """
    ts = now_iso()
    with _storage_errors(f"recording failure of job {job_id}"):
        conn.execute(
            """UPDATE jobs
               SET state=?, attempts=?, last_exit_code=?, last_duration_ms=?, last_output_path=?,
                   run_count=run_count+1, failure_count=failure_count+1,
                   total_runtime_ms=total_runtime_ms+?, last_finished_at=?, updated_at=?
               WHERE id=?""",
            (FAILED.value, attempts, exit_code, duration_ms, output_path,
             duration_ms, ts, ts, job_id),
        )
    logger.debug("Job %s failed attempt %d (will_retry=%s)", job_id, attempts, will_retry)


def schedule_retry(conn, job_id: str, next_run_at: Union[datetime, str]) -> bool:
    run_at = to_iso(next_run_at) if isinstance(next_run_at, datetime) else next_run_at
    with _storage_errors(f"scheduling retry of job {job_id}"):
        cur = conn.execute(
            "UPDATE jobs SET state=?, run_at=?, updated_at=? WHERE id=?",
            (PENDING.value, run_at, now_iso(), job_id),
        )
    return cur.rowcount == 1


def move_to_dlq(conn, job_id: str) -> bool:
    """Copy the live row into the DLQ as dead and delete it, in one transaction."""
    with _storage_errors(f"moving job {job_id} to DLQ"), transaction(conn):
        job = _fetch(conn, "jobs", job_id)
        if job is None:
            return False
        job.state = DEAD
        job.updated_at = now_iso()
        _replace_row(conn, "dead_letter_jobs", job)
        conn.execute("DELETE FROM jobs WHERE id=?", (job_id,))
    return True


def retry_from_dlq(conn, job_id: str) -> bool:
    """
    Bring a dead job back as pending with attempts reset, due now.

    History counters (run/success/failure, runtime) are carried over.
    Returns False when the id is not in the DLQ.
    """
    with _storage_errors(f"retrying DLQ job {job_id}"), transaction(conn):
        job = _fetch(conn, "dead_letter_jobs", job_id)
        if job is None:
            return False
        ts = now_iso()
        job.state = PENDING
        job.attempts = 0
        job.run_at = ts
        job.updated_at = ts
        _replace_row(conn, "jobs", job)
        conn.execute("DELETE FROM dead_letter_jobs WHERE id=?", (job_id,))
    return True


# ---------- Queries ----------
def list_jobs(conn, state: Optional[Union[JobState, str]] = None) -> List[Job]:
    if state is not None:
        state = JobState.parse(state) if isinstance(state, str) else state
        if state is DEAD:
            return dlq_list(conn)
    with _storage_errors("listing jobs"):
        if state is not None:
            rows = conn.execute(
                f"SELECT * FROM jobs WHERE state=? {LIVE_ORDER}", (state.value,)
            ).fetchall()
        else:
            rows = conn.execute(f"SELECT * FROM jobs {LIVE_ORDER}").fetchall()
    return [Job.from_row(r) for r in rows]


def dlq_list(conn) -> List[Job]:
    with _storage_errors("listing DLQ"):
        rows = conn.execute(f"SELECT * FROM dead_letter_jobs {DLQ_ORDER}").fetchall()
    return [Job.from_row(r) for r in rows]


def get_job(conn, job_id: str) -> Optional[Job]:
    with _storage_errors(f"reading job {job_id}"):
        return _fetch(conn, "jobs", job_id) or _fetch(conn, "dead_letter_jobs", job_id)


def counts(conn) -> QueueCounts:
    out = QueueCounts()
    with _storage_errors("counting jobs"):
        for r in conn.execute("SELECT state, COUNT(1) AS c FROM jobs GROUP BY state"):
            state = JobState.parse(r["state"])
            setattr(out, state.value, getattr(out, state.value) + r["c"])
        out.dead += conn.execute("SELECT COUNT(1) AS c FROM dead_letter_jobs").fetchone()["c"]

        for table in ("jobs", "dead_letter_jobs"):
            r = conn.execute(
                f"""SELECT COALESCE(SUM(run_count), 0) AS runs,
                           COALESCE(SUM(success_count), 0) AS ok,
                           COALESCE(SUM(failure_count), 0) AS bad,
                           COALESCE(SUM(total_runtime_ms), 0) AS runtime,
                           MAX(last_finished_at) AS last
                    FROM {table}"""
            ).fetchone()
            out.run_count += r["runs"]
            out.success_count += r["ok"]
            out.failure_count += r["bad"]
            out.total_runtime_ms += r["runtime"]
            if r["last"] and (out.last_finished_at is None or r["last"] > out.last_finished_at):
                out.last_finished_at = r["last"]

    if out.success_count > 0:
        out.average_duration_ms = out.total_runtime_ms / out.success_count
    return out


# ---------- Logs ----------
def load_job_log(conn, job_id: str) -> Optional[str]:
    """
    Return the output of the job's most recent attempt.

    None when the job is unknown or has not run yet; LogNotFoundError when a
    path is recorded but the file has since disappeared.
    """
    job = get_job(conn, job_id)
    if job is None or not job.last_output_path:
        return None
    path = Path(job.last_output_path)
    if not path.is_absolute():
        path = path.resolve()
    if not path.exists():
        raise LogNotFoundError(f"Log file missing at: {path}")
    return path.read_text(encoding="utf-8", errors="replace")
