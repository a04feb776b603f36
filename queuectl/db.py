import logging
import os
import sqlite3
from contextlib import contextmanager
from typing import Iterator, Optional

from .config import DEFAULT_CONFIG

logger = logging.getLogger(__name__)

DEFAULT_DB_FILE = "queue.db"
BUSY_TIMEOUT_SECONDS = 5.0

JOB_COLUMNS = """
    id TEXT PRIMARY KEY,
    command TEXT NOT NULL,
    state TEXT NOT NULL,
    attempts INTEGER NOT NULL DEFAULT 0,
    max_retries INTEGER NOT NULL,
    priority INTEGER NOT NULL DEFAULT 0,
    run_at TEXT NOT NULL,
    timeout_seconds INTEGER NOT NULL DEFAULT 0,
    last_exit_code INTEGER,
    last_duration_ms INTEGER,
    last_output_path TEXT,
    run_count INTEGER NOT NULL DEFAULT 0,
    success_count INTEGER NOT NULL DEFAULT 0,
    failure_count INTEGER NOT NULL DEFAULT 0,
    total_runtime_ms INTEGER NOT NULL DEFAULT 0,
    last_finished_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
"""

SCHEMA = f"""
CREATE TABLE IF NOT EXISTS jobs ({JOB_COLUMNS});
CREATE TABLE IF NOT EXISTS dead_letter_jobs ({JOB_COLUMNS});
CREATE TABLE IF NOT EXISTS config (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""

CLAIM_INDEX = "CREATE INDEX IF NOT EXISTS idx_jobs_claim ON jobs(state, priority DESC, run_at, created_at)"

# Columns added after the first release; older databases get them on init.
ADDED_COLUMNS = (
    ("priority", "INTEGER NOT NULL DEFAULT 0"),
    ("run_at", "TEXT"),
    ("timeout_seconds", "INTEGER NOT NULL DEFAULT 0"),
    ("last_exit_code", "INTEGER"),
    ("last_duration_ms", "INTEGER"),
    ("last_output_path", "TEXT"),
    ("run_count", "INTEGER NOT NULL DEFAULT 0"),
    ("success_count", "INTEGER NOT NULL DEFAULT 0"),
    ("failure_count", "INTEGER NOT NULL DEFAULT 0"),
    ("total_runtime_ms", "INTEGER NOT NULL DEFAULT 0"),
    ("last_finished_at", "TEXT"),
)


def db_path(path: Optional[str] = None) -> str:
    return path or os.environ.get("QUEUECTL_DB", DEFAULT_DB_FILE)


def connect_db(path: Optional[str] = None, check_same_thread: bool = True) -> sqlite3.Connection:
    # isolation_level=None: statements autocommit unless inside transaction()
    conn = sqlite3.connect(
        db_path(path),
        timeout=BUSY_TIMEOUT_SECONDS,
        isolation_level=None,
        check_same_thread=check_same_thread,
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    return conn


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run a block under BEGIN IMMEDIATE; commit on success, roll back on error."""
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    try:
        conn.execute("COMMIT")
    except sqlite3.Error:
        # some failures already roll back on their own
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise


def _ensure_column(conn: sqlite3.Connection, table: str, column: str, definition: str) -> None:
    existing = {r["name"] for r in conn.execute(f"PRAGMA table_info({table})")}
    if column not in existing:
        logger.info("Adding column %s.%s", table, column)
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")


def init_db(path: Optional[str] = None) -> None:
    conn = connect_db(path)
    try:
        conn.executescript(SCHEMA)
        with transaction(conn):
            for table in ("jobs", "dead_letter_jobs"):
                for column, definition in ADDED_COLUMNS:
                    _ensure_column(conn, table, column, definition)
            conn.execute(CLAIM_INDEX)
            # seed defaults
            for k, v in DEFAULT_CONFIG.items():
                conn.execute(
                    "INSERT OR IGNORE INTO config(key, value) VALUES(?,?)", (k, v)
                )
    finally:
        conn.close()
