import logging
import os
import signal
import subprocess
import sys
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

import psutil

from .config import QueueConfig
from .errors import StorageError
from .models import Job
from .repository import (
    claim_next_pending, mark_failure, mark_success, move_to_dlq, schedule_retry,
)
from .retry import next_run_at, should_retry
from .runner import run_command
from .utils import epoch_ms, to_iso, utc_now

logger = logging.getLogger(__name__)

DEFAULT_RUNTIME_DIR = "queuectl_runtime"
IDLE_SLEEP_SECONDS = 0.5
STOP_FILE_NAME = "STOP"


def resolve_runtime_dir(path: Optional[str] = None) -> Path:
    return Path(path or os.environ.get("QUEUECTL_RUNTIME", DEFAULT_RUNTIME_DIR))


def stop_file(runtime_dir: Optional[str] = None) -> Path:
    return resolve_runtime_dir(runtime_dir) / STOP_FILE_NAME


@dataclass
class WorkerRunSummary:
    """Counters for one worker lifetime."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    dead_lettered: int = 0
    timeouts: int = 0
    idle_polls: int = 0


class Worker:
    """
    Claims jobs from the store one at a time and runs them until told to stop.

    Stopping is cooperative: a STOP file in the runtime directory or
    SIGINT/SIGTERM is only noticed between jobs, so a running command always
    finishes or times out on its own. A process that dies mid-job leaves the
    row in `processing`; nothing requeues it.
    """

    def __init__(self, conn, config: QueueConfig, runtime_dir: Optional[str] = None,
                 idle_sleep: float = IDLE_SLEEP_SECONDS):
        self.conn = conn
        self.config = config
        self.runtime_dir = resolve_runtime_dir(runtime_dir)
        self.idle_sleep = idle_sleep
        self.pid = os.getpid()
        self.name = f"worker-{self.pid}"
        self.heartbeat_path = self.runtime_dir / f"worker-{self.pid}.pid"
        self.summary = WorkerRunSummary()
        self._stop = threading.Event()

    # ---------- Stop / liveness ----------
    def stop(self) -> None:
        self._stop.set()

    def should_stop(self) -> bool:
        if (self.runtime_dir / STOP_FILE_NAME).exists():
            self._stop.set()
        return self._stop.is_set()

    def heartbeat(self) -> None:
        self.heartbeat_path.write_text(str(epoch_ms()))

    def install_signal_handlers(self) -> None:
        def _handler(signum, frame):
            logger.info("[%s] Received signal %s, stopping after the current job", self.name, signum)
            self._stop.set()

        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                signal.signal(sig, _handler)
            except ValueError:
                # not the main thread; rely on the stop file
                logger.debug("[%s] Cannot install handler for %s", self.name, sig)

    # ---------- Loop ----------
    def run(self, max_jobs: Optional[int] = None) -> WorkerRunSummary:
        """Poll until stopped (or `max_jobs` jobs are handled). StorageError propagates."""
        self.runtime_dir.mkdir(parents=True, exist_ok=True)
        self.heartbeat()
        logger.info("[%s] Worker started (backoff_base=%s)", self.name, self.config.backoff_base)
        try:
            while not self.should_stop():
                if not self.run_once():
                    self.summary.idle_polls += 1
                    self.heartbeat()
                    time.sleep(self.idle_sleep)
                    continue
                self.heartbeat()
                if max_jobs is not None and self.summary.processed >= max_jobs:
                    break
        except StorageError:
            logger.exception("[%s] Fatal storage error, worker exiting", self.name)
            raise
        finally:
            self.heartbeat_path.unlink(missing_ok=True)
            logger.info("[%s] Worker stopped.", self.name)
        return self.summary

    def run_once(self) -> bool:
        """Claim and handle at most one job. Returns False when nothing was claimable."""
        job = claim_next_pending(self.conn)
        if job is None:
            return False
        self.handle(job)
        return True

    def handle(self, job: Job) -> None:
        attempt = job.attempts + 1
        timeout = job.timeout_seconds if job.timeout_seconds > 0 else self.config.default_timeout_seconds
        logger.info("[%s] Executing job %s (attempt %d/%d): %s",
                    self.name, job.id, attempt, job.max_retries, job.command)

        result = run_command(job.id, job.command, attempt, timeout, self.config.log_directory)
        self.summary.processed += 1

        if result.succeeded:
            mark_success(self.conn, job.id, attempt, result.exit_code, result.duration_ms, result.log_path)
            self.summary.succeeded += 1
            logger.info("[%s] Job %s completed in %d ms.", self.name, job.id, result.duration_ms)
            return

        self.summary.failed += 1
        if result.timed_out:
            self.summary.timeouts += 1
        will_retry = should_retry(attempt, job.max_retries)
        mark_failure(self.conn, job.id, attempt, result.exit_code, result.duration_ms,
                     result.log_path, will_retry)
        if will_retry:
            when = next_run_at(utc_now(), self.config.backoff_base, attempt)
            schedule_retry(self.conn, job.id, when)
            self.summary.retried += 1
            logger.warning("[%s] Job %s failed with code %d, retrying at %s.",
                           self.name, job.id, result.exit_code, to_iso(when))
        else:
            move_to_dlq(self.conn, job.id)
            self.summary.dead_lettered += 1
            logger.warning("[%s] Job %s failed with code %d after %d attempt(s), moved to DLQ.",
                           self.name, job.id, result.exit_code, attempt)


# ---------- Process management ----------
def _pid_alive(pid: int) -> bool:
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        # exists but belongs to another user
        return True


def active_workers(runtime_dir: Optional[str] = None) -> int:
    """Count heartbeat markers whose process is alive, pruning the rest."""
    directory = resolve_runtime_dir(runtime_dir)
    if not directory.exists():
        return 0
    alive = 0
    for marker in directory.glob("worker-*.pid"):
        raw_pid = marker.stem[len("worker-"):]
        if not raw_pid.isdigit():
            continue
        if _pid_alive(int(raw_pid)):
            alive += 1
        else:
            logger.debug("Pruning stale heartbeat %s", marker.name)
            marker.unlink(missing_ok=True)
    return alive


def request_stop(runtime_dir: Optional[str] = None) -> Path:
    path = stop_file(runtime_dir)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.touch()
    return path


def spawn_workers(count: int, runtime_dir: Optional[str] = None) -> List[int]:
    """Start `count` detached worker processes and return their pids."""
    stop_file(runtime_dir).unlink(missing_ok=True)
    env = dict(os.environ, QUEUECTL_RUNTIME=str(resolve_runtime_dir(runtime_dir)))
    pids = []
    for _ in range(count):
        proc = subprocess.Popen(
            [sys.executable, "-m", "queuectl", "worker", "run"],
            env=env,
            start_new_session=True,
        )
        pids.append(proc.pid)
        logger.info("Started worker process %s", proc.pid)
    return pids
