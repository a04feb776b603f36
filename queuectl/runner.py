import logging
import os
import signal
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path

from .utils import epoch_ms, sanitize_id

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124  # Common exit code for timeout
SPAWN_FAILURE_EXIT_CODE = 127
KILL_GRACE_SECONDS = 1.0

_POSIX = os.name == "posix"


@dataclass(frozen=True)
class ExecutionResult:
    exit_code: int
    duration_ms: int
    log_path: str
    timed_out: bool = False

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0


def log_file_path(log_directory: str, job_id: str, attempt: int) -> Path:
    """Unique per attempt: `<sanitized-id>-attempt-<n>-<epoch-ms>.log`."""
    return (Path(log_directory) / f"{sanitize_id(job_id)}-attempt-{attempt}-{epoch_ms()}.log").resolve()


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _kill(proc: subprocess.Popen) -> None:
    # the shell runs in its own session, so this takes its children down too
    try:
        if _POSIX:
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
    except ProcessLookupError:
        pass


def run_command(job_id: str, command: str, attempt: int, timeout_seconds: int,
                log_directory: str) -> ExecutionResult:
    """
    Run `command` through the shell with stdout and stderr captured in a log file.

    timeout_seconds <= 0 waits forever. On timeout the process group is killed
    and exit code 124 is reported; if the shell cannot be started at all the
    result carries 127, as it does when the log file itself cannot be created.
    This never raises for job-level failures.
    """
    log_path = log_file_path(log_directory, job_id, attempt)
    started = time.monotonic()
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        log = open(log_path, "ab")
    except OSError as e:
        logger.error("Could not open log file %s for %s: %s", log_path, job_id, e)
        return ExecutionResult(SPAWN_FAILURE_EXIT_CODE, _elapsed_ms(started), str(log_path))

    with log:
        try:
            proc = subprocess.Popen(
                command,
                shell=True,
                stdin=subprocess.DEVNULL,
                stdout=log,
                stderr=subprocess.STDOUT,
                start_new_session=_POSIX,
            )
        except OSError as e:
            logger.error("Could not start command for %s: %s", job_id, e)
            log.write(f"[queuectl] failed to start command: {e}\n".encode())
            return ExecutionResult(SPAWN_FAILURE_EXIT_CODE, _elapsed_ms(started), str(log_path))

        try:
            exit_code = proc.wait(timeout=timeout_seconds if timeout_seconds > 0 else None)
        except subprocess.TimeoutExpired:
            _kill(proc)
            try:
                proc.wait(timeout=KILL_GRACE_SECONDS)
            except subprocess.TimeoutExpired:
                logger.warning("Process %s for job %s did not exit after kill", proc.pid, job_id)
            duration = _elapsed_ms(started)
            log.write(f"\n[queuectl] timed out after {timeout_seconds}s\n".encode())
            return ExecutionResult(TIMEOUT_EXIT_CODE, duration, str(log_path), timed_out=True)

    return ExecutionResult(exit_code, _elapsed_ms(started), str(log_path))
