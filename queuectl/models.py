import sqlite3
from dataclasses import dataclass, asdict, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from .errors import JobValidationError
from .utils import iso_in_utc_from_seconds_from_now, now_iso, parse_iso, to_iso


class JobState(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"  # transient, between a failed attempt and retry/DLQ
    DEAD = "dead"  # DLQ

    @classmethod
    def parse(cls, value: str) -> "JobState":
        try:
            return cls(value)
        except ValueError:
            allowed = ", ".join(s.value for s in cls)
            raise JobValidationError(f"Unknown job state {value!r} (allowed: {allowed})") from None


PENDING = JobState.PENDING
PROCESSING = JobState.PROCESSING
COMPLETED = JobState.COMPLETED
FAILED = JobState.FAILED
DEAD = JobState.DEAD

STATES = tuple(JobState)


@dataclass
class Job:
    id: str
    command: str
    state: JobState = PENDING
    attempts: int = 0
    max_retries: int = 3
    priority: int = 0
    run_at: str = ""
    timeout_seconds: int = 0
    last_exit_code: Optional[int] = None
    last_duration_ms: Optional[int] = None
    last_output_path: Optional[str] = None
    run_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    total_runtime_ms: int = 0
    last_finished_at: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Job":
        return cls(
            id=row["id"],
            command=row["command"],
            state=JobState.parse(row["state"]),
            attempts=row["attempts"] or 0,
            max_retries=row["max_retries"] or 0,
            priority=row["priority"] or 0,
            run_at=row["run_at"] or "",
            timeout_seconds=row["timeout_seconds"] or 0,
            last_exit_code=row["last_exit_code"],
            last_duration_ms=row["last_duration_ms"],
            last_output_path=row["last_output_path"],
            run_count=row["run_count"] or 0,
            success_count=row["success_count"] or 0,
            failure_count=row["failure_count"] or 0,
            total_runtime_ms=row["total_runtime_ms"] or 0,
            last_finished_at=row["last_finished_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        return data


# ---------- Enqueue payload ----------
_ENQUEUE_KEYS = {
    "id", "command", "attempts", "state", "priority", "run_at",
    "delay_seconds", "timeout_seconds", "max_retries",
}


def _optional_int(payload: Mapping[str, Any], key: str, minimum: Optional[int] = None) -> Optional[int]:
    if key not in payload or payload[key] is None:
        return None
    value = payload[key]
    # bool is an int subclass; "true" is never a retry count
    if isinstance(value, bool) or not isinstance(value, int):
        raise JobValidationError(f"{key} must be an integer, got {value!r}")
    if minimum is not None and value < minimum:
        raise JobValidationError(f"{key} must be >= {minimum}, got {value}")
    return value


def _required_str(payload: Mapping[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value.strip():
        raise JobValidationError(f"{key} is required and must be a non-empty string")
    return value


@dataclass(frozen=True)
class EnqueueRequest:
    """A validated job-creation request."""

    id: str
    command: str
    max_retries: int
    attempts: int = 0
    state: JobState = PENDING
    priority: int = 0
    run_at: str = field(default_factory=now_iso)
    timeout_seconds: int = 0

    @classmethod
    def from_payload(cls, payload: Any, default_max_retries: int) -> "EnqueueRequest":
        """
        Validate a loosely typed payload (usually decoded JSON).

        `run_at` and `delay_seconds` are mutually exclusive; with neither the
        job is due immediately. `max_retries` falls back to the configured
        default when absent.
        """
        if not isinstance(payload, Mapping):
            raise JobValidationError("Job payload must be a JSON object")
        unknown = set(payload) - _ENQUEUE_KEYS
        if unknown:
            raise JobValidationError(f"Unknown job fields: {', '.join(sorted(unknown))}")

        job_id = _required_str(payload, "id")
        command = _required_str(payload, "command")

        state = PENDING
        if payload.get("state") is not None:
            if not isinstance(payload["state"], str):
                raise JobValidationError("state must be a string")
            state = JobState.parse(payload["state"])
            if state is DEAD:
                raise JobValidationError("Jobs cannot be enqueued as dead; use the DLQ instead")

        if payload.get("run_at") is not None and payload.get("delay_seconds") is not None:
            raise JobValidationError("Use either run_at or delay_seconds, not both")

        delay = _optional_int(payload, "delay_seconds", minimum=0)
        if delay is not None:
            run_at = iso_in_utc_from_seconds_from_now(delay)
        elif payload.get("run_at") is not None:
            raw = payload["run_at"]
            if not isinstance(raw, str):
                raise JobValidationError("run_at must be an ISO-8601 string")
            try:
                run_at = to_iso(parse_iso(raw))
            except ValueError as e:
                raise JobValidationError(f"Invalid run_at: {raw!r} ({e})") from None
        else:
            run_at = now_iso()

        max_retries = _optional_int(payload, "max_retries", minimum=0)
        priority = _optional_int(payload, "priority")
        attempts = _optional_int(payload, "attempts", minimum=0)
        timeout = _optional_int(payload, "timeout_seconds", minimum=0)
        return cls(
            id=job_id,
            command=command,
            max_retries=default_max_retries if max_retries is None else max_retries,
            attempts=attempts or 0,
            state=state,
            priority=priority or 0,
            run_at=run_at,
            timeout_seconds=timeout or 0,
        )

    def to_job(self) -> Job:
        return Job(
            id=self.id,
            command=self.command,
            state=self.state,
            attempts=self.attempts,
            max_retries=self.max_retries,
            priority=self.priority,
            run_at=self.run_at,
            timeout_seconds=self.timeout_seconds,
        )


# ---------- Status ----------
@dataclass
class QueueCounts:
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    dead: int = 0
    active_workers: int = 0
    run_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    total_runtime_ms: int = 0
    average_duration_ms: Optional[float] = None
    last_finished_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        if self.average_duration_ms is None:
            del data["average_duration_ms"]
        return data
