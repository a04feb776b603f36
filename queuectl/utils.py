from datetime import datetime, timezone, timedelta
from typing import Optional
import re

ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

_UNSAFE_ID_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    """Fixed-width UTC timestamp like '2025-11-06T09:12:34.123456Z'.

    Every stored timestamp goes through here so that string comparison in SQL
    matches chronological order.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime(ISO_FORMAT)


def now_iso() -> str:
    return to_iso(utc_now())


def iso_in_utc_from_seconds_from_now(seconds: float, now: Optional[datetime] = None) -> str:
    """Return UTC ISO time `seconds` after `now` (default: current time)."""
    return to_iso((now or utc_now()) + timedelta(seconds=seconds))


def parse_iso(value: str) -> datetime:
    """
    Parse an ISO-8601 timestamp. A trailing 'Z' means UTC, an explicit offset
    is honoured, and a naive value is taken as UTC. Raises ValueError.
    """
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def sanitize_id(job_id: str) -> str:
    """Make a job id safe for use inside a file name."""
    cleaned = _UNSAFE_ID_CHARS.sub("_", job_id)
    return cleaned or "job"


def epoch_ms() -> int:
    return int(utc_now().timestamp() * 1000)
