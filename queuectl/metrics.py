from typing import Optional

from .models import QueueCounts
from .repository import counts
from .worker import active_workers


def status_snapshot(conn, runtime_dir: Optional[str] = None) -> QueueCounts:
    """Job counts and execution totals plus the number of live workers."""
    snapshot = counts(conn)
    snapshot.active_workers = active_workers(runtime_dir)
    return snapshot
