"""Retry decisions for failed attempts. Pure functions, no I/O."""

import math
from datetime import datetime, timedelta

# a week; also keeps huge attempt counts from overflowing datetime arithmetic
MAX_BACKOFF_SECONDS = 7 * 24 * 3600


def should_retry(attempts_after_failure: int, max_retries: int) -> bool:
    return attempts_after_failure < max_retries


def backoff_delay_seconds(backoff_base: float, attempts_after_failure: int) -> int:
    # checked in log space so base ** attempts is never computed when it would exceed the cap
    if backoff_base > 1 and attempts_after_failure * math.log(backoff_base) >= math.log(MAX_BACKOFF_SECONDS):
        return MAX_BACKOFF_SECONDS
    # floor of 1s so a base <= 1 cannot spin on zero-delay retries
    return min(MAX_BACKOFF_SECONDS, max(1, round(backoff_base ** attempts_after_failure)))


def next_run_at(now: datetime, backoff_base: float, attempts_after_failure: int) -> datetime:
    return now + timedelta(seconds=backoff_delay_seconds(backoff_base, attempts_after_failure))
