from datetime import datetime, timedelta, timezone

import pytest

from queuectl.retry import MAX_BACKOFF_SECONDS, backoff_delay_seconds, next_run_at, should_retry

NOW = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "attempts, max_retries, expected",
    [(1, 3, True), (2, 3, True), (3, 3, False), (4, 3, False), (1, 0, False), (1, 1, False)],
)
def test_should_retry(attempts, max_retries, expected):
    assert should_retry(attempts, max_retries) is expected


def test_backoff_grows_exponentially():
    assert next_run_at(NOW, 2, 1) == NOW + timedelta(seconds=2)
    assert next_run_at(NOW, 2, 2) == NOW + timedelta(seconds=4)
    assert next_run_at(NOW, 3, 3) == NOW + timedelta(seconds=27)


@pytest.mark.parametrize("base", [1, 0.5, 0.1])
def test_backoff_has_one_second_floor(base):
    assert backoff_delay_seconds(base, 3) == 1


def test_fractional_base_is_rounded():
    assert backoff_delay_seconds(1.5, 2) == 2  # 2.25
    assert backoff_delay_seconds(1.5, 3) == 3  # 3.375


@pytest.mark.parametrize("base, attempts", [(2, 45), (2, 10_000), (2.5, 10_000), (1000, 3)])
def test_backoff_is_capped(base, attempts):
    assert backoff_delay_seconds(base, attempts) == MAX_BACKOFF_SECONDS
    assert next_run_at(NOW, base, attempts) == NOW + timedelta(seconds=MAX_BACKOFF_SECONDS)


def test_backoff_just_below_cap_is_exact():
    assert backoff_delay_seconds(2, 19) == 2 ** 19
