import sqlite3
from datetime import timedelta

import pytest

from queuectl import repository
from queuectl.errors import JobConflictError, LogNotFoundError, StorageError, StoreBusyError
from queuectl.models import COMPLETED, DEAD, FAILED, PENDING, PROCESSING, STATES
from queuectl.repository import (
    claim_next_pending, counts, dlq_list, get_job, list_jobs, load_job_log,
    mark_failure, mark_success, move_to_dlq, retry_from_dlq, schedule_retry,
)
from queuectl.utils import parse_iso, utc_now


def test_enqueue_same_id_overwrites_without_duplicate(conn, add_job):
    first = add_job("job1", "echo one", priority=1)
    second = add_job("job1", "echo two", priority=7)

    rows = list_jobs(conn)
    assert [r.id for r in rows] == ["job1"]
    assert rows[0].command == "echo two"
    assert rows[0].priority == 7
    assert second.created_at == first.created_at
    assert second.updated_at >= first.updated_at


def test_claim_order_follows_priority(conn, add_job):
    for p in (1, 5, 3):
        add_job(f"p{p}", priority=p)

    claimed = [claim_next_pending(conn).id for _ in range(3)]

    assert claimed == ["p5", "p3", "p1"]
    assert claim_next_pending(conn) is None


def test_claim_equal_priority_uses_arrival_order(conn, add_job):
    add_job("first", run_at="2020-01-01T00:00:00Z")
    add_job("second", run_at="2020-01-01T00:00:00Z")

    assert claim_next_pending(conn).id == "first"
    assert claim_next_pending(conn).id == "second"


def test_claim_respects_run_at(conn, add_job):
    add_job("later", delay_seconds=60)

    assert claim_next_pending(conn) is None
    job = claim_next_pending(conn, now=utc_now() + timedelta(minutes=2))
    assert job.id == "later"


def test_claimed_job_is_processing_and_not_reclaimable(conn, add_job):
    add_job("only")

    job = claim_next_pending(conn)

    assert job.state is PROCESSING
    assert get_job(conn, "only").state is PROCESSING
    assert claim_next_pending(conn) is None


def test_claim_retries_after_lost_race(conn, add_job, monkeypatch):
    add_job("job1")
    monkeypatch.setattr(repository, "LOST_RACE_SLEEP_SECONDS", 0)
    real_try_claim = repository._try_claim
    calls = []

    def flaky(c, now):
        calls.append(now)
        if len(calls) == 1:
            return "lost", "someone-else"
        return real_try_claim(c, now)

    monkeypatch.setattr(repository, "_try_claim", flaky)

    assert claim_next_pending(conn).id == "job1"
    assert len(calls) == 2


def test_claim_gives_up_after_lost_races(conn, monkeypatch):
    monkeypatch.setattr(repository, "LOST_RACE_SLEEP_SECONDS", 0)
    monkeypatch.setattr(repository, "_try_claim", lambda c, now: ("lost", "x"))

    assert claim_next_pending(conn) is None


def test_claim_raises_when_store_stays_locked(conn, monkeypatch):
    monkeypatch.setattr(repository, "BUSY_SLEEP_SECONDS", 0)
    calls = []

    def locked(c, now):
        calls.append(now)
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(repository, "_try_claim", locked)

    with pytest.raises(StoreBusyError):
        claim_next_pending(conn)
    assert len(calls) == repository.CLAIM_MAX_ATTEMPTS


def test_claim_surfaces_other_storage_errors(conn, monkeypatch):
    def broken(c, now):
        raise sqlite3.OperationalError("no such table: jobs")

    monkeypatch.setattr(repository, "_try_claim", broken)

    with pytest.raises(StorageError) as exc:
        claim_next_pending(conn)
    assert not isinstance(exc.value, StoreBusyError)


def test_mark_success_records_history(conn, add_job):
    add_job("ok")
    claim_next_pending(conn)

    mark_success(conn, "ok", 1, 0, 120, "/tmp/ok.log")

    job = get_job(conn, "ok")
    assert job.state is COMPLETED
    assert (job.attempts, job.last_exit_code, job.last_duration_ms) == (1, 0, 120)
    assert (job.run_count, job.success_count, job.failure_count) == (1, 1, 0)
    assert job.total_runtime_ms == 120
    assert job.last_output_path == "/tmp/ok.log"
    assert job.last_finished_at is not None


def test_failure_is_not_claimable_until_retry_scheduled(conn, add_job):
    add_job("bad")
    claim_next_pending(conn)

    mark_failure(conn, "bad", 1, 2, 50, None, will_retry=True)

    job = get_job(conn, "bad")
    assert job.state is FAILED
    assert (job.run_count, job.failure_count, job.total_runtime_ms) == (1, 1, 50)
    assert claim_next_pending(conn) is None

    assert schedule_retry(conn, "bad", utc_now() - timedelta(seconds=1))
    assert get_job(conn, "bad").state is PENDING
    assert claim_next_pending(conn).id == "bad"


def test_dlq_round_trip_keeps_history(conn, add_job):
    add_job("doomed", max_retries=1)
    claim_next_pending(conn)
    mark_failure(conn, "doomed", 1, 1, 30, None, will_retry=False)

    assert move_to_dlq(conn, "doomed")

    assert [j.id for j in list_jobs(conn)] == []
    dead = dlq_list(conn)
    assert [(j.id, j.state) for j in dead] == [("doomed", DEAD)]
    before = dead[0]

    assert retry_from_dlq(conn, "doomed")

    assert dlq_list(conn) == []
    job = get_job(conn, "doomed")
    assert job.state is PENDING
    assert job.attempts == 0
    assert (job.run_count, job.success_count, job.failure_count) == (
        before.run_count, before.success_count, before.failure_count
    )
    assert job.total_runtime_ms == before.total_runtime_ms
    assert job.created_at == before.created_at
    assert parse_iso(job.run_at) <= utc_now()


def test_dlq_operations_on_unknown_ids(conn):
    assert move_to_dlq(conn, "ghost") is False
    assert retry_from_dlq(conn, "ghost") is False


def test_enqueue_rejects_id_held_in_dlq(conn, add_job):
    add_job("dup")
    move_to_dlq(conn, "dup")

    with pytest.raises(JobConflictError):
        add_job("dup")
    assert list_jobs(conn) == []


def test_list_jobs_dead_routes_to_dlq(conn, add_job):
    add_job("alive")
    add_job("gone")
    move_to_dlq(conn, "gone")

    assert [j.id for j in list_jobs(conn, state="dead")] == ["gone"]
    assert [j.id for j in list_jobs(conn, state=PENDING)] == ["alive"]
    assert get_job(conn, "gone").state is DEAD


def test_counts_match_job_states(conn, add_job):
    for name in ("a", "b", "c", "d", "e"):
        add_job(name)

    claim_next_pending(conn)  # a
    mark_success(conn, "a", 1, 0, 100, None)
    claim_next_pending(conn)  # b
    mark_success(conn, "b", 1, 0, 301, None)
    claim_next_pending(conn)  # c
    mark_failure(conn, "c", 1, 1, 40, None, will_retry=False)
    move_to_dlq(conn, "c")
    claim_next_pending(conn)  # d stays processing

    totals = counts(conn)

    for state in STATES:
        assert getattr(totals, state.value) == len(list_jobs(conn, state=state))
    assert (totals.pending, totals.processing, totals.completed, totals.dead) == (1, 1, 2, 1)
    assert totals.run_count == 3
    assert totals.success_count == 2
    assert totals.failure_count == 1
    assert totals.total_runtime_ms == 441
    assert totals.average_duration_ms == pytest.approx(441 / 2)
    assert totals.last_finished_at is not None


def test_counts_omit_average_without_successes(conn, add_job):
    add_job("a")

    data = counts(conn).to_dict()

    assert "average_duration_ms" not in data
    assert data["pending"] == 1


def test_load_job_log(conn, add_job, tmp_path):
    log = tmp_path / "a.log"
    log.write_text("hello\nworld\n")
    add_job("a")
    add_job("b")
    claim_next_pending(conn)
    mark_success(conn, "a", 1, 0, 5, str(log))
    claim_next_pending(conn)
    mark_success(conn, "b", 1, 0, 5, str(tmp_path / "gone.log"))

    assert load_job_log(conn, "a") == "hello\nworld\n"
    assert load_job_log(conn, "missing") is None
    with pytest.raises(LogNotFoundError):
        load_job_log(conn, "b")


def test_load_job_log_reads_dead_letter_rows(conn, add_job, tmp_path):
    log = tmp_path / "dead.log"
    log.write_text("boom")
    add_job("x")
    claim_next_pending(conn)
    mark_failure(conn, "x", 1, 1, 5, str(log), will_retry=False)
    move_to_dlq(conn, "x")

    assert load_job_log(conn, "x") == "boom"
