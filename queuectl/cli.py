import json
import logging
import subprocess
import sys
from dataclasses import asdict

import click

from .dashboard import run_dashboard, stop_dashboard
from .db import init_db, connect_db
from .errors import LogNotFoundError, StorageError
from .metrics import status_snapshot
from .models import STATES, EnqueueRequest
from .repository import (
    enqueue_job, list_jobs, dlq_list, retry_from_dlq, load_job_log,
    load_config, set_config
)
from .worker import Worker, request_stop, spawn_workers

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

METRIC_KEYS = (
    "active_workers", "run_count", "success_count", "failure_count",
    "total_runtime_ms", "average_duration_ms", "last_finished_at",
)


def configure_logging(verbose: bool = False) -> None:
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format=LOG_FORMAT)


def _fail(message: str) -> None:
    click.secho(f"Error: {message}", fg="red", err=True)
    raise SystemExit(1)


def _print_json(value) -> None:
    click.echo(json.dumps(value, indent=2))


@click.group(help="queuectl: background job queue CLI")
@click.option("-v", "--verbose", is_flag=True, help="Debug logging")
def cli(verbose):
    configure_logging(verbose)
    # Ensure DB/schema exist before any command runs
    init_db()


# ---------- Enqueue ----------
@cli.command("enqueue", help='Add a job, e.g. \'{"id":"job1","command":"echo hi"}\'')
@click.argument("job_json")
def enqueue_cmd(job_json):
    conn = connect_db()
    try:
        try:
            payload = json.loads(job_json)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON: {e}") from None
        request = EnqueueRequest.from_payload(payload, load_config(conn).max_retries)
        job = enqueue_job(conn, request)
        click.secho(
            f"Enqueued {job.id} -> `{job.command}` (priority={job.priority}, run_at={job.run_at})",
            fg="green"
        )
    except (ValueError, RuntimeError) as e:
        _fail(str(e))
    finally:
        conn.close()


# ---------- Workers ----------
@cli.group("worker", help="Manage workers")
def worker_group():
    pass


@worker_group.command("start", help="Start N background worker processes")
@click.option("--count", type=click.IntRange(min=1), default=1, show_default=True,
              help="Number of worker processes")
def worker_start(count):
    pids = spawn_workers(count)
    click.secho(f"Started {count} worker(s): {', '.join(map(str, pids))}", fg="cyan")


@worker_group.command("run", help="Run one worker in the foreground")
def worker_run():
    conn = connect_db()
    try:
        worker = Worker(conn, load_config(conn))
        worker.install_signal_handlers()
        summary = worker.run()
    except StorageError as e:
        _fail(f"worker stopped on storage error: {e}")
    finally:
        conn.close()
    click.secho(f"Worker stopped after {summary.processed} job(s).", fg="yellow")


@worker_group.command("stop", help="Ask all workers to exit after their current job")
def worker_stop():
    request_stop()
    click.secho("Signalled workers to stop. They will exit after the current job.", fg="yellow")


# ---------- Jobs ----------
@cli.command("list", help="List jobs (state 'dead' lists the DLQ)")
@click.option("--state", type=click.Choice([s.value for s in STATES]), default=None)
@click.option("--json", "as_json", is_flag=True, help="Print full job records as JSON")
def list_cmd(state, as_json):
    conn = connect_db()
    try:
        rows = list_jobs(conn, state=state)
    finally:
        conn.close()

    if as_json:
        _print_json([r.to_dict() for r in rows])
        return
    if not rows:
        click.echo("No jobs.")
        return

    for r in rows:
        click.echo(
            f"{r.id:>20} | {r.state.value:<10} | attempts={r.attempts}/{r.max_retries} "
            f"| priority={r.priority} | run_at={r.run_at} | exit={r.last_exit_code} | cmd={r.command}"
        )


@cli.command("status", help="Job counts by state, totals and active workers")
def status_cmd():
    conn = connect_db()
    try:
        _print_json(status_snapshot(conn).to_dict())
    finally:
        conn.close()


@cli.command("metrics", help="Aggregate execution metrics")
def metrics_cmd():
    conn = connect_db()
    try:
        snapshot = status_snapshot(conn).to_dict()
    finally:
        conn.close()
    _print_json({k: snapshot[k] for k in METRIC_KEYS if k in snapshot})


@cli.command("logs", help="Show the latest captured output of a job")
@click.argument("job_id")
def logs_cmd(job_id):
    conn = connect_db()
    try:
        text = load_job_log(conn, job_id)
    except LogNotFoundError as e:
        _fail(str(e))
    finally:
        conn.close()
    if text is None:
        _fail(f"No log available for job {job_id}")
    click.echo(text, nl=False)


# ---------- DLQ ----------
@cli.group("dlq", help="Dead Letter Queue")
def dlq_group():
    pass


@dlq_group.command("list")
def dlq_list_cmd():
    conn = connect_db()
    try:
        rows = dlq_list(conn)
    finally:
        conn.close()

    if not rows:
        click.echo("DLQ is empty.")
        return

    for r in rows:
        click.echo(f"{r.id} | attempts={r.attempts} | exit={r.last_exit_code} | cmd={r.command}")


@dlq_group.command("retry")
@click.argument("job_id")
def dlq_retry_cmd(job_id):
    conn = connect_db()
    try:
        if not retry_from_dlq(conn, job_id):
            _fail(f"Job {job_id} not found in DLQ.")
    finally:
        conn.close()
    click.secho(f"Re-queued DLQ job {job_id}.", fg="green")


# ---------- Config ----------
@cli.group("config", help="Configuration")
def config_group():
    pass


@config_group.command("get")
def config_get():
    conn = connect_db()
    try:
        _print_json(asdict(load_config(conn)))
    finally:
        conn.close()


@config_group.command("set")
@click.argument("key")
@click.argument("value")
def config_set_cmd(key, value):
    conn = connect_db()
    try:
        set_config(conn, key, value)
        click.secho(f"Config updated: {key}={value}", fg="green")
    except ValueError as e:
        _fail(str(e))
    finally:
        conn.close()


# ---------- Dashboard ----------
@cli.group("dashboard", help="Read-only web dashboard")
def dashboard_group():
    pass


def _dashboard_port(port):
    if port:
        return port
    conn = connect_db()
    try:
        return load_config(conn).dashboard_port
    finally:
        conn.close()


@dashboard_group.command("start", help="Start the dashboard in the background")
@click.option("--port", type=int, default=None, help="Port (default: dashboard_port config)")
def dashboard_start(port):
    port = _dashboard_port(port)
    subprocess.Popen(
        [sys.executable, "-m", "queuectl", "dashboard", "run", "--port", str(port)],
        start_new_session=True,
    )
    click.secho(f"Dashboard available at http://localhost:{port}", fg="cyan")


@dashboard_group.command("run", help="Serve the dashboard in the foreground")
@click.option("--port", type=int, default=None)
@click.option("--host", default="127.0.0.1", show_default=True)
def dashboard_run(port, host):
    run_dashboard(_dashboard_port(port), host=host)


@dashboard_group.command("stop")
def dashboard_stop():
    if stop_dashboard():
        click.secho("Dashboard stopped.", fg="yellow")
    else:
        click.echo("Dashboard is not running.")


def main():
    cli()
