"""Read-only HTTP dashboard over the job store."""

import logging
import os
from pathlib import Path
from typing import Iterator, Optional

import psutil
import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.responses import HTMLResponse, PlainTextResponse

from .db import connect_db, db_path as resolve_db_path, init_db
from .errors import JobValidationError, LogNotFoundError
from .metrics import status_snapshot
from .repository import dlq_list, list_jobs, load_job_log
from .worker import resolve_runtime_dir

logger = logging.getLogger(__name__)

PID_FILE_NAME = "dashboard.pid"

DASHBOARD_HTML = """<!doctype html>
<html lang="en">
<head>
  <meta charset="utf-8"/>
  <title>queuectl Dashboard</title>
  <style>
    body { font-family: Arial, sans-serif; margin: 20px; }
    pre { background: #f5f5f5; padding: 12px; border-radius: 4px; overflow-x: auto; }
    section { margin-bottom: 24px; }
  </style>
</head>
<body>
  <h1>queuectl Dashboard</h1>
  <section><h2>Status</h2><pre id="status">Loading...</pre></section>
  <section><h2>Jobs</h2><pre id="jobs">Loading...</pre></section>
  <section><h2>Dead Letter Queue</h2><pre id="dlq">Loading...</pre></section>
  <script>
    async function refresh() {
      const [status, jobs, dlq] = await Promise.all([
        fetch('/api/status').then(r => r.json()),
        fetch('/api/jobs').then(r => r.json()),
        fetch('/api/dlq').then(r => r.json())
      ]);
      document.getElementById('status').textContent = JSON.stringify(status, null, 2);
      document.getElementById('jobs').textContent = JSON.stringify(jobs, null, 2);
      document.getElementById('dlq').textContent = JSON.stringify(dlq, null, 2);
    }
    refresh();
    setInterval(refresh, 3000);
  </script>
</body>
</html>
"""


def pid_file(runtime_dir: Optional[str] = None) -> Path:
    return resolve_runtime_dir(runtime_dir) / PID_FILE_NAME


def create_dashboard_app(db_path: Optional[str] = None, runtime_dir: Optional[str] = None) -> FastAPI:
    """
    Build the dashboard application.

    Every request opens its own connection and only reads, so request
    threads never take the write lock workers need for claims.
    """
    path = resolve_db_path(db_path)
    init_db(path)
    app = FastAPI(title="queuectl Dashboard")

    def get_conn() -> Iterator:
        conn = connect_db(path, check_same_thread=False)
        try:
            yield conn
        finally:
            conn.close()

    @app.get("/", response_class=HTMLResponse, include_in_schema=False)
    def index():
        return DASHBOARD_HTML

    @app.get("/api/status")
    def status(conn=Depends(get_conn)):
        return status_snapshot(conn, runtime_dir).to_dict()

    @app.get("/api/jobs")
    def jobs(state: Optional[str] = None, conn=Depends(get_conn)):
        try:
            rows = list_jobs(conn, state=state)
        except JobValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return [j.to_dict() for j in rows]

    @app.get("/api/dlq")
    def dlq(conn=Depends(get_conn)):
        return [j.to_dict() for j in dlq_list(conn)]

    @app.get("/api/logs", response_class=PlainTextResponse)
    def logs(job_id: Optional[str] = Query(None, alias="id"), conn=Depends(get_conn)):
        if not job_id or not job_id.strip():
            raise HTTPException(status_code=400, detail="Missing id parameter")
        try:
            text = load_job_log(conn, job_id)
        except LogNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        if text is None:
            raise HTTPException(status_code=404, detail=f"No log available for job {job_id}")
        return text

    return app


def run_dashboard(port: int, host: str = "127.0.0.1", runtime_dir: Optional[str] = None) -> None:
    """Serve the dashboard in this process; the pid marker lives as long as the server."""
    marker = pid_file(runtime_dir)
    marker.parent.mkdir(parents=True, exist_ok=True)
    app = create_dashboard_app(runtime_dir=runtime_dir)
    marker.write_text(str(os.getpid()))
    logger.info("Dashboard running at http://%s:%d", host, port)
    try:
        uvicorn.run(app, host=host, port=port, log_level="info")
    finally:
        marker.unlink(missing_ok=True)


def stop_dashboard(runtime_dir: Optional[str] = None) -> bool:
    """Terminate the dashboard recorded in the pid marker. False if none was running."""
    marker = pid_file(runtime_dir)
    if not marker.exists():
        return False
    try:
        pid = int(marker.read_text().strip())
        proc = psutil.Process(pid)
        proc.terminate()
        try:
            proc.wait(timeout=2)
        except psutil.TimeoutExpired:
            proc.kill()
    except (ValueError, psutil.NoSuchProcess):
        logger.info("Dashboard marker %s was stale", marker)
        return False
    finally:
        marker.unlink(missing_ok=True)
    return True
