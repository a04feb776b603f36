"""Shared test fixtures."""

import pytest

from queuectl.config import QueueConfig
from queuectl.db import connect_db, init_db
from queuectl.models import EnqueueRequest
from queuectl.repository import enqueue_job


@pytest.fixture()
def db_file(tmp_path, monkeypatch):
    path = tmp_path / "queue.db"
    monkeypatch.setenv("QUEUECTL_DB", str(path))
    monkeypatch.setenv("QUEUECTL_RUNTIME", str(tmp_path / "runtime"))
    init_db(str(path))
    return str(path)


@pytest.fixture()
def runtime_dir(tmp_path):
    return str(tmp_path / "runtime")


@pytest.fixture()
def conn(db_file):
    connection = connect_db(db_file)
    yield connection
    connection.close()


@pytest.fixture()
def config(tmp_path):
    return QueueConfig(log_directory=str(tmp_path / "logs"), backoff_base=2)


@pytest.fixture()
def add_job(conn):
    def _add(job_id, command="true", **fields):
        payload = {"id": job_id, "command": command, **fields}
        return enqueue_job(conn, EnqueueRequest.from_payload(payload, default_max_retries=3))

    return _add
