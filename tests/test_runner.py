import subprocess
from pathlib import Path

from queuectl import runner
from queuectl.runner import SPAWN_FAILURE_EXIT_CODE, TIMEOUT_EXIT_CODE, run_command


def test_success_captures_combined_output(tmp_path):
    result = run_command("job1", "echo out; echo err 1>&2", 1, 0, str(tmp_path))

    assert result.exit_code == 0
    assert result.succeeded
    assert not result.timed_out
    assert result.duration_ms >= 0
    text = Path(result.log_path).read_text()
    assert "out" in text and "err" in text


def test_nonzero_exit_is_reported(tmp_path):
    result = run_command("job1", "exit 3", 1, 0, str(tmp_path))

    assert result.exit_code == 3
    assert not result.succeeded


def test_timeout_kills_command(tmp_path):
    result = run_command("slow", "sleep 10", 1, 1, str(tmp_path))

    assert result.exit_code == TIMEOUT_EXIT_CODE
    assert result.timed_out
    assert result.duration_ms < 8000
    log = Path(result.log_path)
    assert log.exists()
    assert log.stat().st_size >= 0


def test_unknown_command_fails_with_127(tmp_path):
    result = run_command("job1", "definitely-not-a-real-command-xyz", 1, 0, str(tmp_path))

    assert result.exit_code == 127


def test_spawn_failure_reports_127(tmp_path, monkeypatch):
    def refuse(*args, **kwargs):
        raise OSError("no shell")

    monkeypatch.setattr(subprocess, "Popen", refuse)

    result = run_command("job1", "echo hi", 1, 0, str(tmp_path))

    assert result.exit_code == SPAWN_FAILURE_EXIT_CODE
    assert "no shell" in Path(result.log_path).read_text()


def test_log_names_are_unique_and_sanitized(tmp_path, monkeypatch):
    stamps = iter([1000, 1001])
    monkeypatch.setattr(runner, "epoch_ms", lambda: next(stamps))

    first = run_command("a/b c", "true", 1, 0, str(tmp_path / "logs"))
    second = run_command("a/b c", "true", 1, 0, str(tmp_path / "logs"))

    assert Path(first.log_path).name == "a_b_c-attempt-1-1000.log"
    assert Path(second.log_path).name == "a_b_c-attempt-1-1001.log"
    assert Path(first.log_path).parent == (tmp_path / "logs").resolve()


def test_unusable_log_directory_reports_127(tmp_path):
    not_a_dir = tmp_path / "logs"
    not_a_dir.write_text("occupied")

    result = run_command("job1", "echo hi", 1, 0, str(not_a_dir))

    assert result.exit_code == SPAWN_FAILURE_EXIT_CODE
    assert not result.succeeded
    assert Path(result.log_path).parent == not_a_dir.resolve()
