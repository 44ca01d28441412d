from __future__ import annotations

import json
import logging
import textwrap
from pathlib import Path

import pytest

from metame_daemon import cli


CONFIG = """
heartbeat:
  tasks:
    - name: hello
      type: script
      command: echo hello from script
    - name: broken
      type: script
      command: echo nope >&2; exit 4
"""


@pytest.fixture()
def home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    root = tmp_path / "metame"
    root.mkdir()
    monkeypatch.setenv("METAME_HOME", str(root))
    monkeypatch.setenv("METAME_PROFILE_PATH", str(tmp_path / "profile.yaml"))
    monkeypatch.delenv("METAME_ENGINE_PATH", raising=False)
    monkeypatch.chdir(tmp_path)
    return root


@pytest.fixture(autouse=True)
def restore_logging():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


def write_config(home: Path) -> None:
    (home / "daemon.yaml").write_text(textwrap.dedent(CONFIG).strip() + "\n", encoding="utf-8")


def test_no_subcommand_prints_help(capsys) -> None:
    assert cli.main([]) == 0
    assert "metame-daemon" in capsys.readouterr().out


def test_start_refuses_without_config(home: Path, capsys) -> None:
    assert cli.main(["start"]) == 1
    assert "No config found" in capsys.readouterr().out


def test_status_reports_stopped_daemon_and_tasks(home: Path, capsys) -> None:
    state = {
        "budget": {"date": "2099-01-01", "tokens_used": 0},
        "tasks": {"digest": {"last_run": "2026-01-01T00:00:00+00:00", "status": "success"}},
    }
    (home / "daemon_state.json").write_text(json.dumps(state), encoding="utf-8")

    assert cli.main(["status"]) == 0

    out = capsys.readouterr().out
    assert "MetaMe Daemon: Stopped" in out
    assert "Budget: 0/50000 tokens (0.0%)" in out
    assert "digest: success at 2026-01-01T00:00:00+00:00" in out


def test_logs_tails_file(home: Path, capsys) -> None:
    (home / "daemon.log").write_text("".join(f"line {i}\n" for i in range(10)), encoding="utf-8")

    assert cli.main(["logs", "-n", "3"]) == 0

    assert capsys.readouterr().out == "line 7\nline 8\nline 9\n"


def test_logs_without_file(home: Path, capsys) -> None:
    assert cli.main(["logs"]) == 0
    assert "No log file" in capsys.readouterr().out


def test_run_unknown_task_lists_available(home: Path, capsys) -> None:
    write_config(home)

    assert cli.main(["run", "ghost"]) == 1

    assert "Task 'ghost' not found. Available: hello, broken" in capsys.readouterr().out


def test_run_script_task(home: Path, capsys) -> None:
    write_config(home)

    assert cli.main(["run", "hello"]) == 0
    assert "hello from script" in capsys.readouterr().out

    assert cli.main(["run", "broken"]) == 1
    assert "Error: nope" in capsys.readouterr().out


def test_stop_when_not_running(home: Path, capsys) -> None:
    (home / "daemon.pid").write_text("999999999", encoding="utf-8")

    assert cli.main(["stop"]) == 0

    assert "Daemon is not running" in capsys.readouterr().out
    assert not (home / "daemon.pid").exists()
