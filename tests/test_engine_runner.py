from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from metame_daemon.engine.runner import (
    EngineNotFoundError,
    EngineResult,
    EngineRunner,
    EngineSessionNotFoundError,
    FakeEngineRunner,
    SpawnTimeoutError,
    build_engine_args,
)
from metame_daemon.engine.utils import estimate_tokens, sanitize_environment
from metame_daemon.storage import CONTINUE_SENTINEL


def _script(tmp_path: Path, body: str) -> Path:
    script = tmp_path / "claude"
    script.write_text("#!/bin/sh\n" + body, encoding="utf-8")
    script.chmod(0o755)
    return script


def test_runner_passes_args_and_stdin(tmp_path: Path) -> None:
    script = _script(tmp_path, 'read prompt\necho "$@ :: $prompt"\n')

    runner = EngineRunner(script)
    result = runner.run("hello", args=["-p", "--model", "haiku"])

    assert result.ok
    assert result.output == "-p --model haiku :: hello"


def test_runner_async_reports_failure(tmp_path: Path) -> None:
    script = _script(tmp_path, 'echo "No session found with ID abc" >&2\nexit 1\n')

    runner = EngineRunner(script)
    result = asyncio.run(runner.run_async("hi", args=["-p", "--resume", "abc"]))

    assert not result.ok
    assert result.session_not_found
    with pytest.raises(EngineSessionNotFoundError):
        result.raise_for_status()


def test_runner_async_kills_on_timeout(tmp_path: Path) -> None:
    script = _script(tmp_path, "sleep 5\necho late\n")

    runner = EngineRunner(script)
    result = asyncio.run(runner.run_async("hi", args=["-p"], timeout=0.2))

    assert result.timed_out
    assert not result.ok
    assert not result.session_not_found
    with pytest.raises(SpawnTimeoutError):
        result.raise_for_status()


def test_runner_blocking_timeout(tmp_path: Path) -> None:
    script = _script(tmp_path, "sleep 5\n")

    result = EngineRunner(script).run("hi", args=["-p"], timeout=0.2)

    assert result.timed_out
    assert result.error_message.startswith("Timeout")


def test_empty_output_is_not_ok() -> None:
    result = EngineResult(args=("claude",), returncode=0, stdout="  \n", stderr="")

    assert not result.ok
    assert result.error_message == "Engine returned empty output"


def test_engine_not_found(tmp_path: Path) -> None:
    with pytest.raises(EngineNotFoundError):
        EngineRunner(tmp_path / "missing")


def test_build_engine_args_session_modes() -> None:
    assert build_engine_args(session_id="abc", started=False)[-2:] == ["--session-id", "abc"]
    assert build_engine_args(session_id="abc", started=True)[-2:] == ["--resume", "abc"]
    assert build_engine_args(session_id=CONTINUE_SENTINEL, started=True)[-1] == "--continue"
    assert build_engine_args(model="haiku", allowed_tools=["Read", "Bash"]) == [
        "-p",
        "--model",
        "haiku",
        "--allowedTools",
        "Read",
        "--allowedTools",
        "Bash",
    ]


def test_fake_engine_runner_records_invocations() -> None:
    fake = FakeEngineRunner([EngineResult(args=("-p",), returncode=0, stdout="answer", stderr="")])

    first = asyncio.run(fake.run_async("q1", args=["-p"], cwd="/tmp"))
    second = fake.run("q2", args=["-p"])

    assert first.output == "answer"
    assert second.output == "ok"
    assert [call["prompt"] for call in fake.invocations] == ["q1", "q2"]
    assert fake.invocations[0]["cwd"] == "/tmp"


def test_estimate_tokens_rounds_up() -> None:
    assert estimate_tokens("abcd", "") == 1
    assert estimate_tokens("abcde", "") == 2
    assert estimate_tokens("", "") == 0


def test_sanitize_environment_strips_virtualenv(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PYTHONPATH", "value")
    monkeypatch.setenv("VIRTUAL_ENV", "/venv")
    env = sanitize_environment({"EXTRA": "1"})
    assert "PYTHONPATH" not in env
    assert "VIRTUAL_ENV" not in env
    assert env["EXTRA"] == "1"


def test_sanitize_environment_drops_parent_engine_session(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CLAUDECODE", "1")
    monkeypatch.setenv("CLAUDE_CODE_SSE_PORT", "51234")
    monkeypatch.setenv("METAME_HOME", "/tmp/metame")

    env = sanitize_environment()

    assert "CLAUDECODE" not in env
    assert "CLAUDE_CODE_SSE_PORT" not in env
    assert env["METAME_HOME"] == "/tmp/metame"


def test_engine_found_in_user_install_when_not_on_path(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    local = tmp_path / ".claude" / "local"
    local.mkdir(parents=True)
    binary = local / "claude"
    binary.write_text("#!/bin/sh\n", encoding="utf-8")
    binary.chmod(0o755)
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.setenv("PATH", str(tmp_path / "empty"))

    assert EngineRunner().executable == binary

    binary.unlink()
    with pytest.raises(EngineNotFoundError):
        EngineRunner()
