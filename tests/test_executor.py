from __future__ import annotations

from pathlib import Path

import pytest

from metame_daemon.budget import BudgetTracker
from metame_daemon.engine import EngineResult, FakeEngineRunner
from metame_daemon.scheduler import BUDGET_EXCEEDED, TaskExecutor, TaskResult, format_notification
from metame_daemon.storage import StateStore
from metame_daemon.tasks import HeartbeatTask


def ok(text: str) -> EngineResult:
    return EngineResult(args=("claude",), returncode=0, stdout=text, stderr="")


def fail(message: str) -> EngineResult:
    return EngineResult(args=("claude",), returncode=1, stdout="", stderr=message)


@pytest.fixture()
def store(tmp_path: Path) -> StateStore:
    return StateStore(tmp_path / "state.json")


def make_executor(store: StateStore, runner: FakeEngineRunner, *, limit: int = 50_000, profile: Path | None = None):
    budget = BudgetTracker(store, daily_limit=limit)
    return TaskExecutor(store, budget, runner, profile_path=profile), budget


def test_precondition_with_empty_output_skips(store: StateStore) -> None:
    runner = FakeEngineRunner()
    executor, budget = make_executor(store, runner)
    task = HeartbeatTask(name="inbox", prompt="Summarize", precondition="true", notify=True)

    result = executor.execute(task)

    assert result.skipped
    assert result.status == "skipped"
    assert runner.invocations == []
    assert budget.usage()[0] == 0
    assert format_notification(task, result) is None
    assert store.load().tasks["inbox"].status == "skipped"


def test_precondition_failure_skips_script(store: StateStore) -> None:
    executor, _ = make_executor(store, FakeEngineRunner())
    task = HeartbeatTask(name="job", type="script", command="echo ran", precondition="echo data; exit 3")

    assert executor.execute(task).skipped


def test_precondition_output_becomes_context(store: StateStore, tmp_path: Path) -> None:
    profile = tmp_path / "profile.yaml"
    profile.write_text("identity:\n  nickname: Sam\nsecrets: hidden\n", encoding="utf-8")
    runner = FakeEngineRunner([ok("Summary")])
    executor, budget = make_executor(store, runner, profile=profile)
    task = HeartbeatTask(name="inbox", prompt="Summarize new mail", precondition="echo 3 new mails")

    result = executor.execute(task)

    assert result.success
    prompt = runner.invocations[0]["prompt"]
    assert "nickname: Sam" in prompt
    assert "hidden" not in prompt
    assert "Summarize new mail" in prompt
    assert "3 new mails" in prompt
    assert runner.invocations[0]["args"][:3] == ("-p", "--model", "haiku")
    assert budget.usage()[0] == result.tokens > 0
    record = store.load().tasks["inbox"]
    assert record.status == "success"
    assert record.output_preview == "Summary"


def test_prompt_task_refused_when_budget_exhausted(store: StateStore) -> None:
    runner = FakeEngineRunner()
    executor, budget = make_executor(store, runner, limit=10)
    budget.record(10)

    result = executor.execute(HeartbeatTask(name="digest", prompt="go"))

    assert not result.success
    assert result.error == BUDGET_EXCEEDED
    assert runner.invocations == []


def test_script_task_success_and_failure(store: StateStore) -> None:
    executor, budget = make_executor(store, FakeEngineRunner())

    good = executor.execute(HeartbeatTask(name="good", type="script", command="echo hello"))
    bad = executor.execute(HeartbeatTask(name="bad", type="script", command="echo oops >&2; exit 2"))

    assert good.success and good.output == "hello"
    assert not bad.success and bad.error == "oops"
    assert budget.usage()[0] == 0
    assert store.load().tasks["bad"].error == "oops"


def test_workflow_optional_step_failure_continues(store: StateStore) -> None:
    runner = FakeEngineRunner([ok("one"), fail("tool crashed"), ok("three")])
    executor, _ = make_executor(store, runner)
    task = HeartbeatTask.model_validate(
        {
            "name": "weekly",
            "type": "workflow",
            "steps": [
                {"skill": "research", "prompt": "topic"},
                {"skill": "polish", "optional": True},
                {"skill": "publish"},
            ],
        }
    )

    result = executor.execute(task)

    assert result.success
    assert result.output == "three"
    assert [entry.get("error") for entry in result.steps] == [None, "tool crashed", None]
    first, second, third = runner.invocations
    assert first["prompt"] == "/research topic"
    assert "--session-id" in first["args"]
    session_id = first["args"][first["args"].index("--session-id") + 1]
    assert third["args"][-2:] == ("--resume", session_id)
    assert "sonnet" in first["args"]
    record = store.load().tasks["weekly"]
    assert record.steps_completed == 2
    assert record.steps_total == 3


def test_workflow_fatal_step_aborts(store: StateStore) -> None:
    runner = FakeEngineRunner([ok("one"), fail("broken")])
    executor, _ = make_executor(store, runner)
    task = HeartbeatTask.model_validate(
        {"name": "wf", "type": "workflow", "steps": [{"skill": "a"}, {"skill": "b"}, {"skill": "c"}]}
    )

    result = executor.execute(task)

    assert not result.success
    assert result.error == "Step 2 (b) failed: broken"
    assert len(runner.invocations) == 2
    record = store.load().tasks["wf"]
    assert record.status == "error"
    assert (record.steps_completed, record.steps_total) == (1, 3)


def test_workflow_context_only_on_first_step(store: StateStore) -> None:
    runner = FakeEngineRunner([ok("one"), ok("two")])
    executor, _ = make_executor(store, runner)
    task = HeartbeatTask.model_validate(
        {
            "name": "wf",
            "type": "workflow",
            "precondition": "echo fresh-data",
            "steps": [{"skill": "a"}, {"skill": "b"}],
        }
    )

    executor.execute(task)

    assert "fresh-data" in runner.invocations[0]["prompt"]
    assert "fresh-data" not in runner.invocations[1]["prompt"]


def test_workflow_stops_early_when_budget_runs_out(store: StateStore) -> None:
    runner = FakeEngineRunner([ok("x" * 400), ok("never")])
    executor, _ = make_executor(store, runner, limit=50)
    task = HeartbeatTask.model_validate(
        {"name": "wf", "type": "workflow", "steps": [{"skill": "a"}, {"skill": "b"}]}
    )

    result = executor.execute(task)

    assert result.success
    assert result.stopped_early == BUDGET_EXCEEDED
    assert len(runner.invocations) == 1
    assert store.load().tasks["wf"].stopped_early == BUDGET_EXCEEDED


def test_workflow_without_steps_is_an_error(store: StateStore) -> None:
    executor, _ = make_executor(store, FakeEngineRunner())

    result = executor.execute(HeartbeatTask(name="empty", type="workflow"))

    assert result.error == "No steps defined"


def test_execute_by_name_unknown(store: StateStore) -> None:
    executor, _ = make_executor(store, FakeEngineRunner())

    assert executor.execute_by_name("ghost").error == "Task 'ghost' not found"


def test_notification_text() -> None:
    task = HeartbeatTask(name="digest", prompt="p", notify=True)

    assert format_notification(task, TaskResult(success=True, output="done")) == "✅ *digest* completed\n\ndone"
    assert format_notification(task, TaskResult(success=False, error="boom")) == "❌ *digest* failed: boom"
