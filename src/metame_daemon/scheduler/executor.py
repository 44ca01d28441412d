"""Blocking execution of heartbeat tasks: prompt, script and workflow."""

from __future__ import annotations

import logging
import subprocess
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable

from ..budget import BudgetTracker
from ..engine import EngineRunner, build_engine_args, estimate_tokens, sanitize_environment
from ..engine.prompts import append_context, build_profile_preamble
from ..storage import StateStore, TaskRunRecord
from ..tasks import HeartbeatTask

logger = logging.getLogger(__name__)

PRECONDITION_TIMEOUT = 15
SCRIPT_TIMEOUT = 120
PROMPT_TIMEOUT = 120
STEP_TIMEOUT = 300
PROMPT_MODEL = "haiku"
WORKFLOW_MODEL = "sonnet"
BUDGET_EXCEEDED = "budget_exceeded"


class PreconditionNotMet(RuntimeError):
    """Raised when a task precondition reports nothing to do."""


class StepFailedError(RuntimeError):
    """Raised when a non-optional workflow step fails."""

    def __init__(self, index: int, label: str, message: str) -> None:
        super().__init__(f"Step {index} ({label}) failed: {message}")
        self.index = index
        self.label = label


@dataclass(slots=True)
class TaskResult:
    success: bool
    output: str = ""
    error: str | None = None
    skipped: bool = False
    tokens: int = 0
    steps: list[dict[str, Any]] = field(default_factory=list)
    steps_total: int | None = None
    stopped_early: str | None = None

    @property
    def status(self) -> str:
        if self.skipped:
            return "skipped"
        return "success" if self.success else "error"


def format_notification(task: HeartbeatTask, result: TaskResult) -> str | None:
    """Chat text announcing a finished task, or ``None`` when nothing should be sent."""

    if not task.notify or result.skipped:
        return None
    if result.success:
        return f"✅ *{task.name}* completed\n\n{result.output}"
    return f"❌ *{task.name}* failed: {result.error}"


class TaskExecutor:
    """Runs a single task synchronously and records its outcome in run history.

    Every task type passes the precondition gate first. Prompt and workflow
    tasks then require budget headroom; script tasks never consume budget.
    """

    def __init__(
        self,
        store: StateStore,
        budget: BudgetTracker,
        runner: EngineRunner | None,
        *,
        profile_path: Path | None = None,
        tasks: Iterable[HeartbeatTask] = (),
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._budget = budget
        self._runner = runner
        self._profile_path = profile_path
        self._tasks: dict[str, HeartbeatTask] = {}
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.update_tasks(tasks)

    def update_tasks(self, tasks: Iterable[HeartbeatTask]) -> None:
        self._tasks = {task.name: task for task in tasks}

    @property
    def tasks(self) -> list[HeartbeatTask]:
        return list(self._tasks.values())

    @property
    def task_names(self) -> list[str]:
        return list(self._tasks)

    def execute_by_name(self, name: str) -> TaskResult:
        task = self._tasks.get(name)
        if task is None:
            return TaskResult(success=False, error=f"Task '{name}' not found")
        return self.execute(task)

    def execute(self, task: HeartbeatTask) -> TaskResult:
        logger.info("Running task", extra={"task": task.name, "type": task.type})
        try:
            context = self.check_precondition(task)
        except PreconditionNotMet as exc:
            logger.info("Task skipped", extra={"task": task.name, "reason": str(exc)})
            result = TaskResult(success=True, skipped=True)
            self._record(task, result)
            return result

        try:
            if task.type == "script":
                result = self._run_script(task)
            elif task.type == "workflow":
                result = self._run_workflow(task, context)
            else:
                result = self._run_prompt(task, context)
        except Exception as exc:  # pragma: no cover - defensive
            logger.exception("Task crashed", extra={"task": task.name})
            result = TaskResult(success=False, error=str(exc))

        self._record(task, result)
        if result.success:
            logger.info("Task completed", extra={"task": task.name, "tokens": result.tokens})
        else:
            logger.warning("Task failed", extra={"task": task.name, "error": result.error})
        return result

    def check_precondition(self, task: HeartbeatTask) -> str:
        """Run the task's shell predicate and return its stdout as prompt context."""

        if not task.precondition:
            return ""
        try:
            completed = subprocess.run(
                task.precondition,
                shell=True,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=PRECONDITION_TIMEOUT,
                env=sanitize_environment(),
            )
        except subprocess.TimeoutExpired as exc:
            raise PreconditionNotMet("precondition timed out") from exc
        except OSError as exc:
            raise PreconditionNotMet(f"precondition failed to start: {exc}") from exc

        output = completed.stdout.strip()
        if completed.returncode != 0:
            raise PreconditionNotMet(f"precondition exited with {completed.returncode}")
        if not output:
            raise PreconditionNotMet("precondition produced no output")
        return output

    def _run_script(self, task: HeartbeatTask) -> TaskResult:
        try:
            completed = subprocess.run(
                task.command or "",
                shell=True,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                cwd=_expand(task.cwd),
                timeout=task.timeout or SCRIPT_TIMEOUT,
                env=sanitize_environment(),
            )
        except subprocess.TimeoutExpired:
            return TaskResult(success=False, error="Timeout: script took too long")
        except OSError as exc:
            return TaskResult(success=False, error=str(exc))

        output = completed.stdout.strip()
        if completed.returncode != 0:
            message = completed.stderr.strip() or f"Exit code {completed.returncode}"
            return TaskResult(success=False, output=output, error=message)
        return TaskResult(success=True, output=output)

    def _require_runner(self) -> EngineRunner:
        if self._runner is None:
            raise RuntimeError("Engine runner is unavailable")
        return self._runner

    def _run_prompt(self, task: HeartbeatTask, context: str) -> TaskResult:
        if not self._budget.check():
            return TaskResult(success=False, error=BUDGET_EXCEEDED)

        preamble = build_profile_preamble(self._profile_path) if self._profile_path else ""
        prompt = append_context(preamble + (task.prompt or ""), context)
        result = self._require_runner().run(
            prompt,
            args=build_engine_args(model=task.model or PROMPT_MODEL, allowed_tools=task.allowed_tools),
            cwd=_expand(task.cwd),
            timeout=task.timeout or PROMPT_TIMEOUT,
        )
        if not result.ok:
            return TaskResult(success=False, output=result.output, error=result.error_message)

        tokens = estimate_tokens(prompt, result.output)
        self._budget.record(tokens)
        return TaskResult(success=True, output=result.output, tokens=tokens)

    def _run_workflow(self, task: HeartbeatTask, context: str) -> TaskResult:
        if not task.steps:
            return TaskResult(success=False, error="No steps defined")
        if not self._budget.check():
            return TaskResult(success=False, error=BUDGET_EXCEEDED)

        runner = self._require_runner()
        session_id = str(uuid.uuid4())
        cwd = _expand(task.cwd or "~")
        model = task.model or WORKFLOW_MODEL
        total = len(task.steps)
        step_log: list[dict[str, Any]] = []
        tokens = 0
        last_output = ""
        stopped_early = None

        logger.info("Starting workflow", extra={"task": task.name, "steps": total, "session_id": session_id})
        for index, step in enumerate(task.steps, start=1):
            prompt = step.render()
            if index == 1:
                prompt = append_context(prompt, context)
            result = runner.run(
                prompt,
                args=build_engine_args(
                    session_id=session_id,
                    started=index > 1,
                    model=model,
                    allowed_tools=task.allowed_tools,
                ),
                cwd=cwd,
                timeout=step.timeout or task.timeout or STEP_TIMEOUT,
            )

            if result.ok:
                step_tokens = estimate_tokens(prompt, result.output)
                tokens += step_tokens
                self._budget.record(step_tokens)
                last_output = result.output
                step_log.append({"step": index, "skill": step.label, "output": result.output[:500]})
            else:
                step_log.append({"step": index, "skill": step.label, "error": result.error_message})
                if not step.optional:
                    failure = StepFailedError(index, step.label, result.error_message)
                    return TaskResult(
                        success=False,
                        output=last_output,
                        error=str(failure),
                        tokens=tokens,
                        steps=step_log,
                        steps_total=total,
                    )
                logger.warning(
                    "Optional workflow step failed",
                    extra={"task": task.name, "step": index, "error": result.error_message},
                )

            if index < total and not self._budget.check():
                logger.warning("Workflow stopped early", extra={"task": task.name, "step": index})
                stopped_early = BUDGET_EXCEEDED
                break

        return TaskResult(
            success=True,
            output=last_output,
            tokens=tokens,
            steps=step_log,
            steps_total=total,
            stopped_early=stopped_early,
        )

    def _record(self, task: HeartbeatTask, result: TaskResult) -> None:
        record = TaskRunRecord(
            last_run=self._clock().isoformat(),
            status=result.status,
            output_preview=result.output[:200],
            error=result.error,
        )
        if task.type == "workflow" and result.steps_total is not None:
            record.steps_completed = sum(1 for entry in result.steps if "error" not in entry)
            record.steps_total = result.steps_total
            record.stopped_early = result.stopped_early
        with self._store.transaction() as state:
            state.tasks[task.name] = record


def _expand(path: str | None) -> str | None:
    if not path:
        return None
    return str(Path(path).expanduser())


__all__ = [
    "BUDGET_EXCEEDED",
    "PreconditionNotMet",
    "StepFailedError",
    "TaskExecutor",
    "TaskResult",
    "format_notification",
]
