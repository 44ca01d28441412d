"""Blocking and asyncio runners for the conversational engine CLI."""

from __future__ import annotations

import asyncio
import os
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Sequence

from ..storage.models import CONTINUE_SENTINEL
from .utils import sanitize_environment

SESSION_NOT_FOUND_MARKERS = ("not found", "No session")


class EngineRunnerError(RuntimeError):
    """Base class for engine runner errors."""


class EngineNotFoundError(EngineRunnerError):
    """Raised when the engine executable cannot be located."""


class SpawnTimeoutError(EngineRunnerError):
    """Raised when an engine call exceeded its timeout and was killed."""


class EngineSessionNotFoundError(EngineRunnerError):
    """Raised when the engine no longer knows the requested session."""


@dataclass(slots=True)
class EngineResult:
    """Holds the outcome of an engine invocation."""

    args: tuple[str, ...]
    returncode: int | None
    stdout: str
    stderr: str
    timed_out: bool = False

    @property
    def output(self) -> str:
        return self.stdout.strip()

    @property
    def ok(self) -> bool:
        return not self.timed_out and self.returncode == 0 and bool(self.output)

    @property
    def error_message(self) -> str:
        if self.timed_out:
            return "Timeout: engine took too long"
        if self.ok:
            return ""
        message = self.stderr.strip()
        if message:
            return message
        if self.returncode == 0:
            return "Engine returned empty output"
        return f"Exit code {self.returncode}"

    @property
    def session_not_found(self) -> bool:
        if self.ok or self.timed_out:
            return False
        haystack = f"{self.stderr}\n{self.stdout}"
        return any(marker in haystack for marker in SESSION_NOT_FOUND_MARKERS)

    def raise_for_status(self) -> "EngineResult":
        if self.ok:
            return self
        if self.timed_out:
            raise SpawnTimeoutError(self.error_message)
        if self.session_not_found:
            raise EngineSessionNotFoundError(self.error_message)
        raise EngineRunnerError(self.error_message)


def build_engine_args(
    *,
    session_id: str | None = None,
    started: bool = False,
    model: str | None = None,
    allowed_tools: Sequence[str] | None = None,
) -> list[str]:
    """Build the engine argument vector; the prompt itself goes over stdin."""

    args: list[str] = ["-p"]
    if model:
        args.extend(["--model", model])
    for tool in allowed_tools or []:
        args.extend(["--allowedTools", tool])
    if session_id == CONTINUE_SENTINEL:
        args.append("--continue")
    elif session_id and started:
        args.extend(["--resume", session_id])
    elif session_id:
        args.extend(["--session-id", session_id])
    return args


class EngineRunner:
    """Execute engine CLI calls, either blocking or on the asyncio loop."""

    def __init__(self, executable: Path | None = None, *, name: str = "claude") -> None:
        self._executable_path = self._resolve_executable(executable, name)

    @staticmethod
    def _resolve_executable(explicit: Path | None, name: str) -> Path:
        if explicit is not None:
            candidate = Path(explicit)
            if candidate.exists() and candidate.is_file():
                return candidate
            raise EngineNotFoundError(f"Engine executable not found at {candidate}")

        binary = shutil.which(name)
        if binary is not None:
            return Path(binary)
        # Daemons started from launchd or cron often miss the user PATH.
        for candidate in (Path.home() / ".claude" / "local" / name, Path.home() / ".local" / "bin" / name):
            if candidate.is_file() and os.access(candidate, os.X_OK):
                return candidate
        raise EngineNotFoundError(f"Engine executable '{name}' not found on PATH")

    @property
    def executable(self) -> Path:
        return self._executable_path

    def run(
        self,
        prompt: str,
        *,
        args: Sequence[str],
        cwd: Path | str | None = None,
        timeout: float = 120,
    ) -> EngineResult:
        """Blocking invocation used by scheduled tasks."""

        cmd = [str(self._executable_path), *args]
        try:
            completed = subprocess.run(
                cmd,
                input=prompt,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                cwd=str(cwd) if cwd else None,
                env=sanitize_environment(),
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as exc:
            return EngineResult(
                args=tuple(cmd),
                returncode=None,
                stdout=_decode(exc.stdout),
                stderr=_decode(exc.stderr),
                timed_out=True,
            )
        except OSError as exc:
            return EngineResult(args=tuple(cmd), returncode=None, stdout="", stderr=str(exc))
        return EngineResult(
            args=tuple(cmd),
            returncode=completed.returncode,
            stdout=completed.stdout,
            stderr=completed.stderr,
        )

    async def run_async(
        self,
        prompt: str,
        *,
        args: Sequence[str],
        cwd: Path | str | None = None,
        timeout: float = 300,
    ) -> EngineResult:
        """Non-blocking invocation used by interactive chat.

        Each call owns its child process, so calls from different chats run in
        parallel. On timeout the child is killed and the result is marked
        ``timed_out``.
        """

        return await self._invoke(prompt, list(args), cwd, timeout)

    async def _invoke(
        self,
        prompt: str,
        args: list[str],
        cwd: Path | str | None,
        timeout: float,
    ) -> EngineResult:
        cmd = [str(self._executable_path), *args]
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(cwd) if cwd else None,
                env=sanitize_environment(),
            )
        except OSError as exc:
            return EngineResult(args=tuple(cmd), returncode=None, stdout="", stderr=str(exc))

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                process.communicate(prompt.encode("utf-8")), timeout=timeout
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return EngineResult(
                args=tuple(cmd), returncode=process.returncode, stdout="", stderr="", timed_out=True
            )

        return EngineResult(
            args=tuple(cmd),
            returncode=process.returncode,
            stdout=stdout_bytes.decode("utf-8", errors="replace"),
            stderr=stderr_bytes.decode("utf-8", errors="replace"),
        )


def _decode(value: bytes | str | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


class FakeEngineRunner(EngineRunner):
    """Test double that simulates engine responses."""

    def __init__(self, responses: Iterable[EngineResult] | None = None) -> None:  # type: ignore[override]
        self._responses = list(responses or [])
        self._invocations: list[dict[str, object]] = []
        self._executable_path = Path("/tmp/fake-engine")

    def _next(self, prompt: str, args: Sequence[str], cwd: Path | str | None) -> EngineResult:
        self._invocations.append({"prompt": prompt, "args": tuple(args), "cwd": cwd})
        if self._responses:
            return self._responses.pop(0)
        return EngineResult(args=tuple(args), returncode=0, stdout="ok", stderr="")

    def run(self, prompt, *, args, cwd=None, timeout=120):  # type: ignore[override]
        return self._next(prompt, args, cwd)

    async def _invoke(self, prompt, args, cwd, timeout):  # type: ignore[override]
        return self._next(prompt, args, cwd)

    @property
    def invocations(self) -> list[dict[str, object]]:
        return self._invocations


__all__ = [
    "EngineNotFoundError",
    "EngineResult",
    "EngineRunner",
    "EngineRunnerError",
    "EngineSessionNotFoundError",
    "FakeEngineRunner",
    "SpawnTimeoutError",
    "build_engine_args",
]
