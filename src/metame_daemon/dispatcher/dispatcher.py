"""Routes inbound chat text to session, task and daemon operations."""

from __future__ import annotations

import asyncio
import logging
import math
import os
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Sequence

import yaml

from ..bots import BotAdapter, Button
from ..budget import BudgetTracker
from ..engine.prompts import load_profile
from ..scheduler import TaskExecutor
from ..sessions import SessionInUseError, SessionManager, format_relative_time
from ..storage import Session, StateStore
from ..tasks import ConfigReloadFailed
from .commands import (
    Ask,
    Browse,
    ChangeDir,
    Command,
    Continue,
    Help,
    Last,
    ListTasks,
    Mute,
    NameSession,
    NewSession,
    Quiet,
    Reload,
    Resume,
    RunTask,
    ShowBudget,
    ShowSession,
    Status,
    Unmute,
    parse_command,
)

logger = logging.getLogger(__name__)

TYPING_INTERVAL = 4.0
BROWSE_LIMIT = 8
QUIET_HOURS = 48

HELP_TEXT = "\n".join(
    [
        "Commands:",
        "/last - continue the most recent session",
        "/new [path] [name] - new session",
        "/resume [name] - pick or search a session",
        "/continue - resume last in current dir",
        "/name <name> - name current session",
        "/cd <path> - change workdir",
        "/session - current session info",
        "/run <task> - run a heartbeat task now",
        "/mute /unmute - toggle task notifications here",
        "/quiet - silence reflections for 48h",
        "/status /tasks /budget /reload",
        "",
        "Or just type naturally.",
    ]
)


class CooldownTracker:
    """Per-chat minimum spacing between heavy operations."""

    def __init__(self, seconds: float = 10.0, *, clock: Callable[[], float] | None = None) -> None:
        self.seconds = seconds
        self._clock = clock or time.monotonic
        self._last: dict[str, float] = {}

    def check(self, chat_id: str) -> int:
        """Return 0 and start a new window when allowed, else the seconds left to wait."""

        now = self._clock()
        last = self._last.get(chat_id)
        if last is not None and now - last < self.seconds:
            return max(1, math.ceil(self.seconds - (now - last)))
        self._last[chat_id] = now
        return 0


class CommandDispatcher:
    """Handles one inbound message for one chat.

    Commands are matched exhaustively over the parsed variants. Errors are
    turned into short chat replies; nothing propagates to the receive loop.
    """

    def __init__(
        self,
        sessions: SessionManager,
        budget: BudgetTracker,
        store: StateStore,
        executor: TaskExecutor,
        *,
        cooldown: CooldownTracker | None = None,
        profile_path: Path | None = None,
        reload: Callable[[], int] | None = None,
        allowed_tools: Sequence[str] = (),
        home: Path | None = None,
        typing_interval: float = TYPING_INTERVAL,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._sessions = sessions
        self._budget = budget
        self._store = store
        self._executor = executor
        self._cooldown = cooldown or CooldownTracker()
        self._profile_path = profile_path
        self._reload = reload
        self.allowed_tools: list[str] = list(allowed_tools)
        self._home = str(home or Path.home())
        self._typing_interval = typing_interval
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._background: set[asyncio.Task] = set()

    async def handle(self, chat_id: str, text: str, bot: BotAdapter) -> None:
        chat_id = str(chat_id)
        command = parse_command(text)
        logger.info(
            "Inbound message",
            extra={"bot": bot.name, "chat_id": chat_id, "command": type(command).__name__},
        )
        try:
            await self._route(command, chat_id, bot)
        except Exception as exc:
            logger.exception("Command failed", extra={"chat_id": chat_id, "command": type(command).__name__})
            await self._reply(bot, chat_id, f"Error: {str(exc)[:200]}")

    async def _reply(self, bot: BotAdapter, chat_id: str, text: str) -> None:
        try:
            await bot.send_message(chat_id, text)
        except Exception as exc:
            logger.error("Failed to send reply", extra={"bot": bot.name, "chat_id": chat_id, "error": str(exc)})

    async def _route(self, command: Command, chat_id: str, bot: BotAdapter) -> None:
        match command:
            case Ask(text=prompt):
                await self._ask(chat_id, prompt, bot)
            case NewSession(arg=arg):
                await self._new_session(chat_id, arg, bot)
            case Resume(query=query):
                await self._resume(chat_id, query, bot)
            case Continue():
                session = self._sessions.continue_session(chat_id)
                await bot.send_message(chat_id, f"Resuming last conversation in {session.cwd}")
            case Last():
                await self._last(chat_id, bot)
            case ChangeDir(path=path):
                await self._change_dir(chat_id, path, bot)
            case NameSession(label=label):
                await self._name(chat_id, label, bot)
            case ShowSession():
                await bot.send_message(chat_id, self._session_text(self._sessions.get_session(chat_id)))
            case Status():
                await bot.send_message(chat_id, self._status_text(chat_id))
            case ListTasks():
                await bot.send_message(chat_id, self._tasks_text())
            case RunTask(name=name):
                await self._run_task(chat_id, name, bot)
            case ShowBudget():
                used, limit = self._budget.usage()
                await bot.send_message(chat_id, f"Budget: {used}/{limit} tokens ({used / limit * 100:.1f}%)")
            case Reload():
                await bot.send_message(chat_id, self._reload_text())
            case Quiet():
                self._set_quiet()
                await bot.send_message(chat_id, "Mirror & reflections silenced for 48h.")
            case Mute():
                self._set_muted(chat_id, True)
                await bot.send_message(chat_id, "🔇 Task notifications muted for this chat.")
            case Unmute():
                self._set_muted(chat_id, False)
                await bot.send_message(chat_id, "🔔 Task notifications unmuted.")
            case Browse(mode=mode, path=path):
                await self._browse_command(chat_id, mode, path, bot)
            case Help():
                await bot.send_message(chat_id, HELP_TEXT)

    async def _ask(self, chat_id: str, prompt: str, bot: BotAdapter) -> None:
        wait = self._cooldown.check(chat_id)
        if wait:
            await bot.send_message(chat_id, f"Cooldown: {wait}s")
            return
        if not self._budget.check():
            await bot.send_message(chat_id, "Daily token budget exceeded.")
            return

        await self._reply(bot, chat_id, "🤔")
        typing = asyncio.create_task(self._keep_typing(bot, chat_id))
        try:
            result = await self._sessions.ask(chat_id, prompt, allowed_tools=self.allowed_tools)
        finally:
            typing.cancel()

        if not result.ok:
            await bot.send_message(chat_id, f"Error: {(result.error or 'Unknown error')[:200]}")
            return

        await bot.send_markdown(chat_id, result.output)
        session = result.session
        if result.first_turn and not session.name and not self._sessions.session_name(session.engine_session_id):
            task = asyncio.create_task(self._sessions.auto_name(chat_id, session.engine_session_id, prompt))
            self._background.add(task)
            task.add_done_callback(self._background.discard)

    async def _keep_typing(self, bot: BotAdapter, chat_id: str) -> None:
        while True:
            try:
                await bot.send_typing(chat_id)
            except Exception as exc:
                logger.debug("Typing indicator failed", extra={"chat_id": chat_id, "error": str(exc)})
            await asyncio.sleep(self._typing_interval)

    async def _new_session(self, chat_id: str, arg: str, bot: BotAdapter) -> None:
        if not arg:
            await self._send_dir_picker(chat_id, "new", "Pick a workdir:", bot)
            return

        path, name = _expand(arg), ""
        if not os.path.isdir(path):
            head, _, tail = arg.partition(" ")
            if tail and os.path.isdir(_expand(head)):
                path, name = _expand(head), tail.strip()
            else:
                await bot.send_message(chat_id, f"Path not found: {path}")
                return

        session = self._sessions.create_session(chat_id, path, name or None)
        label = f"[{name}]" if name else ""
        await bot.send_message(chat_id, f"New session {label}\nWorkdir: {session.cwd}")

    async def _resume(self, chat_id: str, query: str, bot: BotAdapter) -> None:
        index = self._sessions.index
        if not query:
            cwd = self._sessions.current_cwd(chat_id)
            recent = index.list_recent(5, cwd=cwd)
            if not recent:
                where = f" in {Path(cwd).name}" if cwd else ""
                await bot.send_message(chat_id, f"No sessions found{where}. Try /new first.")
                return
            title = f"Sessions in {Path(cwd).name}:" if cwd else "Recent sessions:"
            rows = [
                [Button(index.label(item, self._sessions.session_name(item.session_id)), f"/resume {item.session_id}")]
                for item in recent
            ]
            await bot.send_buttons(chat_id, title, rows)
            return

        try:
            session = self._sessions.resume(chat_id, query)
        except SessionInUseError as exc:
            await bot.send_message(chat_id, str(exc))
            return
        entry = index.find(session.engine_session_id)
        label = session.name
        if not label and entry is not None:
            label = (entry.summary or entry.first_prompt)[:40]
        await bot.send_message(chat_id, f"Resumed: {label or session.short_id}\nWorkdir: {session.cwd}")

    async def _last(self, chat_id: str, bot: BotAdapter) -> None:
        try:
            session = self._sessions.smart_resume_last(chat_id)
        except SessionInUseError as exc:
            await bot.send_message(chat_id, str(exc))
            return
        if session.is_continue:
            await bot.send_message(chat_id, f"⚡ Resuming last session in {Path(session.cwd).name}")
            return

        entry = self._sessions.index.find(session.engine_session_id)
        short_id = session.engine_session_id[:4]
        if session.name:
            label = f"[{session.name}] #{short_id}"
        elif entry is not None and entry.summary:
            label = f"{entry.summary[:30]} #{short_id}"
        else:
            label = f"#{session.short_id}"
        ago = format_relative_time(entry.last_active, self._clock().timestamp()) if entry else "unknown"
        project = Path(entry.project_path).name if entry and entry.project_path else ""
        await bot.send_message(chat_id, f"⚡ {label}\n📁 {project}\n🕐 {ago}")

    async def _change_dir(self, chat_id: str, path: str, bot: BotAdapter) -> None:
        if not path:
            await self._send_dir_picker(chat_id, "cd", "Switch workdir:", bot)
            return
        path = _expand(path)
        if not os.path.isdir(path):
            await bot.send_message(chat_id, f"Path not found: {path}")
            return
        self._sessions.change_dir(chat_id, path)
        await bot.send_message(chat_id, f"Workdir: {path}")

    async def _name(self, chat_id: str, label: str, bot: BotAdapter) -> None:
        if not label:
            await bot.send_message(chat_id, "Usage: /name <session name>")
            return
        if self._sessions.rename(chat_id, label) is None:
            await bot.send_message(chat_id, "No active session. Start one first.")
            return
        await bot.send_message(chat_id, f"✅ Session: [{label}]")

    async def _run_task(self, chat_id: str, name: str, bot: BotAdapter) -> None:
        if not name:
            await bot.send_message(chat_id, "Usage: /run <task>")
            return
        wait = self._cooldown.check(chat_id)
        if wait:
            await bot.send_message(chat_id, f"Cooldown: {wait}s")
            return
        await bot.send_message(chat_id, f"Running: {name}...")
        result = await asyncio.to_thread(self._executor.execute_by_name, name)
        if result.skipped:
            await bot.send_message(chat_id, f"{name}: skipped (precondition not met)")
        elif result.success:
            await bot.send_markdown(chat_id, f"{name}\n\n{result.output}")
        else:
            await bot.send_message(chat_id, f"Error: {result.error}")

    async def _send_dir_picker(self, chat_id: str, mode: str, title: str, bot: BotAdapter) -> None:
        command = "/new" if mode == "new" else "/cd"
        rows = [[Button(Path(path).name or path, f"{command} {path}")] for path in self._sessions.index.project_dirs()]
        rows.append([Button("Browse...", f"/browse {mode} {self._home}")])
        await bot.send_buttons(chat_id, title, rows)

    async def _browse_command(self, chat_id: str, mode: str, path: str, bot: BotAdapter) -> None:
        if mode not in ("new", "cd") or not path or not os.path.exists(path):
            await bot.send_message(chat_id, "Invalid browse path.")
            return
        await self._send_browse(chat_id, mode, path, bot)

    async def _send_browse(self, chat_id: str, mode: str, path: str, bot: BotAdapter) -> None:
        command = "/new" if mode == "new" else "/cd"
        try:
            with os.scandir(path) as entries:
                names = sorted(
                    entry.name for entry in entries if entry.is_dir() and not entry.name.startswith(".")
                )
        except OSError:
            await bot.send_message(chat_id, f"Cannot read: {path}")
            return

        rows = [[Button(">> Use this dir", f"{command} {path}")]]
        for name in names[:BROWSE_LIMIT]:
            rows.append([Button(f"{name}/", f"/browse {mode} {os.path.join(path, name)}")])
        parent = os.path.dirname(path)
        if parent != path:
            rows.append([Button(".. back", f"/browse {mode} {parent}")])
        await bot.send_buttons(chat_id, path, rows)

    def _session_text(self, session: Session | None) -> str:
        if session is None:
            return "No active session. Send any message to start one."
        name_tag = f" [{session.name}]" if session.name else ""
        return f"Session: {session.short_id}...{name_tag}\nWorkdir: {session.cwd}\nStarted: {session.created_at}"

    def _status_text(self, chat_id: str) -> str:
        state = self._store.load()
        used, limit = self._budget.usage()
        lines = [
            "MetaMe Daemon",
            "Status: Running",
            f"Started: {state.started_at or 'unknown'}",
            f"Budget: {used}/{limit} tokens",
        ]
        session = state.sessions.get(chat_id)
        if session is not None:
            lines.append(f"Session: {session.short_id}... ({session.cwd})")
        if self._profile_path:
            profile = load_profile(self._profile_path)
            identity = profile.get("identity")
            if isinstance(identity, dict):
                lines.append(f"Profile: {identity.get('nickname') or 'unknown'}")
            context = profile.get("context")
            if isinstance(context, dict) and context.get("focus"):
                lines.append(f"Focus: {context['focus']}")
        return "\n".join(lines)

    def _tasks_text(self) -> str:
        tasks = self._executor.tasks
        if not tasks:
            return "No heartbeat tasks configured."
        history = self._store.load().tasks
        lines = ["Heartbeat Tasks:"]
        for task in tasks:
            record = history.get(task.name)
            lines.append(f"- {task.name} ({task.interval}) {record.status if record else 'never_run'}")
        return "\n".join(lines)

    def _reload_text(self) -> str:
        if self._reload is None:
            return "❌ Reload not available (daemon not fully started)."
        try:
            count = self._reload()
        except ConfigReloadFailed as exc:
            return f"❌ Reload failed: {exc}"
        return f"✅ Config reloaded. {count} heartbeat tasks active."

    def _set_quiet(self) -> None:
        if self._profile_path is None:
            raise RuntimeError("No profile configured")
        profile = load_profile(self._profile_path)
        growth = profile.get("growth")
        if not isinstance(growth, dict):
            growth = profile["growth"] = {}
        growth["quiet_until"] = (self._clock() + timedelta(hours=QUIET_HOURS)).isoformat()
        Path(self._profile_path).write_text(
            yaml.safe_dump(profile, allow_unicode=True, sort_keys=False, width=10_000),
            encoding="utf-8",
        )

    def _set_muted(self, chat_id: str, muted: bool) -> None:
        with self._store.transaction() as state:
            if muted and chat_id not in state.muted_chats:
                state.muted_chats.append(chat_id)
            elif not muted and chat_id in state.muted_chats:
                state.muted_chats.remove(chat_id)

    async def wait_background(self) -> None:
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)


def _expand(path: str) -> str:
    return os.path.expanduser(path.strip())


__all__ = ["CommandDispatcher", "CooldownTracker", "HELP_TEXT"]
