"""Daemon bootstrap: wires settings, config, state and chat backends together."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Callable, Sequence

from . import __version__
from .bots import AdapterAuthError, BotAdapter, MessageHandler
from .budget import BudgetTracker
from .config import DaemonSettings, get_settings
from .dispatcher import CommandDispatcher, CooldownTracker
from .engine import EngineNotFoundError, EngineRunner
from .engine.prompts import DAEMON_HINT
from .scheduler import ConfigWatcher, TaskExecutor, TaskResult, TaskScheduler, format_notification
from .sessions import SessionIndex, SessionManager
from .storage import StateStore
from .tasks import ConfigLoadError, ConfigLoader, ConfigReloadFailed, DaemonConfig, HeartbeatTask

logger = logging.getLogger(__name__)

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"
STOP_GRACE_SECONDS = 5.0


def configure_logging(level: str, log_file: Path | None = None, max_bytes: int = 1_048_576) -> None:
    """Configure root logging; the daemon additionally logs to a size-capped file."""

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers = [RotatingFileHandler(log_file, maxBytes=max_bytes, backupCount=1, encoding="utf-8")]
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )


def read_pid(pid_file: Path) -> int | None:
    try:
        return int(pid_file.read_text(encoding="utf-8").strip())
    except (OSError, ValueError):
        return None


def pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def terminate_process(pid: int, grace: float = STOP_GRACE_SECONDS) -> bool:
    """SIGTERM a process, escalating to SIGKILL after ``grace`` seconds."""

    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        return False
    deadline = time.monotonic() + grace
    while time.monotonic() < deadline:
        if not pid_alive(pid):
            return True
        time.sleep(0.1)
    try:
        os.kill(pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    return True


def acquire_pid_file(pid_file: Path) -> None:
    """Take over the pid file, stopping any daemon that still owns it."""

    previous = read_pid(pid_file)
    if previous and previous != os.getpid() and pid_alive(previous):
        logger.info("Stopping previous daemon", extra={"pid": previous})
        terminate_process(previous)
    pid_file.parent.mkdir(parents=True, exist_ok=True)
    pid_file.write_text(str(os.getpid()), encoding="utf-8")


def release_pid_file(pid_file: Path) -> None:
    if read_pid(pid_file) == os.getpid():
        pid_file.unlink(missing_ok=True)


class Daemon:
    """Explicit context for one daemon process.

    Holds every long-lived collaborator so that nothing lives in module
    globals; tests build one around fakes.
    """

    def __init__(
        self,
        settings: DaemonSettings,
        config: DaemonConfig,
        *,
        runner: EngineRunner | None = None,
        adapters: Sequence[BotAdapter] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.settings = settings
        self.config = config
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.store = StateStore(settings.state_file)
        self.runner = runner
        self.budget = BudgetTracker(
            self.store,
            daily_limit=config.budget.daily_limit,
            warning_threshold=config.budget.warning_threshold,
        )
        self.index = SessionIndex(settings.engine_projects_dir)
        self.sessions = SessionManager(
            self.store,
            self.index,
            runner,
            self.budget,
            ask_timeout=config.daemon.ask_timeout,
            prompt_suffix=DAEMON_HINT,
            clock=self._clock,
        )
        self.executor = TaskExecutor(
            self.store,
            self.budget,
            runner,
            profile_path=settings.profile_path,
            tasks=config.tasks,
            clock=self._clock,
        )
        self.scheduler = TaskScheduler(
            self.store,
            self.run_task,
            tasks=config.tasks,
            check_interval=config.daemon.heartbeat_check_interval,
        )
        self.cooldown = CooldownTracker(config.daemon.cooldown_seconds)
        self.dispatcher = CommandDispatcher(
            self.sessions,
            self.budget,
            self.store,
            self.executor,
            cooldown=self.cooldown,
            profile_path=settings.profile_path,
            reload=self.reload,
            allowed_tools=config.daemon.session_allowed_tools,
            clock=self._clock,
        )
        self.adapters: list[BotAdapter] = list(adapters) if adapters is not None else []
        self._build_adapters = adapters is None
        self.watcher: ConfigWatcher | None = None
        self._stop = asyncio.Event()

    @classmethod
    def from_settings(cls, settings: DaemonSettings | None = None) -> "Daemon":
        """Load config and resolve the engine; a missing config raises ConfigLoadError."""

        settings = settings or get_settings()
        config = ConfigLoader(settings.config_file).load()
        try:
            runner = EngineRunner(Path(settings.engine_path) if settings.engine_path else None)
        except EngineNotFoundError as exc:
            logger.warning("Engine unavailable; chat and prompt tasks will fail", extra={"error": str(exc)})
            runner = None
        return cls(settings, config, runner=runner)

    def reload(self) -> int:
        """Re-read daemon.yaml and apply it as a unit; returns the active task count."""

        try:
            config = ConfigLoader(self.settings.config_file).load()
        except ConfigLoadError as exc:
            logger.error("ConfigReloadFailed", extra={"error": str(exc)})
            raise ConfigReloadFailed(str(exc)) from exc

        self.config = config
        self.budget.daily_limit = config.budget.daily_limit
        self.budget.warning_threshold = config.budget.warning_threshold
        self.cooldown.seconds = config.daemon.cooldown_seconds
        self.dispatcher.allowed_tools = list(config.daemon.session_allowed_tools)
        self.executor.update_tasks(config.tasks)
        self.scheduler.reload(config.tasks, config.daemon.heartbeat_check_interval)
        logger.info("Config reloaded", extra={"tasks": len(config.tasks)})
        return len(config.tasks)

    async def run_task(self, task: HeartbeatTask) -> TaskResult:
        result = await asyncio.to_thread(self.executor.execute, task)
        text = format_notification(task, result)
        if text:
            await self.notify(text)
        return result

    async def notify(self, text: str) -> None:
        """Push text to every allowed chat of every adapter, skipping muted chats."""

        muted = set(self.store.load().muted_chats)
        for adapter in self.adapters:
            for chat_id in adapter.allowed_chat_ids:
                if chat_id in muted:
                    continue
                try:
                    await adapter.send_markdown(chat_id, text)
                except Exception as exc:
                    logger.error(
                        "Notification failed",
                        extra={"bot": adapter.name, "chat_id": chat_id, "error": str(exc)},
                    )

    def _handler_for(self, adapter: BotAdapter) -> MessageHandler:
        async def handle(chat_id: str, text: str) -> None:
            await self.dispatcher.handle(chat_id, text, adapter)

        return handle

    def _create_adapters(self) -> list[BotAdapter]:
        from .bots.feishu import FeishuAdapter
        from .bots.telegram import TelegramAdapter

        adapters: list[BotAdapter] = []
        telegram = self.config.telegram
        if telegram.enabled:
            try:
                adapters.append(TelegramAdapter(telegram.bot_token, telegram.allowed_chat_ids))
            except AdapterAuthError as exc:
                logger.warning("Telegram disabled", extra={"error": str(exc)})
        feishu = self.config.feishu
        if feishu.enabled:
            try:
                adapters.append(FeishuAdapter(feishu.app_id, feishu.app_secret, feishu.allowed_chat_ids))
            except AdapterAuthError as exc:
                logger.warning("Feishu disabled", extra={"error": str(exc)})
        return adapters

    async def start_adapters(self) -> None:
        candidates = self._create_adapters() if self._build_adapters else list(self.adapters)
        started: list[BotAdapter] = []
        for adapter in candidates:
            try:
                me = await adapter.get_me()
            except AdapterAuthError as exc:
                logger.error("Bot authentication failed", extra={"bot": adapter.name, "error": str(exc)})
                await adapter.stop()
                continue
            await adapter.start_receiving(self._handler_for(adapter))
            logger.info("Bot connected", extra={"bot": adapter.name, "identity": me})
            started.append(adapter)
        self.adapters = started

    def _record_start(self) -> None:
        with self.store.transaction() as state:
            state.pid = os.getpid()
            state.started_at = self._clock().isoformat()

    def request_stop(self) -> None:
        self._stop.set()

    async def _watch_config(self) -> None:
        assert self.watcher is not None
        while True:
            await self.watcher.changes.get()
            try:
                self.reload()
            except ConfigReloadFailed:
                continue

    async def serve(self, *, watch: bool = True, handle_signals: bool = True) -> None:
        loop = asyncio.get_running_loop()
        if handle_signals:
            for signum in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(signum, self.request_stop)

        acquire_pid_file(self.settings.pid_file)
        self._record_start()
        logger.info(
            "Daemon started",
            extra={"version": __version__, "pid": os.getpid(), "tasks": len(self.config.tasks)},
        )

        watch_task: asyncio.Task | None = None
        try:
            await self.start_adapters()
            self.scheduler.start()
            if watch:
                self.watcher = ConfigWatcher(self.settings.config_file, loop)
                self.watcher.start()
                watch_task = asyncio.create_task(self._watch_config())
            await self._stop.wait()
        finally:
            logger.info("Daemon stopping")
            if watch_task is not None:
                watch_task.cancel()
            if self.watcher is not None:
                self.watcher.stop()
            self.scheduler.stop()
            for adapter in self.adapters:
                await adapter.stop()
            await self.scheduler.drain()
            release_pid_file(self.settings.pid_file)
            if handle_signals:
                for signum in (signal.SIGTERM, signal.SIGINT):
                    loop.remove_signal_handler(signum)


def run_foreground(settings: DaemonSettings | None = None) -> int:
    settings = settings or get_settings()
    max_bytes = 1_048_576
    try:
        daemon = Daemon.from_settings(settings)
        max_bytes = daemon.config.daemon.log_max_size
    except ConfigLoadError as exc:
        configure_logging(settings.log_level, settings.log_file, max_bytes)
        logger.error("Cannot start daemon", extra={"error": str(exc)})
        return 1
    configure_logging(settings.log_level, settings.log_file, max_bytes)
    asyncio.run(daemon.serve())
    return 0


__all__ = [
    "Daemon",
    "acquire_pid_file",
    "configure_logging",
    "pid_alive",
    "read_pid",
    "release_pid_file",
    "run_foreground",
    "terminate_process",
]
