from __future__ import annotations

import asyncio
import logging
import os
import textwrap
from pathlib import Path

import pytest

from metame_daemon.bots import AdapterAuthError, BotAdapter
from metame_daemon.config import DaemonSettings
from metame_daemon.daemon import (
    Daemon,
    acquire_pid_file,
    configure_logging,
    read_pid,
    release_pid_file,
)
from metame_daemon.engine import FakeEngineRunner
from metame_daemon.tasks import ConfigReloadFailed, load_config


class RecordingBot(BotAdapter):
    name = "recording"

    def __init__(self, allowed=(), *, fail_auth: bool = False) -> None:
        super().__init__(allowed)
        self.fail_auth = fail_auth
        self.markdown: list[tuple[str, str]] = []
        self.handler = None
        self.stopped = False

    async def get_me(self):
        if self.fail_auth:
            raise AdapterAuthError("bad token")
        return {"name": "recording"}

    async def start_receiving(self, handler) -> None:
        self.handler = handler

    async def stop(self) -> None:
        self.stopped = True

    async def send_message(self, chat_id: str, text: str) -> None:
        self.markdown.append((chat_id, text))

    async def send_markdown(self, chat_id: str, text: str) -> None:
        self.markdown.append((chat_id, text))

    async def send_buttons(self, chat_id: str, title: str, rows) -> None:
        return None

    async def send_typing(self, chat_id: str) -> None:
        return None


BASE_CONFIG = """
daemon:
  cooldown_seconds: 10
budget:
  daily_limit: 5000
heartbeat:
  tasks:
    - name: ping
      type: script
      command: echo pong
      notify: true
"""


@pytest.fixture()
def settings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> DaemonSettings:
    home = tmp_path / "metame"
    home.mkdir()
    monkeypatch.setenv("METAME_HOME", str(home))
    monkeypatch.setenv("METAME_ENGINE_PROJECTS_DIR", str(tmp_path / "projects"))
    monkeypatch.setenv("METAME_PROFILE_PATH", str(tmp_path / "profile.yaml"))
    write(home / "daemon.yaml", BASE_CONFIG)
    return DaemonSettings()


def write(path: Path, body: str) -> None:
    path.write_text(textwrap.dedent(body).strip() + "\n", encoding="utf-8")


def make_daemon(settings: DaemonSettings, adapters=()) -> Daemon:
    return Daemon(
        settings,
        load_config(settings.config_file),
        runner=FakeEngineRunner(),
        adapters=list(adapters),
    )


def test_reload_applies_new_config(settings: DaemonSettings) -> None:
    daemon = make_daemon(settings)
    write(
        settings.config_file,
        """
        daemon:
          cooldown_seconds: 3
          heartbeat_check_interval: 15
          session_allowed_tools: [Read]
        budget:
          daily_limit: 1234
        heartbeat:
          tasks:
            - name: ping
              type: script
              command: echo pong
            - name: digest
              prompt: Summarize
        """,
    )

    assert daemon.reload() == 2
    assert daemon.budget.daily_limit == 1234
    assert daemon.cooldown.seconds == 3
    assert daemon.dispatcher.allowed_tools == ["Read"]
    assert daemon.executor.task_names == ["ping", "digest"]
    assert [task.name for task in daemon.scheduler.tasks] == ["ping", "digest"]
    assert daemon.scheduler.check_interval == 15


def test_failed_reload_keeps_previous_config(settings: DaemonSettings, caplog) -> None:
    daemon = make_daemon(settings)
    settings.config_file.write_text("heartbeat: [unclosed", encoding="utf-8")

    with caplog.at_level(logging.ERROR, logger="metame_daemon.daemon"):
        with pytest.raises(ConfigReloadFailed):
            daemon.reload()

    assert "ConfigReloadFailed" in caplog.text
    assert daemon.budget.daily_limit == 5000
    assert [task.name for task in daemon.scheduler.tasks] == ["ping"]


def test_notify_skips_muted_chats(settings: DaemonSettings) -> None:
    bot = RecordingBot(["1", "2"])
    daemon = make_daemon(settings, [bot])
    with daemon.store.transaction() as state:
        state.muted_chats.append("2")

    asyncio.run(daemon.notify("hello"))

    assert bot.markdown == [("1", "hello")]


def test_run_task_sends_notification(settings: DaemonSettings) -> None:
    bot = RecordingBot(["1"])
    daemon = make_daemon(settings, [bot])

    result = asyncio.run(daemon.run_task(daemon.config.find_task("ping")))

    assert result.success
    assert bot.markdown == [("1", "✅ *ping* completed\n\npong")]
    assert daemon.store.load().tasks["ping"].status == "success"


def test_serve_starts_adapters_and_cleans_up(settings: DaemonSettings) -> None:
    good = RecordingBot(["1"])
    bad = RecordingBot(["2"], fail_auth=True)
    daemon = make_daemon(settings, [good, bad])

    async def scenario() -> None:
        serving = asyncio.create_task(daemon.serve(watch=False, handle_signals=False))
        await asyncio.sleep(0.05)
        assert read_pid(settings.pid_file) == os.getpid()
        assert daemon.scheduler.running
        daemon.request_stop()
        await serving

    asyncio.run(scenario())

    assert good.handler is not None
    assert bad.handler is None and bad.stopped
    assert daemon.adapters == [good]
    assert good.stopped
    assert not settings.pid_file.exists()
    assert daemon.store.load().started_at


def test_pid_file_helpers(tmp_path: Path) -> None:
    pid_file = tmp_path / "run" / "daemon.pid"
    assert read_pid(pid_file) is None

    acquire_pid_file(pid_file)
    assert read_pid(pid_file) == os.getpid()

    release_pid_file(pid_file)
    assert not pid_file.exists()

    pid_file.write_text("garbage", encoding="utf-8")
    assert read_pid(pid_file) is None


def test_configure_logging_writes_rotating_file(tmp_path: Path) -> None:
    log_file = tmp_path / "logs" / "daemon.log"
    root = logging.getLogger()
    previous = list(root.handlers)
    try:
        configure_logging("INFO", log_file, max_bytes=2048)
        logging.getLogger("metame_daemon.test").info("hello from the daemon")
        for handler in root.handlers:
            handler.flush()
        contents = log_file.read_text(encoding="utf-8")
        assert "[INFO] metame_daemon.test: hello from the daemon" in contents
    finally:
        for handler in list(root.handlers):
            handler.close()
            root.removeHandler(handler)
        for handler in previous:
            root.addHandler(handler)
