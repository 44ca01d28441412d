from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from pathlib import Path

import pytest

from metame_daemon.scheduler import TaskScheduler, parse_interval
from metame_daemon.storage import StateStore, TaskRunRecord
from metame_daemon.tasks import HeartbeatTask

NOW = 1_800_000_000.0


class Clock:
    def __init__(self, now: float = NOW) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def _task(name: str, interval: str = "1h") -> HeartbeatTask:
    return HeartbeatTask(name=name, type="script", command="true", interval=interval)


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("30s", 30),
        ("5m", 300),
        ("2h", 7200),
        ("1d", 86400),
        ("0m", 0),
        ("1w", 3600),
        ("", 3600),
        (None, 3600),
        ("m5", 3600),
        ("1.5h", 3600),
    ],
)
def test_parse_interval(value, expected) -> None:
    assert parse_interval(value) == expected


def test_first_run_waits_one_tick(tmp_path: Path) -> None:
    clock = Clock()
    scheduler = TaskScheduler(
        StateStore(tmp_path / "state.json"),
        lambda task: asyncio.sleep(0),
        tasks=[_task("fresh")],
        check_interval=60,
        clock=clock,
    )

    next_run = scheduler.schedule()

    assert next_run["fresh"] == NOW + 60
    assert scheduler.due(NOW + 59) == []
    assert [task.name for task in scheduler.due(NOW + 60)] == ["fresh"]


def test_overdue_task_fires_once_on_next_tick(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "state.json")
    with store.transaction() as state:
        state.tasks["stale"] = TaskRunRecord(last_run=_iso(NOW - 10 * 3600), status="success")
        state.tasks["recent"] = TaskRunRecord(last_run=_iso(NOW - 600), status="success")

    clock = Clock()
    calls: list[str] = []

    async def run_task(task: HeartbeatTask) -> None:
        calls.append(task.name)

    async def scenario() -> None:
        scheduler = TaskScheduler(
            store, run_task, tasks=[_task("stale"), _task("recent")], check_interval=60, clock=clock
        )
        next_run = scheduler.schedule()
        assert next_run["stale"] == NOW - 60
        assert next_run["recent"] == NOW - 600 + 3600

        assert scheduler.tick() == ["stale"]
        await scheduler.drain()
        clock.now += 60
        assert scheduler.tick() == []
        await scheduler.drain()

    asyncio.run(scenario())
    assert calls == ["stale"]


def test_due_task_advances_even_when_it_fails(tmp_path: Path) -> None:
    clock = Clock()

    async def run_task(task: HeartbeatTask) -> None:
        raise RuntimeError("boom")

    async def scenario() -> TaskScheduler:
        scheduler = TaskScheduler(
            StateStore(tmp_path / "state.json"), run_task, tasks=[_task("flaky", "5m")], clock=clock
        )
        scheduler.schedule()
        clock.now += 60
        assert scheduler.tick() == ["flaky"]
        await scheduler.drain()
        return scheduler

    scheduler = asyncio.run(scenario())
    assert scheduler.next_run["flaky"] == NOW + 60 + 300


def test_slow_task_does_not_block_others(tmp_path: Path) -> None:
    clock = Clock()
    started: list[str] = []
    release = None

    async def run_task(task: HeartbeatTask) -> None:
        started.append(task.name)
        if task.name == "slow":
            await release.wait()

    async def scenario() -> None:
        nonlocal release
        release = asyncio.Event()
        scheduler = TaskScheduler(
            StateStore(tmp_path / "state.json"),
            run_task,
            tasks=[_task("slow", "1m"), _task("fast", "1m")],
            check_interval=60,
            clock=clock,
        )
        scheduler.schedule()
        clock.now += 60
        scheduler.tick()
        await asyncio.sleep(0)
        assert sorted(started) == ["fast", "slow"]

        clock.now += 60
        assert scheduler.tick() == ["fast"]
        release.set()
        await scheduler.drain()

    asyncio.run(scenario())


def test_reload_replaces_tasks_and_keeps_timer(tmp_path: Path) -> None:
    clock = Clock()

    async def scenario() -> None:
        scheduler = TaskScheduler(
            StateStore(tmp_path / "state.json"),
            lambda task: asyncio.sleep(0),
            tasks=[_task("old")],
            check_interval=60,
            clock=clock,
        )
        scheduler.start()
        assert scheduler.running

        scheduler.reload([_task("new")], check_interval=30)

        assert scheduler.running
        assert scheduler.check_interval == 30
        assert list(scheduler.next_run) == ["new"]
        assert scheduler.next_run["new"] == NOW + 30
        scheduler.stop()

    asyncio.run(scenario())


def test_reload_during_run_does_not_fire_task_again(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "state.json")
    with store.transaction() as state:
        state.tasks["hourly"] = TaskRunRecord(last_run=_iso(NOW - 3600), status="success")
    clock = Clock()
    fired: list[float] = []
    release = None

    async def run_task(task: HeartbeatTask) -> None:
        fired.append(clock.now)
        await release.wait()
        with store.transaction() as state:
            state.tasks[task.name] = TaskRunRecord(last_run=_iso(clock.now), status="success")

    async def scenario() -> None:
        nonlocal release
        release = asyncio.Event()
        scheduler = TaskScheduler(store, run_task, tasks=[_task("hourly")], check_interval=60, clock=clock)
        scheduler.schedule()
        clock.now += 60
        assert scheduler.tick() == ["hourly"]
        await asyncio.sleep(0)

        clock.now += 60
        scheduler.reload([_task("hourly")])
        assert scheduler.next_run["hourly"] == NOW + 60 + 3600

        clock.now += 180
        release.set()
        await scheduler.drain()
        clock.now += 60
        assert scheduler.tick() == []

    asyncio.run(scenario())
    assert fired == [NOW + 60]


def test_config_watcher_coalesces_bursts(tmp_path: Path) -> None:
    from watchdog.events import FileModifiedEvent

    from metame_daemon.scheduler import ConfigWatcher
    from metame_daemon.scheduler.watcher import _ConfigEventHandler

    config = tmp_path / "daemon.yaml"

    async def scenario() -> int:
        watcher = ConfigWatcher(config, asyncio.get_running_loop(), debounce=0.05)
        handler = _ConfigEventHandler(watcher)

        def burst() -> None:
            handler.on_any_event(FileModifiedEvent(str(tmp_path / "other.txt")))
            for _ in range(3):
                handler.on_any_event(FileModifiedEvent(str(config)))

        await asyncio.to_thread(burst)
        changed = await asyncio.wait_for(watcher.changes.get(), timeout=2)
        assert changed == config
        await asyncio.sleep(0.1)
        return watcher.changes.qsize()

    assert asyncio.run(scenario()) == 0
