"""Tick-based heartbeat scheduler running on the asyncio loop."""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime
from typing import Awaitable, Callable, Iterable

from ..storage import StateStore
from ..tasks import HeartbeatTask
from .intervals import parse_interval

logger = logging.getLogger(__name__)

TaskRunner = Callable[[HeartbeatTask], Awaitable[object]]


def _timestamp(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp()
    except ValueError:
        return None


class TaskScheduler:
    """Decides when heartbeat tasks are due and dispatches them.

    Each due task is started as its own asyncio task so that a slow job never
    delays the tick or other tasks. ``next_run`` is advanced at dispatch time
    regardless of the outcome.
    """

    def __init__(
        self,
        store: StateStore,
        run_task: TaskRunner,
        *,
        tasks: Iterable[HeartbeatTask] = (),
        check_interval: float = 60,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._store = store
        self._run_task = run_task
        self._tasks: list[HeartbeatTask] = list(tasks)
        self._check_interval = check_interval
        self._clock = clock or time.time
        self._next_run: dict[str, float] = {}
        self._in_flight: dict[str, asyncio.Task] = {}
        self._timer: asyncio.Task | None = None

    @property
    def tasks(self) -> list[HeartbeatTask]:
        return list(self._tasks)

    @property
    def check_interval(self) -> float:
        return self._check_interval

    @property
    def next_run(self) -> dict[str, float]:
        return dict(self._next_run)

    @property
    def running(self) -> bool:
        return self._timer is not None and not self._timer.done()

    def schedule(self) -> dict[str, float]:
        """Compute the first run time of every task from persisted history.

        A task with history is due at ``last_run + interval`` but never earlier
        than one tick ago, so overdue tasks fire exactly once on the next tick.
        A task without history waits one tick.
        """

        now = self._clock()
        history = self._store.load().tasks
        self._next_run = {}
        for task in self._tasks:
            interval = parse_interval(task.interval)
            record = history.get(task.name)
            last_run = _timestamp(record.last_run) if record else None
            if last_run is None:
                self._next_run[task.name] = now + self._check_interval
            else:
                self._next_run[task.name] = max(last_run + interval, now - self._check_interval)
            logger.debug("Scheduled task", extra={"task": task.name, "next_run": self._next_run[task.name]})
        return self.next_run

    def due(self, now: float | None = None) -> list[HeartbeatTask]:
        now = self._clock() if now is None else now
        return [
            task
            for task in self._tasks
            if self._next_run.get(task.name, float("inf")) <= now and task.name not in self._in_flight
        ]

    def tick(self) -> list[str]:
        """Dispatch every due task; returns the dispatched task names."""

        now = self._clock()
        dispatched: list[str] = []
        for task in self.due(now):
            self._next_run[task.name] = now + parse_interval(task.interval)
            self._in_flight[task.name] = asyncio.create_task(self._guarded(task))
            dispatched.append(task.name)
        if dispatched:
            logger.info("Dispatched heartbeat tasks", extra={"tasks": dispatched})
        return dispatched

    async def _guarded(self, task: HeartbeatTask) -> None:
        try:
            await self._run_task(task)
        except asyncio.CancelledError:
            raise
        except Exception:  # pragma: no cover - defensive
            logger.exception("Heartbeat task raised", extra={"task": task.name})
        finally:
            self._in_flight.pop(task.name, None)

    async def run(self) -> None:
        while True:
            await asyncio.sleep(self._check_interval)
            self.tick()

    def start(self) -> None:
        if self.running:
            return
        self.schedule()
        self._start_timer()

    def _start_timer(self) -> None:
        self._timer = asyncio.create_task(self.run())
        logger.info(
            "Heartbeat scheduler started",
            extra={"tasks": len(self._tasks), "check_interval": self._check_interval},
        )

    def stop(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def reload(self, tasks: Iterable[HeartbeatTask], check_interval: float | None = None) -> None:
        """Swap the task list and restart the timer; in-flight runs are left alone.

        Tasks that survive the reload keep their pending run time; persisted
        history lags behind runs that are still in flight.
        """

        was_running = self.running
        self.stop()
        previous = dict(self._next_run)
        self._tasks = list(tasks)
        if check_interval is not None:
            self._check_interval = check_interval
        self.schedule()
        for name, next_run in previous.items():
            if name in self._next_run:
                self._next_run[name] = next_run
        if was_running:
            self._start_timer()

    async def drain(self) -> None:
        pending = list(self._in_flight.values())
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)


__all__ = ["TaskScheduler"]
