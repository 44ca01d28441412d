"""metame-daemon command line."""

from __future__ import annotations

import argparse
import subprocess
import sys
from collections import deque
from pathlib import Path

from .budget import BudgetTracker
from .config import DaemonSettings
from .daemon import configure_logging, pid_alive, read_pid, run_foreground, terminate_process
from .engine import EngineNotFoundError, EngineRunner
from .scheduler import TaskExecutor
from .storage import StateStore
from .tasks import ConfigLoadError, ConfigLoader


def _running_pid(settings: DaemonSettings) -> int | None:
    pid = read_pid(settings.pid_file)
    if pid and pid_alive(pid):
        return pid
    return None


def cmd_start(args: argparse.Namespace) -> int:
    settings = DaemonSettings()
    if not ConfigLoader(settings.config_file).exists():
        print(f"No config found at {settings.config_file}. Create it first.")
        return 1

    previous = _running_pid(settings)
    if previous:
        print(f"Stopping previous daemon (pid {previous})")
        terminate_process(previous)

    settings.home.mkdir(parents=True, exist_ok=True)
    process = subprocess.Popen(
        [sys.executable, "-m", "metame_daemon.cli", "foreground"],
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        start_new_session=True,
    )
    print(f"Daemon started (pid {process.pid})")
    print(f"Logs: {settings.log_file}")
    return 0


def cmd_foreground(args: argparse.Namespace) -> int:
    return run_foreground(DaemonSettings())


def cmd_stop(args: argparse.Namespace) -> int:
    settings = DaemonSettings()
    pid = _running_pid(settings)
    if pid is None:
        print("Daemon is not running")
        settings.pid_file.unlink(missing_ok=True)
        return 0
    terminate_process(pid)
    settings.pid_file.unlink(missing_ok=True)
    print(f"Daemon stopped (pid {pid})")
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    settings = DaemonSettings()
    store = StateStore(settings.state_file)
    state = store.load()
    pid = _running_pid(settings)

    limit = None
    try:
        limit = ConfigLoader(settings.config_file).load().budget.daily_limit
    except ConfigLoadError:
        pass
    used, limit = BudgetTracker(store, daily_limit=limit or 50_000).usage()

    print(f"MetaMe Daemon: {'Running' if pid else 'Stopped'}")
    if pid:
        print(f"PID: {pid}")
    print(f"Started: {state.started_at or 'unknown'}")
    print(f"Budget: {used}/{limit} tokens ({used / limit * 100:.1f}%)")
    if state.tasks:
        print("Recent tasks:")
        for name, record in state.tasks.items():
            print(f"  {name}: {record.status} at {record.last_run}")
    return 0


def cmd_logs(args: argparse.Namespace) -> int:
    settings = DaemonSettings()
    try:
        with settings.log_file.open(encoding="utf-8", errors="replace") as handle:
            lines = deque(handle, maxlen=args.lines)
    except FileNotFoundError:
        print(f"No log file at {settings.log_file}")
        return 0
    sys.stdout.write("".join(lines))
    return 0


def cmd_run(args: argparse.Namespace) -> int:
    settings = DaemonSettings()
    configure_logging(settings.log_level)
    try:
        config = ConfigLoader(settings.config_file).load()
    except ConfigLoadError as exc:
        print(str(exc))
        return 1

    if config.find_task(args.task) is None:
        names = ", ".join(task.name for task in config.tasks) or "(none)"
        print(f"Task '{args.task}' not found. Available: {names}")
        return 1

    try:
        runner = EngineRunner(Path(settings.engine_path) if settings.engine_path else None)
    except EngineNotFoundError:
        runner = None
    store = StateStore(settings.state_file)
    budget = BudgetTracker(
        store,
        daily_limit=config.budget.daily_limit,
        warning_threshold=config.budget.warning_threshold,
    )
    executor = TaskExecutor(store, budget, runner, profile_path=settings.profile_path, tasks=config.tasks)
    result = executor.execute_by_name(args.task)

    if result.skipped:
        print(f"{args.task}: skipped (precondition not met)")
        return 0
    if not result.success:
        print(f"Error: {result.error}")
        return 1
    print(result.output)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="metame-daemon", description="MetaMe chat and heartbeat daemon")
    sub = parser.add_subparsers(dest="cmd")

    p_start = sub.add_parser("start", help="Start the daemon in the background")
    p_start.set_defaults(func=cmd_start)

    p_fg = sub.add_parser("foreground", help="Run the daemon in this process")
    p_fg.set_defaults(func=cmd_foreground)

    p_stop = sub.add_parser("stop", help="Stop the running daemon")
    p_stop.set_defaults(func=cmd_stop)

    p_status = sub.add_parser("status", help="Show daemon, budget and task status")
    p_status.set_defaults(func=cmd_status)

    p_logs = sub.add_parser("logs", help="Show the tail of the daemon log")
    p_logs.add_argument("-n", "--lines", type=int, default=50, help="Number of lines to show")
    p_logs.set_defaults(func=cmd_logs)

    p_run = sub.add_parser("run", help="Run one heartbeat task now")
    p_run.add_argument("task")
    p_run.set_defaults(func=cmd_run)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return 0
    return args.func(args)


if __name__ == "__main__":
    raise SystemExit(main())
