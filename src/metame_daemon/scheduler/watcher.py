"""Filesystem watcher that reports edits to daemon.yaml."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

logger = logging.getLogger(__name__)

DEBOUNCE_SECONDS = 1.0


class _ConfigEventHandler(FileSystemEventHandler):
    def __init__(self, watcher: "ConfigWatcher") -> None:
        self._watcher = watcher

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        paths = [event.src_path, getattr(event, "dest_path", "") or ""]
        if any(Path(str(path)).name == self._watcher.path.name for path in paths if path):
            self._watcher.notify_changed()


class ConfigWatcher:
    """Watches the config directory and publishes debounced change events.

    watchdog delivers events on its own thread; they are handed to the asyncio
    loop, coalesced for ``debounce`` seconds and put on :attr:`changes`.
    """

    def __init__(
        self,
        path: Path,
        loop: asyncio.AbstractEventLoop,
        *,
        debounce: float = DEBOUNCE_SECONDS,
    ) -> None:
        self.path = Path(path)
        self.changes: asyncio.Queue[Path] = asyncio.Queue()
        self._loop = loop
        self._debounce = debounce
        self._pending: asyncio.TimerHandle | None = None
        self._observer: Observer | None = None

    def start(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        observer = Observer()
        observer.schedule(_ConfigEventHandler(self), str(self.path.parent), recursive=False)
        observer.daemon = True
        observer.start()
        self._observer = observer
        logger.info("Watching config for changes", extra={"path": str(self.path)})

    def stop(self) -> None:
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None

    def notify_changed(self) -> None:
        """Thread-safe entry point used by the watchdog handler."""

        self._loop.call_soon_threadsafe(self._arm)

    def _arm(self) -> None:
        if self._pending is not None:
            self._pending.cancel()
        self._pending = self._loop.call_later(self._debounce, self._publish)

    def _publish(self) -> None:
        self._pending = None
        logger.info("Config file changed", extra={"path": str(self.path)})
        self.changes.put_nowait(self.path)


__all__ = ["ConfigWatcher"]
