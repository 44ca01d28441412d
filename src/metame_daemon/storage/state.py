"""JSON snapshot persistence for daemon state."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from .models import DaemonState

logger = logging.getLogger(__name__)


class StateStore:
    """Durable key-value snapshot of the daemon state.

    Every access re-reads the file so that the long-running daemon and one-shot
    CLI invocations never disagree. There is no cross-process lock: a
    concurrent writer's change may be overwritten by the next save.
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> DaemonState:
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return DaemonState()
        except OSError as exc:
            logger.warning("Failed to read state file", extra={"path": str(self._path), "error": str(exc)})
            return DaemonState()

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            logger.warning("State file is corrupt; starting empty", extra={"path": str(self._path), "error": str(exc)})
            return DaemonState()
        if not isinstance(data, dict):
            return DaemonState()
        return DaemonState.from_dict(data)

    def save(self, state: DaemonState) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(state.to_dict(), indent=2, ensure_ascii=False)
        fd, tmp_name = tempfile.mkstemp(dir=str(self._path.parent), prefix=".state-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
            os.replace(tmp_name, self._path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    @contextmanager
    def transaction(self) -> Iterator[DaemonState]:
        """Read-modify-write helper; the state is saved when the block exits cleanly."""

        state = self.load()
        yield state
        self.save(state)


__all__ = ["StateStore"]
