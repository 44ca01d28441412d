"""Read-only view over the engine's own per-project session indexes."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

logger = logging.getLogger(__name__)

INDEX_FILENAME = "sessions-index.json"


@dataclass(slots=True)
class IndexedSession:
    """One conversation known to the engine."""

    session_id: str
    project_path: str | None
    summary: str
    first_prompt: str
    custom_title: str | None
    message_count: int
    last_active: float

    @classmethod
    def from_entry(cls, entry: dict[str, Any]) -> "IndexedSession | None":
        session_id = entry.get("sessionId")
        if not session_id:
            return None
        return cls(
            session_id=str(session_id),
            project_path=entry.get("projectPath"),
            summary=str(entry.get("summary") or ""),
            first_prompt=str(entry.get("firstPrompt") or ""),
            custom_title=entry.get("customTitle") or None,
            message_count=int(entry.get("messageCount") or 0),
            last_active=_activity_timestamp(entry),
        )

    @property
    def project_name(self) -> str:
        return Path(self.project_path).name if self.project_path else ""


def _activity_timestamp(entry: dict[str, Any]) -> float:
    mtime = entry.get("fileMtime")
    if isinstance(mtime, (int, float)) and mtime > 0:
        return float(mtime) / 1000.0
    modified = entry.get("modified")
    if isinstance(modified, str) and modified:
        try:
            parsed = datetime.fromisoformat(modified.replace("Z", "+00:00"))
        except ValueError:
            return 0.0
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.timestamp()
    return 0.0


def format_relative_time(timestamp: float, now: float) -> str:
    diff = max(0.0, now - timestamp)
    minutes = int(diff // 60)
    hours = int(diff // 3600)
    days = int(diff // 86400)
    if minutes < 1:
        return "just now"
    if minutes < 60:
        return f"{minutes}m ago"
    if hours < 24:
        return f"{hours}h ago"
    if days == 1:
        return "yesterday"
    if days < 7:
        return f"{days}d ago"
    return datetime.fromtimestamp(timestamp).strftime("%m/%d")


class SessionIndex:
    """Lists the engine's conversations, most recently active first."""

    def __init__(self, projects_dir: Path, *, clock: Callable[[], float] | None = None) -> None:
        self._projects_dir = Path(projects_dir)
        self._clock = clock or (lambda: datetime.now(timezone.utc).timestamp())

    @property
    def projects_dir(self) -> Path:
        return self._projects_dir

    def _load_all(self) -> list[IndexedSession]:
        if not self._projects_dir.is_dir():
            return []

        sessions: list[IndexedSession] = []
        for index_file in sorted(self._projects_dir.glob(f"*/{INDEX_FILENAME}")):
            try:
                data = json.loads(index_file.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as exc:
                logger.debug("Skipping unreadable session index", extra={"path": str(index_file), "error": str(exc)})
                continue
            for entry in data.get("entries") or []:
                if not isinstance(entry, dict):
                    continue
                session = IndexedSession.from_entry(entry)
                if session is not None and session.message_count >= 1:
                    sessions.append(session)

        sessions.sort(key=lambda item: item.last_active, reverse=True)
        return sessions

    def list_recent(
        self,
        limit: int | None = 10,
        *,
        cwd: str | None = None,
        strict: bool = False,
    ) -> list[IndexedSession]:
        """Return recent sessions.

        With ``cwd`` the list is narrowed to that project; when nothing matches,
        ``strict`` decides between an empty list and the global list.
        """

        sessions = self._load_all()
        if cwd:
            matched = [item for item in sessions if item.project_path == cwd]
            if matched or strict:
                sessions = matched
        return sessions[:limit] if limit else sessions

    def find(self, session_id: str) -> IndexedSession | None:
        for item in self._load_all():
            if item.session_id == session_id:
                return item
        return None

    def project_dirs(self, limit: int = 6) -> list[str]:
        """Existing project directories ordered by most recent activity."""

        seen: list[str] = []
        for item in self.list_recent(50):
            path = item.project_path
            if not path or path in seen or not Path(path).is_dir():
                continue
            seen.append(path)
            if len(seen) >= limit:
                break
        return seen

    def label(self, item: IndexedSession, name: str | None = None) -> str:
        ago = format_relative_time(item.last_active, self._clock())
        short_id = item.session_id[:4]
        title = name or item.custom_title
        if title:
            return f"{ago} [{title}] {item.project_name} #{short_id}"

        preview = item.summary[:20]
        if not preview and item.first_prompt:
            preview = item.first_prompt[:20] + (".." if len(item.first_prompt) > 20 else "")
        project = f"{item.project_name}: " if item.project_name else ""
        return f"{ago} {project}{preview} #{short_id}"

    def transcript_path(self, cwd: str, session_id: str) -> Path:
        return self._projects_dir / cwd.replace("/", "-") / f"{session_id}.jsonl"


__all__ = ["IndexedSession", "SessionIndex", "format_relative_time"]
