"""Data models for the persisted daemon state."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

CONTINUE_SENTINEL = "__continue__"


@dataclass(slots=True)
class Session:
    chat_id: str
    engine_session_id: str
    cwd: str
    created_at: str
    started: bool = False
    name: str | None = None

    @property
    def is_continue(self) -> bool:
        return self.engine_session_id == CONTINUE_SENTINEL

    @property
    def short_id(self) -> str:
        return self.engine_session_id[:8]

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.engine_session_id,
            "cwd": self.cwd,
            "created": self.created_at,
            "started": self.started,
        }
        if self.name:
            payload["name"] = self.name
        return payload

    @classmethod
    def from_dict(cls, chat_id: str, data: dict[str, Any]) -> "Session":
        return cls(
            chat_id=str(chat_id),
            engine_session_id=str(data.get("id", "")),
            cwd=str(data.get("cwd", "")),
            created_at=str(data.get("created", "")),
            started=bool(data.get("started", False)),
            name=data.get("name") or None,
        )


@dataclass(slots=True)
class TaskRunRecord:
    last_run: str
    status: str
    output_preview: str = ""
    error: str | None = None
    steps_completed: int | None = None
    steps_total: int | None = None
    stopped_early: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value is not None}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TaskRunRecord":
        return cls(
            last_run=str(data.get("last_run", "")),
            status=str(data.get("status", "unknown")),
            output_preview=str(data.get("output_preview", "")),
            error=data.get("error"),
            steps_completed=data.get("steps_completed"),
            steps_total=data.get("steps_total"),
            stopped_early=data.get("stopped_early"),
        )


@dataclass(slots=True)
class BudgetState:
    date: str | None = None
    tokens_used: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {"date": self.date, "tokens_used": self.tokens_used}

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "BudgetState":
        data = data or {}
        return cls(date=data.get("date"), tokens_used=int(data.get("tokens_used", 0) or 0))


@dataclass(slots=True)
class DaemonState:
    pid: int | None = None
    started_at: str | None = None
    budget: BudgetState = field(default_factory=BudgetState)
    tasks: dict[str, TaskRunRecord] = field(default_factory=dict)
    sessions: dict[str, Session] = field(default_factory=dict)
    session_names: dict[str, str] = field(default_factory=dict)
    muted_chats: list[str] = field(default_factory=list)

    def bound_chat(self, engine_session_id: str) -> str | None:
        """Return the chat currently bound to an engine session id, if any."""

        for chat_id, session in self.sessions.items():
            if session.engine_session_id == engine_session_id:
                return chat_id
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "pid": self.pid,
            "started_at": self.started_at,
            "budget": self.budget.to_dict(),
            "tasks": {name: record.to_dict() for name, record in self.tasks.items()},
            "sessions": {chat_id: session.to_dict() for chat_id, session in self.sessions.items()},
            "session_names": dict(self.session_names),
            "muted_chats": list(self.muted_chats),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DaemonState":
        tasks = {
            name: TaskRunRecord.from_dict(record)
            for name, record in (data.get("tasks") or {}).items()
            if isinstance(record, dict)
        }
        sessions = {
            str(chat_id): Session.from_dict(str(chat_id), payload)
            for chat_id, payload in (data.get("sessions") or {}).items()
            if isinstance(payload, dict)
        }
        return cls(
            pid=data.get("pid"),
            started_at=data.get("started_at"),
            budget=BudgetState.from_dict(data.get("budget")),
            tasks=tasks,
            sessions=sessions,
            session_names={str(k): str(v) for k, v in (data.get("session_names") or {}).items()},
            muted_chats=[str(item) for item in (data.get("muted_chats") or [])],
        )


__all__ = ["BudgetState", "CONTINUE_SENTINEL", "DaemonState", "Session", "TaskRunRecord"]
