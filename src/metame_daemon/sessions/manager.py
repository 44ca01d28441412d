"""Chat-to-engine session bookkeeping and interactive turns."""

from __future__ import annotations

import json
import logging
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Sequence

from ..budget import BudgetTracker
from ..engine import EngineResult, EngineRunner, build_engine_args, estimate_tokens
from ..storage import CONTINUE_SENTINEL, Session, StateStore
from .index import IndexedSession, SessionIndex

logger = logging.getLogger(__name__)

_NAME_STRIP = re.compile(r"[\"'`“”‘’.,!?:;。，！？：；]")


class SessionInUseError(RuntimeError):
    """Raised when an engine session is already bound to a different chat."""


@dataclass(slots=True)
class AskResult:
    session: Session
    output: str = ""
    error: str | None = None
    tokens: int = 0
    recovered: bool = False
    first_turn: bool = False
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None


class SessionManager:
    """Maps chat identities to engine sessions.

    Session lifecycle: a freshly created session has ``started=False`` and is
    passed to the engine with ``--session-id``; after the first successful
    call it is ``started=True`` and passed with ``--resume``. Expired sessions
    are replaced by a new object, never revived.
    """

    def __init__(
        self,
        store: StateStore,
        index: SessionIndex,
        runner: EngineRunner | None,
        budget: BudgetTracker,
        *,
        default_cwd: Path | None = None,
        ask_timeout: float = 300,
        prompt_suffix: str = "",
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._index = index
        self._runner = runner
        self._budget = budget
        self._default_cwd = str(default_cwd or Path.home())
        self._ask_timeout = ask_timeout
        self._prompt_suffix = prompt_suffix
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def index(self) -> SessionIndex:
        return self._index

    @property
    def default_cwd(self) -> str:
        return self._default_cwd

    def _now(self) -> str:
        return self._clock().isoformat()

    def get_session(self, chat_id: str) -> Session | None:
        return self._store.load().sessions.get(str(chat_id))

    def current_cwd(self, chat_id: str) -> str | None:
        session = self.get_session(chat_id)
        return session.cwd if session else None

    def session_name(self, engine_session_id: str) -> str | None:
        return self._store.load().session_names.get(engine_session_id)

    def create_session(self, chat_id: str, cwd: str | None = None, name: str | None = None) -> Session:
        chat_id = str(chat_id)
        session = Session(
            chat_id=chat_id,
            engine_session_id=str(uuid.uuid4()),
            cwd=cwd or self._default_cwd,
            created_at=self._now(),
            started=False,
            name=name or None,
        )
        with self._store.transaction() as state:
            state.sessions[chat_id] = session
            if name:
                state.session_names[session.engine_session_id] = name
        logger.info(
            "New session",
            extra={"chat_id": chat_id, "session_id": session.engine_session_id, "cwd": session.cwd, "session_name": name},
        )
        return session

    def _bind(self, chat_id: str, engine_session_id: str, cwd: str) -> Session:
        chat_id = str(chat_id)
        with self._store.transaction() as state:
            if engine_session_id != CONTINUE_SENTINEL:
                owner = state.bound_chat(engine_session_id)
                if owner is not None and owner != chat_id:
                    raise SessionInUseError(
                        f"Session {engine_session_id[:8]} is already active in another chat"
                    )
            session = Session(
                chat_id=chat_id,
                engine_session_id=engine_session_id,
                cwd=cwd,
                created_at=self._now(),
                started=True,
                name=state.session_names.get(engine_session_id),
            )
            state.sessions[chat_id] = session
        return session

    def continue_session(self, chat_id: str) -> Session:
        """Bind the chat to the engine's own most recent conversation in the current cwd."""

        cwd = self.current_cwd(chat_id) or self._default_cwd
        return self._bind(chat_id, CONTINUE_SENTINEL, cwd)

    def _bind_indexed(self, chat_id: str, entry: IndexedSession) -> Session:
        cwd = entry.project_path or self.current_cwd(chat_id) or self._default_cwd
        session = self._bind(chat_id, entry.session_id, cwd)
        if not session.name and entry.custom_title:
            session.name = entry.custom_title
            with self._store.transaction() as state:
                state.sessions[str(chat_id)].name = entry.custom_title
        return session

    def find_match(self, chat_id: str, query: str) -> IndexedSession | None:
        """Resolve a resume query against the engine's session index.

        Order: exact name, substring name, id prefix within the chat's cwd, id
        prefix globally. Candidates are ordered by most recent activity.
        """

        query = query.strip()
        if not query:
            return None
        names = self._store.load().session_names
        candidates = self._index.list_recent(50)
        needle = query.lower()

        def name_of(entry: IndexedSession) -> str:
            return (names.get(entry.session_id) or entry.custom_title or "").lower()

        for entry in candidates:
            if name_of(entry) and name_of(entry) == needle:
                return entry
        for entry in candidates:
            if name_of(entry) and needle in name_of(entry):
                return entry

        cwd = self.current_cwd(chat_id)
        if cwd:
            for entry in self._index.list_recent(None, cwd=cwd, strict=True):
                if entry.session_id.startswith(query):
                    return entry
        for entry in self._index.list_recent(None):
            if entry.session_id.startswith(query):
                return entry
        return None

    def resume(self, chat_id: str, query: str) -> Session:
        match = self.find_match(chat_id, query)
        if match is not None:
            return self._bind_indexed(chat_id, match)
        cwd = self.current_cwd(chat_id) or self._default_cwd
        return self._bind(chat_id, query.strip(), cwd)

    def smart_resume_last(self, chat_id: str) -> Session:
        """Prefer the latest session in the chat's cwd, then the latest anywhere."""

        cwd = self.current_cwd(chat_id)
        candidates: list[IndexedSession] = []
        if cwd:
            candidates = self._index.list_recent(1, cwd=cwd, strict=True)
        if not candidates:
            candidates = self._index.list_recent(1)
        if not candidates:
            return self.continue_session(chat_id)
        return self._bind_indexed(chat_id, candidates[0])

    def change_dir(self, chat_id: str, cwd: str) -> Session:
        chat_id = str(chat_id)
        with self._store.transaction() as state:
            session = state.sessions.get(chat_id)
            if session is not None:
                session.cwd = cwd
        if session is None:
            return self.create_session(chat_id, cwd)
        return session

    def rename(self, chat_id: str, name: str) -> Session | None:
        """Name the chat's session in daemon state and in the engine transcript."""

        chat_id = str(chat_id)
        session = self.get_session(chat_id)
        if session is None:
            return None

        if not session.is_continue:
            self._write_engine_title(session, name)
        with self._store.transaction() as state:
            current = state.sessions.get(chat_id)
            if current is None:
                return None
            current.name = name
            if not current.is_continue:
                state.session_names[current.engine_session_id] = name
            session = current
        return session

    def _write_engine_title(self, session: Session, name: str) -> None:
        transcript = self._index.transcript_path(session.cwd, session.engine_session_id)
        if not transcript.is_file():
            return
        entry = {"type": "custom-title", "customTitle": name, "sessionId": session.engine_session_id}
        try:
            with transcript.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(entry, ensure_ascii=False) + "\n")
        except OSError as exc:
            logger.warning("Failed to write engine session title", extra={"path": str(transcript), "error": str(exc)})

    def mark_started(self, chat_id: str) -> None:
        with self._store.transaction() as state:
            session = state.sessions.get(str(chat_id))
            if session is not None:
                session.started = True

    def _require_runner(self) -> EngineRunner:
        if self._runner is None:
            raise RuntimeError("Engine runner is unavailable; cannot start a conversation")
        return self._runner

    async def _spawn(self, session: Session, prompt: str, allowed_tools: Sequence[str]) -> EngineResult:
        args = build_engine_args(
            session_id=session.engine_session_id,
            started=session.started,
            allowed_tools=allowed_tools,
        )
        return await self._require_runner().run_async(
            prompt + self._prompt_suffix,
            args=args,
            cwd=session.cwd,
            timeout=self._ask_timeout,
        )

    def _complete(self, session: Session, prompt: str, result: EngineResult, *, recovered: bool) -> AskResult:
        first_turn = not session.started
        if first_turn:
            self.mark_started(session.chat_id)
            session.started = True
        tokens = estimate_tokens(prompt, result.output)
        self._budget.record(tokens)
        return AskResult(
            session=session,
            output=result.output,
            tokens=tokens,
            recovered=recovered,
            first_turn=first_turn,
        )

    async def ask(self, chat_id: str, prompt: str, *, allowed_tools: Sequence[str] = ()) -> AskResult:
        """Run one interactive turn for a chat.

        A "session not found" failure allocates a new session in the same cwd
        and retries exactly once; a second failure is returned as an error.
        """

        session = self.get_session(chat_id) or self.create_session(chat_id)
        result = await self._spawn(session, prompt, allowed_tools)
        if result.ok:
            return self._complete(session, prompt, result, recovered=False)

        if not result.session_not_found:
            logger.error(
                "Engine call failed",
                extra={"chat_id": chat_id, "session_id": session.engine_session_id, "error": result.error_message[:300]},
            )
            return AskResult(session=session, error=result.error_message, timed_out=result.timed_out)

        logger.warning(
            "Engine session not found; creating a new one",
            extra={"chat_id": chat_id, "session_id": session.engine_session_id},
        )
        session = self.create_session(chat_id, session.cwd)
        retry = await self._spawn(session, prompt, allowed_tools)
        if retry.ok:
            return self._complete(session, prompt, retry, recovered=True)

        logger.error(
            "Engine retry failed",
            extra={"chat_id": chat_id, "session_id": session.engine_session_id, "error": retry.error_message[:300]},
        )
        return AskResult(session=session, error=retry.error_message, recovered=True, timed_out=retry.timed_out)

    async def auto_name(self, chat_id: str, engine_session_id: str, first_prompt: str) -> str | None:
        """Ask the engine for a short session name; failures are ignored."""

        name_prompt = (
            "Generate a very short session name (2-5 words, no punctuation, no quotes) that "
            f'captures the essence of this user request:\n\n"{first_prompt[:200]}"\n\n'
            "Reply with ONLY the name, nothing else."
        )
        try:
            result = await self._require_runner().run_async(
                name_prompt,
                args=build_engine_args(model="haiku"),
                cwd=self._default_cwd,
                timeout=15,
            )
        except RuntimeError as exc:
            logger.debug("Auto-name unavailable", extra={"session_id": engine_session_id, "error": str(exc)})
            return None
        if not result.ok:
            logger.debug("Auto-name failed", extra={"session_id": engine_session_id, "error": result.error_message})
            return None

        name = _NAME_STRIP.sub("", result.output).strip()[:12].strip()
        if len(name) < 2:
            return None

        with self._store.transaction() as state:
            session = state.sessions.get(str(chat_id))
            if session is not None and session.engine_session_id == engine_session_id and not session.name:
                session.name = name
            state.session_names.setdefault(engine_session_id, name)
        logger.info("Auto-named session", extra={"session_id": engine_session_id, "session_name": name})
        return name


__all__ = ["AskResult", "SessionInUseError", "SessionManager"]
