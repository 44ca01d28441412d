"""Daily token budget tracking over the state store."""

from __future__ import annotations

import logging
from datetime import date
from typing import Callable, Literal

from .storage import BudgetState, StateStore

logger = logging.getLogger(__name__)

WarningLevel = Literal["ok", "warning", "exceeded"]


class BudgetExceededError(RuntimeError):
    """Raised when a spawn is attempted after the daily budget ran out."""


class BudgetTracker:
    """Soft daily cap on estimated engine tokens, shared by chat and scheduled work.

    The counter lives in the state store and is re-read on every call, so a date
    rollover is observed by whichever caller touches it first.
    """

    def __init__(
        self,
        store: StateStore,
        *,
        daily_limit: int = 50_000,
        warning_threshold: float = 0.8,
        today: Callable[[], date] | None = None,
    ) -> None:
        self._store = store
        self.daily_limit = daily_limit
        self.warning_threshold = warning_threshold
        self._today = today or date.today

    def _rollover(self, budget: BudgetState) -> bool:
        today = self._today().isoformat()
        if budget.date == today:
            return False
        budget.date = today
        budget.tokens_used = 0
        return True

    def current(self) -> BudgetState:
        with self._store.transaction() as state:
            if self._rollover(state.budget):
                logger.info("Budget counter reset for new day", extra={"date": state.budget.date})
            return BudgetState(date=state.budget.date, tokens_used=state.budget.tokens_used)

    def check(self) -> bool:
        return self.current().tokens_used < self.daily_limit

    def ensure_available(self) -> None:
        if not self.check():
            raise BudgetExceededError("budget_exceeded")

    def record(self, tokens: int) -> int:
        with self._store.transaction() as state:
            self._rollover(state.budget)
            state.budget.tokens_used += max(0, int(tokens))
            used = state.budget.tokens_used
        logger.debug("Recorded tokens", extra={"tokens": tokens, "tokens_used": used})
        return used

    def usage(self) -> tuple[int, int]:
        return self.current().tokens_used, self.daily_limit

    def warning_level(self) -> WarningLevel:
        used, limit = self.usage()
        ratio = used / limit
        if ratio >= 1:
            return "exceeded"
        if ratio >= self.warning_threshold:
            return "warning"
        return "ok"


__all__ = ["BudgetExceededError", "BudgetTracker", "WarningLevel"]
