"""Goal store contract and the local fallback implementation.

Both implementations honour the same rules: updates never create rows, and
progress history is pruned to the most recent entries per goal.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol, runtime_checkable

from pydantic import BaseModel, Field

from goalsync.engine.errors import PersistenceError
from goalsync.engine.models import Goal, GoalStatus, ProgressHistoryEntry

logger = logging.getLogger(__name__)


@runtime_checkable
class GoalStore(Protocol):
    async def fetch(self, owner_id: str) -> list[Goal]: ...

    async def create(self, goal: Goal) -> Goal: ...

    async def update_progress(self, goal_id: str, value: float) -> bool: ...

    async def update_status(
        self, goal_id: str, status: GoalStatus, completed_at: datetime | None
    ) -> bool: ...

    async def delete(self, goal_id: str) -> bool: ...

    async def record_snapshot(self, entry: ProgressHistoryEntry) -> ProgressHistoryEntry: ...

    async def fetch_history(self, goal_id: str, limit: int) -> list[ProgressHistoryEntry]: ...

    async def fetch_owner_history(self, owner_id: str, since: datetime) -> list[ProgressHistoryEntry]: ...

    async def close(self) -> None: ...


class _LocalSnapshot(BaseModel):
    goals: list[Goal] = Field(default_factory=list)
    history: list[ProgressHistoryEntry] = Field(default_factory=list)


class LocalGoalStore:
    """In-process store used when no database is configured or reachable.

    With a `path`, every mutation is written through to a JSON file so goals
    survive a restart.
    """

    def __init__(self, path: str | Path | None = None, max_history_entries: int = 100):
        self._path = Path(path) if path else None
        self._max_history = max_history_entries
        self._goals: dict[str, Goal] = {}
        self._history: dict[str, list[ProgressHistoryEntry]] = {}
        if self._path is not None and self._path.exists():
            self._load()

    # -- persistence ------------------------------------------------------

    def _load(self) -> None:
        try:
            snapshot = _LocalSnapshot.model_validate_json(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            logger.exception("Could not read local goal file %s, starting empty", self._path)
            return
        self._goals = {g.id: g for g in snapshot.goals}
        for entry in snapshot.history:
            self._history.setdefault(entry.goal_id, []).append(entry)

    def _commit(self, goals: dict[str, Goal], history: dict[str, list[ProgressHistoryEntry]]) -> None:
        """Write the new state through to disk, then make it current."""
        if self._path is not None:
            snapshot = _LocalSnapshot(
                goals=list(goals.values()),
                history=[e for entries in history.values() for e in entries],
            )
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                self._path.write_text(snapshot.model_dump_json(), encoding="utf-8")
            except OSError as exc:
                raise PersistenceError(f"Could not write {self._path}: {exc}") from exc
        self._goals, self._history = goals, history

    # -- goals ------------------------------------------------------------

    async def fetch(self, owner_id: str) -> list[Goal]:
        goals = [g.model_copy(deep=True) for g in self._goals.values() if g.owner_id == owner_id]
        goals.sort(key=lambda g: g.created_at, reverse=True)
        return goals

    async def create(self, goal: Goal) -> Goal:
        self._commit({**self._goals, goal.id: goal.model_copy(deep=True)}, self._history)
        return goal.model_copy(deep=True)

    async def update_progress(self, goal_id: str, value: float) -> bool:
        return self._update(goal_id, current_value=value)

    async def update_status(self, goal_id: str, status: GoalStatus, completed_at: datetime | None) -> bool:
        return self._update(goal_id, status=status, completed_at=completed_at)

    def _update(self, goal_id: str, **changes) -> bool:
        goal = self._goals.get(goal_id)
        if goal is None:
            return False
        changes["updated_at"] = datetime.now(timezone.utc)
        self._commit({**self._goals, goal_id: goal.model_copy(update=changes)}, self._history)
        return True

    async def delete(self, goal_id: str) -> bool:
        removed = goal_id in self._goals
        goals = {k: v for k, v in self._goals.items() if k != goal_id}
        history = {k: v for k, v in self._history.items() if k != goal_id}
        self._commit(goals, history)
        return removed

    # -- history ----------------------------------------------------------

    async def record_snapshot(self, entry: ProgressHistoryEntry) -> ProgressHistoryEntry:
        entries = [*self._history.get(entry.goal_id, []), entry][-self._max_history:]
        self._commit(self._goals, {**self._history, entry.goal_id: entries})
        return entry

    async def fetch_history(self, goal_id: str, limit: int) -> list[ProgressHistoryEntry]:
        entries = sorted(self._history.get(goal_id, []), key=lambda e: e.recorded_at)
        return entries[-limit:] if limit > 0 else []

    async def fetch_owner_history(self, owner_id: str, since: datetime) -> list[ProgressHistoryEntry]:
        result = [
            e
            for entries in self._history.values()
            for e in entries
            if e.owner_id == owner_id and e.recorded_at >= since
        ]
        result.sort(key=lambda e: e.recorded_at)
        return result

    async def close(self) -> None:
        return None
