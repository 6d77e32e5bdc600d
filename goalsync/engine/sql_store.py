"""Database store — async access to student_goals and goal_progress_history.

Raw SQL over an AsyncSession; every SQLAlchemy failure is re-raised as
PersistenceError so callers never see driver exceptions.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import bindparam, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from goalsync.config import Settings
from goalsync.db import make_engine, make_sessionmaker
from goalsync.engine.errors import ConfigurationError, PersistenceError
from goalsync.engine.models import Goal, GoalStatus, ProgressHistoryEntry
from goalsync.engine.store import GoalStore, LocalGoalStore

logger = logging.getLogger(__name__)

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS student_goals (
        id TEXT PRIMARY KEY,
        student_id TEXT NOT NULL,
        title TEXT NOT NULL,
        description TEXT,
        type TEXT NOT NULL CHECK (type IN ('study_time', 'course_completion', 'streak', 'grade')),
        target_value DOUBLE PRECISION NOT NULL DEFAULT 1,
        current_value DOUBLE PRECISION NOT NULL DEFAULT 0,
        unit TEXT NOT NULL DEFAULT 'units',
        priority TEXT DEFAULT 'medium' CHECK (priority IN ('low', 'medium', 'high')),
        status TEXT DEFAULT 'active' CHECK (status IN ('active', 'completed', 'paused', 'expired')),
        start_date TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        end_date TIMESTAMPTZ,
        completed_at TIMESTAMPTZ,
        metadata JSONB DEFAULT '{}',
        created_at TIMESTAMPTZ DEFAULT NOW(),
        updated_at TIMESTAMPTZ DEFAULT NOW()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_student_goals_student_id ON student_goals(student_id)",
    """
    CREATE TABLE IF NOT EXISTS goal_progress_history (
        id TEXT PRIMARY KEY,
        goal_id TEXT NOT NULL,
        student_id TEXT NOT NULL,
        progress_value NUMERIC NOT NULL DEFAULT 0,
        progress_percentage INTEGER NOT NULL DEFAULT 0,
        recorded_at TIMESTAMPTZ DEFAULT NOW()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_goal_progress_history_goal_id ON goal_progress_history(goal_id)",
    "CREATE INDEX IF NOT EXISTS idx_goal_progress_history_recorded_at ON goal_progress_history(recorded_at)",
)

_GOAL_COLUMNS = (
    "id, student_id, title, description, type, target_value, current_value, unit, "
    "priority, status, start_date, end_date, completed_at, metadata, created_at, updated_at"
)
_HISTORY_COLUMNS = "id, goal_id, student_id, progress_value, progress_percentage, recorded_at"


def _goal_from_row(row: dict[str, Any]) -> Goal:
    data = dict(row)
    data["owner_id"] = data.pop("student_id")
    metadata = data.get("metadata") or {}
    if isinstance(metadata, str):
        metadata = json.loads(metadata)
    data["metadata"] = {"kind": data["type"], **metadata}
    return Goal.model_validate(data)


def _history_from_row(row: dict[str, Any]) -> ProgressHistoryEntry:
    data = dict(row)
    data["owner_id"] = data.pop("student_id")
    data["progress_value"] = float(data["progress_value"])
    return ProgressHistoryEntry.model_validate(data)


class SqlGoalStore:
    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession], engine: AsyncEngine | None = None,
                 max_history_entries: int = 100):
        self._sessionmaker = sessionmaker
        self._engine = engine
        self._max_history = max_history_entries

    async def _execute(self, sql: str, params: dict[str, Any], *, commit: bool = False, json_params=()):
        (result,) = await self._execute_many([(sql, params)], commit=commit, json_params=json_params)
        return result

    async def _execute_many(self, statements, *, commit: bool = False, json_params=()):
        """Run statements in one session; with `commit`, they land together or not at all."""
        results = []
        try:
            async with self._sessionmaker() as session:
                for sql, params in statements:
                    stmt = text(sql)
                    if json_params:
                        stmt = stmt.bindparams(*(bindparam(name, type_=JSONB) for name in json_params))
                    result = await session.execute(stmt, params)
                    rows = None
                    if result.returns_rows:
                        columns = result.keys()
                        rows = [dict(zip(columns, r)) for r in result.fetchall()]
                    results.append((rows, result.rowcount))
                if commit:
                    await session.commit()
        except (SQLAlchemyError, OSError) as exc:
            raise PersistenceError(str(exc)) from exc
        return results

    async def ensure_schema(self) -> None:
        for statement in SCHEMA_STATEMENTS:
            await self._execute(statement, {}, commit=True)

    # -- goals ------------------------------------------------------------

    async def fetch(self, owner_id: str) -> list[Goal]:
        rows, _ = await self._execute(
            f"SELECT {_GOAL_COLUMNS} FROM student_goals "
            "WHERE student_id = :owner_id ORDER BY created_at DESC",
            {"owner_id": owner_id},
        )
        return [_goal_from_row(r) for r in rows or []]

    async def create(self, goal: Goal) -> Goal:
        metadata = goal.metadata.model_dump(exclude={"kind"})
        params = goal.model_dump(exclude={"owner_id", "metadata"}, mode="python")
        params.update(
            student_id=goal.owner_id,
            type=goal.type.value,
            priority=goal.priority.value,
            status=goal.status.value,
            metadata=metadata,
        )
        rows, _ = await self._execute(
            f"INSERT INTO student_goals ({_GOAL_COLUMNS}) VALUES ("
            ":id, :student_id, :title, :description, :type, :target_value, :current_value, :unit, "
            ":priority, :status, :start_date, :end_date, :completed_at, :metadata, :created_at, :updated_at"
            f") RETURNING {_GOAL_COLUMNS}",
            params,
            commit=True,
            json_params=("metadata",),
        )
        return _goal_from_row(rows[0]) if rows else goal

    async def update_progress(self, goal_id: str, value: float) -> bool:
        _, count = await self._execute(
            "UPDATE student_goals SET current_value = :value, updated_at = :now WHERE id = :goal_id",
            {"value": value, "now": datetime.now(timezone.utc), "goal_id": goal_id},
            commit=True,
        )
        return count > 0

    async def update_status(self, goal_id: str, status: GoalStatus, completed_at: datetime | None) -> bool:
        _, count = await self._execute(
            "UPDATE student_goals SET status = :status, completed_at = :completed_at, updated_at = :now "
            "WHERE id = :goal_id",
            {
                "status": status.value,
                "completed_at": completed_at,
                "now": datetime.now(timezone.utc),
                "goal_id": goal_id,
            },
            commit=True,
        )
        return count > 0

    async def delete(self, goal_id: str) -> bool:
        (_, count), _ = await self._execute_many(
            [
                ("DELETE FROM student_goals WHERE id = :goal_id", {"goal_id": goal_id}),
                ("DELETE FROM goal_progress_history WHERE goal_id = :goal_id", {"goal_id": goal_id}),
            ],
            commit=True,
        )
        return count > 0

    # -- history ----------------------------------------------------------

    async def record_snapshot(self, entry: ProgressHistoryEntry) -> ProgressHistoryEntry:
        await self._execute_many(
            [
                (
                    f"INSERT INTO goal_progress_history ({_HISTORY_COLUMNS}) VALUES "
                    "(:id, :goal_id, :student_id, :progress_value, :progress_percentage, :recorded_at)",
                    {
                        "id": entry.id,
                        "goal_id": entry.goal_id,
                        "student_id": entry.owner_id,
                        "progress_value": entry.progress_value,
                        "progress_percentage": entry.progress_percentage,
                        "recorded_at": entry.recorded_at,
                    },
                ),
                (
                    "DELETE FROM goal_progress_history WHERE goal_id = :goal_id AND id NOT IN ("
                    "SELECT id FROM goal_progress_history WHERE goal_id = :goal_id "
                    "ORDER BY recorded_at DESC LIMIT :keep)",
                    {"goal_id": entry.goal_id, "keep": self._max_history},
                ),
            ],
            commit=True,
        )
        return entry

    async def fetch_history(self, goal_id: str, limit: int) -> list[ProgressHistoryEntry]:
        rows, _ = await self._execute(
            f"SELECT {_HISTORY_COLUMNS} FROM goal_progress_history "
            "WHERE goal_id = :goal_id ORDER BY recorded_at DESC LIMIT :limit",
            {"goal_id": goal_id, "limit": limit},
        )
        return [_history_from_row(r) for r in reversed(rows or [])]

    async def fetch_owner_history(self, owner_id: str, since: datetime) -> list[ProgressHistoryEntry]:
        rows, _ = await self._execute(
            f"SELECT {_HISTORY_COLUMNS} FROM goal_progress_history "
            "WHERE student_id = :owner_id AND recorded_at >= :since ORDER BY recorded_at",
            {"owner_id": owner_id, "since": since},
        )
        return [_history_from_row(r) for r in rows or []]

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()


async def connect_sql_store(settings: Settings) -> SqlGoalStore:
    """Open the configured database and make sure the tables exist.

    Raises ConfigurationError when no database is configured or it cannot be reached.
    """
    if not settings.database_url:
        raise ConfigurationError("GOALSYNC_DATABASE_URL is not set")
    try:
        engine = make_engine(settings.database_url)
    except (SQLAlchemyError, ImportError) as exc:
        raise ConfigurationError(f"Invalid database configuration: {exc}") from exc
    store = SqlGoalStore(make_sessionmaker(engine), engine, settings.history_max_entries)
    try:
        await store.ensure_schema()
    except PersistenceError as exc:
        await engine.dispose()
        raise ConfigurationError(f"Database unreachable: {exc}") from exc
    return store


async def select_store(settings: Settings) -> GoalStore:
    """Database store when available, otherwise the local fallback."""
    try:
        store = await connect_sql_store(settings)
    except ConfigurationError as exc:
        logger.warning("Using local goal store: %s", exc)
        return LocalGoalStore(settings.local_store_path, settings.history_max_entries)
    logger.info("Using database goal store")
    return store
