"""Shared fixtures for the test suite."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest
from httpx import ASGITransport, AsyncClient

from goalsync.config import Settings
from goalsync.engine.errors import PersistenceError
from goalsync.engine.models import (
    DEFAULT_UNITS,
    GoalStatus,
    GoalType,
    GoalWithProgress,
    make_metadata,
)
from goalsync.engine.providers import (
    CourseProgress,
    GradePrediction,
    InMemoryActivityProvider,
    StreakReading,
    StudyTimeReading,
)
from goalsync.engine.router import get_registry
from goalsync.engine.service import GoalEngine
from goalsync.engine.sessions import SessionRegistry
from goalsync.engine.store import LocalGoalStore
from goalsync.main import app

OWNER = "student-1"


# ---------------------------------------------------------------------------
# Recording store (no real Postgres needed)
# ---------------------------------------------------------------------------

class RecordingStore(LocalGoalStore):
    """Local store that records writes and can be told to fail."""

    def __init__(self):
        super().__init__()
        self.progress_writes: list[tuple[str, float]] = []
        self.status_writes: list[tuple[str, GoalStatus]] = []
        self.fail_progress = False
        self.fail_status = False
        self.fail_delete = False
        self.fail_create = False

    async def create(self, goal):
        if self.fail_create:
            raise PersistenceError("store down")
        return await super().create(goal)

    async def update_progress(self, goal_id, value):
        if self.fail_progress:
            raise PersistenceError("store down")
        self.progress_writes.append((goal_id, value))
        return await super().update_progress(goal_id, value)

    async def update_status(self, goal_id, status, completed_at):
        if self.fail_status:
            raise PersistenceError("store down")
        self.status_writes.append((goal_id, status))
        return await super().update_status(goal_id, status, completed_at)

    async def delete(self, goal_id):
        if self.fail_delete:
            raise PersistenceError("store down")
        return await super().delete(goal_id)


class GatedStore(RecordingStore):
    """Progress writes block until `release` is set; `entered` fires when one is waiting."""

    def __init__(self):
        super().__init__()
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def update_progress(self, goal_id, value):
        self.entered.set()
        await self.release.wait()
        return await super().update_progress(goal_id, value)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture()
def provider() -> InMemoryActivityProvider:
    return InMemoryActivityProvider(
        study_time=StudyTimeReading(weekly_minutes=120),
        streak=StreakReading(current_streak=3),
        course_progress={
            "course-1": CourseProgress(completed_modules=2, total_modules=7, progress=28.0),
            "course-2": CourseProgress(completed_modules=1, total_modules=4, progress=25.0),
        },
        grade_prediction=GradePrediction(predicted_grade=70.0),
    )


@pytest.fixture()
def store() -> RecordingStore:
    return RecordingStore()


@pytest.fixture()
async def engine(store, provider):
    """Engine with both loops idle; tests drive ticks by hand."""
    eng = GoalEngine(OWNER, store, provider, fast_tick_seconds=3600, slow_tick_seconds=3600)
    await eng.fetch_goals()
    yield eng
    await eng.stop()


@pytest.fixture()
def make_goal():
    def _make(
        goal_type: GoalType = GoalType.streak,
        target: float = 7.0,
        baseline: float = 0.0,
        current: float = 0.0,
        course_id: str | None = None,
        notifications: bool = True,
        status: GoalStatus = GoalStatus.active,
        created_at: datetime | None = None,
        completed_at: datetime | None = None,
        **extra,
    ) -> GoalWithProgress:
        return GoalWithProgress(
            owner_id=extra.pop("owner_id", OWNER),
            title=f"{goal_type.value} goal",
            type=goal_type,
            target_value=target,
            current_value=current,
            unit=extra.pop("unit", DEFAULT_UNITS[goal_type]),
            status=status,
            completed_at=completed_at,
            created_at=created_at or datetime.now(timezone.utc),
            metadata=make_metadata(goal_type, baseline, notifications, course_id),
            **extra,
        )

    return _make


@pytest.fixture()
async def registry():
    settings = Settings(fast_tick_seconds=3600, slow_tick_seconds=3600, stop_grace_seconds=1)
    shared = RecordingStore()

    async def _factory():
        return shared

    reg = SessionRegistry(settings, store_factory=_factory)
    yield reg
    await reg.close_all()


@pytest.fixture()
async def client(registry):
    app.dependency_overrides[get_registry] = lambda: registry
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
