"""Goal engine, one instance per owner session.

Holds the in-memory goal collection and wires derivation, reconciliation,
completion detection and history together. Store failures on user-facing
operations propagate to the caller; failures inside the periodic ticks never do.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from goalsync.config import Settings
from goalsync.engine.completion import CompletionDetector, CompletionListener
from goalsync.engine.errors import (
    EngineClosedError,
    GoalNotFoundError,
    InvalidTransitionError,
    PersistenceError,
)
from goalsync.engine.history import HistoryRecorder, aggregate_history, day_start, live_history_day
from goalsync.engine.models import (
    CompletionEvent,
    Goal,
    GoalCreate,
    GoalStats,
    GoalStatus,
    GoalWithProgress,
    HistoryDay,
    ProgressHistoryEntry,
    SuggestedGoal,
    make_metadata,
)
from goalsync.engine.progress import capture_baseline, days_remaining, is_overdue, with_progress
from goalsync.engine.providers import ActivityProvider
from goalsync.engine.reconciler import Reconciler
from goalsync.engine.stats import compute_stats
from goalsync.engine.store import GoalStore
from goalsync.engine.suggestions import suggest_goals

logger = logging.getLogger(__name__)

# Allowed explicit status changes. Completion is terminal.
STATUS_TRANSITIONS: dict[GoalStatus, frozenset[GoalStatus]] = {
    GoalStatus.active: frozenset({GoalStatus.paused, GoalStatus.completed, GoalStatus.expired}),
    GoalStatus.paused: frozenset({GoalStatus.active, GoalStatus.completed, GoalStatus.expired}),
    GoalStatus.expired: frozenset({GoalStatus.active, GoalStatus.paused}),
    GoalStatus.completed: frozenset(),
}


class GoalEngine:
    def __init__(
        self,
        owner_id: str,
        store: GoalStore,
        provider: ActivityProvider,
        *,
        fast_tick_seconds: float = 1.0,
        slow_tick_seconds: float = 30.0,
        stop_grace_seconds: float = 5.0,
        history_limit: int = 30,
        tz: str = "UTC",
    ):
        self.owner_id = owner_id
        self._store = store
        self._provider = provider
        self._tz = ZoneInfo(tz)
        self._goals: dict[str, GoalWithProgress] = {}
        self._detector = CompletionDetector()
        self._history = HistoryRecorder(store, owner_id, history_limit)
        self._reconciler = Reconciler(
            self._goals,
            provider,
            store,
            self._detector,
            self._history,
            fast_interval=fast_tick_seconds,
            slow_interval=slow_tick_seconds,
            stop_grace=stop_grace_seconds,
        )
        self._loaded = False
        self._closed = False

    @classmethod
    def from_settings(
        cls, owner_id: str, store: GoalStore, provider: ActivityProvider, settings: Settings
    ) -> "GoalEngine":
        return cls(
            owner_id,
            store,
            provider,
            fast_tick_seconds=settings.fast_tick_seconds,
            slow_tick_seconds=settings.slow_tick_seconds,
            stop_grace_seconds=settings.stop_grace_seconds,
            history_limit=settings.history_default_limit,
            tz=settings.default_tz,
        )

    @property
    def reconciler(self) -> Reconciler:
        return self._reconciler

    @property
    def closed(self) -> bool:
        return self._closed

    def _ensure_open(self) -> None:
        if self._closed:
            raise EngineClosedError(f"Session for {self.owner_id} is closed")

    # -- lifecycle --------------------------------------------------------

    async def start(self) -> None:
        """Load goals, refresh progress once, then start both periodic ticks."""
        self._ensure_open()
        await self.fetch_goals()
        self._reconciler.fast_tick()
        self._reconciler.start()

    async def stop(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._reconciler.stop()

    # -- completion events ------------------------------------------------

    def add_completion_listener(self, listener: CompletionListener) -> Callable[[], None]:
        return self._detector.add_listener(listener)

    def subscribe(self) -> tuple[asyncio.Queue[CompletionEvent], Callable[[], None]]:
        """Queue fed with completion events, plus a function to unsubscribe."""
        queue: asyncio.Queue[CompletionEvent] = asyncio.Queue()
        return queue, self._detector.add_listener(queue.put_nowait)

    # -- views ------------------------------------------------------------

    def goals(self) -> list[GoalWithProgress]:
        """Snapshot of the in-memory collection, newest first."""
        now = datetime.now(timezone.utc)
        views = [self._view(goal, now) for goal in self._goals.values()]
        views.sort(key=lambda g: g.created_at, reverse=True)
        return views

    def get_goal(self, goal_id: str) -> GoalWithProgress:
        goal = self._goals.get(goal_id)
        if goal is None:
            raise GoalNotFoundError(goal_id)
        return self._view(goal, datetime.now(timezone.utc))

    @staticmethod
    def _view(goal: GoalWithProgress, now: datetime) -> GoalWithProgress:
        view = goal.model_copy(deep=True)
        view.days_remaining = days_remaining(goal.end_date, now)
        view.is_overdue = is_overdue(goal.end_date, goal.status, now)
        return view

    def stats(self) -> GoalStats:
        return compute_stats(self._goals.values())

    def suggested_goals(self) -> list[SuggestedGoal]:
        return suggest_goals(self._provider)

    # -- store pass-through -----------------------------------------------

    async def fetch_goals(self) -> list[GoalWithProgress]:
        """Merge the store's goals into memory.

        Goals already held in memory keep their in-memory progress and status,
        which may be ahead of the store until the next slow tick.
        """
        self._ensure_open()
        stored = await self._store.fetch(self.owner_id)
        seen: set[str] = set()
        for goal in stored:
            if self._reconciler.is_deleted(goal.id):
                continue
            seen.add(goal.id)
            if goal.id in self._goals:
                continue
            self._goals[goal.id] = with_progress(goal)
            self._reconciler.mark_persisted(goal.id, goal.current_value)
            if goal.status == GoalStatus.completed:
                self._detector.mark_notified(goal.id)
        if self._loaded:
            pending = self._reconciler.pending_writes()
            for goal_id in [gid for gid in self._goals if gid not in seen]:
                if goal_id not in pending:
                    logger.info("Goal %s removed from store, dropping it", goal_id)
                    del self._goals[goal_id]
        self._loaded = True
        return self.goals()

    async def create_goal(self, data: GoalCreate) -> GoalWithProgress:
        """Capture the baseline, then persist. Store failures propagate."""
        self._ensure_open()
        baseline = capture_baseline(self._provider, data.type, data.unit, data.course_id)
        now = datetime.now(timezone.utc)
        goal = Goal(
            owner_id=self.owner_id,
            title=data.title,
            description=data.description,
            type=data.type,
            target_value=data.target_value,
            current_value=0.0,
            unit=data.unit,
            priority=data.priority,
            start_date=data.start_date or now,
            end_date=data.end_date,
            created_at=now,
            updated_at=now,
            metadata=make_metadata(
                data.type,
                baseline,
                notifications_enabled=data.notifications_enabled,
                course_id=data.course_id,
                course_title=data.course_title,
            ),
        )
        saved = await self._store.create(goal)
        view = with_progress(saved)
        self._goals[saved.id] = view
        self._reconciler.mark_persisted(saved.id, saved.current_value)
        logger.info("Goal %s created for %s (baseline %s)", saved.id, self.owner_id, baseline)
        return view.model_copy(deep=True)

    async def update_goal_status(self, goal_id: str, status: GoalStatus) -> GoalWithProgress:
        """Apply an explicit status change in memory, then persist it.

        Pause/resume/expire are rolled back if the store rejects them. A manual
        completion stays applied and is retried by the slow tick instead.
        """
        self._ensure_open()
        goal = self._goals.get(goal_id)
        if goal is None:
            raise GoalNotFoundError(goal_id)
        if status == goal.status:
            return self.get_goal(goal_id)
        if status not in STATUS_TRANSITIONS[goal.status]:
            raise InvalidTransitionError(goal_id, goal.status.value, status.value)

        previous = (goal.status, goal.completed_at, goal.updated_at)
        now = datetime.now(timezone.utc)
        goal.status = status
        goal.completed_at = now if status == GoalStatus.completed else None
        goal.updated_at = now
        if status == GoalStatus.completed:
            self._detector.mark_notified(goal_id)

        try:
            found = await self._store.update_status(goal_id, status, goal.completed_at)
        except PersistenceError:
            if status == GoalStatus.completed:
                logger.warning("Completion of goal %s not persisted yet, queued for retry", goal_id)
                self._reconciler.request_status_write(goal_id)
                return self.get_goal(goal_id)
            if goal.status == status:
                goal.status, goal.completed_at, goal.updated_at = previous
            raise
        if not found:
            self._goals.pop(goal_id, None)
            raise GoalNotFoundError(goal_id)
        return self.get_goal(goal_id)

    async def delete_goal(self, goal_id: str) -> bool:
        """Delete one of this owner's goals. Its tombstone blocks any later write for the id."""
        self._ensure_open()
        if goal_id not in self._goals:
            raise GoalNotFoundError(goal_id)
        self._reconciler.tombstone(goal_id)
        goal = self._goals.pop(goal_id)
        try:
            await self._store.delete(goal_id)
        except PersistenceError:
            self._goals[goal_id] = goal
            self._reconciler.untombstone(goal_id)
            raise
        logger.info("Goal %s deleted", goal_id)
        return True

    async def sync_all_goals_progress(self) -> list[GoalWithProgress]:
        """Refresh progress and run one durability pass now."""
        self._ensure_open()
        if not self._loaded:
            await self.fetch_goals()
        self._reconciler.fast_tick()
        await self._reconciler.slow_tick()
        return self.goals()

    # -- history ----------------------------------------------------------

    async def get_progress_history(self, goal_id: str, limit: int | None = None) -> list[ProgressHistoryEntry]:
        if goal_id not in self._goals:
            raise GoalNotFoundError(goal_id)
        return await self._history.get_progress_history(goal_id, limit)

    async def get_aggregated_progress_history(self, days: int = 7) -> list[HistoryDay]:
        """Daily chart rows; today's row reflects live in-memory state."""
        if days < 0:
            raise ValueError("days must be >= 0")
        today = datetime.now(self._tz).date()
        since = day_start(today - timedelta(days=days), self._tz)
        try:
            entries = await self._history.entries_since(since)
        except PersistenceError:
            logger.exception("Could not load progress history for %s", self.owner_id)
            entries = []
        goals = list(self._goals.values())
        return aggregate_history(goals, entries, days, today, self._tz, live=live_history_day(goals, today))
