"""Progress snapshots and day-bucketed aggregation for charts."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import date, datetime, time, timedelta
from zoneinfo import ZoneInfo

from goalsync.engine.models import Goal, GoalStatus, GoalWithProgress, HistoryDay, ProgressHistoryEntry
from goalsync.engine.progress import round_half_up
from goalsync.engine.store import GoalStore

logger = logging.getLogger(__name__)


class HistoryRecorder:
    """Append-only snapshot log for one owner, backed by the goal store."""

    def __init__(self, store: GoalStore, owner_id: str, default_limit: int = 30):
        self._store = store
        self._owner_id = owner_id
        self._default_limit = default_limit

    async def record_snapshot(self, goal_id: str, value: float, percentage: int) -> ProgressHistoryEntry:
        entry = ProgressHistoryEntry(
            goal_id=goal_id,
            owner_id=self._owner_id,
            progress_value=value,
            progress_percentage=percentage,
        )
        return await self._store.record_snapshot(entry)

    async def get_progress_history(self, goal_id: str, limit: int | None = None) -> list[ProgressHistoryEntry]:
        return await self._store.fetch_history(goal_id, limit or self._default_limit)

    async def entries_since(self, since: datetime) -> list[ProgressHistoryEntry]:
        return await self._store.fetch_owner_history(self._owner_id, since)


def day_start(day: date, tz: ZoneInfo) -> datetime:
    return datetime.combine(day, time.min, tzinfo=tz)


def live_history_day(goals: Iterable[GoalWithProgress], today: date) -> HistoryDay:
    """Today's row built from in-memory state instead of snapshots.

    Completed goals count as 100%; paused and expired goals are left out.
    """
    active = [g for g in goals if g.status in (GoalStatus.active, GoalStatus.completed)]
    percentages = [100 if g.status == GoalStatus.completed else g.progress_percentage for g in active]
    mean = int(round_half_up(sum(percentages) / len(percentages))) if percentages else 0
    return HistoryDay(
        date=today,
        completed=sum(1 for g in active if g.status == GoalStatus.completed),
        active=sum(1 for g in active if g.status == GoalStatus.active),
        total_progress=mean,
    )


def aggregate_history(
    goals: Iterable[Goal],
    entries: Iterable[ProgressHistoryEntry],
    days: int,
    today: date,
    tz: ZoneInfo,
    live: HistoryDay | None = None,
) -> list[HistoryDay]:
    """One row per calendar day from `today - days` to `today`, ascending.

    Goals count from their creation day; a goal is completed on a day once
    its completed_at falls on or before it. Days without snapshots carry the
    previous day's progress forward.
    """
    if days < 0:
        raise ValueError("days must be >= 0")

    goals = list(goals)

    def _local(ts: datetime) -> date:
        return ts.astimezone(tz).date()

    by_day: dict[date, list[int]] = {}
    for entry in entries:
        by_day.setdefault(_local(entry.recorded_at), []).append(entry.progress_percentage)

    start = today - timedelta(days=days)
    rows: list[HistoryDay] = []
    for offset in range(days + 1):
        day = start + timedelta(days=offset)
        existing = [g for g in goals if _local(g.created_at) <= day]
        completed = sum(
            1
            for g in existing
            if g.status == GoalStatus.completed and g.completed_at is not None and _local(g.completed_at) <= day
        )
        percentages = by_day.get(day)
        if percentages:
            total = int(round_half_up(sum(percentages) / len(percentages)))
        elif rows:
            total = rows[-1].total_progress
        else:
            total = 0
        rows.append(HistoryDay(date=day, completed=completed, active=len(existing) - completed, total_progress=total))

    if live is not None and rows and rows[-1].date == live.date:
        rows[-1] = live
    return rows
