"""Roll-up counts over the in-memory goal collection."""

from __future__ import annotations

from collections.abc import Iterable

from goalsync.engine.models import Goal, GoalStats, GoalStatus
from goalsync.engine.progress import round_half_up


def compute_stats(goals: Iterable[Goal]) -> GoalStats:
    goals = list(goals)
    total = len(goals)
    active = sum(1 for g in goals if g.status == GoalStatus.active)
    completed = sum(1 for g in goals if g.status == GoalStatus.completed)
    rate = int(round_half_up(completed / total * 100.0)) if total > 0 else 0
    return GoalStats(total=total, active=active, completed=completed, completion_rate=rate)
