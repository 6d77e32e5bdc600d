"""Baseline capture and progress derivation over provider readings.

Every derived value is baseline-relative: progress counts only activity that
happened after the goal was created.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal

from goalsync.engine.errors import ProviderReadError
from goalsync.engine.models import Goal, GoalStatus, GoalType, GoalWithProgress
from goalsync.engine.providers import ActivityProvider

logger = logging.getLogger(__name__)

_VIEW_FIELDS = {"progress_percentage", "days_remaining", "is_overdue"}


def round_half_up(value: float, digits: int = 0) -> float:
    """Round like a human would (2.5 -> 3), unlike Python's banker's rounding."""
    quantum = Decimal(1).scaleb(-digits)
    return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP))


def read_absolute(
    provider: ActivityProvider,
    goal_type: GoalType,
    unit: str,
    course_id: str | None = None,
) -> float:
    """Current absolute provider reading in the goal's unit.

    Raises ProviderReadError when the provider cannot answer.
    """
    try:
        if goal_type == GoalType.study_time:
            minutes = provider.study_time().weekly_minutes
            if unit == "hours":
                return round_half_up(minutes / 60.0, 1)
            return float(minutes)

        if goal_type == GoalType.course_completion:
            courses = provider.course_progress()
            if course_id:
                course = courses.get(course_id)
                return float(course.completed_modules) if course else 0.0
            return float(sum(c.completed_modules for c in courses.values()))

        if goal_type == GoalType.streak:
            return float(provider.streak().current_streak)

        if goal_type == GoalType.grade:
            if course_id:
                course = provider.course_progress().get(course_id)
                return float(course.progress) if course else 0.0
            return round_half_up(provider.grade_prediction().predicted_grade, 1)
    except ProviderReadError:
        raise
    except Exception as exc:
        raise ProviderReadError(f"{goal_type.value} provider failed: {exc}") from exc

    raise ProviderReadError(f"No provider for goal type {goal_type!r}")


def capture_baseline(
    provider: ActivityProvider,
    goal_type: GoalType,
    unit: str,
    course_id: str | None = None,
) -> float:
    """Read the provider once for a new goal. Unavailable providers give 0."""
    try:
        return read_absolute(provider, goal_type, unit, course_id)
    except ProviderReadError as exc:
        logger.warning("Baseline unavailable for %s goal, using 0: %s", goal_type.value, exc)
        return 0.0


def derive(goal: Goal, provider: ActivityProvider) -> float:
    """Progress since creation, clamped at 0. Falls back to the last known value."""
    try:
        current = read_absolute(provider, goal.type, goal.unit, goal.course_id)
    except ProviderReadError as exc:
        logger.debug("Keeping last value for goal %s: %s", goal.id, exc)
        return goal.current_value

    delta = current - goal.metadata.baseline_value
    if goal.type in (GoalType.study_time, GoalType.grade):
        delta = round_half_up(delta, 1)
    return max(0.0, delta)


def progress_percentage(current_value: float, target_value: float) -> int:
    """Percentage of target reached, clamped to 0–100. Zero target gives 0."""
    if target_value <= 0:
        return 0
    pct = int(round_half_up(current_value / target_value * 100.0))
    return min(max(pct, 0), 100)


def days_remaining(end_date: datetime | None, now: datetime | None = None) -> int | None:
    if end_date is None:
        return None
    now = now or datetime.now(timezone.utc)
    return math.ceil((end_date - now).total_seconds() / 86400.0)


def is_overdue(end_date: datetime | None, status: GoalStatus, now: datetime | None = None) -> bool:
    if end_date is None or status == GoalStatus.completed:
        return False
    now = now or datetime.now(timezone.utc)
    return end_date < now


def with_progress(goal: Goal, now: datetime | None = None) -> GoalWithProgress:
    """Build the derived view for display."""
    now = now or datetime.now(timezone.utc)
    return GoalWithProgress(
        **goal.model_dump(exclude=_VIEW_FIELDS),
        progress_percentage=progress_percentage(goal.current_value, goal.target_value),
        days_remaining=days_remaining(goal.end_date, now),
        is_overdue=is_overdue(goal.end_date, goal.status, now),
    )
