"""Suggested goals from current activity."""

from __future__ import annotations

import logging

from goalsync.engine.errors import ProviderReadError
from goalsync.engine.models import GoalPriority, GoalType, SuggestedGoal
from goalsync.engine.progress import round_half_up
from goalsync.engine.providers import ActivityProvider

logger = logging.getLogger(__name__)

MIN_STUDY_HOURS = 10
STUDY_HOURS_STEP = 5
MIN_STREAK_DAYS = 7
STREAK_STEP = 3
MAX_MODULES = 5


def suggest_goals(provider: ActivityProvider) -> list[SuggestedGoal]:
    """One suggestion per signal the provider can currently answer for."""
    suggestions: list[SuggestedGoal] = []

    try:
        weekly_hours = int(round_half_up(provider.study_time().weekly_minutes / 60))
    except ProviderReadError as exc:
        logger.debug("No study time suggestion: %s", exc)
    else:
        hours = max(MIN_STUDY_HOURS, weekly_hours + STUDY_HOURS_STEP)
        suggestions.append(
            SuggestedGoal(
                title=f"Study {hours} hours this week",
                description="Dedicate focused study time to improve understanding",
                type=GoalType.study_time,
                target_value=hours,
                unit="hours",
                priority=GoalPriority.high,
            )
        )

    try:
        streak = provider.streak().current_streak
    except ProviderReadError as exc:
        logger.debug("No streak suggestion: %s", exc)
    else:
        days = max(MIN_STREAK_DAYS, streak + STREAK_STEP)
        suggestions.append(
            SuggestedGoal(
                title=f"Maintain {days}-day streak",
                description="Log in and study every day to build consistency",
                type=GoalType.streak,
                target_value=days,
                unit="days",
                priority=GoalPriority.medium,
            )
        )

    try:
        courses = provider.course_progress()
    except ProviderReadError as exc:
        logger.debug("No module suggestion: %s", exc)
    else:
        completed = sum(c.completed_modules for c in courses.values())
        remaining = sum(c.total_modules for c in courses.values()) - completed
        if remaining > 0:
            modules = min(MAX_MODULES, remaining)
            suggestions.append(
                SuggestedGoal(
                    title=f"Complete {modules} module{'s' if modules > 1 else ''}",
                    description="Finish modules from your enrolled courses",
                    type=GoalType.course_completion,
                    target_value=modules,
                    unit="modules",
                    priority=GoalPriority.medium,
                )
            )

    return suggestions
