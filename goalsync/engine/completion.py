"""Exactly-once completion detection."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timezone

from goalsync.engine.models import CompletionEvent, Goal, GoalStatus

logger = logging.getLogger(__name__)

CompletionListener = Callable[[CompletionEvent], None]


class CompletionDetector:
    """Moves active goals that reached their target to completed, once per goal id.

    The notified set lives as long as the detector, so a goal id can produce
    at most one event per engine instance.
    """

    def __init__(self) -> None:
        self._notified: set[str] = set()
        self._listeners: list[CompletionListener] = []

    def add_listener(self, listener: CompletionListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def mark_notified(self, goal_id: str) -> None:
        """Goals completed by other means must never fire an event."""
        self._notified.add(goal_id)

    def is_notified(self, goal_id: str) -> bool:
        return goal_id in self._notified

    def observe(self, goal: Goal, now: datetime | None = None) -> CompletionEvent | None:
        """Complete `goal` if its current value reached the target.

        Returns the event when the transition happened (whether or not it was
        delivered to listeners), None otherwise.
        """
        if goal.status != GoalStatus.active or goal.current_value < goal.target_value:
            return None
        if goal.id in self._notified:
            return None
        self._notified.add(goal.id)

        completed_at = now or datetime.now(timezone.utc)
        goal.status = GoalStatus.completed
        goal.completed_at = completed_at
        goal.updated_at = completed_at

        event = CompletionEvent(
            goal_id=goal.id,
            owner_id=goal.owner_id,
            title=goal.title,
            target_value=goal.target_value,
            unit=goal.unit,
            completed_at=completed_at,
        )
        if goal.metadata.notifications_enabled:
            self._emit(event)
        else:
            logger.info("Goal %s completed, notifications disabled", goal.id)
        return event

    def _emit(self, event: CompletionEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Completion listener failed for goal %s", event.goal_id)
