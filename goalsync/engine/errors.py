"""Error taxonomy for the goal engine."""

from __future__ import annotations


class GoalSyncError(Exception):
    """Base class for all engine errors."""


class ProviderReadError(GoalSyncError):
    """An activity provider could not produce a reading."""


class PersistenceError(GoalSyncError):
    """A store call failed; the write stays pending."""


class ConfigurationError(GoalSyncError):
    """No persistence backend is configured or reachable."""


class GoalNotFoundError(GoalSyncError):
    def __init__(self, goal_id: str):
        super().__init__(f"Unknown goal: {goal_id}")
        self.goal_id = goal_id


class InvalidTransitionError(GoalSyncError):
    def __init__(self, goal_id: str, current: str, requested: str):
        super().__init__(f"Goal {goal_id} cannot move from {current} to {requested}")
        self.goal_id = goal_id
        self.current = current
        self.requested = requested


class EngineClosedError(GoalSyncError):
    """The owner's session has ended."""
