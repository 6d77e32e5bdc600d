"""Dual-cadence reconciliation between derived progress and the goal store.

The fast tick refreshes in-memory progress and never awaits; the slow tick is
the only code path that writes progress to the store. Both run on the same
event loop, and the fast tick cannot be interrupted halfway through a goal.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import MutableMapping
from datetime import datetime, timezone

from goalsync.engine.completion import CompletionDetector
from goalsync.engine.history import HistoryRecorder
from goalsync.engine.models import CompletionEvent, GoalStatus, GoalWithProgress
from goalsync.engine.progress import derive, progress_percentage
from goalsync.engine.providers import ActivityProvider
from goalsync.engine.store import GoalStore

logger = logging.getLogger(__name__)


class Reconciler:
    def __init__(
        self,
        goals: MutableMapping[str, GoalWithProgress],
        provider: ActivityProvider,
        store: GoalStore,
        detector: CompletionDetector,
        history: HistoryRecorder | None = None,
        fast_interval: float = 1.0,
        slow_interval: float = 30.0,
        stop_grace: float = 5.0,
    ):
        self._goals = goals
        self._provider = provider
        self._store = store
        self._detector = detector
        self._history = history
        self._fast_interval = fast_interval
        self._slow_interval = slow_interval
        self._stop_grace = stop_grace

        self._last_written: dict[str, float] = {}
        self._pending_status: set[str] = set()
        self._tombstones: set[str] = set()
        self._stop = asyncio.Event()
        self._write_lock = asyncio.Lock()
        self._tasks: list[asyncio.Task] = []

    # -- bookkeeping ------------------------------------------------------

    def mark_persisted(self, goal_id: str, value: float) -> None:
        """Record the value the store already holds for a goal."""
        self._last_written[goal_id] = value

    def request_status_write(self, goal_id: str) -> None:
        self._pending_status.add(goal_id)

    def tombstone(self, goal_id: str) -> None:
        self._tombstones.add(goal_id)

    def untombstone(self, goal_id: str) -> None:
        self._tombstones.discard(goal_id)

    def is_deleted(self, goal_id: str) -> bool:
        return goal_id in self._tombstones

    def pending_writes(self) -> set[str]:
        """Goal ids whose in-memory state differs from the store."""
        dirty = {
            goal_id
            for goal_id, goal in self._goals.items()
            if self._last_written.get(goal_id) != goal.current_value
        }
        return (dirty | self._pending_status) - self._tombstones

    @property
    def running(self) -> bool:
        return bool(self._tasks) and not self._stop.is_set()

    # -- ticks ------------------------------------------------------------

    def fast_tick(self, now: datetime | None = None) -> list[CompletionEvent]:
        """Recompute progress for every active goal. No I/O."""
        now = now or datetime.now(timezone.utc)
        completed: list[CompletionEvent] = []
        for goal in list(self._goals.values()):
            if goal.status != GoalStatus.active:
                continue
            try:
                value = derive(goal, self._provider)
                pct = progress_percentage(value, goal.target_value)
                goal.current_value = value
                goal.progress_percentage = pct
                event = self._detector.observe(goal, now)
            except Exception:
                logger.exception("Fast tick failed for goal %s", goal.id)
                continue
            if event is not None:
                self.request_status_write(goal.id)
                completed.append(event)
        return completed

    async def slow_tick(self) -> int:
        """Flush pending status changes, then write changed progress values.

        Passes run one at a time. Returns the number of successful writes;
        failed goals stay pending.
        """
        async with self._write_lock:
            return await self._slow_pass()

    async def _slow_pass(self) -> int:
        writes = 0
        for goal_id in list(self._pending_status):
            if self._stop.is_set():
                return writes
            goal = self._goals.get(goal_id)
            if goal is None or self.is_deleted(goal_id):
                self._pending_status.discard(goal_id)
                continue
            status, completed_at = goal.status, goal.completed_at
            try:
                found = await self._store.update_status(goal_id, status, completed_at)
            except Exception:
                logger.exception("Status write failed for goal %s, retrying next tick", goal_id)
                continue
            if not found:
                self._forget(goal_id)
                continue
            if goal.status == status:
                self._pending_status.discard(goal_id)
            writes += 1

        for goal_id in list(self._goals):
            if self._stop.is_set():
                return writes
            goal = self._goals.get(goal_id)
            if goal is None or self.is_deleted(goal_id):
                continue
            value = goal.current_value
            if self._last_written.get(goal_id) == value:
                continue
            pct = progress_percentage(value, goal.target_value)
            try:
                found = await self._store.update_progress(goal_id, value)
            except Exception:
                logger.exception("Progress write failed for goal %s, retrying next tick", goal_id)
                continue
            if self.is_deleted(goal_id):
                continue
            if not found:
                self._forget(goal_id)
                continue
            self._last_written[goal_id] = value
            writes += 1
            await self._record_snapshot(goal_id, value, pct)
        return writes

    def _forget(self, goal_id: str) -> None:
        """The store no longer has the row; stop tracking the goal."""
        logger.info("Goal %s no longer in store, dropping it", goal_id)
        self._goals.pop(goal_id, None)
        self._pending_status.discard(goal_id)
        self._last_written.pop(goal_id, None)

    async def _record_snapshot(self, goal_id: str, value: float, pct: int) -> None:
        if self._history is None:
            return
        try:
            await self._history.record_snapshot(goal_id, value, pct)
        except Exception:
            logger.exception("Snapshot failed for goal %s", goal_id)

    # -- lifecycle --------------------------------------------------------

    def start(self) -> None:
        if self._tasks:
            return
        self._stop.clear()
        self._tasks = [
            asyncio.create_task(self._run(self._fast_interval, self._fast_step), name="goalsync-fast-tick"),
            asyncio.create_task(self._run(self._slow_interval, self.slow_tick), name="goalsync-slow-tick"),
        ]

    async def stop(self) -> None:
        """Stop both loops. An in-flight store write gets `stop_grace` seconds to finish."""
        self._stop.set()
        tasks, self._tasks = self._tasks, []
        if not tasks:
            return
        _, pending = await asyncio.wait(tasks, timeout=self._stop_grace)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _fast_step(self) -> None:
        self.fast_tick()

    async def _run(self, interval: float, step) -> None:
        while True:
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=interval)
                return
            except asyncio.TimeoutError:
                pass
            try:
                await step()
            except Exception:
                logger.exception("Reconciler tick failed")
