"""Tests for the per-owner goal engine."""

from __future__ import annotations

import asyncio

import pytest

from goalsync.engine.errors import EngineClosedError, GoalNotFoundError, InvalidTransitionError, PersistenceError
from goalsync.engine.models import GoalCreate, GoalStatus, GoalType
from goalsync.engine.providers import ActivityUpdate, CourseProgress, StreakReading, StudyTimeReading
from goalsync.engine.service import GoalEngine
from tests.conftest import OWNER, GatedStore


def _streak_goal(target: float = 7) -> GoalCreate:
    return GoalCreate(title="Keep the streak", type=GoalType.streak, target_value=target)


# ---------------------------------------------------------------------------
# Create / fetch
# ---------------------------------------------------------------------------

class TestCreate:
    @pytest.mark.asyncio
    async def test_captures_baseline(self, engine):
        goal = await engine.create_goal(_streak_goal())
        assert goal.metadata.baseline_value == 3.0
        assert goal.current_value == 0.0
        assert goal.unit == "days"
        assert goal.owner_id == OWNER

    @pytest.mark.asyncio
    async def test_course_scoped_baseline(self, engine):
        goal = await engine.create_goal(
            GoalCreate(title="Finish course", type=GoalType.course_completion, target_value=5, course_id="course-1")
        )
        assert goal.metadata.baseline_value == 2.0
        assert goal.course_id == "course-1"

    @pytest.mark.asyncio
    async def test_persisted_and_listed(self, engine, store):
        goal = await engine.create_goal(_streak_goal())
        assert [g.id for g in await store.fetch(OWNER)] == [goal.id]
        assert [g.id for g in engine.goals()] == [goal.id]

    @pytest.mark.asyncio
    async def test_store_failure_propagates(self, engine, store):
        store.fail_create = True
        with pytest.raises(PersistenceError):
            await engine.create_goal(_streak_goal())
        assert engine.goals() == []

    @pytest.mark.asyncio
    async def test_fetch_marks_completed_goals_notified(self, store, provider, make_goal):
        from datetime import datetime, timezone

        done = make_goal(
            GoalType.streak, target=1, current=5,
            status=GoalStatus.completed, completed_at=datetime.now(timezone.utc),
        )
        await store.create(done)
        eng = GoalEngine(OWNER, store, provider, fast_tick_seconds=3600, slow_tick_seconds=3600)
        events = []
        eng.add_completion_listener(events.append)
        await eng.fetch_goals()
        eng.reconciler.fast_tick()
        assert events == []
        await eng.stop()

    @pytest.mark.asyncio
    async def test_fetch_keeps_in_memory_progress(self, engine, provider):
        goal = await engine.create_goal(_streak_goal(target=10))
        provider.apply(ActivityUpdate(streak=StreakReading(current_streak=6)))
        engine.reconciler.fast_tick()

        goals = await engine.fetch_goals()
        assert next(g for g in goals if g.id == goal.id).current_value == 3.0


# ---------------------------------------------------------------------------
# Status transitions
# ---------------------------------------------------------------------------

class TestStatus:
    @pytest.mark.asyncio
    async def test_pause_and_resume(self, engine, store):
        goal = await engine.create_goal(_streak_goal())
        paused = await engine.update_goal_status(goal.id, GoalStatus.paused)
        assert paused.status == GoalStatus.paused
        resumed = await engine.update_goal_status(goal.id, GoalStatus.active)
        assert resumed.status == GoalStatus.active
        assert (await store.fetch(OWNER))[0].status == GoalStatus.active

    @pytest.mark.asyncio
    async def test_manual_completion_is_terminal(self, engine):
        goal = await engine.create_goal(_streak_goal())
        done = await engine.update_goal_status(goal.id, GoalStatus.completed)
        assert done.completed_at is not None

        for target in (GoalStatus.active, GoalStatus.paused, GoalStatus.expired):
            with pytest.raises(InvalidTransitionError):
                await engine.update_goal_status(goal.id, target)

    @pytest.mark.asyncio
    async def test_manual_completion_emits_no_event(self, engine, provider):
        events = []
        engine.add_completion_listener(events.append)
        goal = await engine.create_goal(_streak_goal())
        await engine.update_goal_status(goal.id, GoalStatus.completed)
        provider.apply(ActivityUpdate(streak=StreakReading(current_streak=50)))
        engine.reconciler.fast_tick()
        assert events == []

    @pytest.mark.asyncio
    async def test_expired_can_be_reactivated(self, engine):
        goal = await engine.create_goal(_streak_goal())
        await engine.update_goal_status(goal.id, GoalStatus.expired)
        again = await engine.update_goal_status(goal.id, GoalStatus.active)
        assert again.status == GoalStatus.active

    @pytest.mark.asyncio
    async def test_unknown_goal(self, engine):
        with pytest.raises(GoalNotFoundError):
            await engine.update_goal_status("goal-missing", GoalStatus.paused)

    @pytest.mark.asyncio
    async def test_pause_rolled_back_on_store_failure(self, engine, store):
        goal = await engine.create_goal(_streak_goal())
        store.fail_status = True
        with pytest.raises(PersistenceError):
            await engine.update_goal_status(goal.id, GoalStatus.paused)
        assert engine.get_goal(goal.id).status == GoalStatus.active

    @pytest.mark.asyncio
    async def test_completion_queued_on_store_failure(self, engine, store):
        goal = await engine.create_goal(_streak_goal())
        store.fail_status = True
        done = await engine.update_goal_status(goal.id, GoalStatus.completed)
        assert done.status == GoalStatus.completed
        assert goal.id in engine.reconciler.pending_writes()

        store.fail_status = False
        await engine.reconciler.slow_tick()
        assert (await store.fetch(OWNER))[0].status == GoalStatus.completed


# ---------------------------------------------------------------------------
# Delete
# ---------------------------------------------------------------------------

class TestDelete:
    @pytest.mark.asyncio
    async def test_delete_removes_everywhere(self, engine, store, provider):
        goal = await engine.create_goal(_streak_goal(target=10))
        provider.apply(ActivityUpdate(streak=StreakReading(current_streak=5)))
        engine.reconciler.fast_tick()

        assert await engine.delete_goal(goal.id) is True
        await engine.reconciler.slow_tick()

        assert engine.goals() == []
        assert await store.fetch(OWNER) == []
        assert store.progress_writes == []

    @pytest.mark.asyncio
    async def test_deleted_goal_not_resurrected_by_fetch(self, engine, store, make_goal):
        goal = await engine.create_goal(_streak_goal())
        await engine.delete_goal(goal.id)
        # A stale copy reappearing in the store stays hidden.
        await store.create(make_goal(GoalType.streak, id=goal.id))
        assert await engine.fetch_goals() == []

    @pytest.mark.asyncio
    async def test_delete_unknown(self, engine):
        with pytest.raises(GoalNotFoundError):
            await engine.delete_goal("goal-missing")

    @pytest.mark.asyncio
    async def test_failed_delete_restores_goal(self, engine, store):
        goal = await engine.create_goal(_streak_goal())
        store.fail_delete = True
        with pytest.raises(PersistenceError):
            await engine.delete_goal(goal.id)
        assert [g.id for g in engine.goals()] == [goal.id]
        assert not engine.reconciler.is_deleted(goal.id)

    @pytest.mark.asyncio
    async def test_other_owner_cannot_delete(self, engine, store, provider):
        goal = await engine.create_goal(_streak_goal())
        intruder = GoalEngine("student-2", store, provider, fast_tick_seconds=3600, slow_tick_seconds=3600)
        await intruder.fetch_goals()

        with pytest.raises(GoalNotFoundError):
            await intruder.delete_goal(goal.id)
        await intruder.stop()

        assert [g.id for g in await store.fetch(OWNER)] == [goal.id]
        assert [g.id for g in engine.goals()] == [goal.id]

    @pytest.mark.asyncio
    async def test_goal_dropped_when_row_vanishes(self, engine, store, provider):
        goal = await engine.create_goal(_streak_goal(target=10))
        await store.delete(goal.id)
        provider.apply(ActivityUpdate(streak=StreakReading(current_streak=5)))

        await engine.sync_all_goals_progress()
        assert engine.goals() == []
        assert engine.reconciler.pending_writes() == set()

    @pytest.mark.asyncio
    async def test_delete_during_inflight_write(self, provider):
        store = GatedStore()
        eng = GoalEngine(OWNER, store, provider, fast_tick_seconds=3600, slow_tick_seconds=3600)
        await eng.fetch_goals()
        goal = await eng.create_goal(_streak_goal(target=10))
        provider.apply(ActivityUpdate(streak=StreakReading(current_streak=6)))
        eng.reconciler.fast_tick()

        tick = asyncio.create_task(eng.reconciler.slow_tick())
        await store.entered.wait()
        await eng.delete_goal(goal.id)
        store.release.set()
        await tick

        assert eng.goals() == []
        assert await store.fetch(OWNER) == []
        assert await store.fetch_history(goal.id, 10) == []
        assert await eng.fetch_goals() == []
        await eng.stop()


# ---------------------------------------------------------------------------
# Sync, stats, history, suggestions
# ---------------------------------------------------------------------------

class TestSync:
    @pytest.mark.asyncio
    async def test_sync_derives_and_persists(self, engine, store, provider):
        goal = await engine.create_goal(
            GoalCreate(title="Study", type=GoalType.study_time, target_value=5)
        )
        provider.apply(ActivityUpdate(study_time=StudyTimeReading(weekly_minutes=240)))

        goals = await engine.sync_all_goals_progress()
        synced = next(g for g in goals if g.id == goal.id)
        assert synced.current_value == 2.0
        assert synced.progress_percentage == 40
        assert (goal.id, 2.0) in store.progress_writes

    @pytest.mark.asyncio
    async def test_sync_completes_and_notifies_once(self, engine, store, provider):
        queue, unsubscribe = engine.subscribe()
        goal = await engine.create_goal(_streak_goal(target=7))
        provider.apply(ActivityUpdate(streak=StreakReading(current_streak=10)))

        await engine.sync_all_goals_progress()
        await engine.sync_all_goals_progress()
        unsubscribe()

        assert queue.qsize() == 1
        event = queue.get_nowait()
        assert event.goal_id == goal.id
        assert (goal.id, GoalStatus.completed) in store.status_writes
        assert engine.get_goal(goal.id).status == GoalStatus.completed


class TestStatsAndHistory:
    @pytest.mark.asyncio
    async def test_stats(self, engine):
        first = await engine.create_goal(_streak_goal())
        await engine.create_goal(_streak_goal())
        await engine.create_goal(_streak_goal())
        await engine.update_goal_status(first.id, GoalStatus.completed)

        stats = engine.stats()
        assert stats.total == 3
        assert stats.active == 2
        assert stats.completed == 1
        assert stats.completion_rate == 33

    @pytest.mark.asyncio
    async def test_stats_empty(self, engine):
        assert engine.stats().completion_rate == 0

    @pytest.mark.asyncio
    async def test_progress_history_after_sync(self, engine, provider):
        goal = await engine.create_goal(_streak_goal(target=10))
        provider.apply(ActivityUpdate(streak=StreakReading(current_streak=5)))
        await engine.sync_all_goals_progress()

        history = await engine.get_progress_history(goal.id)
        assert [h.progress_percentage for h in history] == [20]

    @pytest.mark.asyncio
    async def test_history_unknown_goal(self, engine):
        with pytest.raises(GoalNotFoundError):
            await engine.get_progress_history("goal-missing")

    @pytest.mark.asyncio
    async def test_aggregated_history_live_today(self, engine, provider):
        await engine.create_goal(_streak_goal(target=10))
        provider.apply(ActivityUpdate(streak=StreakReading(current_streak=8)))
        engine.reconciler.fast_tick()

        rows = await engine.get_aggregated_progress_history(7)
        assert len(rows) == 8
        assert rows[-1].total_progress == 50
        assert rows[-1].active == 1

    @pytest.mark.asyncio
    async def test_aggregated_history_survives_store_failure(self, engine, store):
        async def _broken(owner_id, since):
            raise PersistenceError("store down")

        store.fetch_owner_history = _broken
        rows = await engine.get_aggregated_progress_history(3)
        assert len(rows) == 4

    @pytest.mark.asyncio
    async def test_suggestions(self, engine, provider):
        provider.apply(
            ActivityUpdate(course_progress={"course-1": CourseProgress(completed_modules=7, total_modules=7)})
        )
        suggestions = {s.type: s for s in engine.suggested_goals()}
        assert suggestions[GoalType.study_time].target_value == 10
        assert suggestions[GoalType.streak].target_value == 7
        assert suggestions[GoalType.course_completion].target_value == 3

    @pytest.mark.asyncio
    async def test_suggested_hours_round_half_up(self, engine, provider):
        provider.apply(ActivityUpdate(study_time=StudyTimeReading(weekly_minutes=630)))
        suggestions = {s.type: s for s in engine.suggested_goals()}
        assert suggestions[GoalType.study_time].target_value == 16
        assert suggestions[GoalType.study_time].title == "Study 16 hours this week"


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_closed_engine_rejects_calls(self, store, provider):
        eng = GoalEngine(OWNER, store, provider, fast_tick_seconds=3600, slow_tick_seconds=3600)
        await eng.start()
        assert eng.reconciler.running
        await eng.stop()
        await eng.stop()
        assert eng.closed
        with pytest.raises(EngineClosedError):
            await eng.create_goal(_streak_goal())
