"""Goals HTTP router — thin layer over the owner's GoalEngine."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from goalsync.auth import owner_id, verify_api_key
from goalsync.engine.errors import GoalNotFoundError, InvalidTransitionError, PersistenceError
from goalsync.engine.models import (
    GoalCreate,
    GoalStats,
    GoalWithProgress,
    HistoryDay,
    ProgressHistoryEntry,
    StatusUpdate,
    SuggestedGoal,
)
from goalsync.engine.providers import ActivityUpdate
from goalsync.engine.service import GoalEngine
from goalsync.engine.sessions import SessionRegistry

router = APIRouter(prefix="/goals", tags=["goals"], dependencies=[Depends(verify_api_key)])


def get_registry(request: Request) -> SessionRegistry:
    return request.app.state.sessions


async def get_engine(
    owner: str = Depends(owner_id),
    registry: SessionRegistry = Depends(get_registry),
) -> GoalEngine:
    try:
        return await registry.get(owner)
    except PersistenceError as exc:
        raise HTTPException(status_code=503, detail=f"Goal store unavailable: {exc}")


def _not_found(exc: GoalNotFoundError) -> HTTPException:
    return HTTPException(status_code=404, detail=str(exc))


# ---------------------------------------------------------------------------
# /goals
# ---------------------------------------------------------------------------


@router.get("", response_model=list[GoalWithProgress])
async def list_goals(engine: GoalEngine = Depends(get_engine)) -> list[GoalWithProgress]:
    return engine.goals()


@router.post("", response_model=GoalWithProgress, status_code=201)
async def create_goal(body: GoalCreate, engine: GoalEngine = Depends(get_engine)) -> GoalWithProgress:
    try:
        return await engine.create_goal(body)
    except PersistenceError as exc:
        raise HTTPException(status_code=503, detail=f"Goal not saved: {exc}")


@router.post("/sync", response_model=list[GoalWithProgress])
async def sync_goals(engine: GoalEngine = Depends(get_engine)) -> list[GoalWithProgress]:
    return await engine.sync_all_goals_progress()


@router.get("/stats", response_model=GoalStats)
async def goal_stats(engine: GoalEngine = Depends(get_engine)) -> GoalStats:
    return engine.stats()


@router.get("/history", response_model=list[HistoryDay])
async def aggregated_history(
    engine: GoalEngine = Depends(get_engine),
    days: int = Query(default=7, ge=0, le=365, description="Days before today to include"),
) -> list[HistoryDay]:
    return await engine.get_aggregated_progress_history(days)


@router.get("/suggestions", response_model=list[SuggestedGoal])
async def suggestions(engine: GoalEngine = Depends(get_engine)) -> list[SuggestedGoal]:
    return engine.suggested_goals()


@router.put("/activity")
async def push_activity(
    body: ActivityUpdate,
    owner: str = Depends(owner_id),
    registry: SessionRegistry = Depends(get_registry),
) -> dict[str, str]:
    """Store the latest activity readings; the next fast tick picks them up."""
    registry.provider(owner).apply(body)
    return {"status": "ok"}


@router.delete("/session")
async def end_session(
    owner: str = Depends(owner_id),
    registry: SessionRegistry = Depends(get_registry),
) -> dict[str, bool]:
    return {"closed": await registry.close(owner)}


# ---------------------------------------------------------------------------
# /goals/{goal_id}
# ---------------------------------------------------------------------------


@router.patch("/{goal_id}/status", response_model=GoalWithProgress)
async def update_status(
    goal_id: str,
    body: StatusUpdate,
    engine: GoalEngine = Depends(get_engine),
) -> GoalWithProgress:
    try:
        return await engine.update_goal_status(goal_id, body.status)
    except GoalNotFoundError as exc:
        raise _not_found(exc)
    except InvalidTransitionError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except PersistenceError as exc:
        raise HTTPException(status_code=503, detail=f"Status not saved: {exc}")


@router.delete("/{goal_id}")
async def delete_goal(goal_id: str, engine: GoalEngine = Depends(get_engine)) -> dict[str, bool]:
    try:
        return {"deleted": await engine.delete_goal(goal_id)}
    except GoalNotFoundError as exc:
        raise _not_found(exc)
    except PersistenceError as exc:
        raise HTTPException(status_code=503, detail=f"Goal not deleted: {exc}")


@router.get("/{goal_id}/history", response_model=list[ProgressHistoryEntry])
async def goal_history(
    goal_id: str,
    engine: GoalEngine = Depends(get_engine),
    limit: int = Query(default=30, ge=1, le=100),
) -> list[ProgressHistoryEntry]:
    try:
        return await engine.get_progress_history(goal_id, limit)
    except GoalNotFoundError as exc:
        raise _not_found(exc)
    except PersistenceError as exc:
        raise HTTPException(status_code=503, detail=f"History unavailable: {exc}")
