import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from goalsync.config import settings
from goalsync.engine.errors import EngineClosedError
from goalsync.engine.router import router as goals_router
from goalsync.engine.sessions import SessionRegistry

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await app.state.sessions.close_all()


app = FastAPI(title="GoalSync", version="0.1.0", lifespan=lifespan)
app.state.sessions = SessionRegistry(settings)
app.include_router(goals_router)


@app.exception_handler(EngineClosedError)
async def session_closed(request: Request, exc: EngineClosedError) -> JSONResponse:
    # The session ended while this request held its engine; a retry opens a new one.
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.get("/")
async def root() -> dict:
    return {
        "status": "ok",
        "docs": "/docs",
        "health": "/health",
        "goals": {
            "list": "/goals",
            "sync": "/goals/sync",
            "stats": "/goals/stats",
            "history": "/goals/history",
            "goal_history": "/goals/{id}/history",
            "suggestions": "/goals/suggestions",
            "activity": "/goals/activity",
        },
    }


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}
