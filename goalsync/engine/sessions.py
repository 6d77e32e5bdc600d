"""Per-owner engine sessions for the HTTP layer."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from goalsync.config import Settings
from goalsync.engine.providers import InMemoryActivityProvider
from goalsync.engine.service import GoalEngine
from goalsync.engine.sql_store import select_store
from goalsync.engine.store import GoalStore

logger = logging.getLogger(__name__)

StoreFactory = Callable[[], Awaitable[GoalStore]]


class SessionRegistry:
    """Owner id -> running GoalEngine. Engines share the store, nothing else."""

    def __init__(self, settings: Settings, store_factory: StoreFactory | None = None):
        self._settings = settings
        self._store_factory = store_factory or (lambda: select_store(settings))
        self._store: GoalStore | None = None
        self._engines: dict[str, GoalEngine] = {}
        self._providers: dict[str, InMemoryActivityProvider] = {}
        self._lock = asyncio.Lock()

    async def _get_store(self) -> GoalStore:
        if self._store is None:
            self._store = await self._store_factory()
        return self._store

    def provider(self, owner_id: str) -> InMemoryActivityProvider:
        if owner_id not in self._providers:
            self._providers[owner_id] = InMemoryActivityProvider()
        return self._providers[owner_id]

    async def get(self, owner_id: str) -> GoalEngine:
        async with self._lock:
            engine = self._engines.get(owner_id)
            if engine is not None:
                return engine
            store = await self._get_store()
            engine = GoalEngine.from_settings(owner_id, store, self.provider(owner_id), self._settings)
            await engine.start()
            self._engines[owner_id] = engine
            logger.info("Started goal session for %s", owner_id)
            return engine

    async def close(self, owner_id: str) -> bool:
        async with self._lock:
            engine = self._engines.pop(owner_id, None)
            self._providers.pop(owner_id, None)
        if engine is None:
            return False
        await engine.stop()
        logger.info("Closed goal session for %s", owner_id)
        return True

    async def close_all(self) -> None:
        async with self._lock:
            engines, self._engines = list(self._engines.values()), {}
            self._providers.clear()
        for engine in engines:
            await engine.stop()
        if self._store is not None:
            await self._store.close()
            self._store = None
