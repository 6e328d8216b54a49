"""Read-through cache for the category catalog.

Refreshes are single-flight: one task reloads while the others either wait
(when nothing is cached yet) or get the stale list straight away. An empty
catalog is never treated as fresh, so a newly created category shows up on
the next call.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from expense_ingest.core.dependencies import session_scope
from expense_ingest.models.documents import Category
from expense_ingest.services.ai.categorize.contracts import CategoryOption
from expense_ingest.services.keywords import normalize_keyword

logger = logging.getLogger(__name__)

MIN_TTL_SECONDS = 30

CatalogLoader = Callable[[], Awaitable[list[CategoryOption]]]


def make_session_loader(factory: Optional[sessionmaker] = None) -> CatalogLoader:
    """Build a loader that reads categories through a short-lived session."""

    def _load() -> list[CategoryOption]:
        with session_scope(factory) as db:
            rows = db.execute(select(Category.id, Category.name).order_by(Category.name)).all()
        return [CategoryOption(id=row.id, name=row.name, normalized_name=normalize_keyword(row.name)) for row in rows]

    async def loader() -> list[CategoryOption]:
        return await asyncio.to_thread(_load)

    return loader


class CategoryCatalogCache:
    def __init__(
        self,
        loader: CatalogLoader,
        *,
        ttl_seconds: float = 300,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._loader = loader
        self._ttl = max(MIN_TTL_SECONDS, ttl_seconds)
        self._clock = clock
        self._lock = asyncio.Lock()
        self._items: list[CategoryOption] = []
        self._last_refresh: Optional[float] = None
        self.refresh_count = 0

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    def is_fresh(self) -> bool:
        if not self._items or self._last_refresh is None:
            return False
        return self._clock() - self._last_refresh <= self._ttl

    async def get(self) -> list[CategoryOption]:
        if self.is_fresh():
            return list(self._items)

        if self._lock.locked() and self._items:
            # Someone else is already reloading.
            return list(self._items)

        async with self._lock:
            if not self.is_fresh():
                items = await self._loader()
                self._items = list(items)
                self._last_refresh = self._clock()
                self.refresh_count += 1
                logger.info("Category catalog refreshed: %d categories", len(self._items))
            return list(self._items)

    def invalidate(self) -> None:
        self._last_refresh = None
