"""
Insight Cache.

Stores the latest InsightsResponse per entity with a TTL. The cache is an
injected resource with an explicit lifecycle: the FastAPI lifespan builds
one with create_insight_cache(), awaits init() at startup and teardown() at
shutdown, and hands it to the orchestrator. Nothing in the engine reaches
for a module-level cache instance.

Implementations:
- InMemoryInsightCache: dict guarded by a threading.Lock; suitable for a
  single API process and for tests.
- PostgresInsightCache: insight_cache table with JSONB payloads; shared
  across processes and survives restarts.

Expiry Semantics:
    get() returns only fresh entries. Expired entries are kept so that
    get_stale() can serve them as a degraded fallback when the Metric Store
    is unavailable or a generation times out. Writes are last-writer-wins.
"""

import asyncio
import logging
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional, Tuple

import asyncpg
from asyncpg import Pool

from insights_engine.core.config import Settings
from insights_engine.core.errors import StoreUnavailableError
from insights_engine.models.schemas import InsightsResponse
from insights_engine.sql.state_queries import (
    INSIGHT_CACHE_DDL,
    get_cache_delete_query,
    get_cache_entry_query,
    get_cache_upsert_query,
)

logger = logging.getLogger(__name__)


class InsightCache:
    """
    Interface for insight caches.

    Args:
        default_ttl_seconds: TTL used by set() when none is given
    """

    def __init__(self, default_ttl_seconds: int = 86400):
        self.default_ttl_seconds = default_ttl_seconds

    async def init(self) -> None:
        """Prepare backing storage. Called once at startup."""

    async def teardown(self) -> None:
        """Release resources. Called once at shutdown."""

    async def get(self, entity_id: str) -> Optional[InsightsResponse]:
        """Fresh entry for the entity, or None on a miss or expiry."""
        raise NotImplementedError

    async def get_stale(self, entity_id: str) -> Optional[InsightsResponse]:
        """Entry for the entity regardless of expiry, or None."""
        raise NotImplementedError

    async def set(
        self,
        entity_id: str,
        response: InsightsResponse,
        ttl_seconds: Optional[int] = None,
    ) -> None:
        raise NotImplementedError

    async def invalidate(self, entity_id: str) -> None:
        raise NotImplementedError


# =============================================================================
# In-Memory Implementation
# =============================================================================


class InMemoryInsightCache(InsightCache):
    """
    Process-local cache of (expires_at, response) tuples.

    Args:
        default_ttl_seconds: TTL used by set() when none is given
        clock: Monotonic time source in seconds; injectable for tests
    """

    def __init__(
        self,
        default_ttl_seconds: int = 86400,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(default_ttl_seconds)
        self._clock = clock
        self._store: Dict[str, Tuple[float, InsightsResponse]] = {}
        self._lock = threading.Lock()

    async def teardown(self) -> None:
        with self._lock:
            self._store.clear()

    async def get(self, entity_id: str) -> Optional[InsightsResponse]:
        now = self._clock()
        with self._lock:
            entry = self._store.get(entity_id)
        if entry is None:
            return None

        expires_at, response = entry
        if expires_at <= now:
            return None
        return response

    async def get_stale(self, entity_id: str) -> Optional[InsightsResponse]:
        with self._lock:
            entry = self._store.get(entity_id)
        return entry[1] if entry else None

    async def set(
        self,
        entity_id: str,
        response: InsightsResponse,
        ttl_seconds: Optional[int] = None,
    ) -> None:
        ttl = self.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        expires_at = self._clock() + ttl
        with self._lock:
            self._store[entity_id] = (expires_at, response)

    async def invalidate(self, entity_id: str) -> None:
        with self._lock:
            self._store.pop(entity_id, None)


# =============================================================================
# PostgreSQL Implementation
# =============================================================================


_CACHE_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError)


class PostgresInsightCache(InsightCache):
    """
    Cache persisted in the insight_cache table.

    Args:
        pool: asyncpg connection pool (owned by core.database)
        default_ttl_seconds: TTL used by set() when none is given
    """

    def __init__(self, pool: Pool, default_ttl_seconds: int = 86400):
        super().__init__(default_ttl_seconds)
        self._pool = pool

    async def init(self) -> None:
        try:
            async with self._pool.acquire() as conn:
                await conn.execute(INSIGHT_CACHE_DDL)
        except _CACHE_ERRORS as e:
            raise StoreUnavailableError("Insight cache is unavailable", cause=e) from e

    async def _read(self, entity_id: str) -> Optional[Tuple[datetime, InsightsResponse]]:
        try:
            async with self._pool.acquire() as conn:
                row = await conn.fetchrow(get_cache_entry_query(), entity_id)
        except _CACHE_ERRORS as e:
            raise StoreUnavailableError("Insight cache is unavailable", cause=e) from e

        if row is None:
            return None
        return row['expires_at'], InsightsResponse.model_validate_json(row['payload'])

    async def get(self, entity_id: str) -> Optional[InsightsResponse]:
        entry = await self._read(entity_id)
        if entry is None:
            return None

        expires_at, response = entry
        if expires_at <= datetime.now(timezone.utc):
            return None
        return response

    async def get_stale(self, entity_id: str) -> Optional[InsightsResponse]:
        entry = await self._read(entity_id)
        return entry[1] if entry else None

    async def set(
        self,
        entity_id: str,
        response: InsightsResponse,
        ttl_seconds: Optional[int] = None,
    ) -> None:
        ttl = self.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=ttl)
        try:
            async with self._pool.acquire() as conn:
                await conn.execute(
                    get_cache_upsert_query(),
                    entity_id,
                    response.model_dump_json(),
                    expires_at,
                )
        except _CACHE_ERRORS as e:
            raise StoreUnavailableError("Insight cache is unavailable", cause=e) from e

    async def invalidate(self, entity_id: str) -> None:
        try:
            async with self._pool.acquire() as conn:
                await conn.execute(get_cache_delete_query(), entity_id)
        except _CACHE_ERRORS as e:
            raise StoreUnavailableError("Insight cache is unavailable", cause=e) from e


# =============================================================================
# Factory
# =============================================================================


def create_insight_cache(settings: Settings, pool: Optional[Pool] = None) -> InsightCache:
    """
    Build the cache selected by settings.cache_backend.

    Args:
        settings: Application settings
        pool: Connection pool, required for the 'postgres' backend

    Returns:
        An uninitialized InsightCache; the caller awaits init()

    Raises:
        ValueError: If the backend is unknown or 'postgres' has no pool
    """
    backend = settings.cache_backend.lower()

    if backend == 'memory':
        return InMemoryInsightCache(default_ttl_seconds=settings.cache_ttl_seconds)

    if backend == 'postgres':
        if pool is None:
            raise ValueError("The postgres insight cache requires DATABASE_URL")
        return PostgresInsightCache(pool, default_ttl_seconds=settings.cache_ttl_seconds)

    raise ValueError(f"Unknown cache backend '{settings.cache_backend}'")
