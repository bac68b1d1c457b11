"""
Tests for the insight cache implementations and factory.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from insights_engine.core.cache import (
    InMemoryInsightCache,
    PostgresInsightCache,
    create_insight_cache,
)
from insights_engine.core.config import Settings
from insights_engine.core.errors import StoreUnavailableError
from insights_engine.models import GenerationState, InsightsResponse

pytestmark = pytest.mark.asyncio

GENERATED_AT = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Monotonic clock advanced by hand."""

    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _response(entity_id: str = "evt_1") -> InsightsResponse:
    return InsightsResponse(
        entityId=entity_id,
        state=GenerationState.READY,
        generatedAt=GENERATED_AT,
    )


class TestInMemoryInsightCache:
    """Test suite for InMemoryInsightCache."""

    async def test_fresh_entry_is_returned(self) -> None:
        cache = InMemoryInsightCache(default_ttl_seconds=60, clock=FakeClock())

        await cache.set("evt_1", _response())

        cached = await cache.get("evt_1")
        assert cached is not None
        assert cached.entityId == "evt_1"
        assert await cache.get("evt_2") is None

    async def test_expired_entry_is_only_stale(self) -> None:
        clock = FakeClock()
        cache = InMemoryInsightCache(default_ttl_seconds=60, clock=clock)
        await cache.set("evt_1", _response())

        clock.now += 61

        assert await cache.get("evt_1") is None, "Expired entries are misses"
        stale = await cache.get_stale("evt_1")
        assert stale is not None, "Expired entries remain available as stale"

    async def test_explicit_ttl_overrides_default(self) -> None:
        clock = FakeClock()
        cache = InMemoryInsightCache(default_ttl_seconds=60, clock=clock)
        await cache.set("evt_1", _response(), ttl_seconds=600)

        clock.now += 120

        assert await cache.get("evt_1") is not None

    async def test_invalidate_removes_entry(self) -> None:
        cache = InMemoryInsightCache(clock=FakeClock())
        await cache.set("evt_1", _response())

        await cache.invalidate("evt_1")

        assert await cache.get_stale("evt_1") is None
        await cache.invalidate("evt_1")

    async def test_last_writer_wins(self) -> None:
        cache = InMemoryInsightCache(clock=FakeClock())
        await cache.set("evt_1", _response())
        await cache.set("evt_1", _response().model_copy(update={'degraded': True}))

        cached = await cache.get("evt_1")
        assert cached.degraded is True


class TestPostgresInsightCache:
    """Test suite for PostgresInsightCache against a mocked pool."""

    async def test_init_creates_table(self, mock_db_pool: AsyncMock) -> None:
        conn = mock_db_pool.acquire.return_value.__aenter__.return_value
        cache = PostgresInsightCache(mock_db_pool)

        await cache.init()

        assert "insight_cache" in conn.execute.call_args.args[0]

    async def test_hit_and_expiry(self, mock_db_pool: AsyncMock) -> None:
        conn = mock_db_pool.acquire.return_value.__aenter__.return_value
        cache = PostgresInsightCache(mock_db_pool)
        payload = _response().model_dump_json()

        conn.fetchrow.return_value = {
            'payload': payload,
            'expires_at': datetime.now(timezone.utc) + timedelta(hours=1),
        }
        assert (await cache.get("evt_1")).entityId == "evt_1"

        conn.fetchrow.return_value = {
            'payload': payload,
            'expires_at': datetime.now(timezone.utc) - timedelta(hours=1),
        }
        assert await cache.get("evt_1") is None
        assert await cache.get_stale("evt_1") is not None

    async def test_miss(self, mock_db_pool: AsyncMock) -> None:
        cache = PostgresInsightCache(mock_db_pool)

        assert await cache.get("evt_1") is None
        assert await cache.get_stale("evt_1") is None

    async def test_set_writes_payload(self, mock_db_pool: AsyncMock) -> None:
        conn = mock_db_pool.acquire.return_value.__aenter__.return_value
        cache = PostgresInsightCache(mock_db_pool, default_ttl_seconds=60)

        await cache.set("evt_1", _response())

        args = conn.execute.call_args.args
        assert args[1] == "evt_1"
        assert InsightsResponse.model_validate_json(args[2]).entityId == "evt_1"
        assert args[3] > datetime.now(timezone.utc)

    async def test_connection_failure_is_store_unavailable(self, mock_db_pool: AsyncMock) -> None:
        conn = mock_db_pool.acquire.return_value.__aenter__.return_value
        conn.fetchrow.side_effect = OSError("connection refused")
        cache = PostgresInsightCache(mock_db_pool)

        with pytest.raises(StoreUnavailableError):
            await cache.get("evt_1")


class TestCreateInsightCache:
    """Test suite for create_insight_cache."""

    async def test_memory_backend(self) -> None:
        settings = Settings(_env_file=None, cache_backend='memory', cache_ttl_seconds=120)

        cache = create_insight_cache(settings)

        assert isinstance(cache, InMemoryInsightCache)
        assert cache.default_ttl_seconds == 120

    async def test_postgres_backend(self, mock_db_pool: AsyncMock) -> None:
        settings = Settings(_env_file=None, cache_backend='postgres')

        assert isinstance(create_insight_cache(settings, mock_db_pool), PostgresInsightCache)

    async def test_postgres_without_pool(self) -> None:
        settings = Settings(_env_file=None, cache_backend='postgres')

        with pytest.raises(ValueError):
            create_insight_cache(settings)

    async def test_unknown_backend(self) -> None:
        settings = Settings(_env_file=None, cache_backend='redis')

        with pytest.raises(ValueError):
            create_insight_cache(settings)
