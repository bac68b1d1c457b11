"""
Pytest Configuration and Shared Fixtures for Insights Engine Tests.

This module provides fixtures and configuration for all engine tests, supporting:
- Async test execution with pytest-asyncio (tests opt in via pytestmark)
- Mock database pool fixtures for testing the PostgreSQL cache, store and
  model registry without a real database connection
- An in-memory FakeMetricStore with switchable failures and latency for
  orchestrator, API and job tests
- Settings built from explicit values, isolated from any .env file
- Time series builders and the canonical sample series used across tests

Canonical Series:
- spike_series: [100, 102, 98, 101, 400, 99, 103] weekly. The 400 is the
  only anomaly (z = 2.45 against a 2.0 threshold, far outside the IQR fences).
- rising_series: 10, 20, ..., 100 weekly. A perfect increasing line.
"""

import asyncio
from collections import defaultdict
from datetime import date, timedelta
from typing import Dict, List, Optional, Sequence, Set, Tuple
from unittest.mock import AsyncMock, Mock

import pytest

from insights_engine.core.cache import InMemoryInsightCache
from insights_engine.core.config import Settings
from insights_engine.core.errors import StoreUnavailableError
from insights_engine.models import EntityFeatures, TimeSeriesPoint
from insights_engine.services.metric_store import DateRange, MetricStore, PopulationFilter
from insights_engine.services.prediction import ModelRegistry


# ============================================================
# PYTEST HOOKS
# ============================================================

def pytest_configure(config) -> None:
    """
    Configure custom pytest markers for test organization.

    Custom markers defined:
    - slow: Marks tests as slow (deselect with -m "not slow")
    - integration: Marks tests requiring a real PostgreSQL database
    """
    config.addinivalue_line(
        'markers',
        'slow: marks tests as slow (deselect with -m "not slow")'
    )
    config.addinivalue_line(
        'markers',
        'integration: marks tests requiring a real PostgreSQL database'
    )


# ============================================================
# SERIES BUILDERS
# ============================================================

SERIES_START = date(2026, 1, 3)


def build_series(
    values: Sequence[float],
    start: date = SERIES_START,
    step_days: int = 7,
) -> List[TimeSeriesPoint]:
    """Evenly spaced series starting at `start`, one point per value."""
    return [
        TimeSeriesPoint(date=start + timedelta(days=i * step_days), value=float(v))
        for i, v in enumerate(values)
    ]


@pytest.fixture
def spike_series() -> List[TimeSeriesPoint]:
    """Weekly attendance with a single spike at index 4."""
    return build_series([100, 102, 98, 101, 400, 99, 103])


@pytest.fixture
def rising_series() -> List[TimeSeriesPoint]:
    """Weekly series rising by exactly 10 per point."""
    return build_series([10, 20, 30, 40, 50, 60, 70, 80, 90, 100])


# ============================================================
# DATABASE MOCK FIXTURES
# ============================================================

@pytest.fixture
def mock_db_pool() -> AsyncMock:
    """
    Create a mock asyncpg connection pool for testing database operations.

    This fixture provides a fully mocked database pool that mimics asyncpg.Pool
    behavior, including connection acquisition via context manager and standard
    query methods (execute, fetch, fetchrow, fetchval).

    Returns:
        AsyncMock: Mocked asyncpg pool with preconfigured methods

    Usage:
        async def test_database_query(mock_db_pool):
            conn = mock_db_pool.acquire.return_value.__aenter__.return_value
            conn.fetch.return_value = [{'entity_id': 'evt_1'}]
    """
    pool = AsyncMock()

    # Create mock connection with standard asyncpg methods
    conn = AsyncMock()
    conn.execute = AsyncMock(return_value=None)
    conn.fetch = AsyncMock(return_value=[])
    conn.fetchrow = AsyncMock(return_value=None)
    conn.fetchval = AsyncMock(return_value=None)

    # Configure acquire() to return an async context manager
    # that yields the mock connection
    acquire_context = AsyncMock()
    acquire_context.__aenter__ = AsyncMock(return_value=conn)
    acquire_context.__aexit__ = AsyncMock(return_value=None)
    pool.acquire = Mock(return_value=acquire_context)

    pool.close = AsyncMock(return_value=None)

    return pool


# ============================================================
# SETTINGS FIXTURE
# ============================================================

@pytest.fixture
def engine_settings() -> Settings:
    """
    Settings with library defaults, no database and no .env file.

    Tests that need different thresholds derive a copy:
        settings = engine_settings.model_copy(update={'confidence_floor': 92.0})
    """
    return Settings(
        _env_file=None,
        database_url=None,
        cache_backend='memory',
        generation_timeout_seconds=5.0,
        batch_workers=2,
    )


# ============================================================
# FAKE METRIC STORE
# ============================================================

class FakeMetricStore(MetricStore):
    """
    In-memory MetricStore.

    Attributes:
        series: Points keyed by (entity_id, metric)
        populations: Latest value per entity, keyed by metric
        features: Similarity features for every entity
        entities: Entity ids returned by list_entities, newest first
        failing: Method names that raise StoreUnavailableError ('*' for all)
        failing_entities: Entities whose per-entity reads raise
        delay: Seconds each get_series call sleeps before answering
        calls: Call count per method name
    """

    def __init__(
        self,
        series: Optional[Dict[Tuple[str, str], List[TimeSeriesPoint]]] = None,
        populations: Optional[Dict[str, Dict[str, float]]] = None,
        features: Optional[List[EntityFeatures]] = None,
        entities: Optional[List[str]] = None,
    ):
        self.series = series or {}
        self.populations = populations or {}
        self.features = features or []
        self.entities = entities or []
        self.failing: Set[str] = set()
        self.failing_entities: Set[str] = set()
        self.delay = 0.0
        self.calls: Dict[str, int] = defaultdict(int)

    def _check(self, method: str, entity_id: Optional[str] = None) -> None:
        self.calls[method] += 1
        if method in self.failing or '*' in self.failing:
            raise StoreUnavailableError(f"{method} unavailable")
        if entity_id is not None and entity_id in self.failing_entities:
            raise StoreUnavailableError(f"{method} unavailable for {entity_id}")

    def _partner_members(self, population_filter: Optional[PopulationFilter]) -> Optional[Set[str]]:
        if population_filter is None or population_filter.partner_id is None:
            return None
        return {f.entityId for f in self.features if f.partnerId == population_filter.partner_id}

    async def get_series(
        self,
        entity_id: str,
        metric: str,
        date_range: Optional[DateRange] = None,
    ) -> List[TimeSeriesPoint]:
        self._check('get_series', entity_id)
        if self.delay:
            await asyncio.sleep(self.delay)
        return list(self.series.get((entity_id, metric), []))

    async def get_population(
        self,
        metric: str,
        population_filter: Optional[PopulationFilter] = None,
    ) -> Dict[str, float]:
        self._check('get_population')
        values = dict(self.populations.get(metric, {}))
        members = self._partner_members(population_filter)
        if members is not None:
            values = {k: v for k, v in values.items() if k in members}
        return values

    async def get_entity_features(self, entity_id: str) -> Optional[EntityFeatures]:
        self._check('get_entity_features', entity_id)
        return next((f for f in self.features if f.entityId == entity_id), None)

    async def get_feature_population(
        self,
        population_filter: Optional[PopulationFilter] = None,
    ) -> List[EntityFeatures]:
        self._check('get_feature_population')
        members = self._partner_members(population_filter)
        return [f for f in self.features if members is None or f.entityId in members]

    async def list_entities(
        self,
        since: Optional[date] = None,
        limit: int = 10,
        partner_id: Optional[str] = None,
    ) -> List[str]:
        self._check('list_entities')
        members = self._partner_members(PopulationFilter(partner_id=partner_id))
        entities = [e for e in self.entities if members is None or e in members]
        return entities[:limit]

    async def get_all_series(
        self,
        metric: str,
        date_range: DateRange,
    ) -> Dict[str, List[TimeSeriesPoint]]:
        self._check('get_all_series')
        return {
            entity_id: list(points)
            for (entity_id, series_metric), points in self.series.items()
            if series_metric == metric and points
        }


def build_features_population(count: int, partner_id: str = "partner_a") -> List[EntityFeatures]:
    """`count` entities evt_1..evt_n with spread-out features."""
    return [
        EntityFeatures(
            entityId=f"evt_{i}",
            eventDate=SERIES_START + timedelta(days=7 * i),
            partnerId=partner_id if i % 2 else "partner_b",
            attendance=50.0 + 10.0 * i,
            engagement=1.0 + 0.1 * i,
            merchRate=2.0 + 0.5 * i,
        )
        for i in range(1, count + 1)
    ]


@pytest.fixture
def populated_store(spike_series: List[TimeSeriesPoint]) -> FakeMetricStore:
    """
    Store where evt_1 has the spike series and ranks first of 11 on attendance.

    Only attendance has data; engagement and merch_rate are empty, so their
    analyses are skipped.
    """
    population = {f"evt_{i}": 40.0 + 5.0 * i for i in range(2, 12)}
    population["evt_1"] = 103.0

    return FakeMetricStore(
        series={("evt_1", "attendance"): spike_series},
        populations={"attendance": population},
        features=build_features_population(11),
        entities=["evt_1"],
    )


@pytest.fixture
def insight_cache() -> InMemoryInsightCache:
    return InMemoryInsightCache(default_ttl_seconds=3600)


@pytest.fixture
def model_registry() -> ModelRegistry:
    """Memory-only registry with no models fitted."""
    return ModelRegistry()
