"""
Tests for the batch jobs: nightly insight regeneration and prediction model
refits.

Test Classes:
- TestRegenerateInsights: Per-entity isolation, summary counts, concurrency bound
- TestRefitModels: Fitting, skipping thin metrics, store failures
- TestEvaluateRegisteredModel: Back-testing the serving model
"""

from typing import Dict, List, Tuple

import pytest

from insights_engine.core.errors import StoreUnavailableError
from insights_engine.jobs.refit_models import (
    evaluate_registered_model,
    refit_all_models,
    refit_model,
)
from insights_engine.jobs.regenerate_insights import (
    regenerate_all_insights,
    regenerate_entity_insights,
    resolve_worker_count,
)
from insights_engine.models import TimeSeriesPoint
from insights_engine.services.insights_orchestrator import InsightsOrchestrator
from insights_engine.services.prediction import ModelRegistry
from insights_engine.tests.conftest import FakeMetricStore, build_series

pytestmark = pytest.mark.asyncio


def _history_store() -> FakeMetricStore:
    """Three entities with ten attendance points each, five days apart."""
    series: Dict[Tuple[str, str], List[TimeSeriesPoint]] = {}
    for k in range(3):
        values = [50.0 + 10.0 * k + 3.0 * i + (i % 3) for i in range(10)]
        series[(f"evt_{k + 1}", "attendance")] = build_series(values, step_days=5)
    return FakeMetricStore(series=series)


class TestRegenerateInsights:
    """Test suite for regenerate_entity_insights and regenerate_all_insights."""

    async def test_single_entity(self, populated_store, insight_cache, model_registry, engine_settings) -> None:
        orchestrator = InsightsOrchestrator(populated_store, insight_cache, model_registry, engine_settings)

        result = await regenerate_entity_insights(orchestrator, "evt_1")

        assert result['success'] is True
        assert result['insight_count'] == 2
        assert result['degraded'] is False
        assert "prediction:attendance" in result['skipped']
        assert await insight_cache.get("evt_1") is not None, "Regenerated insights are cached"

    async def test_failing_entity_does_not_stop_batch(
        self, populated_store, insight_cache, model_registry, engine_settings
    ) -> None:
        populated_store.entities = ["evt_1", "evt_2"]
        populated_store.failing_entities = {"evt_2"}
        orchestrator = InsightsOrchestrator(populated_store, insight_cache, model_registry, engine_settings)

        results = await regenerate_all_insights(orchestrator)

        assert results['success'] is False
        assert results['summary'] == {
            'total': 2,
            'success_count': 1,
            'degraded_count': 0,
            'failed_count': 1,
            'workers': 2,
        }
        failed = results['results'][1]
        assert failed['entity_id'] == "evt_2"
        assert 'error' in failed

    async def test_limit_and_worker_override(
        self, populated_store, insight_cache, model_registry, engine_settings
    ) -> None:
        populated_store.entities = ["evt_1", "evt_2", "evt_3"]
        orchestrator = InsightsOrchestrator(populated_store, insight_cache, model_registry, engine_settings)

        results = await regenerate_all_insights(orchestrator, limit=1, workers=4)

        assert [r['entity_id'] for r in results['results']] == ["evt_1"]
        assert results['summary']['workers'] == 4

    async def test_missing_store_raises(self, insight_cache, model_registry, engine_settings) -> None:
        orchestrator = InsightsOrchestrator(None, insight_cache, model_registry, engine_settings)

        with pytest.raises(StoreUnavailableError):
            await regenerate_all_insights(orchestrator)

    async def test_resolve_worker_count(self) -> None:
        assert resolve_worker_count(3) == 3
        assert resolve_worker_count(None) >= 1
        assert resolve_worker_count(0) >= 1


class TestRefitModels:
    """Test suite for refit_model and refit_all_models."""

    async def test_refit_registers_model(self, engine_settings) -> None:
        store = _history_store()
        registry = ModelRegistry()

        result = await refit_model(store, registry, "attendance", engine_settings)

        assert result['success'] is True
        assert result.get('skipped') is None
        assert result['rows'] == 15, "Five rows per entity after five points of history"
        assert 0.0 <= result['r_squared'] <= 1.0
        assert registry.get("attendance") is not None

    async def test_refit_all_skips_thin_metrics(self, engine_settings) -> None:
        registry = ModelRegistry()

        results = await refit_all_models(_history_store(), registry, engine_settings)

        assert results['success'] is True
        assert results['summary'] == {
            'total': 3,
            'fitted_count': 1,
            'skipped_count': 2,
            'failed_count': 0,
        }
        assert registry.metrics() == ["attendance"]

    async def test_thin_history_keeps_previous_model(self, spike_series, engine_settings) -> None:
        store = FakeMetricStore(series={("evt_1", "attendance"): spike_series})
        registry = ModelRegistry()

        result = await refit_model(store, registry, "attendance", engine_settings)

        assert result['success'] is True
        assert result['skipped'] is True
        assert result['rows'] == 2
        assert registry.get("attendance") is None

    async def test_store_failure(self, engine_settings) -> None:
        store = _history_store()
        store.failing = {'get_all_series'}

        results = await refit_all_models(store, ModelRegistry(), engine_settings)

        assert results['success'] is False
        assert results['summary']['failed_count'] == 3
        assert 'error' in results['results'][0]


class TestEvaluateRegisteredModel:
    """Test suite for evaluate_registered_model."""

    async def test_without_model(self, engine_settings) -> None:
        result = await evaluate_registered_model(_history_store(), ModelRegistry(), "attendance", engine_settings)

        assert result['success'] is True
        assert result['skipped'] is True

    async def test_after_refit(self, engine_settings) -> None:
        store = _history_store()
        registry = ModelRegistry()
        await refit_model(store, registry, "attendance", engine_settings)

        result = await evaluate_registered_model(store, registry, "attendance", engine_settings)

        assert result['success'] is True
        assert result['rows'] == 15
        assert result['rmse'] >= 0.0
        assert 0.0 <= result['within_95_ci'] <= 100.0
