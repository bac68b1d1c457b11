"""
Tests for benchmarking: percentile ranking, history benchmarks, population
summaries and similar-entity search.
"""

from datetime import date

import pytest

from insights_engine.models import (
    EntityFeatures,
    HistoryBenchmark,
    HistoryTrend,
    InsufficientData,
    PercentileCategory,
    PercentileRanking,
    PopulationSummary,
)
from insights_engine.services.benchmarking import (
    benchmark_against_history,
    benchmark_entity,
    categorize_percentile,
    find_similar,
    percentile_rank,
    population_summary,
)
from insights_engine.tests.conftest import build_features_population


class TestPercentileRank:
    """Test suite for percentile_rank and benchmark_entity."""

    def test_rank_within_small_population(self) -> None:
        """40 in [10, 20, 30, 40, 50] has 4 values at or below it: 80th percentile."""
        ranking = percentile_rank("attendance", 40, [10, 20, 30, 40, 50])

        assert ranking.rank == 4
        assert ranking.total == 5
        assert ranking.percentile == pytest.approx(80.0)
        assert ranking.category == PercentileCategory.TOP_25
        assert ranking.benchmarkValue == pytest.approx(30.0)
        assert ranking.differencePct == pytest.approx(100 / 3)

    def test_ties_count_as_at_or_below(self) -> None:
        ranking = percentile_rank("attendance", 5, [5, 5, 5, 5])

        assert ranking.percentile == 100.0

    def test_empty_population_raises(self) -> None:
        with pytest.raises(ValueError):
            percentile_rank("attendance", 1, [])

    def test_small_population_is_insufficient(self) -> None:
        """Eight peers are fewer than the default minimum of ten."""
        result = benchmark_entity("attendance", 40, [10, 20, 30, 40, 50, 60, 70, 80])

        assert isinstance(result, InsufficientData)
        assert result.required == 10
        assert result.available == 8

    def test_non_finite_values_do_not_count(self) -> None:
        population = [float(v) for v in range(1, 10)] + [float("nan")]

        result = benchmark_entity("attendance", 5, population)

        assert isinstance(result, InsufficientData)
        assert result.available == 9

    def test_top_decile(self) -> None:
        result = benchmark_entity("attendance", 100, [float(v) for v in range(10, 101, 10)])

        assert isinstance(result, PercentileRanking)
        assert result.category == PercentileCategory.TOP_10

    @pytest.mark.parametrize("percentile,expected", [
        (95.0, PercentileCategory.TOP_10),
        (90.0, PercentileCategory.TOP_10),
        (75.0, PercentileCategory.TOP_25),
        (40.0, PercentileCategory.AVERAGE),
        (39.9, PercentileCategory.BELOW_AVERAGE),
    ])
    def test_categories(self, percentile: float, expected: PercentileCategory) -> None:
        assert categorize_percentile(percentile) == expected


class TestHistoryBenchmark:
    """Test suite for benchmark_against_history."""

    def test_improving(self) -> None:
        result = benchmark_against_history("attendance", 120.0, [100.0, 100.0, 100.0, 100.0])

        assert isinstance(result, HistoryBenchmark)
        assert result.trend == HistoryTrend.IMPROVING
        assert result.recentAverage == pytest.approx(100.0)
        assert result.historyPoints == 4
        assert result.ranking.total == 5
        assert result.ranking.category == PercentileCategory.TOP_10

    def test_declining(self) -> None:
        result = benchmark_against_history("attendance", 80.0, [100.0, 100.0, 100.0, 100.0])

        assert result.trend == HistoryTrend.DECLINING
        assert result.ranking.percentile == pytest.approx(20.0)
        assert result.ranking.category == PercentileCategory.BELOW_AVERAGE

    def test_within_ten_percent_is_stable(self) -> None:
        result = benchmark_against_history("attendance", 105.0, [100.0, 100.0, 100.0, 100.0])

        assert result.trend == HistoryTrend.STABLE

    def test_short_history_is_stable(self) -> None:
        """Fewer than three earlier values: no trend label beyond stable."""
        result = benchmark_against_history("attendance", 300.0, [100.0, 200.0], min_points=3)

        assert result.trend == HistoryTrend.STABLE
        assert result.recentAverage is None
        assert result.ranking.rank == 3

    def test_insufficient_history(self) -> None:
        result = benchmark_against_history("attendance", 10.0, [1.0, 2.0])

        assert isinstance(result, InsufficientData)
        assert result.required == 5
        assert result.available == 3

    def test_non_finite_current_value(self) -> None:
        result = benchmark_against_history("attendance", float("nan"), [1.0] * 10)

        assert isinstance(result, InsufficientData)


class TestPopulationSummary:
    """Test suite for population_summary."""

    def test_summary_values(self) -> None:
        summary = population_summary("attendance", [float(v) for v in range(1, 11)])

        assert isinstance(summary, PopulationSummary)
        assert summary.count == 10
        assert summary.mean == pytest.approx(5.5)
        assert summary.median == pytest.approx(5.5)
        assert summary.min == 1.0
        assert summary.max == 10.0
        assert summary.percentiles["p10"] == pytest.approx(1.9)
        assert summary.percentiles["p90"] == pytest.approx(9.1)

    def test_empty_population(self) -> None:
        assert isinstance(population_summary("attendance", []), InsufficientData)


class TestFindSimilar:
    """Test suite for find_similar."""

    def test_identical_entity_scores_one(self) -> None:
        population = build_features_population(5)
        reference = population[2]
        twin = reference.model_copy(update={'entityId': 'twin'})

        similar = find_similar(reference, population + [twin], limit=3)

        assert similar[0].entityId == 'twin'
        assert similar[0].similarityScore == pytest.approx(1.0)
        assert all(s.entityId != reference.entityId for s in similar), "Reference is excluded"

    def test_nearest_neighbours_first(self) -> None:
        population = build_features_population(6)

        similar = find_similar(population[0], population, limit=2)

        assert [s.entityId for s in similar] == ['evt_2', 'evt_3']
        assert similar[0].similarityScore > similar[1].similarityScore

    def test_ties_prefer_recent_event(self) -> None:
        reference = EntityFeatures(entityId='ref', eventDate=date(2026, 5, 1), attendance=100)
        older = EntityFeatures(entityId='older', eventDate=date(2026, 1, 1), attendance=100)
        newer = EntityFeatures(entityId='newer', eventDate=date(2026, 9, 1), attendance=100)

        similar = find_similar(reference, [older, newer], weights={'attendance': 1.0})

        assert [s.entityId for s in similar] == ['newer', 'older']

    def test_limit_and_empty_population(self) -> None:
        population = build_features_population(10)

        assert len(find_similar(population[0], population, limit=4)) == 4
        assert find_similar(population[0], [population[0]]) == []
        assert find_similar(population[0], population, limit=0) == []
