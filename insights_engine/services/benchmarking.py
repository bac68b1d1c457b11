"""
Benchmarking Service.

Ranks an entity's metric value against a population snapshot and finds the
entities most similar to it.

Percentile Ranking:
    The population (which includes the entity itself) is sorted and the rank
    is the number of values <= the entity's value (bisect_right). The
    percentile is rank / total * 100 and is bucketed as:
        - TOP_10: >= 90
        - TOP_25: >= 75
        - AVERAGE: >= 40
        - BELOW_AVERAGE: anything lower

History Benchmark:
    The latest value of a series is ranked against the earlier values and
    labelled improving, declining or stable relative to the mean of the
    three values before it.

Similarity Search:
    Attendance, engagement, merch rate and event date (as a day ordinal) are
    min-max normalized over the population plus the entity. The weighted
    Euclidean distance is converted to a score with
        similarity = 1 - distance / sqrt(sum(weights))
    so identical entities score 1.0 and opposite corners of the feature
    space score 0.0. Ties are broken by the more recent event date.

Populations smaller than min_population (default 10) yield InsufficientData
rather than a ranking against too few peers.
"""

import bisect
import logging
import math
from typing import Dict, List, Optional, Union

from insights_engine.models.enums import HistoryTrend, PercentileCategory
from insights_engine.models.schemas import (
    EntityFeatures,
    HistoryBenchmark,
    InsufficientData,
    PercentileRanking,
    PopulationSummary,
    SimilarEntity,
)
from insights_engine.services import statistics as stats

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

MIN_POPULATION: int = 10
DEFAULT_SIMILAR_LIMIT: int = 5

DEFAULT_SIMILARITY_WEIGHTS: Dict[str, float] = {
    'attendance': 0.4,
    'engagement': 0.3,
    'merch_rate': 0.2,
    'date_proximity': 0.1,
}

# History benchmark: the latest value is compared with the mean of the
# previous HISTORY_TREND_WINDOW values
HISTORY_MIN_POINTS: int = 5
HISTORY_TREND_WINDOW: int = 3
HISTORY_IMPROVING_RATIO: float = 1.1
HISTORY_DECLINING_RATIO: float = 0.9

# Percentiles reported by population_summary
SUMMARY_PERCENTILES: List[int] = [10, 25, 50, 75, 90]


# =============================================================================
# Percentile Ranking
# =============================================================================


def categorize_percentile(percentile: float) -> PercentileCategory:
    if percentile >= 90:
        return PercentileCategory.TOP_10
    if percentile >= 75:
        return PercentileCategory.TOP_25
    if percentile >= 40:
        return PercentileCategory.AVERAGE
    return PercentileCategory.BELOW_AVERAGE


def percentile_rank(metric: str, value: float, population: List[float]) -> PercentileRanking:
    """
    Rank a value within a population snapshot.

    Args:
        metric: Metric name
        value: The entity's value
        population: Population values, including the entity's own value

    Returns:
        PercentileRanking

    Raises:
        ValueError: If the population is empty

    Example:
        >>> percentile_rank("attendance", 40, [10, 20, 30, 40, 50]).category
        <PercentileCategory.TOP_25: 'top_25'>
    """
    if not population:
        raise ValueError("Cannot rank against an empty population")

    ordered = sorted(population)
    rank = bisect.bisect_right(ordered, value)
    total = len(ordered)
    percentile = rank / total * 100.0

    benchmark_value = stats.mean(ordered)

    return PercentileRanking(
        metric=metric,
        value=value,
        percentile=percentile,
        rank=rank,
        total=total,
        category=categorize_percentile(percentile),
        benchmarkValue=benchmark_value,
        differencePct=stats.deviation_pct(value, benchmark_value),
    )


def benchmark_entity(
    metric: str,
    value: float,
    population: List[float],
    min_population: int = MIN_POPULATION,
) -> Union[PercentileRanking, InsufficientData]:
    """
    Rank an entity's value, refusing to rank against too small a population.

    Args:
        metric: Metric name
        value: The entity's value
        population: Population values, including the entity's own value
        min_population: Minimum population size (default 10)

    Returns:
        PercentileRanking, or InsufficientData when the population (after
        dropping non-finite values) is smaller than min_population
    """
    finite = [v for v in population if math.isfinite(v)]

    if len(finite) < min_population:
        logger.debug(
            f"Skipping {metric} benchmark: population {len(finite)} < {min_population}"
        )
        return InsufficientData(
            analysis="benchmark",
            metric=metric,
            required=min_population,
            available=len(finite),
            reason=f"Benchmarking needs a population of at least {min_population} entities",
        )

    return percentile_rank(metric, value, finite)


def benchmark_against_history(
    metric: str,
    current_value: float,
    history: List[float],
    min_points: int = HISTORY_MIN_POINTS,
) -> Union[HistoryBenchmark, InsufficientData]:
    """
    Rank an entity's latest value against its own earlier values.

    The population is the history plus the current value, so the ranking
    follows the same convention as benchmark_entity. The trend compares the
    current value with the mean of the last three historical values:
    more than 10% above is improving, more than 10% below is declining.

    Args:
        metric: Metric name
        current_value: Latest value
        history: Earlier values, oldest first
        min_points: Minimum size of history plus current value

    Returns:
        HistoryBenchmark, or InsufficientData for too short a history
    """
    finite = [v for v in history if math.isfinite(v)]
    current_finite = math.isfinite(current_value)
    available = len(finite) + (1 if current_finite else 0)

    if not current_finite or available < min_points:
        return InsufficientData(
            analysis="history_benchmark",
            metric=metric,
            required=min_points,
            available=available,
            reason=f"History benchmarking needs at least {min_points} values",
        )

    ranking = percentile_rank(metric, current_value, finite + [current_value])

    trend = HistoryTrend.STABLE
    recent_average: Optional[float] = None
    if len(finite) >= HISTORY_TREND_WINDOW:
        recent_average = stats.mean(finite[-HISTORY_TREND_WINDOW:])
        if current_value > recent_average * HISTORY_IMPROVING_RATIO:
            trend = HistoryTrend.IMPROVING
        elif current_value < recent_average * HISTORY_DECLINING_RATIO:
            trend = HistoryTrend.DECLINING

    return HistoryBenchmark(
        metric=metric,
        ranking=ranking,
        trend=trend,
        recentAverage=recent_average,
        historyPoints=len(finite),
    )


def population_summary(
    metric: str,
    population: List[float],
) -> Union[PopulationSummary, InsufficientData]:
    """
    Descriptive statistics for a population snapshot.

    Returns:
        PopulationSummary with count, mean, median, min, max, population
        standard deviation and p10/p25/p50/p75/p90, or InsufficientData for
        an empty population
    """
    finite = [v for v in population if math.isfinite(v)]
    if not finite:
        return InsufficientData(
            analysis="benchmark",
            metric=metric,
            required=1,
            available=0,
            reason="Population is empty",
        )

    return PopulationSummary(
        metric=metric,
        count=len(finite),
        mean=stats.mean(finite),
        median=stats.median(finite),
        min=min(finite),
        max=max(finite),
        stdDev=stats.stddev(finite),
        percentiles={f"p{p}": stats.percentile(finite, p) for p in SUMMARY_PERCENTILES},
    )


# =============================================================================
# Similarity Search
# =============================================================================


def _feature_columns(entities: List[EntityFeatures]) -> List[List[float]]:
    """Normalized feature columns in weight order."""
    return [
        stats.min_max_normalize([e.attendance for e in entities]),
        stats.min_max_normalize([e.engagement for e in entities]),
        stats.min_max_normalize([e.merchRate for e in entities]),
        stats.min_max_normalize([float(e.eventDate.toordinal()) for e in entities]),
    ]


def find_similar(
    entity: EntityFeatures,
    population: List[EntityFeatures],
    limit: int = DEFAULT_SIMILAR_LIMIT,
    weights: Optional[Dict[str, float]] = None,
) -> List[SimilarEntity]:
    """
    Find the entities most similar to `entity`.

    Args:
        entity: The reference entity
        population: Candidate entities; the reference entity is excluded if
            present
        limit: Maximum number of results
        weights: Feature weights keyed attendance, engagement, merch_rate,
            date_proximity. Missing keys default to 0.

    Returns:
        Up to `limit` SimilarEntity records, highest similarity first, ties
        broken by the more recent event date
    """
    if limit <= 0:
        return []

    candidates = [p for p in population if p.entityId != entity.entityId]
    if not candidates:
        return []

    w = weights or DEFAULT_SIMILARITY_WEIGHTS
    weight_vector = [
        w.get('attendance', 0.0),
        w.get('engagement', 0.0),
        w.get('merch_rate', 0.0),
        w.get('date_proximity', 0.0),
    ]
    max_distance = math.sqrt(sum(weight_vector))

    everyone = [entity] + candidates
    columns = _feature_columns(everyone)
    vectors = [list(row) for row in zip(*columns)]
    reference = vectors[0]

    scored: List[SimilarEntity] = []
    for candidate, vector in zip(candidates, vectors[1:]):
        if max_distance == 0:
            similarity = 1.0
        else:
            distance = stats.euclidean_distance(reference, vector, weight_vector)
            similarity = max(0.0, min(1.0, 1.0 - distance / max_distance))

        scored.append(SimilarEntity(
            entityId=candidate.entityId,
            similarityScore=similarity,
            eventDate=candidate.eventDate,
        ))

    scored.sort(key=lambda s: (-s.similarityScore, -s.eventDate.toordinal()))
    return scored[:limit]
