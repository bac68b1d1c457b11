"""
Insights Orchestrator.

Runs the four analyses for one entity, turns their raw statistical outputs
into ranked, human-readable Insight records and caches the result.

Pipeline:
    1. Cache read (get_insights only). A fresh hit goes straight to READY.
    2. Four independent branches run concurrently with asyncio.gather:
           anomaly, trend, benchmark, prediction
       Each branch fetches its own inputs from the Metric Store and runs its
       CPU-bound statistics in a worker thread (asyncio.to_thread). A branch
       that raises becomes a warning; its siblings are unaffected.
    3. Formatting: raw results become Insight records through an exhaustive
       dispatch over InsightType.
    4. Recommendations are derived from the formatted insights and raw
       rankings and trends.
    5. Insights below the confidence floor (default 70) are dropped and
       logged at DEBUG.
    6. Ranking: severity (critical > warning > info), then confidence.
    7. Truncation to max_insights (default 10).
    8. Summary: severity counts, overall score and key findings.
    9. Cache write with TTL (complete results only).

Failure Handling:
    - Too few points or too small a population: the analysis is listed in
      `skipped`; this is normal operation, not an error.
    - One branch fails: partial result with degraded=True and a warning.
    - Every branch fails with StoreUnavailableError: the stale cache entry is
      served (degraded) or, with nothing cached, the error propagates.
    - The whole generation exceeds generation_timeout_seconds: stale cache
      entry if present, otherwise an empty degraded response.

Generation is deterministic for unchanged upstream data apart from each
Insight's `id` and `createdAt`.

Usage:
    orchestrator = InsightsOrchestrator(store, cache, registry, settings)
    response = await orchestrator.get_insights("evt_1042")
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from insights_engine.core.cache import InsightCache
from insights_engine.core.config import Settings
from insights_engine.core.errors import StoreUnavailableError
from insights_engine.models.enums import (
    SEVERITY_RANK,
    AnalysisKind,
    AnomalySeverity,
    GenerationState,
    InsightSeverity,
    InsightType,
    PercentileCategory,
    TrendDirection,
    TrendStrength,
)
from insights_engine.models.schemas import (
    Anomaly,
    InsightFeedMetadata,
    InsightFeedResponse,
    Insight,
    InsightSummary,
    InsightsResponse,
    InsufficientData,
    MetricBenchmarkResponse,
    MetricHistoryBenchmarkResponse,
    MetricTrendResponse,
    PartnerInsightsResponse,
    PercentileRanking,
    Prediction,
    PredictionUnavailable,
    SimilarEntitiesResponse,
    SimilarEntity,
    TimeSeriesPoint,
    TrendAnalysis,
)
from insights_engine.services import statistics as stats
from insights_engine.services.anomaly_detection import detect_anomalies, options_from_settings
from insights_engine.services.benchmarking import (
    benchmark_against_history,
    benchmark_entity,
    find_similar,
    population_summary,
)
from insights_engine.services.metric_store import MetricStore, PopulationFilter
from insights_engine.services.prediction import (
    ModelRegistry,
    build_features,
    next_target_date,
    predict,
)
from insights_engine.services.trend_analysis import (
    analyze_trend,
    detect_trend_changes,
    smooth_series,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

# Confidence assigned to benchmark insights by percentile bucket
BENCHMARK_CONFIDENCE: Dict[PercentileCategory, float] = {
    PercentileCategory.TOP_10: 95.0,
    PercentileCategory.TOP_25: 85.0,
}

CRITICAL_RECOMMENDATION_CONFIDENCE: float = 90.0
BELOW_AVERAGE_RECOMMENDATION_CONFIDENCE: float = 80.0

# Minimum count of critical insights / below-average rankings that trigger
# the corresponding recommendation
RECOMMENDATION_MIN_COUNT: int = 2

OVERALL_METRIC: str = "overall"

# Overall score: deductions per critical / warning insight, bonus per
# benchmark insight more than SCORE_STRONG_BENCHMARK_PCT above the peer mean
SCORE_CRITICAL_PENALTY: float = 15.0
SCORE_WARNING_PENALTY: float = 7.0
SCORE_STRONG_BENCHMARK_BONUS: float = 5.0
SCORE_STRONG_BENCHMARK_PCT: float = 20.0
KEY_FINDINGS_LIMIT: int = 3

ANOMALY_SEVERITY_MAP: Dict[AnomalySeverity, InsightSeverity] = {
    AnomalySeverity.HIGH: InsightSeverity.CRITICAL,
    AnomalySeverity.MEDIUM: InsightSeverity.WARNING,
    AnomalySeverity.LOW: InsightSeverity.INFO,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def metric_label(metric: str) -> str:
    """Human-readable metric name, e.g. 'merch_rate' -> 'Merch rate'."""
    return metric.replace('_', ' ').capitalize()


# =============================================================================
# Intermediate Findings
# =============================================================================


@dataclass
class BenchmarkFinding:
    ranking: PercentileRanking
    similar: List[SimilarEntity] = field(default_factory=list)


@dataclass
class PredictionFinding:
    prediction: Prediction
    last_value: float


@dataclass
class RecommendationFinding:
    severity: InsightSeverity
    metric: str
    title: str
    description: str
    recommendation: str
    confidence: float
    related_entity_ids: List[str] = field(default_factory=list)


@dataclass
class BranchResult:
    """
    Raw output of one analysis branch.

    Only the list matching the branch's kind is populated.
    """
    kind: AnalysisKind
    anomalies: List[Anomaly] = field(default_factory=list)
    trends: List[TrendAnalysis] = field(default_factory=list)
    benchmarks: List[BenchmarkFinding] = field(default_factory=list)
    predictions: List[PredictionFinding] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)


@dataclass
class AnalysisBundle:
    """Merged findings of every branch that completed."""
    anomalies: List[Anomaly] = field(default_factory=list)
    trends: List[TrendAnalysis] = field(default_factory=list)
    benchmarks: List[BenchmarkFinding] = field(default_factory=list)
    predictions: List[PredictionFinding] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def merge(self, result: BranchResult) -> None:
        self.anomalies.extend(result.anomalies)
        self.trends.extend(result.trends)
        self.benchmarks.extend(result.benchmarks)
        self.predictions.extend(result.predictions)
        self.skipped.extend(result.skipped)


def _skip_label(kind: AnalysisKind, metric: str) -> str:
    return f"{kind.value}:{metric}"


# =============================================================================
# Formatting
# =============================================================================


def _format_anomaly(entity_id: str, anomaly: Anomaly, created_at: datetime) -> Insight:
    severity = ANOMALY_SEVERITY_MAP[anomaly.severity]
    direction = "above" if anomaly.deviationPct >= 0 else "below"
    label = metric_label(anomaly.metric)

    recommendation = None
    if severity == InsightSeverity.CRITICAL:
        recommendation = f"Review what changed around {anomaly.date.isoformat()} for {label.lower()}"

    return Insight(
        id=str(uuid.uuid4()),
        entityId=entity_id,
        type=InsightType.ANOMALY,
        severity=severity,
        metric=anomaly.metric,
        title=f"{label} {abs(anomaly.deviationPct):.0f}% {direction} expected",
        description=f"{anomaly.description} on {anomaly.date.isoformat()} "
                    f"(expected {anomaly.expectedValue:.1f}, observed {anomaly.value:.1f})",
        value=anomaly.value,
        changePct=anomaly.deviationPct,
        confidence=anomaly.confidence,
        actionable=severity != InsightSeverity.INFO,
        recommendation=recommendation,
        createdAt=created_at,
    )


def _format_trend(entity_id: str, trend: TrendAnalysis, created_at: datetime) -> Insight:
    declining = trend.direction == TrendDirection.DECREASING
    severity = (
        InsightSeverity.WARNING
        if declining and trend.strength == TrendStrength.STRONG
        else InsightSeverity.INFO
    )
    label = metric_label(trend.metric)

    return Insight(
        id=str(uuid.uuid4()),
        entityId=entity_id,
        type=InsightType.TREND,
        severity=severity,
        metric=trend.metric,
        title=f"{label} is {trend.direction.value}",
        description=f"{trend.strength.value.capitalize()} {trend.direction.value} trend over "
                    f"{trend.dataPoints} data points (R² {trend.rSquared:.2f}); "
                    f"30-day projection {trend.projection.value30d:.1f}",
        value=trend.endValue,
        changePct=trend.changePercent,
        confidence=trend.projection.confidence,
        actionable=declining,
        recommendation=f"Investigate the drivers behind falling {label.lower()}" if declining else None,
        createdAt=created_at,
    )


def _format_benchmark(entity_id: str, finding: BenchmarkFinding, created_at: datetime) -> Insight:
    ranking = finding.ranking
    label = metric_label(ranking.metric)
    bucket = "top 10%" if ranking.category == PercentileCategory.TOP_10 else "top 25%"

    return Insight(
        id=str(uuid.uuid4()),
        entityId=entity_id,
        type=InsightType.BENCHMARK,
        severity=InsightSeverity.INFO,
        metric=ranking.metric,
        title=f"{label} in the {bucket} of peers",
        description=f"Ranks {ranking.rank} of {ranking.total} "
                    f"({ranking.percentile:.0f}th percentile), "
                    f"{ranking.differencePct:+.0f}% versus the population average",
        value=ranking.value,
        changePct=ranking.differencePct,
        confidence=BENCHMARK_CONFIDENCE.get(ranking.category, 0.0),
        actionable=False,
        relatedEntityIds=[s.entityId for s in finding.similar],
        createdAt=created_at,
    )


def _format_prediction(entity_id: str, finding: PredictionFinding, created_at: datetime) -> Insight:
    prediction = finding.prediction
    label = metric_label(prediction.metric)
    interval = prediction.confidenceInterval

    description = (
        f"95% interval {interval.lower:.1f} to {interval.upper:.1f} "
        f"(model accuracy {prediction.modelAccuracy:.0f}%)"
    )
    if prediction.factors:
        top = prediction.factors[0]
        description += f"; strongest factor {top.name} ({top.impactPct:+.0f}%)"

    return Insight(
        id=str(uuid.uuid4()),
        entityId=entity_id,
        type=InsightType.PREDICTION,
        severity=InsightSeverity.INFO,
        metric=prediction.metric,
        title=f"{label} forecast for {prediction.targetDate.isoformat()}: "
              f"{prediction.predictedValue:.1f}",
        description=description,
        value=prediction.predictedValue,
        changePct=stats.deviation_pct(prediction.predictedValue, finding.last_value),
        confidence=prediction.confidence,
        actionable=True,
        createdAt=created_at,
    )


def _format_recommendation(
    entity_id: str,
    finding: RecommendationFinding,
    created_at: datetime,
) -> Insight:
    return Insight(
        id=str(uuid.uuid4()),
        entityId=entity_id,
        type=InsightType.RECOMMENDATION,
        severity=finding.severity,
        metric=finding.metric,
        title=finding.title,
        description=finding.description,
        confidence=finding.confidence,
        actionable=True,
        recommendation=finding.recommendation,
        relatedEntityIds=finding.related_entity_ids,
        createdAt=created_at,
    )


def format_insight(
    insight_type: InsightType,
    entity_id: str,
    payload: Any,
    created_at: datetime,
) -> Insight:
    """
    Turn one raw finding into an Insight.

    Dispatch is exhaustive over InsightType; a member without a formatter
    is a programming error.

    Raises:
        ValueError: For an unhandled insight type
    """
    if insight_type == InsightType.ANOMALY:
        return _format_anomaly(entity_id, payload, created_at)
    elif insight_type == InsightType.TREND:
        return _format_trend(entity_id, payload, created_at)
    elif insight_type == InsightType.BENCHMARK:
        return _format_benchmark(entity_id, payload, created_at)
    elif insight_type == InsightType.PREDICTION:
        return _format_prediction(entity_id, payload, created_at)
    elif insight_type == InsightType.RECOMMENDATION:
        return _format_recommendation(entity_id, payload, created_at)
    raise ValueError(f"No formatter for insight type {insight_type!r}")


# =============================================================================
# Recommendations, Filtering and Ranking
# =============================================================================


def build_recommendations(
    bundle: AnalysisBundle,
    insights: List[Insight],
) -> List[RecommendationFinding]:
    """
    Derive cross-cutting recommendations.

    Rules:
        - At least 2 critical insights: one critical recommendation
        - At least 2 below-average rankings: one warning recommendation,
          related to the similar entities found for those metrics
        - Each strong decreasing trend: one warning recommendation

    Args:
        bundle: Raw findings
        insights: Formatted (pre-filter) insights

    Returns:
        Recommendation findings in rule order
    """
    recommendations: List[RecommendationFinding] = []

    critical = [i for i in insights if i.severity == InsightSeverity.CRITICAL]
    if len(critical) >= RECOMMENDATION_MIN_COUNT:
        metrics = sorted({i.metric for i in critical})
        recommendations.append(RecommendationFinding(
            severity=InsightSeverity.CRITICAL,
            metric=OVERALL_METRIC,
            title=f"{len(critical)} critical issues need attention",
            description=f"Critical findings across {', '.join(metric_label(m).lower() for m in metrics)}",
            recommendation="Prioritise investigation of the critical anomalies before the next event",
            confidence=CRITICAL_RECOMMENDATION_CONFIDENCE,
        ))

    below = [
        b for b in bundle.benchmarks
        if b.ranking.category == PercentileCategory.BELOW_AVERAGE
    ]
    if len(below) >= RECOMMENDATION_MIN_COUNT:
        related: List[str] = []
        for finding in below:
            for similar in finding.similar:
                if similar.entityId not in related:
                    related.append(similar.entityId)
        metrics = [metric_label(b.ranking.metric).lower() for b in below]
        recommendations.append(RecommendationFinding(
            severity=InsightSeverity.WARNING,
            metric=OVERALL_METRIC,
            title="Below peer average on several metrics",
            description=f"Below-average ranking for {', '.join(metrics)}",
            recommendation="Compare with similar entities to find practices worth adopting",
            confidence=BELOW_AVERAGE_RECOMMENDATION_CONFIDENCE,
            related_entity_ids=related,
        ))

    for trend in bundle.trends:
        if trend.direction == TrendDirection.DECREASING and trend.strength == TrendStrength.STRONG:
            label = metric_label(trend.metric)
            recommendations.append(RecommendationFinding(
                severity=InsightSeverity.WARNING,
                metric=trend.metric,
                title=f"Reverse the decline in {label.lower()}",
                description=f"{label} has fallen {abs(trend.changePercent):.0f}% over "
                            f"{trend.dataPoints} data points with a strong fit",
                recommendation=f"Plan corrective action for {label.lower()} before it reaches "
                               f"{trend.projection.value30d:.1f}",
                confidence=trend.rSquared * 100.0,
            ))

    return recommendations


def build_insights(entity_id: str, bundle: AnalysisBundle, created_at: datetime) -> List[Insight]:
    """
    Format every qualifying finding, then append recommendations.

    Selection:
        - every anomaly
        - trends whose strength is not weak
        - rankings in the top 10% or top 25%
        - every prediction
    """
    insights: List[Insight] = []

    for anomaly in bundle.anomalies:
        insights.append(format_insight(InsightType.ANOMALY, entity_id, anomaly, created_at))

    for trend in bundle.trends:
        if trend.strength != TrendStrength.WEAK:
            insights.append(format_insight(InsightType.TREND, entity_id, trend, created_at))

    for finding in bundle.benchmarks:
        if finding.ranking.category in BENCHMARK_CONFIDENCE:
            insights.append(format_insight(InsightType.BENCHMARK, entity_id, finding, created_at))

    for finding in bundle.predictions:
        insights.append(format_insight(InsightType.PREDICTION, entity_id, finding, created_at))

    for recommendation in build_recommendations(bundle, insights):
        insights.append(format_insight(InsightType.RECOMMENDATION, entity_id, recommendation, created_at))

    return insights


def apply_confidence_floor(insights: List[Insight], floor: float) -> List[Insight]:
    """Drop insights below the confidence floor, logging each at DEBUG."""
    kept: List[Insight] = []
    for insight in insights:
        if insight.confidence < floor:
            logger.debug(
                f"Suppressed {insight.type.value} insight '{insight.title}' for "
                f"{insight.entityId}: confidence {insight.confidence:.1f} < {floor}"
            )
            continue
        kept.append(insight)
    return kept


def rank_insights(insights: List[Insight]) -> List[Insight]:
    """Sort by severity (critical first), then confidence descending. Stable."""
    return sorted(
        insights,
        key=lambda i: (-SEVERITY_RANK[i.severity], -i.confidence),
    )


def summarize_insights(insights: List[Insight]) -> InsightSummary:
    """
    Severity counts, overall score and key findings for a ranked list.

    Args:
        insights: Insights in rank order

    Returns:
        InsightSummary whose keyFindings are the titles of the first three
        critical or warning insights
    """
    critical = sum(1 for i in insights if i.severity == InsightSeverity.CRITICAL)
    warnings = sum(1 for i in insights if i.severity == InsightSeverity.WARNING)
    strong_benchmarks = sum(
        1 for i in insights
        if i.type == InsightType.BENCHMARK
        and i.changePct is not None
        and i.changePct > SCORE_STRONG_BENCHMARK_PCT
    )

    score = (
        100.0
        - SCORE_CRITICAL_PENALTY * critical
        - SCORE_WARNING_PENALTY * warnings
        + SCORE_STRONG_BENCHMARK_BONUS * strong_benchmarks
    )

    return InsightSummary(
        totalInsights=len(insights),
        critical=critical,
        warnings=warnings,
        info=len(insights) - critical - warnings,
        overallScore=max(0.0, min(100.0, score)),
        keyFindings=[
            i.title for i in insights if i.severity != InsightSeverity.INFO
        ][:KEY_FINDINGS_LIMIT],
    )


# =============================================================================
# Orchestrator
# =============================================================================


class _SeriesLoader:
    """
    Shares one series fetch per metric between the branches of a generation.

    The first branch to ask for a metric starts the fetch; later branches
    await the same task and see the same result or exception.
    """

    def __init__(self, store: MetricStore, entity_id: str):
        self._store = store
        self._entity_id = entity_id
        self._tasks: Dict[str, "asyncio.Task[List[TimeSeriesPoint]]"] = {}

    async def get(self, metric: str) -> List[TimeSeriesPoint]:
        task = self._tasks.get(metric)
        if task is None:
            task = asyncio.ensure_future(self._store.get_series(self._entity_id, metric))
            self._tasks[metric] = task
        return await asyncio.shield(task)

    def close(self) -> None:
        for task in self._tasks.values():
            if not task.done():
                task.cancel()
            elif not task.cancelled():
                # Mark any stored exception as retrieved
                task.exception()


class InsightsOrchestrator:
    """
    Coordinates analysis, formatting, ranking and caching per entity.

    Args:
        store: Metric Store, or None when no database is configured (every
            analysis then fails as store-unavailable)
        cache: Initialized Insight Cache
        registry: Prediction Model Registry
        settings: Application settings
        clock: Source of createdAt / generatedAt timestamps
    """

    def __init__(
        self,
        store: Optional[MetricStore],
        cache: InsightCache,
        registry: ModelRegistry,
        settings: Settings,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.cache = cache
        self.registry = registry
        self.settings = settings
        self._clock = clock
        self._states: Dict[str, GenerationState] = {}
        self._anomaly_options = options_from_settings(settings)

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    async def generation_state(self, entity_id: str) -> GenerationState:
        """
        Current lifecycle state of an entity's generation.

        Only in-flight entities are tracked in memory. Otherwise the state is
        READY when the cache holds an entry (fresh or stale) and PENDING
        when it does not.
        """
        state = self._states.get(entity_id)
        if state is not None:
            return state

        cached = await self._cache_get_stale(entity_id)
        return GenerationState.READY if cached is not None else GenerationState.PENDING

    @property
    def in_flight(self) -> int:
        """Number of entities with a read or generation in progress."""
        return len(self._states)

    def _require_store(self) -> MetricStore:
        if self.store is None:
            raise StoreUnavailableError("No metric store is configured")
        return self.store

    # -------------------------------------------------------------------------
    # Cache access (failures degrade to a miss)
    # -------------------------------------------------------------------------

    async def _cache_get(self, entity_id: str) -> Optional[InsightsResponse]:
        try:
            return await self.cache.get(entity_id)
        except StoreUnavailableError as e:
            logger.warning(f"Insight cache read failed for {entity_id}: {e}")
            return None

    async def _cache_get_stale(self, entity_id: str) -> Optional[InsightsResponse]:
        try:
            return await self.cache.get_stale(entity_id)
        except StoreUnavailableError as e:
            logger.warning(f"Insight cache stale read failed for {entity_id}: {e}")
            return None

    async def _cache_set(self, entity_id: str, response: InsightsResponse) -> None:
        try:
            await self.cache.set(entity_id, response, self.settings.cache_ttl_seconds)
        except StoreUnavailableError as e:
            logger.warning(f"Insight cache write failed for {entity_id}: {e}")

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def get_insights(self, entity_id: str) -> InsightsResponse:
        """
        Cached insights for an entity, generating them on a miss.

        Raises:
            StoreUnavailableError: If nothing is cached and the Metric Store
                is unreachable for every analysis
        """
        self._states[entity_id] = GenerationState.PENDING

        try:
            cached = await self._cache_get(entity_id)
        except Exception:
            self._states.pop(entity_id, None)
            raise

        if cached is not None:
            logger.debug(f"Insight cache hit for {entity_id}")
            self._states.pop(entity_id, None)
            return cached.model_copy(update={'cached': True})

        return await self.generate(entity_id)

    async def regenerate(self, entity_id: str) -> InsightsResponse:
        """
        Discard the cached entry and generate afresh.

        Repeated calls over unchanged data produce identical insights apart
        from ids and timestamps.
        """
        try:
            await self.cache.invalidate(entity_id)
        except StoreUnavailableError as e:
            logger.warning(f"Insight cache invalidation failed for {entity_id}: {e}")

        return await self.generate(entity_id)

    async def generate(self, entity_id: str) -> InsightsResponse:
        """
        Generate insights within the configured time bound.

        On timeout the stale cache entry is served if one exists, otherwise
        an empty degraded response.
        """
        timeout = self.settings.generation_timeout_seconds
        self._states[entity_id] = GenerationState.COMPUTING

        try:
            return await asyncio.wait_for(self._generate(entity_id), timeout=timeout)
        except asyncio.TimeoutError:
            message = f"Insight generation timed out after {timeout:g}s"
            logger.warning(f"{message} for {entity_id}")

            stale = await self._cache_get_stale(entity_id)
            if stale is not None:
                return self._degraded_copy(stale, message)

            return InsightsResponse(
                entityId=entity_id,
                state=GenerationState.READY,
                insights=[],
                degraded=True,
                warnings=[message],
                generatedAt=self._clock(),
            )
        finally:
            self._states.pop(entity_id, None)

    @staticmethod
    def _degraded_copy(response: InsightsResponse, warning: str) -> InsightsResponse:
        return response.model_copy(update={
            'state': GenerationState.READY,
            'cached': True,
            'degraded': True,
            'warnings': list(response.warnings) + [warning],
        })

    async def _generate(self, entity_id: str) -> InsightsResponse:
        loader = _SeriesLoader(self.store, entity_id) if self.store is not None else None

        branches: Dict[AnalysisKind, Awaitable[BranchResult]] = {
            AnalysisKind.ANOMALY: self._anomaly_branch(loader),
            AnalysisKind.TREND: self._trend_branch(loader),
            AnalysisKind.BENCHMARK: self._benchmark_branch(entity_id),
            AnalysisKind.PREDICTION: self._prediction_branch(loader),
        }

        try:
            outcomes = await asyncio.gather(*branches.values(), return_exceptions=True)
        finally:
            if loader is not None:
                loader.close()

        bundle = AnalysisBundle()
        store_failures = 0

        for kind, outcome in zip(branches.keys(), outcomes):
            if isinstance(outcome, StoreUnavailableError):
                store_failures += 1
                bundle.warnings.append(f"{kind.value} analysis unavailable: {outcome}")
                logger.warning(f"{kind.value} branch for {entity_id}: {outcome}")
            elif isinstance(outcome, BaseException):
                bundle.warnings.append(f"{kind.value} analysis failed: {outcome}")
                logger.error(
                    f"{kind.value} branch failed for {entity_id}: {outcome}",
                    exc_info=outcome,
                )
            else:
                bundle.merge(outcome)

        if store_failures == len(branches):
            stale = await self._cache_get_stale(entity_id)
            if stale is not None:
                logger.warning(f"Serving stale insights for {entity_id}: metric store unavailable")
                return self._degraded_copy(stale, "Metric store unavailable; serving cached insights")
            raise StoreUnavailableError(f"Metric store unavailable for {entity_id}")

        created_at = self._clock()
        insights = build_insights(entity_id, bundle, created_at)
        insights = apply_confidence_floor(insights, self.settings.confidence_floor)
        insights = rank_insights(insights)[:self.settings.max_insights]

        response = InsightsResponse(
            entityId=entity_id,
            state=GenerationState.READY,
            insights=insights,
            cached=False,
            degraded=bool(bundle.warnings),
            warnings=bundle.warnings,
            skipped=bundle.skipped,
            summary=summarize_insights(insights),
            generatedAt=created_at,
        )

        # Partial results are served but not cached
        if not response.degraded:
            await self._cache_set(entity_id, response)

        logger.info(
            f"Generated {len(insights)} insight(s) for {entity_id} "
            f"(skipped={len(bundle.skipped)}, warnings={len(bundle.warnings)})"
        )
        return response

    # -------------------------------------------------------------------------
    # Branches
    # -------------------------------------------------------------------------

    async def _anomaly_branch(self, loader: Optional[_SeriesLoader]) -> BranchResult:
        if loader is None:
            raise StoreUnavailableError("No metric store is configured")

        result = BranchResult(kind=AnalysisKind.ANOMALY)
        limit = self.settings.max_anomaly_insights_per_metric

        for metric in self.settings.insight_metrics:
            series = await loader.get(metric)
            detection = await asyncio.to_thread(
                detect_anomalies, series, metric, self._anomaly_options
            )
            if isinstance(detection, InsufficientData):
                result.skipped.append(_skip_label(AnalysisKind.ANOMALY, metric))
                continue
            result.anomalies.extend(detection.anomalies[:limit])

        return result

    async def _trend_branch(self, loader: Optional[_SeriesLoader]) -> BranchResult:
        if loader is None:
            raise StoreUnavailableError("No metric store is configured")

        result = BranchResult(kind=AnalysisKind.TREND)

        for metric in self.settings.insight_metrics:
            series = await loader.get(metric)
            trend = await asyncio.to_thread(
                analyze_trend,
                series,
                metric,
                self.settings.trend_epsilon_ratio,
                self.settings.min_series_points,
            )
            if isinstance(trend, InsufficientData):
                result.skipped.append(_skip_label(AnalysisKind.TREND, metric))
                continue
            result.trends.append(trend)

        return result

    async def _benchmark_branch(self, entity_id: str) -> BranchResult:
        store = self._require_store()
        result = BranchResult(kind=AnalysisKind.BENCHMARK)

        similar = await self._similar(store, entity_id)

        for metric in self.settings.insight_metrics:
            population = await store.get_population(metric)
            value = population.get(entity_id)
            if value is None:
                result.skipped.append(_skip_label(AnalysisKind.BENCHMARK, metric))
                continue

            ranking = await asyncio.to_thread(
                benchmark_entity,
                metric,
                value,
                list(population.values()),
                self.settings.min_population,
            )
            if isinstance(ranking, InsufficientData):
                result.skipped.append(_skip_label(AnalysisKind.BENCHMARK, metric))
                continue
            result.benchmarks.append(BenchmarkFinding(ranking=ranking, similar=similar))

        return result

    async def _similar(self, store: MetricStore, entity_id: str) -> List[SimilarEntity]:
        features = await store.get_entity_features(entity_id)
        if features is None:
            return []

        population = await store.get_feature_population()
        return await asyncio.to_thread(
            find_similar,
            features,
            population,
            self.settings.similar_entities_limit,
            self.settings.similarity_weights,
        )

    async def _prediction_branch(self, loader: Optional[_SeriesLoader]) -> BranchResult:
        if loader is None:
            raise StoreUnavailableError("No metric store is configured")

        result = BranchResult(kind=AnalysisKind.PREDICTION)

        for metric in self.settings.insight_metrics:
            series = await loader.get(metric)
            model = self.registry.get(metric)
            if model is None or len(series) < self.settings.prediction_min_history:
                result.skipped.append(_skip_label(AnalysisKind.PREDICTION, metric))
                continue

            features = build_features(series, next_target_date(series))
            prediction = await asyncio.to_thread(predict, features, model, metric)
            if isinstance(prediction, PredictionUnavailable):
                logger.debug(f"No prediction for {metric}: {prediction.reason}")
                result.skipped.append(_skip_label(AnalysisKind.PREDICTION, metric))
                continue

            result.predictions.append(
                PredictionFinding(prediction=prediction, last_value=series[-1].value)
            )

        return result

    # -------------------------------------------------------------------------
    # Detail views
    # -------------------------------------------------------------------------

    async def trend_detail(self, entity_id: str, metric: str, window: int = 7) -> MetricTrendResponse:
        """Trend, trend changes and smoothed series for one metric."""
        store = self._require_store()
        series = await store.get_series(entity_id, metric)

        trend = await asyncio.to_thread(
            analyze_trend,
            series,
            metric,
            self.settings.trend_epsilon_ratio,
            self.settings.min_series_points,
        )
        if isinstance(trend, InsufficientData):
            return MetricTrendResponse(entityId=entity_id, metric=metric, insufficientData=trend)

        changes = await asyncio.to_thread(
            detect_trend_changes, series, metric, window, self.settings.trend_epsilon_ratio
        )
        return MetricTrendResponse(
            entityId=entity_id,
            metric=metric,
            trend=trend,
            changePoints=changes,
            smoothed=smooth_series(series, window),
        )

    async def benchmark_detail(
        self,
        entity_id: str,
        metric: str,
        scope: str = "all",
    ) -> MetricBenchmarkResponse:
        """
        Ranking and population summary for one metric.

        Args:
            scope: 'all' ranks against every entity, 'partner' only against
                entities of the same partner

        Raises:
            ValueError: For an unknown scope
        """
        if scope not in ("all", "partner"):
            raise ValueError(f"Unknown benchmark scope '{scope}'")

        store = self._require_store()
        population_filter = None
        if scope == "partner":
            features = await store.get_entity_features(entity_id)
            if features is None or features.partnerId is None:
                return MetricBenchmarkResponse(
                    entityId=entity_id,
                    metric=metric,
                    scope=scope,
                    insufficientData=InsufficientData(
                        analysis="benchmark",
                        metric=metric,
                        required=1,
                        available=0,
                        reason="Entity has no partner to benchmark against",
                    ),
                )
            population_filter = PopulationFilter(partner_id=features.partnerId)

        population = await store.get_population(metric, population_filter)
        values = list(population.values())
        summary = population_summary(metric, values)
        value = population.get(entity_id)

        if value is None:
            ranking_or_gap = InsufficientData(
                analysis="benchmark",
                metric=metric,
                required=1,
                available=0,
                reason=f"Entity has no {metric} value",
            )
        else:
            ranking_or_gap = benchmark_entity(metric, value, values, self.settings.min_population)

        return MetricBenchmarkResponse(
            entityId=entity_id,
            metric=metric,
            scope=scope,
            ranking=ranking_or_gap if isinstance(ranking_or_gap, PercentileRanking) else None,
            population=None if isinstance(summary, InsufficientData) else summary,
            insufficientData=ranking_or_gap if isinstance(ranking_or_gap, InsufficientData) else None,
        )

    async def history_benchmark(self, entity_id: str, metric: str) -> MetricHistoryBenchmarkResponse:
        """Latest value of one metric ranked against the entity's own history."""
        store = self._require_store()
        series = await store.get_series(entity_id, metric)
        min_points = self.settings.min_series_points

        if not series:
            result = InsufficientData(
                analysis="history_benchmark",
                metric=metric,
                required=min_points,
                available=0,
                reason=f"Entity has no {metric} history",
            )
        else:
            result = benchmark_against_history(
                metric,
                series[-1].value,
                [p.value for p in series[:-1]],
                min_points,
            )

        if isinstance(result, InsufficientData):
            return MetricHistoryBenchmarkResponse(entityId=entity_id, metric=metric, insufficientData=result)
        return MetricHistoryBenchmarkResponse(entityId=entity_id, metric=metric, benchmark=result)

    async def partner_insights(self, partner_id: str) -> Optional[PartnerInsightsResponse]:
        """
        Insights for a partner, taken from its most recent entity.

        Returns:
            PartnerInsightsResponse, or None if the partner has no entities

        Raises:
            StoreUnavailableError: If the entity list cannot be read or the
                latest entity's insights cannot be produced
        """
        store = self._require_store()
        entity_ids = await store.list_entities(partner_id=partner_id, limit=1)
        if not entity_ids:
            logger.info(f"No entities found for partner {partner_id}")
            return None

        latest = entity_ids[0]
        report = await self.get_insights(latest)
        return PartnerInsightsResponse(partnerId=partner_id, latestEntityId=latest, report=report)

    async def similar_entities(self, entity_id: str, limit: Optional[int] = None) -> SimilarEntitiesResponse:
        store = self._require_store()
        features = await store.get_entity_features(entity_id)
        if features is None:
            return SimilarEntitiesResponse(entityId=entity_id)

        population = await store.get_feature_population()
        similar = await asyncio.to_thread(
            find_similar,
            features,
            population,
            limit or self.settings.similar_entities_limit,
            self.settings.similarity_weights,
        )
        return SimilarEntitiesResponse(entityId=entity_id, similar=similar)

    # -------------------------------------------------------------------------
    # Global feed
    # -------------------------------------------------------------------------

    async def get_feed(
        self,
        insight_type: Optional[InsightType] = None,
        severity: Optional[InsightSeverity] = None,
        limit: Optional[int] = None,
        since: Optional[date] = None,
    ) -> InsightFeedResponse:
        """
        Ranked insights across the most recent entities.

        Every insight of the analysed entities that passes the filters is
        returned, and the metadata counts cover that whole list. Entities
        whose insights cannot be produced are left out and the feed is
        marked degraded.

        Args:
            insight_type: Only insights of this type
            severity: Only insights of this severity
            limit: Number of most recent entities to analyse (default:
                settings.feed_entity_limit)
            since: Only entities with events on or after this date

        Raises:
            StoreUnavailableError: If the entity list cannot be read
        """
        store = self._require_store()
        entity_ids = await store.list_entities(since=since, limit=limit or self.settings.feed_entity_limit)

        responses = await asyncio.gather(
            *(self.get_insights(entity_id) for entity_id in entity_ids),
            return_exceptions=True,
        )

        collected: List[Insight] = []
        degraded = False
        for entity_id, response in zip(entity_ids, responses):
            if isinstance(response, BaseException):
                logger.warning(f"Feed skipped {entity_id}: {response}")
                degraded = True
                continue
            degraded = degraded or response.degraded
            collected.extend(response.insights)

        if insight_type is not None:
            collected = [i for i in collected if i.type == insight_type]
        if severity is not None:
            collected = [i for i in collected if i.severity == severity]

        feed = rank_insights(collected)

        def count(kind: InsightType) -> int:
            return sum(1 for i in feed if i.type == kind)

        return InsightFeedResponse(
            insights=feed,
            metadata=InsightFeedMetadata(
                totalInsights=len(feed),
                anomalies=count(InsightType.ANOMALY),
                trends=count(InsightType.TREND),
                benchmarks=count(InsightType.BENCHMARK),
                predictions=count(InsightType.PREDICTION),
                recommendations=count(InsightType.RECOMMENDATION),
                generatedAt=self._clock(),
                degraded=degraded,
            ),
        )
