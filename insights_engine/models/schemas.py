"""
Pydantic models for the Insights Engine.

This module provides type-safe data validation and serialization for every
record that flows through the engine: the time series read from the Metric
Store, the raw statistical outputs of the four analysis services, the unified
Insight record, and the API response envelopes.

Field names are camelCase to match the JSON contract consumed by the
presentation layer. All models use Pydantic v2 syntax.

Immutability:
- TimeSeriesPoint and Insight are frozen. A regeneration creates new Insight
  records and supersedes cached ones; it never mutates them.
"""

from datetime import datetime, date as DateType
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from insights_engine.models.enums import (
    AnomalyMethod,
    AnomalySeverity,
    FactorDirection,
    GenerationState,
    HistoryTrend,
    InsightSeverity,
    InsightType,
    PercentileCategory,
    TrendDirection,
    TrendStrength,
)


# =============================================================================
# Time Series
# =============================================================================


class TimeSeriesPoint(BaseModel):
    """
    One aggregated metric value for an entity on a calendar date.

    Series are ordered by date ascending with no duplicate dates for the same
    (entity, metric) pair.
    """
    model_config = ConfigDict(
        frozen=True,
        json_schema_extra={"example": {"date": "2026-03-14", "value": 1250.0}},
    )

    date: DateType = Field(..., description="Calendar date of the aggregate")
    value: float = Field(..., description="Aggregated metric value")


class InsufficientData(BaseModel):
    """
    Explicit "not enough data" result.

    Returned by the analysis services instead of a low-confidence guess when
    a series is shorter than the minimum or a population is too small.
    """
    analysis: str = Field(..., description="Analysis that was skipped")
    metric: Optional[str] = Field(default=None, description="Metric analysed")
    required: int = Field(..., ge=0, description="Minimum size needed")
    available: int = Field(..., ge=0, description="Size actually available")
    reason: str = Field(..., description="Human-readable explanation")


# =============================================================================
# Anomaly Detection
# =============================================================================


class AnomalyDetectionOptions(BaseModel):
    """Thresholds for the three anomaly detection methods."""
    zScoreThreshold: float = Field(default=2.0, gt=0)
    iqrMultiplier: float = Field(default=1.5, gt=0)
    movingAvgWindow: int = Field(default=7, ge=1)
    movingAvgThreshold: float = Field(default=0.25, gt=0)
    minDataPoints: int = Field(default=5, ge=1)


class Anomaly(BaseModel):
    """
    A single data point flagged as statistically inconsistent with its series.

    `method` is the highest-priority method that flagged the point and
    `expectedValue` comes from that method; `confidence` is the maximum
    across all methods that flagged it.
    """
    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "date": "2026-03-14",
                "metric": "attendance",
                "value": 400.0,
                "expectedValue": 143.3,
                "deviationPct": 179.2,
                "severity": "high",
                "method": "z-score",
                "confidence": 90.0,
                "description": "Value is 2.4 standard deviations from mean",
            }
        }
    )

    date: DateType
    metric: str
    value: float
    expectedValue: float
    deviationPct: float = Field(..., description="Signed % deviation from expected")
    severity: AnomalySeverity
    method: AnomalyMethod
    confidence: float = Field(..., ge=0.0, le=100.0)
    description: Optional[str] = None


class AnomalyDetectionResult(BaseModel):
    """All anomalies found in one series, newest first, plus run metadata."""
    metric: str
    anomalies: List[Anomaly] = Field(default_factory=list)
    totalDataPoints: int = Field(..., ge=0)
    anomalyCount: int = Field(..., ge=0)
    anomalyRate: float = Field(..., ge=0.0, le=100.0, description="% of points flagged")
    methodCounts: Dict[str, int] = Field(
        default_factory=dict,
        description="Points flagged per method, before deduplication",
    )
    disabledMethods: List[AnomalyMethod] = Field(
        default_factory=list,
        description="Methods skipped because of degenerate input or short series",
    )


# =============================================================================
# Trend Analysis
# =============================================================================


class TrendProjection(BaseModel):
    """Forward extrapolation of a fitted trend line."""
    value30d: float
    value90d: float
    confidence: float = Field(..., ge=0.0, le=100.0)


class TrendAnalysis(BaseModel):
    """Direction, strength and projection of one metric's series."""
    metric: str
    direction: TrendDirection
    strength: TrendStrength
    slope: float = Field(..., description="Change per data point")
    intercept: float
    rSquared: float = Field(..., ge=0.0, le=1.0)
    changePercent: float = Field(..., description="Fitted change, first to last point")
    projection: TrendProjection
    startValue: float
    endValue: float
    dataPoints: int = Field(..., ge=0)


class TrendChangePoint(BaseModel):
    """A point where the local trend direction flips."""
    index: int
    date: DateType
    value: float
    previousDirection: TrendDirection
    newDirection: TrendDirection
    confidence: float = Field(..., ge=0.0, le=100.0)


class TrendComparison(BaseModel):
    """Side-by-side comparison of two trend analyses."""
    first: TrendAnalysis
    second: TrendAnalysis
    slopeDifference: float
    directionMatch: bool
    strengthDifference: str = Field(..., description="stronger, weaker or equal")


# =============================================================================
# Benchmarking
# =============================================================================


class PercentileRanking(BaseModel):
    """Where one entity's value sits within a population snapshot."""
    metric: str
    value: float
    percentile: float = Field(..., ge=0.0, le=100.0)
    rank: int = Field(..., ge=0, description="Count of population values <= value")
    total: int = Field(..., ge=0)
    category: PercentileCategory
    benchmarkValue: float = Field(..., description="Population mean")
    differencePct: float = Field(..., description="% difference from population mean")


class PopulationSummary(BaseModel):
    """Descriptive statistics of a benchmark population."""
    metric: str
    count: int
    mean: float
    median: float
    min: float
    max: float
    stdDev: float
    percentiles: Dict[str, float]


class HistoryBenchmark(BaseModel):
    """An entity's latest value ranked against its own earlier values."""
    metric: str
    ranking: PercentileRanking
    trend: HistoryTrend
    recentAverage: Optional[float] = Field(
        default=None,
        description="Mean of the three values before the latest; None with fewer",
    )
    historyPoints: int = Field(..., ge=0, description="Earlier values ranked against")


class EntityFeatures(BaseModel):
    """Feature vector used for similar-entity search."""
    entityId: str
    eventDate: DateType
    partnerId: Optional[str] = None
    attendance: float = 0.0
    engagement: float = 0.0
    merchRate: float = 0.0


class SimilarEntity(BaseModel):
    """One neighbour in a similar-entity ranking."""
    entityId: str
    similarityScore: float = Field(..., ge=0.0, le=1.0)
    eventDate: Optional[DateType] = None


# =============================================================================
# Prediction
# =============================================================================


# Feature order shared by PredictionFeatures.as_vector and fitted models
PREDICTION_FEATURE_NAMES: List[str] = [
    'isWeekend',
    'monthSin',
    'monthCos',
    'historicalAverage',
    'recentTrend',
]


class PredictionFeatures(BaseModel):
    """
    Calendar, history and momentum features for one forecast.

    - isWeekend: 1.0 for Saturday/Sunday targets, else 0.0
    - monthSin / monthCos: month of year on the unit circle
    - historicalAverage: mean of the entity's history before the target
    - recentTrend: OLS slope of the most recent points
    """
    targetDate: DateType
    isWeekend: float
    monthSin: float
    monthCos: float
    historicalAverage: float
    recentTrend: float

    def as_vector(self, feature_names: Optional[List[str]] = None) -> List[float]:
        names = feature_names or PREDICTION_FEATURE_NAMES
        return [float(getattr(self, name)) for name in names]


class RegressionModel(BaseModel):
    """Coefficients of a fitted multiple linear regression."""
    metric: str
    featureNames: List[str]
    intercept: float
    coefficients: List[float]
    residualStandardError: float = Field(..., ge=0.0)
    rSquared: float = Field(..., ge=0.0, le=1.0)
    sampleSize: int = Field(..., ge=0)
    fittedAt: datetime


class ConfidenceInterval(BaseModel):
    lower: float
    upper: float


class PredictionFactor(BaseModel):
    """Signed contribution of one feature to a prediction."""
    name: str
    impactPct: float = Field(..., description="Contribution as % of |predicted value|")
    direction: FactorDirection


class Prediction(BaseModel):
    """Point forecast with a 95% confidence interval."""
    metric: str
    targetDate: DateType
    predictedValue: float
    confidenceInterval: ConfidenceInterval
    confidence: float = Field(..., ge=0.0, le=100.0)
    factors: List[PredictionFactor] = Field(default_factory=list)
    modelAccuracy: float = Field(..., ge=0.0, le=100.0, description="Model R² as a percentage")


class PredictionUnavailable(BaseModel):
    """Typed "no prediction available" result."""
    metric: str
    reason: str


class ModelEvaluation(BaseModel):
    """Back-test of a fitted model against known outcomes."""
    metric: str
    sampleSize: int
    rmse: float
    meanErrorPct: float
    within95Ci: float = Field(..., ge=0.0, le=100.0, description="% of outcomes inside the CI")


# =============================================================================
# Insights
# =============================================================================


class Insight(BaseModel):
    """
    Unified, ranked, human-readable output record.

    Immutable once created. `id` and `createdAt` are the only fields that
    differ between two generations over unchanged upstream data.
    """
    model_config = ConfigDict(
        frozen=True,
        json_schema_extra={
            "example": {
                "id": "3f1c8f0e-0a44-4d7e-9a55-2b1f0c7d9e11",
                "entityId": "evt_1042",
                "type": "anomaly",
                "severity": "critical",
                "metric": "attendance",
                "title": "Attendance 179% above expected",
                "description": "Value is 2.4 standard deviations from mean",
                "value": 400.0,
                "changePct": 179.2,
                "confidence": 90.0,
                "actionable": False,
                "recommendation": None,
                "relatedEntityIds": [],
                "createdAt": "2026-03-15T06:00:00Z",
            }
        },
    )

    id: str
    entityId: str
    type: InsightType
    severity: InsightSeverity
    metric: str
    title: str
    description: str
    value: Optional[float] = None
    changePct: Optional[float] = None
    confidence: float = Field(..., ge=0.0, le=100.0)
    actionable: bool = False
    recommendation: Optional[str] = None
    relatedEntityIds: List[str] = Field(default_factory=list)
    createdAt: datetime


class InsightSummary(BaseModel):
    """
    Headline figures for one entity's insight list.

    overallScore starts at 100, loses 15 per critical and 7 per warning
    insight, gains 5 per benchmark insight more than 20% above the peer
    average, and is clamped to 0-100.
    """
    totalInsights: int = Field(default=0, ge=0)
    critical: int = Field(default=0, ge=0)
    warnings: int = Field(default=0, ge=0)
    info: int = Field(default=0, ge=0)
    overallScore: float = Field(default=100.0, ge=0.0, le=100.0)
    keyFindings: List[str] = Field(
        default_factory=list,
        description="Titles of the top three non-info insights",
    )


class InsightsResponse(BaseModel):
    """Insight list for one entity plus generation metadata."""
    entityId: str
    state: GenerationState
    insights: List[Insight] = Field(default_factory=list)
    summary: InsightSummary = Field(default_factory=InsightSummary)
    cached: bool = False
    degraded: bool = Field(default=False, description="True when any branch or store failed")
    warnings: List[str] = Field(default_factory=list)
    skipped: List[str] = Field(
        default_factory=list,
        description="Analyses skipped for insufficient data",
    )
    generatedAt: datetime


class MetricTrendResponse(BaseModel):
    """Trend detail for one entity and metric."""
    entityId: str
    metric: str
    trend: Optional[TrendAnalysis] = None
    insufficientData: Optional[InsufficientData] = None
    changePoints: List[TrendChangePoint] = Field(default_factory=list)
    smoothed: List[TimeSeriesPoint] = Field(default_factory=list)


class MetricBenchmarkResponse(BaseModel):
    """Percentile ranking and population summary for one entity and metric."""
    entityId: str
    metric: str
    scope: str = Field(..., description="'all' or 'partner'")
    ranking: Optional[PercentileRanking] = None
    population: Optional[PopulationSummary] = None
    insufficientData: Optional[InsufficientData] = None


class MetricHistoryBenchmarkResponse(BaseModel):
    """Latest value of one metric ranked against the entity's own history."""
    entityId: str
    metric: str
    benchmark: Optional[HistoryBenchmark] = None
    insufficientData: Optional[InsufficientData] = None


class PartnerInsightsResponse(BaseModel):
    """Insights for a partner, taken from its most recent entity."""
    partnerId: str
    latestEntityId: str
    report: InsightsResponse


class SimilarEntitiesResponse(BaseModel):
    entityId: str
    similar: List[SimilarEntity] = Field(default_factory=list)


class InsightFeedMetadata(BaseModel):
    totalInsights: int
    anomalies: int
    trends: int
    benchmarks: int
    predictions: int
    recommendations: int
    generatedAt: datetime
    degraded: bool = False


class InsightFeedResponse(BaseModel):
    """Global ranked insight feed."""
    insights: List[Insight] = Field(default_factory=list)
    metadata: InsightFeedMetadata
