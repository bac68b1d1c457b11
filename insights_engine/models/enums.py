"""
Enumeration definitions for the Insights Engine.

All enums inherit from both `str` and `Enum` to ensure JSON serialization
compatibility with Pydantic models, enabling automatic serialization and
deserialization in API responses and cache payloads.
"""

from enum import Enum


class AnomalySeverity(str, Enum):
    """
    Severity of a single flagged data point.

    Derived from the absolute percentage deviation from the expected value:
    - HIGH: deviation >= 50%
    - MEDIUM: deviation >= 25%
    - LOW: anything smaller
    """
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class AnomalyMethod(str, Enum):
    """
    Statistical method that flagged an anomaly.

    Declaration order is the reporting priority when several methods flag
    the same point: z-score, then IQR, then moving average.
    """
    Z_SCORE = "z-score"
    IQR = "iqr"
    MOVING_AVERAGE = "moving-average"


class TrendDirection(str, Enum):
    """Direction of a fitted trend line."""
    INCREASING = "increasing"
    DECREASING = "decreasing"
    STABLE = "stable"


class TrendStrength(str, Enum):
    """
    Strength of a fitted trend line, bucketed from R².

    - WEAK: R² < 0.3
    - MODERATE: 0.3 <= R² <= 0.7
    - STRONG: R² > 0.7
    """
    WEAK = "weak"
    MODERATE = "moderate"
    STRONG = "strong"


class PercentileCategory(str, Enum):
    """
    Bucket of a percentile ranking.

    - TOP_10: percentile >= 90
    - TOP_25: percentile >= 75
    - AVERAGE: percentile >= 40
    - BELOW_AVERAGE: anything lower
    """
    TOP_10 = "top_10"
    TOP_25 = "top_25"
    AVERAGE = "average"
    BELOW_AVERAGE = "below_average"


class HistoryTrend(str, Enum):
    """
    Latest value against the average of the three values before it.

    - IMPROVING: more than 10% above
    - DECLINING: more than 10% below
    - STABLE: within 10%, or fewer than three earlier values
    """
    IMPROVING = "improving"
    DECLINING = "declining"
    STABLE = "stable"


class FactorDirection(str, Enum):
    """Sign of a prediction factor's contribution."""
    POSITIVE = "positive"
    NEGATIVE = "negative"


class InsightType(str, Enum):
    """
    Closed set of insight kinds.

    The orchestrator's formatting step dispatches exhaustively over these
    values; adding a member requires adding a formatter.
    """
    ANOMALY = "anomaly"
    TREND = "trend"
    BENCHMARK = "benchmark"
    PREDICTION = "prediction"
    RECOMMENDATION = "recommendation"


class InsightSeverity(str, Enum):
    """Severity of an insight, ranked CRITICAL > WARNING > INFO."""
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class GenerationState(str, Enum):
    """
    Lifecycle of one entity's insight generation.

    PENDING -> COMPUTING -> READY. A cache hit goes straight from PENDING to
    READY; a failed computation still ends in READY with a partial result.
    """
    PENDING = "pending"
    COMPUTING = "computing"
    READY = "ready"


class AnalysisKind(str, Enum):
    """Analysis branches run by the orchestrator."""
    ANOMALY = "anomaly"
    TREND = "trend"
    BENCHMARK = "benchmark"
    PREDICTION = "prediction"


# Severity order used for ranking (higher sorts first)
SEVERITY_RANK = {
    InsightSeverity.CRITICAL: 3,
    InsightSeverity.WARNING: 2,
    InsightSeverity.INFO: 1,
}
