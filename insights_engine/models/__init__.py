"""
Package initialization file for Insights Engine models.

Exports all Pydantic schemas and enumerations from schemas.py and enums.py so
other modules can import data models without knowing the internal layout.

Usage:
    from insights_engine.models import (
        TimeSeriesPoint,
        Anomaly,
        TrendAnalysis,
        Insight,
        InsightType,
    )
"""

# =============================================================================
# Enums
# =============================================================================

from insights_engine.models.enums import (
    AnalysisKind,
    AnomalyMethod,
    AnomalySeverity,
    FactorDirection,
    GenerationState,
    HistoryTrend,
    InsightSeverity,
    InsightType,
    PercentileCategory,
    SEVERITY_RANK,
    TrendDirection,
    TrendStrength,
)


# =============================================================================
# Schemas
# =============================================================================

from insights_engine.models.schemas import (
    # Time series
    TimeSeriesPoint,
    InsufficientData,
    # Anomaly detection
    AnomalyDetectionOptions,
    Anomaly,
    AnomalyDetectionResult,
    # Trend analysis
    TrendProjection,
    TrendAnalysis,
    TrendChangePoint,
    TrendComparison,
    # Benchmarking
    PercentileRanking,
    PopulationSummary,
    HistoryBenchmark,
    EntityFeatures,
    SimilarEntity,
    # Prediction
    PREDICTION_FEATURE_NAMES,
    PredictionFeatures,
    RegressionModel,
    ConfidenceInterval,
    PredictionFactor,
    Prediction,
    PredictionUnavailable,
    ModelEvaluation,
    # Insights
    Insight,
    InsightSummary,
    InsightsResponse,
    MetricTrendResponse,
    MetricBenchmarkResponse,
    MetricHistoryBenchmarkResponse,
    PartnerInsightsResponse,
    SimilarEntitiesResponse,
    InsightFeedMetadata,
    InsightFeedResponse,
)


__all__ = [
    # Enums
    'AnalysisKind',
    'AnomalyMethod',
    'AnomalySeverity',
    'FactorDirection',
    'GenerationState',
    'HistoryTrend',
    'InsightSeverity',
    'InsightType',
    'PercentileCategory',
    'SEVERITY_RANK',
    'TrendDirection',
    'TrendStrength',
    # Schemas
    'TimeSeriesPoint',
    'InsufficientData',
    'AnomalyDetectionOptions',
    'Anomaly',
    'AnomalyDetectionResult',
    'TrendProjection',
    'TrendAnalysis',
    'TrendChangePoint',
    'TrendComparison',
    'PercentileRanking',
    'PopulationSummary',
    'HistoryBenchmark',
    'EntityFeatures',
    'SimilarEntity',
    'PREDICTION_FEATURE_NAMES',
    'PredictionFeatures',
    'RegressionModel',
    'ConfidenceInterval',
    'PredictionFactor',
    'Prediction',
    'PredictionUnavailable',
    'ModelEvaluation',
    'Insight',
    'InsightSummary',
    'InsightsResponse',
    'MetricTrendResponse',
    'MetricBenchmarkResponse',
    'MetricHistoryBenchmarkResponse',
    'PartnerInsightsResponse',
    'SimilarEntitiesResponse',
    'InsightFeedMetadata',
    'InsightFeedResponse',
]
