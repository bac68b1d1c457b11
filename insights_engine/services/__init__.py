"""
Insights Engine Services Module

This module contains the analysis and orchestration services of the
Insights Engine. The analysis services are pure functions over time series
and populations; only the Metric Store, the Model Registry and the
orchestrator touch I/O.

Services:
- statistics: Descriptive statistics and least-squares regression (numpy)
- anomaly_detection: Z-score, IQR and moving-average anomaly detection
- trend_analysis: Linear trend fitting, projection and trend changes
- benchmarking: Percentile ranking, population summary, similar entities
- formula: Safe arithmetic evaluator for derived metrics
- prediction: Feature building, normal-equation fitting, forecasting
- metric_store: Read-only access to per-entity metric series (asyncpg + pandas)
- insights_orchestrator: Concurrent analysis, formatting, ranking and caching

All services are consumed by the API layer (insights_engine/api/) and the
batch jobs (insights_engine/jobs/).
"""

# =============================================================================
# Statistics Exports
# =============================================================================

from insights_engine.services.statistics import (
    RegressionFit,
    MultipleRegressionFit,
    mean,
    stddev,
    median,
    percentile,
    linear_regression,
    multiple_linear_regression,
    moving_average,
    min_max_normalize,
    euclidean_distance,
    deviation_pct,
)

# =============================================================================
# Analysis Service Exports
# =============================================================================

from insights_engine.services.anomaly_detection import (
    detect_anomalies,
    classify_severity,
    options_from_settings,
)

from insights_engine.services.trend_analysis import (
    analyze_trend,
    detect_trend_changes,
    compare_trends,
    smooth_series,
    classify_direction,
    classify_strength,
)

from insights_engine.services.benchmarking import (
    percentile_rank,
    benchmark_against_history,
    benchmark_entity,
    categorize_percentile,
    population_summary,
    find_similar,
    DEFAULT_SIMILARITY_WEIGHTS,
)

from insights_engine.services.formula import Formula, parse_formula

from insights_engine.services.prediction import (
    TrainingRow,
    ModelRegistry,
    build_features,
    build_training_rows,
    next_target_date,
    fit_model,
    predict,
    evaluate_model,
)

# =============================================================================
# Data Access and Orchestration Exports
# =============================================================================

from insights_engine.services.metric_store import (
    DateRange,
    PopulationFilter,
    MetricStore,
    PostgresMetricStore,
)

from insights_engine.services.insights_orchestrator import (
    InsightsOrchestrator,
    format_insight,
    build_recommendations,
    apply_confidence_floor,
    rank_insights,
    summarize_insights,
)

__all__ = [
    # Statistics
    'RegressionFit',
    'MultipleRegressionFit',
    'mean',
    'stddev',
    'median',
    'percentile',
    'linear_regression',
    'multiple_linear_regression',
    'moving_average',
    'min_max_normalize',
    'euclidean_distance',
    'deviation_pct',
    # Anomaly detection
    'detect_anomalies',
    'classify_severity',
    'options_from_settings',
    # Trend analysis
    'analyze_trend',
    'detect_trend_changes',
    'compare_trends',
    'smooth_series',
    'classify_direction',
    'classify_strength',
    # Benchmarking
    'percentile_rank',
    'benchmark_against_history',
    'benchmark_entity',
    'categorize_percentile',
    'population_summary',
    'find_similar',
    'DEFAULT_SIMILARITY_WEIGHTS',
    # Formula
    'Formula',
    'parse_formula',
    # Prediction
    'TrainingRow',
    'ModelRegistry',
    'build_features',
    'build_training_rows',
    'next_target_date',
    'fit_model',
    'predict',
    'evaluate_model',
    # Metric store
    'DateRange',
    'PopulationFilter',
    'MetricStore',
    'PostgresMetricStore',
    # Orchestration
    'InsightsOrchestrator',
    'format_insight',
    'build_recommendations',
    'apply_confidence_floor',
    'rank_insights',
    'summarize_insights',
]
