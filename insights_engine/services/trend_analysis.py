"""
Trend Analysis Service.

Fits an ordinary least squares line to a metric series against its point
index (not its date, so unevenly spaced events do not bias the slope) and
derives the direction, strength and a short-horizon projection.

Classification Rules:
    direction:
        - INCREASING: slope > epsilon
        - DECREASING: slope < -epsilon
        - STABLE: otherwise
        where epsilon = trend_epsilon_ratio * |mean| per step (default 1%)
    strength (from R²):
        - WEAK: R² < 0.3
        - MODERATE: 0.3 <= R² <= 0.7
        - STRONG: R² > 0.7

Projection:
    The fitted line is extended by the number of steps that 30 and 90 days
    represent at the series' median cadence, clamped at zero. Confidence is
    R² * 100 * decay(30) with decay(h) = max(0, 1 - h / 730), so confidence
    shrinks both with a poor fit and with distance into the future.

Also provides sliding-window trend change detection, trend comparison and
series smoothing for the per-metric trend endpoint.
"""

import logging
import math
from typing import List, Union

import numpy as np

from insights_engine.models.enums import TrendDirection, TrendStrength
from insights_engine.models.schemas import (
    InsufficientData,
    TimeSeriesPoint,
    TrendAnalysis,
    TrendChangePoint,
    TrendComparison,
    TrendProjection,
)
from insights_engine.services import statistics as stats

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

MIN_TREND_POINTS: int = 5
DEFAULT_EPSILON_RATIO: float = 0.01

WEAK_R_SQUARED: float = 0.3
STRONG_R_SQUARED: float = 0.7

# Horizon (days) at which projection confidence decays to zero
PROJECTION_DECAY_DAYS: float = 730.0

# Minimum confidence for a reported trend change
CHANGE_POINT_MIN_CONFIDENCE: float = 40.0

_STRENGTH_ORDER = {
    TrendStrength.WEAK: 0,
    TrendStrength.MODERATE: 1,
    TrendStrength.STRONG: 2,
}


# =============================================================================
# Classification Helpers
# =============================================================================


def classify_direction(slope: float, series_mean: float, epsilon_ratio: float) -> TrendDirection:
    """
    Classify a slope against a threshold scaled to the series mean.

    Args:
        slope: Fitted change per step
        series_mean: Mean of the series values
        epsilon_ratio: Fraction of |mean| a step must move to count

    Returns:
        TrendDirection
    """
    epsilon = epsilon_ratio * abs(series_mean)
    if slope > epsilon:
        return TrendDirection.INCREASING
    if slope < -epsilon:
        return TrendDirection.DECREASING
    return TrendDirection.STABLE


def classify_strength(r_squared: float) -> TrendStrength:
    if r_squared < WEAK_R_SQUARED:
        return TrendStrength.WEAK
    if r_squared > STRONG_R_SQUARED:
        return TrendStrength.STRONG
    return TrendStrength.MODERATE


def decay(horizon_days: float) -> float:
    """Linear confidence decay with projection distance, floored at 0."""
    return max(0.0, 1.0 - horizon_days / PROJECTION_DECAY_DAYS)


def median_cadence_days(series: List[TimeSeriesPoint]) -> float:
    """
    Median spacing between consecutive points, in days.

    Returns 1.0 for series too short to measure or with non-positive spacing.
    """
    if len(series) < 2:
        return 1.0

    gaps = [(b.date - a.date).days for a, b in zip(series, series[1:])]
    cadence = stats.median(gaps)
    if math.isnan(cadence) or cadence <= 0:
        return 1.0
    return cadence


# =============================================================================
# Core Analysis
# =============================================================================


def _fit_trend(
    series: List[TimeSeriesPoint],
    metric: str,
    epsilon_ratio: float,
) -> TrendAnalysis:
    """Fit and classify without a minimum length check."""
    values = [p.value for p in series]
    n = len(values)

    fit = stats.linear_regression(values)
    series_mean = stats.mean(values)

    direction = classify_direction(fit.slope, series_mean, epsilon_ratio)
    strength = classify_strength(fit.r_squared)

    first_pred = fit.predict(0)
    last_pred = fit.predict(n - 1)
    change_percent = 0.0 if first_pred == 0 else (last_pred - first_pred) / first_pred * 100.0

    cadence = median_cadence_days(series)
    steps_30 = 30.0 / cadence
    steps_90 = 90.0 / cadence

    projection = TrendProjection(
        value30d=max(0.0, fit.predict(n - 1 + steps_30)),
        value90d=max(0.0, fit.predict(n - 1 + steps_90)),
        confidence=fit.r_squared * 100.0 * decay(30.0),
    )

    return TrendAnalysis(
        metric=metric,
        direction=direction,
        strength=strength,
        slope=fit.slope,
        intercept=fit.intercept,
        rSquared=fit.r_squared,
        changePercent=change_percent,
        projection=projection,
        startValue=values[0],
        endValue=values[-1],
        dataPoints=n,
    )


def analyze_trend(
    series: List[TimeSeriesPoint],
    metric: str,
    epsilon_ratio: float = DEFAULT_EPSILON_RATIO,
    min_points: int = MIN_TREND_POINTS,
) -> Union[TrendAnalysis, InsufficientData]:
    """
    Analyze the trend of one metric's time series.

    Args:
        series: Points sorted by date ascending
        metric: Metric name
        epsilon_ratio: Relative slope threshold per step (default 1% of mean)
        min_points: Minimum finite points required (default 5)

    Returns:
        TrendAnalysis, or InsufficientData for short series

    Example:
        >>> result = analyze_trend(series, "attendance")
        >>> result.direction, result.strength
        (<TrendDirection.INCREASING: 'increasing'>, <TrendStrength.STRONG: 'strong'>)
    """
    clean = [p for p in series if math.isfinite(p.value)]
    if len(clean) != len(series):
        logger.warning(
            f"Dropped {len(series) - len(clean)} non-finite value(s) from {metric} series before trend fit"
        )

    if len(clean) < min_points:
        return InsufficientData(
            analysis="trend",
            metric=metric,
            required=min_points,
            available=len(clean),
            reason=f"Trend analysis needs at least {min_points} data points",
        )

    return _fit_trend(clean, metric, epsilon_ratio)


# =============================================================================
# Supplementary Analyses
# =============================================================================


def detect_trend_changes(
    series: List[TimeSeriesPoint],
    metric: str,
    window: int = 7,
    epsilon_ratio: float = DEFAULT_EPSILON_RATIO,
) -> List[TrendChangePoint]:
    """
    Find points where the local trend direction flips.

    Two adjacent windows slide over the series with 50% overlap. A change is
    reported at the start of the second window when the first window had a
    non-stable direction, the second differs from it, and both fits are good
    enough that min(R²) * 100 exceeds 40.

    Args:
        series: Points sorted by date ascending
        metric: Metric name
        window: Points per window (default 7)
        epsilon_ratio: Relative slope threshold per step

    Returns:
        Change points in series order; empty when the series is shorter than
        two windows.

    Raises:
        ValueError: If window < 2
    """
    if window < 2:
        raise ValueError(f"Window must be >= 2, got {window}")

    if len(series) < window * 2:
        return []

    step = max(1, window // 2)
    changes: List[TrendChangePoint] = []

    for start in range(0, len(series) - window * 2 + 1, step):
        before = _fit_trend(series[start:start + window], metric, epsilon_ratio)
        after = _fit_trend(series[start + window:start + window * 2], metric, epsilon_ratio)

        if before.direction == TrendDirection.STABLE or before.direction == after.direction:
            continue

        confidence = min(before.rSquared, after.rSquared) * 100.0
        if confidence <= CHANGE_POINT_MIN_CONFIDENCE:
            continue

        index = start + window
        changes.append(TrendChangePoint(
            index=index,
            date=series[index].date,
            value=series[index].value,
            previousDirection=before.direction,
            newDirection=after.direction,
            confidence=confidence,
        ))

    return changes


def compare_trends(
    first: List[TimeSeriesPoint],
    second: List[TimeSeriesPoint],
    metric: str,
    epsilon_ratio: float = DEFAULT_EPSILON_RATIO,
) -> Union[TrendComparison, InsufficientData]:
    """
    Compare the trends of two series, for example two periods of one entity.

    Returns:
        TrendComparison, or the InsufficientData of whichever series is too
        short to analyze.
    """
    first_trend = analyze_trend(first, metric, epsilon_ratio)
    if isinstance(first_trend, InsufficientData):
        return first_trend

    second_trend = analyze_trend(second, metric, epsilon_ratio)
    if isinstance(second_trend, InsufficientData):
        return second_trend

    order_diff = _STRENGTH_ORDER[first_trend.strength] - _STRENGTH_ORDER[second_trend.strength]
    if order_diff > 0:
        strength_difference = "stronger"
    elif order_diff < 0:
        strength_difference = "weaker"
    else:
        strength_difference = "equal"

    return TrendComparison(
        first=first_trend,
        second=second_trend,
        slopeDifference=first_trend.slope - second_trend.slope,
        directionMatch=first_trend.direction == second_trend.direction,
        strengthDifference=strength_difference,
    )


def smooth_series(series: List[TimeSeriesPoint], window: int) -> List[TimeSeriesPoint]:
    """
    Smooth a series with a simple moving average.

    Each output point is the mean of a full window ending at (and including)
    an input point, dated at that point. Series shorter than the window are
    returned unchanged.
    """
    if window < 1:
        raise ValueError(f"Window must be >= 1, got {window}")
    if len(series) < window:
        return list(series)

    values = np.array([p.value for p in series], dtype=np.float64)
    averages = np.convolve(values, np.ones(window) / window, mode="valid")

    return [
        TimeSeriesPoint(date=series[i + window - 1].date, value=float(avg))
        for i, avg in enumerate(averages)
    ]

