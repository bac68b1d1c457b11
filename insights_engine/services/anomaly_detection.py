"""
Anomaly Detection Service.

Flags individual points in a metric time series that are statistically
inconsistent with the rest of the series. Three independent methods vote on
every point:

1. Z-SCORE - distance from the series mean in population standard deviations
   - Flag when |z| > z_score_threshold (default 2.0)
   - Confidence rises linearly from 50 at the threshold to 99 at |z| = 4
   - Disabled when the series has zero variance
2. IQR - Tukey fences around the interquartile range
   - Flag when the value is outside [Q1 - k*IQR, Q3 + k*IQR], k = 1.5
   - Confidence min(90, 60 + 10 * distance / IQR)
   - When IQR is 0 the fences collapse onto the flat band and any point off
     the band is flagged at the 90 cap
3. MOVING AVERAGE - deviation from the trailing w-point mean
   - Flag when |v - avg| / avg > 0.25 (w = 7, needs at least w + 1 points)
   - Confidence min(85, 50 + 100 * |deviation|)

A point flagged by several methods is reported once. The reported method is
the first of z-score, IQR, moving average that flagged it and the expected
value comes from that method; the confidence is the maximum across every
method that flagged it.

Severity Buckets (absolute % deviation from the expected value):
    - HIGH: >= 50%
    - MEDIUM: >= 25%
    - LOW: anything smaller

Usage:
    from insights_engine.services.anomaly_detection import detect_anomalies

    result = detect_anomalies(series, metric="attendance")
    if isinstance(result, InsufficientData):
        ...
"""

import logging
import math
from dataclasses import dataclass
from typing import Dict, List, Optional, Union

import numpy as np

from insights_engine.core.config import Settings
from insights_engine.models.enums import AnomalyMethod, AnomalySeverity
from insights_engine.models.schemas import (
    Anomaly,
    AnomalyDetectionOptions,
    AnomalyDetectionResult,
    InsufficientData,
    TimeSeriesPoint,
)
from insights_engine.services import statistics as stats

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

# |z| at which z-score confidence reaches its cap
Z_SCORE_FULL_CONFIDENCE: float = 4.0
Z_SCORE_MIN_CONFIDENCE: float = 50.0
Z_SCORE_MAX_CONFIDENCE: float = 99.0

IQR_BASE_CONFIDENCE: float = 60.0
IQR_MAX_CONFIDENCE: float = 90.0

MOVING_AVG_BASE_CONFIDENCE: float = 50.0
MOVING_AVG_MAX_CONFIDENCE: float = 85.0

HIGH_SEVERITY_DEVIATION: float = 50.0
MEDIUM_SEVERITY_DEVIATION: float = 25.0


@dataclass
class _Flag:
    """One method's verdict on one point."""
    method: AnomalyMethod
    expected: float
    confidence: float
    description: str


# =============================================================================
# Helpers
# =============================================================================


def options_from_settings(settings: Settings) -> AnomalyDetectionOptions:
    """Build detection options from application settings."""
    return AnomalyDetectionOptions(
        zScoreThreshold=settings.z_score_threshold,
        iqrMultiplier=settings.iqr_multiplier,
        movingAvgWindow=settings.moving_avg_window,
        movingAvgThreshold=settings.moving_avg_threshold,
        minDataPoints=settings.min_series_points,
    )


def classify_severity(deviation_pct: float) -> AnomalySeverity:
    """
    Bucket an absolute percentage deviation into a severity.

    Args:
        deviation_pct: Signed % deviation from the expected value

    Returns:
        AnomalySeverity
    """
    magnitude = abs(deviation_pct)
    if magnitude >= HIGH_SEVERITY_DEVIATION:
        return AnomalySeverity.HIGH
    if magnitude >= MEDIUM_SEVERITY_DEVIATION:
        return AnomalySeverity.MEDIUM
    return AnomalySeverity.LOW


def z_score_confidence(abs_z: float, threshold: float) -> float:
    """
    Linear confidence from 50 at the threshold to 99 at |z| = 4.

    A threshold at or above 4 leaves no ramp, so any flagged point gets
    the cap.
    """
    span = Z_SCORE_FULL_CONFIDENCE - threshold
    if span <= 0:
        return Z_SCORE_MAX_CONFIDENCE

    ramp = (abs_z - threshold) / span
    confidence = Z_SCORE_MIN_CONFIDENCE + ramp * (Z_SCORE_MAX_CONFIDENCE - Z_SCORE_MIN_CONFIDENCE)
    return min(Z_SCORE_MAX_CONFIDENCE, max(Z_SCORE_MIN_CONFIDENCE, confidence))


def _drop_non_finite(series: List[TimeSeriesPoint], metric: str) -> List[TimeSeriesPoint]:
    clean = [p for p in series if math.isfinite(p.value)]
    dropped = len(series) - len(clean)
    if dropped:
        logger.warning(
            f"Dropped {dropped} non-finite value(s) from {metric} series before anomaly detection"
        )
    return clean


# =============================================================================
# Detection Methods
# =============================================================================


def _z_score_flags(
    values: np.ndarray,
    threshold: float,
) -> Optional[Dict[int, _Flag]]:
    """
    Flag points more than `threshold` standard deviations from the mean.

    Returns:
        Mapping of point index to flag, or None when the method is disabled
        because the series has zero variance.
    """
    avg = stats.mean(values)
    std = stats.stddev(values)
    if std == 0:
        return None

    flags: Dict[int, _Flag] = {}
    for i, value in enumerate(values):
        abs_z = abs((float(value) - avg) / std)
        if abs_z > threshold:
            flags[i] = _Flag(
                method=AnomalyMethod.Z_SCORE,
                expected=avg,
                confidence=z_score_confidence(abs_z, threshold),
                description=f"Value is {abs_z:.1f} standard deviations from mean",
            )
    return flags


def _iqr_flags(values: np.ndarray, multiplier: float) -> Dict[int, _Flag]:
    """
    Flag points outside the Tukey fences.

    With IQR = 0 the fences equal the flat band [Q1, Q3] and every point
    off the band is flagged at the confidence cap.
    """
    q1 = stats.percentile(values, 25)
    q3 = stats.percentile(values, 75)
    iqr = q3 - q1
    lower = q1 - multiplier * iqr
    upper = q3 + multiplier * iqr

    flags: Dict[int, _Flag] = {}
    for i, value in enumerate(values):
        v = float(value)
        if lower <= v <= upper:
            continue

        distance = lower - v if v < lower else v - upper
        expected = q1 if v < lower else q3

        if iqr == 0:
            confidence = IQR_MAX_CONFIDENCE
            description = "Value lies outside an otherwise flat series"
        else:
            confidence = min(IQR_MAX_CONFIDENCE, IQR_BASE_CONFIDENCE + 10.0 * distance / iqr)
            description = f"Value is {distance / iqr:.1f}x IQR beyond bounds"

        flags[i] = _Flag(
            method=AnomalyMethod.IQR,
            expected=expected,
            confidence=confidence,
            description=description,
        )
    return flags


def _moving_average_flags(
    values: np.ndarray,
    window: int,
    threshold: float,
) -> Optional[Dict[int, _Flag]]:
    """
    Flag points deviating from the trailing moving average.

    Returns:
        Mapping of point index to flag, or None when the series is too short
        to fill one window plus a point to test.
    """
    if values.size < window + 1:
        return None

    averages = stats.moving_average(values, window)
    flags: Dict[int, _Flag] = {}
    for i, avg in enumerate(averages):
        if avg is None or avg == 0:
            continue

        deviation = (float(values[i]) - avg) / abs(avg)
        if abs(deviation) > threshold:
            flags[i] = _Flag(
                method=AnomalyMethod.MOVING_AVERAGE,
                expected=avg,
                confidence=min(
                    MOVING_AVG_MAX_CONFIDENCE,
                    MOVING_AVG_BASE_CONFIDENCE + 100.0 * abs(deviation),
                ),
                description=f"{abs(deviation) * 100:.0f}% deviation from {window}-point average",
            )
    return flags


# =============================================================================
# Public API
# =============================================================================


def detect_anomalies(
    series: List[TimeSeriesPoint],
    metric: str,
    options: Optional[AnomalyDetectionOptions] = None,
) -> Union[AnomalyDetectionResult, InsufficientData]:
    """
    Detect anomalous points in one metric's time series.

    Non-finite values are dropped (and logged) before any method runs, so a
    NaN never reaches the mean or quartile calculations.

    Args:
        series: Points sorted by date ascending
        metric: Metric name, copied onto every anomaly
        options: Thresholds; defaults to AnomalyDetectionOptions()

    Returns:
        AnomalyDetectionResult with anomalies newest first, or
        InsufficientData when fewer than options.minDataPoints finite points
        remain.

    Example:
        >>> series = [TimeSeriesPoint(date=d, value=v) for d, v in ...]
        >>> result = detect_anomalies(series, "attendance")
        >>> result.anomalies[0].method
        <AnomalyMethod.Z_SCORE: 'z-score'>
    """
    opts = options or AnomalyDetectionOptions()
    clean = _drop_non_finite(series, metric)

    if len(clean) < opts.minDataPoints:
        return InsufficientData(
            analysis="anomaly",
            metric=metric,
            required=opts.minDataPoints,
            available=len(clean),
            reason=f"Anomaly detection needs at least {opts.minDataPoints} data points",
        )

    values = np.array([p.value for p in clean], dtype=np.float64)
    disabled: List[AnomalyMethod] = []

    z_flags = _z_score_flags(values, opts.zScoreThreshold)
    if z_flags is None:
        logger.debug(f"Z-score disabled for {metric}: zero variance")
        disabled.append(AnomalyMethod.Z_SCORE)
        z_flags = {}

    iqr_flags = _iqr_flags(values, opts.iqrMultiplier)

    ma_flags = _moving_average_flags(values, opts.movingAvgWindow, opts.movingAvgThreshold)
    if ma_flags is None:
        disabled.append(AnomalyMethod.MOVING_AVERAGE)
        ma_flags = {}

    # Priority order follows AnomalyMethod declaration order
    by_method = [z_flags, iqr_flags, ma_flags]
    method_counts = {
        AnomalyMethod.Z_SCORE.value: len(z_flags),
        AnomalyMethod.IQR.value: len(iqr_flags),
        AnomalyMethod.MOVING_AVERAGE.value: len(ma_flags),
    }

    flagged_indices = sorted(set(z_flags) | set(iqr_flags) | set(ma_flags))
    anomalies: List[Anomaly] = []

    for i in flagged_indices:
        verdicts = [flags[i] for flags in by_method if i in flags]
        primary = verdicts[0]
        point = clean[i]
        deviation = stats.deviation_pct(point.value, primary.expected)

        anomalies.append(Anomaly(
            date=point.date,
            metric=metric,
            value=point.value,
            expectedValue=primary.expected,
            deviationPct=deviation,
            severity=classify_severity(deviation),
            method=primary.method,
            confidence=max(v.confidence for v in verdicts),
            description=primary.description,
        ))

    anomalies.sort(key=lambda a: a.date, reverse=True)

    return AnomalyDetectionResult(
        metric=metric,
        anomalies=anomalies,
        totalDataPoints=len(clean),
        anomalyCount=len(anomalies),
        anomalyRate=len(anomalies) / len(clean) * 100.0,
        methodCounts=method_counts,
        disabledMethods=disabled,
    )

