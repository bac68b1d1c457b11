"""
Tests for anomaly detection.

Test Classes:
- TestDetectAnomalies: End-to-end detection on the canonical spike series
- TestDegenerateInput: Zero variance, short and non-finite series
- TestConfidenceAndSeverity: Scoring helpers
"""

from datetime import date
from typing import List

import pytest

from insights_engine.core.config import Settings
from insights_engine.models import (
    AnomalyDetectionOptions,
    AnomalyDetectionResult,
    AnomalyMethod,
    AnomalySeverity,
    InsufficientData,
    TimeSeriesPoint,
)
from insights_engine.services.anomaly_detection import (
    classify_severity,
    detect_anomalies,
    options_from_settings,
    z_score_confidence,
)
from insights_engine.tests.conftest import build_series


class TestDetectAnomalies:
    """Test suite for detect_anomalies on realistic series."""

    def test_single_spike_is_flagged(self, spike_series: List[TimeSeriesPoint]) -> None:
        """The 400 spike is the only anomaly, reported by z-score."""
        result = detect_anomalies(spike_series, "attendance")

        assert isinstance(result, AnomalyDetectionResult)
        assert result.anomalyCount == 1, f"Expected exactly one anomaly, got {result.anomalies}"

        anomaly = result.anomalies[0]
        assert anomaly.value == 400.0
        assert anomaly.date == spike_series[4].date
        assert anomaly.method == AnomalyMethod.Z_SCORE, "Z-score outranks IQR when both flag"
        assert anomaly.expectedValue == pytest.approx(1003 / 7)
        assert anomaly.deviationPct == pytest.approx((400 - 1003 / 7) / (1003 / 7) * 100)
        assert anomaly.severity == AnomalySeverity.HIGH

    def test_confidence_is_maximum_across_methods(self, spike_series: List[TimeSeriesPoint]) -> None:
        """IQR flags the spike at its 90 cap, above the z-score confidence."""
        result = detect_anomalies(spike_series, "attendance")

        assert result.anomalies[0].confidence == pytest.approx(90.0)
        assert result.methodCounts["z-score"] == 1
        assert result.methodCounts["iqr"] == 1

    def test_moving_average_disabled_for_short_series(self, spike_series: List[TimeSeriesPoint]) -> None:
        """Seven points cannot fill a 7-point window plus a tested point."""
        result = detect_anomalies(spike_series, "attendance")

        assert AnomalyMethod.MOVING_AVERAGE in result.disabledMethods
        assert result.methodCounts["moving-average"] == 0

    def test_anomalies_are_newest_first(self) -> None:
        values = [100, 101, 99, 100, 300, 100, 101, 99, 100, 101, 100, 99, 310, 100]
        result = detect_anomalies(build_series(values), "attendance")

        dates = [a.date for a in result.anomalies]
        assert dates == sorted(dates, reverse=True), "Anomalies must be sorted by date descending"
        assert len(dates) >= 2

    def test_moving_average_flags_level_shift(self) -> None:
        """A drop against a trailing window is caught by the moving average."""
        values = [100] * 8 + [60]
        options = AnomalyDetectionOptions(zScoreThreshold=3.5, movingAvgWindow=7)

        result = detect_anomalies(build_series(values), "attendance", options)

        assert result.methodCounts["moving-average"] == 1
        drop = result.anomalies[0]
        assert drop.value == 60.0
        assert drop.deviationPct < 0

    def test_anomaly_rate(self, spike_series: List[TimeSeriesPoint]) -> None:
        result = detect_anomalies(spike_series, "attendance")

        assert result.totalDataPoints == 7
        assert result.anomalyRate == pytest.approx(100 / 7)


class TestDegenerateInput:
    """Test suite for inputs that disable methods or the whole analysis."""

    def test_constant_series_has_no_anomalies(self) -> None:
        """Zero variance disables z-score and nothing lies off the flat band."""
        result = detect_anomalies(build_series([5, 5, 5, 5, 5, 5]), "attendance")

        assert isinstance(result, AnomalyDetectionResult)
        assert result.anomalies == []
        assert AnomalyMethod.Z_SCORE in result.disabledMethods

    def test_short_series_is_insufficient(self) -> None:
        result = detect_anomalies(build_series([1, 2, 3, 4]), "attendance")

        assert isinstance(result, InsufficientData)
        assert result.required == 5
        assert result.available == 4

    def test_non_finite_values_are_dropped(self) -> None:
        """NaN and infinity never reach the statistics; too few remain here."""
        points = build_series([1, 2, 3, 4]) + [
            TimeSeriesPoint(date=date(2026, 3, 1), value=float("nan")),
            TimeSeriesPoint(date=date(2026, 3, 8), value=float("inf")),
        ]

        result = detect_anomalies(points, "attendance")

        assert isinstance(result, InsufficientData)
        assert result.available == 4


class TestConfidenceAndSeverity:
    """Test suite for scoring helpers."""

    def test_severity_buckets(self) -> None:
        assert classify_severity(75.0) == AnomalySeverity.HIGH
        assert classify_severity(-50.0) == AnomalySeverity.HIGH
        assert classify_severity(30.0) == AnomalySeverity.MEDIUM
        assert classify_severity(-10.0) == AnomalySeverity.LOW

    def test_z_score_confidence_ramp(self) -> None:
        assert z_score_confidence(2.0, 2.0) == pytest.approx(50.0)
        assert z_score_confidence(3.0, 2.0) == pytest.approx(74.5)
        assert z_score_confidence(6.0, 2.0) == pytest.approx(99.0), "Confidence is capped at 99"

    def test_options_from_settings(self) -> None:
        settings = Settings(_env_file=None, z_score_threshold=3.0, moving_avg_window=5)

        options = options_from_settings(settings)

        assert options.zScoreThreshold == 3.0
        assert options.movingAvgWindow == 5
