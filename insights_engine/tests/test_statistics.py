"""
Tests for the statistical primitives.

Covers the conventions every analysis relies on:
- population standard deviation (ddof=0)
- linear-interpolation percentiles with rank index p/100 * (n - 1)
- trailing moving averages that exclude the current point
- OLS and normal-equation regression, including degenerate input
"""

import math

import numpy as np
import pytest

from insights_engine.services import statistics as stats


class TestDescriptiveStatistics:
    """Test suite for mean, stddev, median and percentile."""

    def test_stddev_is_population_value(self) -> None:
        """Standard deviation divides by n, not n - 1."""
        values = [2, 4, 4, 4, 5, 5, 7, 9]

        assert stats.stddev(values) == pytest.approx(2.0), "Population std of this set is exactly 2"

    def test_empty_input_yields_nan(self) -> None:
        """Empty input returns NaN instead of raising."""
        assert math.isnan(stats.mean([]))
        assert math.isnan(stats.stddev([]))
        assert math.isnan(stats.percentile([], 50))

    def test_single_value_has_zero_spread(self) -> None:
        assert stats.stddev([42.0]) == 0.0
        assert stats.median([42.0]) == 42.0

    def test_percentile_interpolates_linearly(self) -> None:
        """The 25th percentile of 1..4 falls at rank index 0.75."""
        assert stats.percentile([4, 1, 3, 2], 25) == pytest.approx(1.75)
        assert stats.percentile([1, 2, 3, 4], 0) == 1.0
        assert stats.percentile([1, 2, 3, 4], 100) == 4.0

    def test_percentile_rejects_out_of_range(self) -> None:
        with pytest.raises(ValueError):
            stats.percentile([1, 2, 3], 101)
        with pytest.raises(ValueError):
            stats.percentile([1, 2, 3], -1)

    def test_median_of_even_count(self) -> None:
        assert stats.median([1, 2, 3, 4]) == pytest.approx(2.5)

    def test_fiftieth_percentile_is_median_of_odd_count(self) -> None:
        values = [7, 1, 5, 3, 9]

        assert stats.percentile(values, 50) == stats.median(values)
        assert stats.percentile(values, 50) == pytest.approx(5.0)

    def test_is_finite_series(self) -> None:
        assert stats.is_finite_series([1.0, 2.0])
        assert not stats.is_finite_series([1.0, float('nan')])
        assert not stats.is_finite_series([float('inf')])


class TestLinearRegression:
    """Test suite for single-predictor OLS."""

    def test_perfect_line(self) -> None:
        """A noiseless line is recovered exactly with R² = 1."""
        fit = stats.linear_regression([3, 5, 7, 9, 11])

        assert fit.slope == pytest.approx(2.0)
        assert fit.intercept == pytest.approx(3.0)
        assert fit.r_squared == pytest.approx(1.0)
        assert fit.predict(10) == pytest.approx(23.0)

    def test_constant_series_has_zero_r_squared(self) -> None:
        """With no variance to explain, R² is reported as 0."""
        fit = stats.linear_regression([5, 5, 5, 5])

        assert fit.slope == pytest.approx(0.0)
        assert fit.r_squared == 0.0, "Constant response must not look like a perfect fit"

    def test_too_few_points(self) -> None:
        fit = stats.linear_regression([1.0])

        assert math.isnan(fit.slope)
        assert math.isnan(fit.intercept)

    def test_explicit_x(self) -> None:
        fit = stats.linear_regression([1, 2, 3], x=[0, 10, 20])

        assert fit.slope == pytest.approx(0.1)

    def test_mismatched_lengths(self) -> None:
        with pytest.raises(ValueError):
            stats.linear_regression([1, 2, 3], x=[1, 2])


class TestMultipleLinearRegression:
    """Test suite for the normal-equations fit."""

    def test_recovers_known_coefficients(self) -> None:
        rng = np.random.default_rng(7)
        x = rng.normal(size=(40, 3))
        y = 5.0 + x @ np.array([1.5, -2.0, 0.5])

        fit = stats.multiple_linear_regression(x.tolist(), y.tolist())

        assert fit.intercept == pytest.approx(5.0)
        assert fit.coefficients == pytest.approx([1.5, -2.0, 0.5])
        assert fit.r_squared == pytest.approx(1.0)
        assert fit.residual_standard_error == pytest.approx(0.0, abs=1e-9)
        assert fit.sample_size == 40

    def test_collinear_columns_fall_back_to_least_squares(self) -> None:
        """A constant feature column duplicates the intercept but still fits."""
        rng = np.random.default_rng(11)
        signal = rng.normal(size=20)
        x = np.column_stack([signal, np.ones(20)])
        y = 2.0 + 3.0 * signal

        fit = stats.multiple_linear_regression(x.tolist(), y.tolist())

        predicted = fit.intercept + x @ np.array(fit.coefficients)
        assert np.allclose(predicted, y)
        assert fit.r_squared == pytest.approx(1.0)

    def test_requires_residual_degrees_of_freedom(self) -> None:
        """n must exceed p + 1."""
        with pytest.raises(ValueError):
            stats.multiple_linear_regression([[1.0, 2.0], [2.0, 1.0], [3.0, 3.0]], [1.0, 2.0, 3.0])


class TestSmoothingAndDistance:
    """Test suite for moving averages, normalization and distances."""

    def test_moving_average_is_trailing(self) -> None:
        """Element i averages the window strictly before i."""
        result = stats.moving_average([1, 2, 3, 4], 2)

        assert result == [None, None, 1.5, 2.5]

    def test_moving_average_short_series(self) -> None:
        assert stats.moving_average([1, 2], 3) == [None, None]

    def test_moving_average_rejects_zero_window(self) -> None:
        with pytest.raises(ValueError):
            stats.moving_average([1, 2, 3], 0)

    def test_min_max_normalize(self) -> None:
        assert stats.min_max_normalize([10, 20, 30]) == [0.0, 0.5, 1.0]

    def test_min_max_normalize_constant_column(self) -> None:
        """Zero range maps every value to 0 rather than dividing by zero."""
        assert stats.min_max_normalize([7, 7, 7]) == [0.0, 0.0, 0.0]

    def test_weighted_euclidean_distance(self) -> None:
        assert stats.euclidean_distance([0, 0], [3, 4]) == pytest.approx(5.0)
        assert stats.euclidean_distance([0, 0], [1, 1], [4, 0]) == pytest.approx(2.0)

    def test_deviation_pct(self) -> None:
        assert stats.deviation_pct(150, 100) == pytest.approx(50.0)
        assert stats.deviation_pct(50, -100) == pytest.approx(150.0)
        assert stats.deviation_pct(5, 0) == 0.0
