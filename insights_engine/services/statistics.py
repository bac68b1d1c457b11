"""
Statistical primitives shared by every analysis service.

Pure functions over lists or numpy arrays with no I/O and no shared state,
so they are safe to call from worker threads. Empty input yields NaN rather
than raising; callers test the result with math.isnan before using it.

Conventions:
    - Standard deviation is the population value (ddof=0)
    - Percentiles interpolate linearly between closest ranks, with the rank
      index at p/100 * (n - 1)
    - Moving averages are trailing: the average at i covers points i-w..i-1
      and never includes point i itself

Dependencies:
    - numpy: vectorized arithmetic and the normal-equations solve
"""

import math
from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np


# =============================================================================
# Result Types
# =============================================================================


@dataclass
class RegressionFit:
    """
    Ordinary least squares fit of a single predictor.

    Attributes:
        slope: Change in y per unit of x
        intercept: Fitted y at x = 0
        r_squared: Coefficient of determination, clamped to [0, 1]
    """
    slope: float
    intercept: float
    r_squared: float

    def predict(self, x: float) -> float:
        return self.intercept + self.slope * x


@dataclass
class MultipleRegressionFit:
    """
    Ordinary least squares fit with several predictors.

    Attributes:
        intercept: Constant term
        coefficients: One coefficient per predictor column
        r_squared: Coefficient of determination, clamped to [0, 1]
        residual_standard_error: sqrt(SSres / (n - p - 1))
        sample_size: Number of rows used in the fit
    """
    intercept: float
    coefficients: List[float]
    r_squared: float
    residual_standard_error: float
    sample_size: int


# =============================================================================
# Descriptive Statistics
# =============================================================================


def _as_array(values: Sequence[float]) -> np.ndarray:
    return np.asarray(values, dtype=np.float64)


def mean(values: Sequence[float]) -> float:
    """
    Arithmetic mean.

    Args:
        values: Numeric values

    Returns:
        Mean, or NaN for empty input
    """
    arr = _as_array(values)
    if arr.size == 0:
        return math.nan
    return float(np.mean(arr))


def stddev(values: Sequence[float]) -> float:
    """
    Population standard deviation (ddof=0).

    Args:
        values: Numeric values

    Returns:
        Standard deviation, or NaN for empty input. A single value yields 0.
    """
    arr = _as_array(values)
    if arr.size == 0:
        return math.nan
    return float(np.std(arr))


def median(values: Sequence[float]) -> float:
    return percentile(values, 50.0)


def percentile(values: Sequence[float], p: float) -> float:
    """
    Percentile with linear interpolation between closest ranks.

    The rank index is p/100 * (n - 1) on the sorted data; a fractional index
    interpolates between its two neighbours.

    Args:
        values: Numeric values in any order
        p: Percentile in [0, 100]

    Returns:
        Interpolated percentile, or NaN for empty input

    Raises:
        ValueError: If p is outside [0, 100]

    Example:
        >>> percentile([1, 2, 3, 4], 25)
        1.75
    """
    if p < 0 or p > 100:
        raise ValueError(f"Percentile must be in [0, 100], got {p}")

    arr = _as_array(values)
    if arr.size == 0:
        return math.nan

    # numpy's default 'linear' method uses the same (n - 1) rank index
    return float(np.percentile(arr, p))


def is_finite_series(values: Sequence[float]) -> bool:
    """True when every value is a finite number (no NaN or +/-Infinity)."""
    arr = _as_array(values)
    return bool(np.all(np.isfinite(arr)))


def min_max_normalize(values: Sequence[float]) -> List[float]:
    """
    Scale values onto [0, 1] by their observed range.

    A constant input (zero range) maps every value to 0.0 so that the
    feature contributes no distance in similarity search.

    Args:
        values: Numeric values

    Returns:
        Normalized values in input order
    """
    arr = _as_array(values)
    if arr.size == 0:
        return []

    lo = float(np.min(arr))
    hi = float(np.max(arr))
    span = hi - lo
    if span == 0:
        return [0.0] * int(arr.size)

    return [float(v) for v in (arr - lo) / span]


# =============================================================================
# Regression
# =============================================================================


def linear_regression(
    y: Sequence[float],
    x: Optional[Sequence[float]] = None,
) -> RegressionFit:
    """
    Fit y = intercept + slope * x by ordinary least squares.

    Args:
        y: Response values
        x: Predictor values. Defaults to the index 0..n-1, which is how
            trend analysis regresses a series against time.

    Returns:
        RegressionFit. Fewer than 2 points yields NaN slope and intercept.
        A constant response has no variance to explain and reports
        r_squared = 0.0.

    Raises:
        ValueError: If x and y have different lengths
    """
    y_arr = _as_array(y)
    n = int(y_arr.size)
    x_arr = np.arange(n, dtype=np.float64) if x is None else _as_array(x)

    if x_arr.size != n:
        raise ValueError(f"x and y lengths differ: {x_arr.size} != {n}")

    if n < 2:
        return RegressionFit(slope=math.nan, intercept=math.nan, r_squared=0.0)

    x_mean = float(np.mean(x_arr))
    y_mean = float(np.mean(y_arr))
    sxx = float(np.sum((x_arr - x_mean) ** 2))

    if sxx == 0:
        # Vertical line: no slope is identifiable
        return RegressionFit(slope=0.0, intercept=y_mean, r_squared=0.0)

    sxy = float(np.sum((x_arr - x_mean) * (y_arr - y_mean)))
    slope = sxy / sxx
    intercept = y_mean - slope * x_mean

    predicted = intercept + slope * x_arr
    ss_res = float(np.sum((y_arr - predicted) ** 2))
    ss_tot = float(np.sum((y_arr - y_mean) ** 2))

    r_squared = 0.0 if ss_tot == 0 else 1.0 - ss_res / ss_tot

    return RegressionFit(
        slope=slope,
        intercept=intercept,
        r_squared=min(1.0, max(0.0, r_squared)),
    )


def multiple_linear_regression(
    x_rows: Sequence[Sequence[float]],
    y: Sequence[float],
) -> MultipleRegressionFit:
    """
    Fit y = b0 + b1*x1 + ... + bp*xp by the normal equations.

    Solves (X'X) b = X'y with an intercept column prepended to X. When the
    design matrix is rank deficient (for example a constant feature column)
    the minimum-norm least squares solution is used instead.

    Args:
        x_rows: n rows of p predictor values
        y: n response values

    Returns:
        MultipleRegressionFit

    Raises:
        ValueError: If shapes disagree or n <= p + 1, which leaves no
            degrees of freedom for the residual standard error
    """
    y_arr = _as_array(y)
    x_arr = np.asarray(x_rows, dtype=np.float64)

    if x_arr.ndim != 2:
        raise ValueError("x_rows must be a 2-dimensional table")

    n, p = x_arr.shape
    if y_arr.size != n:
        raise ValueError(f"x_rows has {n} rows but y has {y_arr.size} values")
    if n <= p + 1:
        raise ValueError(f"Need more than {p + 1} rows to fit {p} features, got {n}")

    design = np.column_stack([np.ones(n), x_arr])
    gram = design.T @ design
    moment = design.T @ y_arr

    # Collinear columns make X'X singular; fall back to the minimum-norm fit
    if np.linalg.matrix_rank(design) < p + 1:
        beta = np.linalg.lstsq(design, y_arr, rcond=None)[0]
    else:
        beta = np.linalg.solve(gram, moment)

    predicted = design @ beta
    residuals = y_arr - predicted
    ss_res = float(np.sum(residuals ** 2))
    ss_tot = float(np.sum((y_arr - np.mean(y_arr)) ** 2))

    r_squared = 0.0 if ss_tot == 0 else 1.0 - ss_res / ss_tot

    return MultipleRegressionFit(
        intercept=float(beta[0]),
        coefficients=[float(b) for b in beta[1:]],
        r_squared=min(1.0, max(0.0, r_squared)),
        residual_standard_error=math.sqrt(ss_res / (n - p - 1)),
        sample_size=n,
    )


# =============================================================================
# Smoothing and Distance
# =============================================================================


def moving_average(values: Sequence[float], window: int) -> List[Optional[float]]:
    """
    Trailing moving average.

    Element i is the mean of the `window` points strictly before i, so the
    first `window` elements are None.

    Args:
        values: Numeric values in time order
        window: Number of preceding points to average

    Returns:
        List the same length as values

    Raises:
        ValueError: If window < 1
    """
    if window < 1:
        raise ValueError(f"Window must be >= 1, got {window}")

    arr = _as_array(values)
    result: List[Optional[float]] = [None] * int(arr.size)
    if arr.size <= window:
        return result

    cumulative = np.concatenate([[0.0], np.cumsum(arr)])
    for i in range(window, int(arr.size)):
        result[i] = float((cumulative[i] - cumulative[i - window]) / window)

    return result


def euclidean_distance(
    a: Sequence[float],
    b: Sequence[float],
    weights: Optional[Sequence[float]] = None,
) -> float:
    """
    Weighted Euclidean distance sqrt(sum(w * (a - b)^2)).

    Args:
        a: First vector
        b: Second vector
        weights: Per-dimension weights; defaults to all ones

    Raises:
        ValueError: If the vectors (or weights) have different lengths
    """
    a_arr = _as_array(a)
    b_arr = _as_array(b)
    if a_arr.shape != b_arr.shape:
        raise ValueError("Vectors must have the same length")

    w_arr = np.ones_like(a_arr) if weights is None else _as_array(weights)
    if w_arr.shape != a_arr.shape:
        raise ValueError("Weights must match vector length")

    return float(np.sqrt(np.sum(w_arr * (a_arr - b_arr) ** 2)))


def deviation_pct(value: float, expected: float) -> float:
    """
    Signed percentage deviation of value from expected.

    Returns 0.0 when expected is 0, since the ratio is undefined.
    """
    if expected == 0:
        return 0.0
    return (value - expected) / abs(expected) * 100.0
