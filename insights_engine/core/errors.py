"""
Error taxonomy for the Insights Engine.

Failures inside one analysis branch never abort sibling branches. Most of
these conditions are therefore surfaced as typed results (InsufficientData,
PredictionUnavailable) by the analysis services, and the exceptions below are
raised only at the seams where a caller must decide what to do:

- InsufficientDataError: too few points / rows / population members
- DegenerateInputError: zero variance, NaN or Infinity in the input
- ModelUnavailableError: no fitted coefficients for the requested metric
- StoreUnavailableError: the Metric Store or Insight Cache is unreachable
- FormulaError: a derived-metric formula failed to parse or evaluate

Only a StoreUnavailableError with no fallback reaches API callers (HTTP 503).
"""

from typing import Optional


class InsightsEngineError(Exception):
    """Base class for all engine errors."""


class InsufficientDataError(InsightsEngineError):
    """Raised when an operation needs more data than it was given."""

    def __init__(self, message: str, required: int = 0, available: int = 0):
        super().__init__(message)
        self.required = required
        self.available = available


class DegenerateInputError(InsightsEngineError):
    """Raised when input has zero variance or non-finite values."""


class ModelUnavailableError(InsightsEngineError):
    """Raised when no fitted prediction model exists for a metric."""

    def __init__(self, metric: str):
        super().__init__(f"No fitted prediction model for metric '{metric}'")
        self.metric = metric


class StoreUnavailableError(InsightsEngineError):
    """Raised when the Metric Store or Insight Cache cannot be reached."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class FormulaError(InsightsEngineError):
    """Raised when a derived-metric formula is invalid."""
