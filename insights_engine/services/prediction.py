"""
Prediction Service.

Short-horizon forecasts from a closed-form multiple linear regression. There
is no iterative training: a batch job fits coefficients with the normal
equations and stores them in the ModelRegistry, and online prediction is a
pure read of those coefficients.

Features (see PREDICTION_FEATURE_NAMES):
    - isWeekend: 1.0 when the target date is a Saturday or Sunday
    - monthSin / monthCos: month of the target date on the unit circle, so
      December and January are neighbours
    - historicalAverage: mean of the entity's history before the target
    - recentTrend: OLS slope of the last RECENT_TREND_POINTS values

Prediction:
    predicted = intercept + sum(coefficient_i * feature_i)
    95% CI    = predicted +/- 1.96 * residual standard error
    confidence = R² * 100
    factors   = per-feature contribution as % of |predicted|, largest first

Model Registry:
    Holds the latest model per metric in memory and persists it to the
    prediction_model table so a restarted API serves the same coefficients.
    A metric without a model yields PredictionUnavailable, never a guess.

Usage:
    registry = ModelRegistry(pool)
    await registry.load()

    features = build_features(history, target_date)
    result = predict(features, registry.get("attendance"), "attendance")
"""

import logging
import math
import threading
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Dict, List, Optional, Union

from asyncpg import Pool

from insights_engine.core.errors import (
    DegenerateInputError,
    InsufficientDataError,
    ModelUnavailableError,
)
from insights_engine.models.enums import FactorDirection
from insights_engine.models.schemas import (
    PREDICTION_FEATURE_NAMES,
    ConfidenceInterval,
    ModelEvaluation,
    Prediction,
    PredictionFactor,
    PredictionFeatures,
    PredictionUnavailable,
    RegressionModel,
    TimeSeriesPoint,
)
from insights_engine.services import statistics as stats
from insights_engine.services.trend_analysis import median_cadence_days
from insights_engine.sql.state_queries import (
    PREDICTION_MODEL_DDL,
    get_model_upsert_query,
    get_models_query,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

# z value for a two-sided 95% interval
CI_Z_VALUE: float = 1.96

# Points used for the recentTrend slope
RECENT_TREND_POINTS: int = 5

DEFAULT_MIN_HISTORY: int = 5


@dataclass
class TrainingRow:
    """
    One supervised example: features known before a date and the outcome on it.

    Attributes:
        entity_id: Entity the example was drawn from
        features: Features computed from strictly earlier points
        target: Observed metric value on features.targetDate
    """
    entity_id: str
    features: PredictionFeatures
    target: float


# =============================================================================
# Feature Engineering
# =============================================================================


def build_features(history: List[TimeSeriesPoint], target_date: date) -> PredictionFeatures:
    """
    Build the feature vector for a forecast on `target_date`.

    Args:
        history: Points strictly before target_date, sorted ascending.
            Non-finite values are ignored.
        target_date: Date being forecast

    Returns:
        PredictionFeatures

    Raises:
        InsufficientDataError: If history has no finite values
    """
    values = [p.value for p in history if math.isfinite(p.value)]
    if not values:
        raise InsufficientDataError(
            "Prediction features need at least one historical value",
            required=1,
            available=0,
        )

    recent = values[-RECENT_TREND_POINTS:]
    recent_trend = stats.linear_regression(recent).slope if len(recent) >= 2 else 0.0

    angle = 2.0 * math.pi * (target_date.month - 1) / 12.0

    return PredictionFeatures(
        targetDate=target_date,
        isWeekend=1.0 if target_date.weekday() >= 5 else 0.0,
        monthSin=math.sin(angle),
        monthCos=math.cos(angle),
        historicalAverage=stats.mean(values),
        recentTrend=recent_trend,
    )


def next_target_date(series: List[TimeSeriesPoint]) -> date:
    """
    The date one median cadence after the last point.

    Raises:
        InsufficientDataError: If the series is empty
    """
    if not series:
        raise InsufficientDataError("Cannot project a target date from an empty series")

    cadence = max(1, int(round(median_cadence_days(series))))
    return series[-1].date + timedelta(days=cadence)


def build_training_rows(
    series_by_entity: Dict[str, List[TimeSeriesPoint]],
    min_history: int = DEFAULT_MIN_HISTORY,
) -> List[TrainingRow]:
    """
    Turn historical series into supervised training rows.

    For every point with at least `min_history` earlier points, the features
    are built from those earlier points only and the point's value is the
    target. No row ever sees its own outcome.

    Args:
        series_by_entity: Series keyed by entity id, each sorted ascending
        min_history: Minimum earlier points before a row is emitted

    Returns:
        Training rows in entity then date order
    """
    rows: List[TrainingRow] = []

    for entity_id in sorted(series_by_entity):
        series = [p for p in series_by_entity[entity_id] if math.isfinite(p.value)]
        for i in range(min_history, len(series)):
            features = build_features(series[:i], series[i].date)
            rows.append(TrainingRow(entity_id=entity_id, features=features, target=series[i].value))

    return rows


# =============================================================================
# Model Fitting and Prediction
# =============================================================================


def fit_model(
    metric: str,
    rows: List[TrainingRow],
    fitted_at: Optional[datetime] = None,
) -> RegressionModel:
    """
    Fit regression coefficients for one metric by the normal equations.

    Args:
        metric: Metric the model forecasts
        rows: Training rows
        fitted_at: Timestamp recorded on the model (defaults to now, UTC)

    Returns:
        RegressionModel

    Raises:
        InsufficientDataError: If there are not more rows than parameters
            (features + intercept), which leaves no residual degrees of freedom
        DegenerateInputError: If any feature or target is not finite
    """
    feature_count = len(PREDICTION_FEATURE_NAMES)
    required = feature_count + 2

    if len(rows) < required:
        raise InsufficientDataError(
            f"Fitting {metric} needs at least {required} training rows, got {len(rows)}",
            required=required,
            available=len(rows),
        )

    x_rows = [row.features.as_vector(PREDICTION_FEATURE_NAMES) for row in rows]
    y = [row.target for row in rows]

    if not (stats.is_finite_series(y) and all(stats.is_finite_series(r) for r in x_rows)):
        raise DegenerateInputError(f"Training rows for {metric} contain non-finite values")
    fit = stats.multiple_linear_regression(x_rows, y)

    logger.info(
        f"Fitted {metric} model on {fit.sample_size} rows: "
        f"R²={fit.r_squared:.3f}, SE={fit.residual_standard_error:.3f}"
    )

    return RegressionModel(
        metric=metric,
        featureNames=list(PREDICTION_FEATURE_NAMES),
        intercept=fit.intercept,
        coefficients=fit.coefficients,
        residualStandardError=fit.residual_standard_error,
        rSquared=fit.r_squared,
        sampleSize=fit.sample_size,
        fittedAt=fitted_at or datetime.now(timezone.utc),
    )


def predict(
    features: PredictionFeatures,
    model: Optional[RegressionModel],
    metric: str,
) -> Union[Prediction, PredictionUnavailable]:
    """
    Forecast a metric from precomputed features and stored coefficients.

    Args:
        features: Feature vector for the target date
        model: Fitted model, or None when none has been fitted yet
        metric: Metric being forecast

    Returns:
        Prediction, or PredictionUnavailable when there is no usable model
    """
    if model is None:
        return PredictionUnavailable(
            metric=metric,
            reason=f"No fitted prediction model for metric '{metric}'",
        )

    if len(model.coefficients) != len(model.featureNames):
        return PredictionUnavailable(
            metric=metric,
            reason=f"Model for '{metric}' has mismatched coefficients",
        )

    vector = features.as_vector(model.featureNames)
    contributions = [c * f for c, f in zip(model.coefficients, vector)]
    predicted = model.intercept + sum(contributions)

    if not math.isfinite(predicted):
        return PredictionUnavailable(metric=metric, reason="Prediction is not a finite number")

    margin = CI_Z_VALUE * model.residualStandardError
    accuracy = min(100.0, max(0.0, model.rSquared * 100.0))

    factors: List[PredictionFactor] = []
    for name, contribution in zip(model.featureNames, contributions):
        impact = 0.0 if predicted == 0 else contribution / abs(predicted) * 100.0
        factors.append(PredictionFactor(
            name=name,
            impactPct=impact,
            direction=FactorDirection.POSITIVE if contribution >= 0 else FactorDirection.NEGATIVE,
        ))
    factors.sort(key=lambda f: abs(f.impactPct), reverse=True)

    return Prediction(
        metric=metric,
        targetDate=features.targetDate,
        predictedValue=predicted,
        confidenceInterval=ConfidenceInterval(lower=predicted - margin, upper=predicted + margin),
        confidence=accuracy,
        factors=factors,
        modelAccuracy=accuracy,
    )


def evaluate_model(model: RegressionModel, rows: List[TrainingRow]) -> ModelEvaluation:
    """
    Back-test a model against rows with known outcomes.

    Returns:
        ModelEvaluation with RMSE, mean absolute % error (over non-zero
        outcomes) and the share of outcomes inside the 95% interval

    Raises:
        InsufficientDataError: If rows is empty
    """
    if not rows:
        raise InsufficientDataError("Model evaluation needs at least one row", required=1, available=0)

    squared_errors: List[float] = []
    pct_errors: List[float] = []
    inside = 0

    for row in rows:
        result = predict(row.features, model, model.metric)
        if isinstance(result, PredictionUnavailable):
            continue

        error = result.predictedValue - row.target
        squared_errors.append(error ** 2)
        if row.target != 0:
            pct_errors.append(abs(error) / abs(row.target) * 100.0)
        if result.confidenceInterval.lower <= row.target <= result.confidenceInterval.upper:
            inside += 1

    evaluated = len(squared_errors)
    if evaluated == 0:
        raise InsufficientDataError("No row could be predicted", required=1, available=0)

    return ModelEvaluation(
        metric=model.metric,
        sampleSize=evaluated,
        rmse=math.sqrt(stats.mean(squared_errors)),
        meanErrorPct=stats.mean(pct_errors) if pct_errors else 0.0,
        within95Ci=inside / evaluated * 100.0,
    )


# =============================================================================
# Model Registry
# =============================================================================


class ModelRegistry:
    """
    Latest fitted RegressionModel per metric.

    Reads are plain dictionary lookups guarded by a lock so worker threads
    and the event loop never see a half-replaced entry. Persistence is
    optional: without a pool the registry is memory-only.
    """

    def __init__(self, pool: Optional[Pool] = None):
        self._pool = pool
        self._models: Dict[str, RegressionModel] = {}
        self._lock = threading.Lock()

    def get(self, metric: str) -> Optional[RegressionModel]:
        with self._lock:
            return self._models.get(metric)

    def set(self, model: RegressionModel) -> None:
        with self._lock:
            self._models[model.metric] = model

    def require(self, metric: str) -> RegressionModel:
        """
        Model for a metric, for callers that cannot proceed without one.

        Raises:
            ModelUnavailableError: If no model has been fitted or loaded
        """
        model = self.get(metric)
        if model is None:
            raise ModelUnavailableError(metric)
        return model

    def metrics(self) -> List[str]:
        with self._lock:
            return sorted(self._models)

    async def load(self) -> int:
        """
        Load every persisted model into memory.

        Returns:
            Number of models loaded (0 without a pool)
        """
        if self._pool is None:
            return 0

        async with self._pool.acquire() as conn:
            await conn.execute(PREDICTION_MODEL_DDL)
            rows = await conn.fetch(get_models_query())

        for row in rows:
            self.set(RegressionModel.model_validate_json(row['payload']))

        logger.info(f"Loaded {len(rows)} prediction model(s)")
        return len(rows)

    async def save(self, model: RegressionModel) -> None:
        """Store a model in memory and, when a pool is configured, persist it."""
        self.set(model)

        if self._pool is None:
            return

        async with self._pool.acquire() as conn:
            await conn.execute(PREDICTION_MODEL_DDL)
            await conn.execute(
                get_model_upsert_query(),
                model.metric,
                model.model_dump_json(),
                model.fittedAt,
            )
