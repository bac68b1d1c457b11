"""
Prediction Model Refit Job.

Batch step that keeps the online Predictor a pure read of coefficients:
for each configured metric it pulls every entity's history from the Metric
Store, builds leakage-free training rows, fits the regression by the normal
equations, back-tests it and stores it in the ModelRegistry (and therefore
in the prediction_model table).

A metric with too little history keeps its previous model; the result dict
records it as skipped.

Usage:
    from insights_engine.jobs.refit_models import refit_all_models

    results = await refit_all_models(store, registry, settings)

    # From the command line (uses DATABASE_URL)
    python -m insights_engine.jobs.refit_models
"""

import asyncio
import logging
from datetime import date, timedelta
from typing import Any, Dict, Optional

from insights_engine.core.config import Settings
from insights_engine.core.errors import (
    DegenerateInputError,
    InsufficientDataError,
    ModelUnavailableError,
    StoreUnavailableError,
)
from insights_engine.services.metric_store import DateRange, MetricStore
from insights_engine.services.prediction import (
    ModelRegistry,
    build_training_rows,
    evaluate_model,
    fit_model,
)

logger = logging.getLogger(__name__)


async def refit_model(
    store: MetricStore,
    registry: ModelRegistry,
    metric: str,
    settings: Settings,
    date_range: Optional[DateRange] = None,
) -> Dict[str, Any]:
    """
    Refit the prediction model for one metric.

    Args:
        store: Metric Store to read history from
        registry: Registry receiving the fitted model
        metric: Metric to fit
        settings: Application settings (history window, min history)
        date_range: History window (default: the last series_window_days)

    Returns:
        Dict with the following keys:
        - success: bool indicating if the operation succeeded
        - metric: The metric name
        - skipped: bool if there was too little history to fit
        - reason: Explanation if skipped
        - rows: Training rows used
        - r_squared, rmse, within_95_ci: Fit quality (if fitted)
        - error: Error message if unsuccessful
    """
    if date_range is None:
        end = date.today()
        date_range = DateRange(start=end - timedelta(days=settings.series_window_days), end=end)

    try:
        series_by_entity = await store.get_all_series(metric, date_range)
    except StoreUnavailableError as e:
        logger.warning(f"Refit of {metric} failed: {e}")
        return {'success': False, 'metric': metric, 'error': str(e)}

    rows = await asyncio.to_thread(
        build_training_rows, series_by_entity, settings.prediction_min_history
    )

    try:
        model = await asyncio.to_thread(fit_model, metric, rows)
    except (InsufficientDataError, DegenerateInputError) as e:
        logger.info(f"Not refitting {metric}: {e}")
        return {
            'success': True,
            'skipped': True,
            'metric': metric,
            'reason': str(e),
            'rows': len(rows),
        }

    evaluation = await asyncio.to_thread(evaluate_model, model, rows)

    try:
        await registry.save(model)
    except Exception as e:
        logger.error(f"Fitted {metric} model could not be persisted: {e}", exc_info=True)
        return {
            'success': True,
            'metric': metric,
            'warning': f'Fitted but failed to persist: {e}',
            'rows': len(rows),
            'r_squared': model.rSquared,
        }

    return {
        'success': True,
        'metric': metric,
        'rows': len(rows),
        'r_squared': model.rSquared,
        'rmse': evaluation.rmse,
        'within_95_ci': evaluation.within95Ci,
    }


async def evaluate_registered_model(
    store: MetricStore,
    registry: ModelRegistry,
    metric: str,
    settings: Settings,
    date_range: Optional[DateRange] = None,
) -> Dict[str, Any]:
    """
    Back-test the model currently serving predictions against recent history.

    Used to decide whether a refit is worthwhile without replacing the model.

    Returns:
        Dict with the following keys:
        - success: bool indicating if the evaluation ran
        - metric: The metric name
        - skipped: bool if there is no model or no usable history
        - reason: Explanation if skipped
        - rows, rmse, mean_error_pct, within_95_ci: Back-test results
        - error: Error message if unsuccessful
    """
    try:
        model = registry.require(metric)
    except ModelUnavailableError as e:
        return {'success': True, 'skipped': True, 'metric': metric, 'reason': str(e)}

    if date_range is None:
        end = date.today()
        date_range = DateRange(start=end - timedelta(days=settings.series_window_days), end=end)

    try:
        series_by_entity = await store.get_all_series(metric, date_range)
    except StoreUnavailableError as e:
        logger.warning(f"Evaluation of {metric} failed: {e}")
        return {'success': False, 'metric': metric, 'error': str(e)}

    rows = await asyncio.to_thread(
        build_training_rows, series_by_entity, settings.prediction_min_history
    )
    try:
        evaluation = await asyncio.to_thread(evaluate_model, model, rows)
    except InsufficientDataError as e:
        return {'success': True, 'skipped': True, 'metric': metric, 'reason': str(e)}

    return {
        'success': True,
        'metric': metric,
        'rows': evaluation.sampleSize,
        'rmse': evaluation.rmse,
        'mean_error_pct': evaluation.meanErrorPct,
        'within_95_ci': evaluation.within95Ci,
    }


async def refit_all_models(
    store: MetricStore,
    registry: ModelRegistry,
    settings: Settings,
    date_range: Optional[DateRange] = None,
) -> Dict[str, Any]:
    """
    Refit models for every metric in settings.insight_metrics.

    Returns:
        Dict with the following keys:
        - success: bool if no metric failed
        - results: List of per-metric result dicts
        - summary: Dict with total, fitted_count, skipped_count, failed_count
    """
    results = []
    fitted_count = 0
    skipped_count = 0
    failed_count = 0

    for metric in settings.insight_metrics:
        result = await refit_model(store, registry, metric, settings, date_range)
        results.append(result)

        if result.get('success'):
            if result.get('skipped'):
                skipped_count += 1
            else:
                fitted_count += 1
        else:
            failed_count += 1

    return {
        'success': failed_count == 0,
        'results': results,
        'summary': {
            'total': len(settings.insight_metrics),
            'fitted_count': fitted_count,
            'skipped_count': skipped_count,
            'failed_count': failed_count,
        },
    }


async def _run_from_environment() -> Dict[str, Any]:
    from insights_engine.main import build_resources, release_resources

    resources = await build_resources()
    try:
        if resources.store is None:
            raise StoreUnavailableError("DATABASE_URL is required to refit models")
        return await refit_all_models(resources.store, resources.registry, resources.settings)
    finally:
        await release_resources(resources)


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    outcome = asyncio.run(_run_from_environment())
    logger.info(f"Summary: {outcome['summary']}")
