"""
FastAPI router module for the insights endpoints.

This module implements:
- Global insight feed across the most recent entities
- Per-entity insights (cached, generated on a miss)
- Forced regeneration, rate limited per caller
- Per-metric trend detail (trend, trend changes, smoothed series)
- Per-metric benchmark detail (percentile ranking, population summary)
- Per-metric history benchmark (latest value against the entity's history)
- Partner insights (taken from the partner's most recent entity)
- Similar-entity search

Error Mapping:
- StoreUnavailableError -> 503 (the Metric Store could not be reached and
  nothing usable was cached)
- ValueError -> 400 (invalid scope, window or similar client input)
- Anything else -> 500, logged with traceback

All analysis work is delegated to the InsightsOrchestrator created by the
application lifespan and injected through OrchestratorDep.
"""

import logging
from datetime import date
from typing import Optional

from fastapi import APIRouter, HTTPException, Path, Query, Request

from insights_engine.core.dependencies import OrchestratorDep, RateLimiterDep
from insights_engine.core.errors import StoreUnavailableError
from insights_engine.models import (
    InsightFeedResponse,
    InsightSeverity,
    InsightsResponse,
    InsightType,
    MetricBenchmarkResponse,
    MetricHistoryBenchmarkResponse,
    MetricTrendResponse,
    PartnerInsightsResponse,
    SimilarEntitiesResponse,
)

# Configure logging
logger = logging.getLogger(__name__)

# Create router with prefix and tags for OpenAPI documentation
router = APIRouter(prefix="/insights", tags=["insights"])


# =============================================================================
# Helper Functions
# =============================================================================


def _error_response(action: str, error: Exception) -> HTTPException:
    """
    Translate an engine error into the matching HTTPException.

    Args:
        action: Short description of what failed, used in logs and detail
        error: The exception raised by the orchestrator

    Returns:
        HTTPException with status 503, 400 or 500
    """
    if isinstance(error, StoreUnavailableError):
        logger.warning(f"{action}: {error}")
        return HTTPException(status_code=503, detail=f"Metric store unavailable: {error}")

    if isinstance(error, ValueError):
        return HTTPException(status_code=400, detail=str(error))

    logger.error(f"Error {action}: {error}", exc_info=True)
    return HTTPException(status_code=500, detail=f"Error {action}: {str(error)}")


def _caller_key(request: Request) -> str:
    """Identify the caller for rate limiting: explicit header, else client host."""
    caller = request.headers.get("x-caller-id")
    if caller:
        return caller
    return request.client.host if request.client else "anonymous"


# =============================================================================
# Feed
# =============================================================================


@router.get("", response_model=InsightFeedResponse)
async def get_insight_feed(
    orchestrator: OrchestratorDep,
    type: Optional[InsightType] = Query(None, description="Only insights of this type"),
    severity: Optional[InsightSeverity] = Query(None, description="Only insights of this severity"),
    limit: Optional[int] = Query(
        None, ge=1, le=50, description="Number of most recent entities to analyse"
    ),
    since: Optional[date] = Query(None, description="Only entities with events on or after this date"),
) -> InsightFeedResponse:
    """
    Ranked insights across the most recent entities.

    Every matching insight of the analysed entities is returned; `limit`
    bounds the number of entities, not the number of insights. Entities
    whose insights fail to generate are left out and the feed's
    metadata is marked degraded.

    Raises:
        HTTPException 503: If the entity list cannot be read
        HTTPException 500: If feed assembly fails
    """
    try:
        return await orchestrator.get_feed(
            insight_type=type,
            severity=severity,
            limit=limit,
            since=since,
        )
    except HTTPException:
        raise
    except Exception as e:
        raise _error_response("building insight feed", e)


# =============================================================================
# Partner Insights
# =============================================================================


@router.get("/partners/{partner_id}", response_model=PartnerInsightsResponse)
async def get_partner_insights(
    orchestrator: OrchestratorDep,
    partner_id: str = Path(..., min_length=1, description="Partner identifier"),
) -> PartnerInsightsResponse:
    """
    Insights for a partner, taken from its most recent entity.

    Raises:
        HTTPException 404: If the partner has no entities
        HTTPException 503: If the Metric Store is unavailable
    """
    try:
        response = await orchestrator.partner_insights(partner_id)
        if response is None:
            raise HTTPException(status_code=404, detail=f"No entities found for partner {partner_id}")
        return response
    except HTTPException:
        raise
    except Exception as e:
        raise _error_response(f"generating insights for partner {partner_id}", e)


# =============================================================================
# Per-Entity Insights
# =============================================================================


@router.get("/{entity_id}", response_model=InsightsResponse)
async def get_entity_insights(
    orchestrator: OrchestratorDep,
    entity_id: str = Path(..., min_length=1, description="Entity (event) identifier"),
) -> InsightsResponse:
    """
    Cached insights for an entity, generated on a cache miss.

    The response carries `cached`, `degraded`, `warnings` and `skipped`
    so callers can tell a partial or stale result from a complete one.

    Raises:
        HTTPException 503: If nothing is cached and the Metric Store is down
        HTTPException 500: If generation fails unexpectedly
    """
    try:
        return await orchestrator.get_insights(entity_id)
    except HTTPException:
        raise
    except Exception as e:
        raise _error_response(f"generating insights for {entity_id}", e)


@router.post("/{entity_id}/regenerate", response_model=InsightsResponse)
async def regenerate_entity_insights(
    request: Request,
    orchestrator: OrchestratorDep,
    limiter: RateLimiterDep,
    entity_id: str = Path(..., min_length=1, description="Entity (event) identifier"),
) -> InsightsResponse:
    """
    Invalidate the cached insights for an entity and generate afresh.

    Rate limited per caller (regenerate_rate_limit_per_minute, default 60).

    Raises:
        HTTPException 429: If the caller exceeded the rate limit
        HTTPException 503: If the Metric Store is unavailable
        HTTPException 500: If generation fails unexpectedly
    """
    caller = _caller_key(request)
    if not limiter.allow(caller):
        logger.info(f"Regenerate rate limit exceeded for caller {caller}")
        raise HTTPException(
            status_code=429,
            detail="Too many regenerate requests; try again in a minute",
        )

    try:
        return await orchestrator.regenerate(entity_id)
    except HTTPException:
        raise
    except Exception as e:
        raise _error_response(f"regenerating insights for {entity_id}", e)


# =============================================================================
# Detail Views
# =============================================================================


@router.get("/{entity_id}/trend/{metric}", response_model=MetricTrendResponse)
async def get_metric_trend(
    orchestrator: OrchestratorDep,
    entity_id: str = Path(..., min_length=1),
    metric: str = Path(..., min_length=1),
    window: int = Query(7, ge=2, le=90, description="Window for trend changes and smoothing"),
) -> MetricTrendResponse:
    """
    Trend analysis, trend-direction changes and a smoothed series.

    A series shorter than the minimum returns `insufficientData` instead
    of a trend.
    """
    try:
        return await orchestrator.trend_detail(entity_id, metric, window)
    except HTTPException:
        raise
    except Exception as e:
        raise _error_response(f"analysing {metric} trend for {entity_id}", e)


@router.get("/{entity_id}/benchmark/{metric}", response_model=MetricBenchmarkResponse)
async def get_metric_benchmark(
    orchestrator: OrchestratorDep,
    entity_id: str = Path(..., min_length=1),
    metric: str = Path(..., min_length=1),
    scope: str = Query("all", description="'all' or 'partner'"),
) -> MetricBenchmarkResponse:
    """
    Percentile ranking of the entity within its population.

    Raises:
        HTTPException 400: If scope is not 'all' or 'partner'
        HTTPException 503: If the Metric Store is unavailable
    """
    try:
        return await orchestrator.benchmark_detail(entity_id, metric, scope)
    except HTTPException:
        raise
    except Exception as e:
        raise _error_response(f"benchmarking {metric} for {entity_id}", e)


@router.get("/{entity_id}/benchmark/{metric}/history", response_model=MetricHistoryBenchmarkResponse)
async def get_metric_history_benchmark(
    orchestrator: OrchestratorDep,
    entity_id: str = Path(..., min_length=1),
    metric: str = Path(..., min_length=1),
) -> MetricHistoryBenchmarkResponse:
    """
    Latest value ranked against the entity's own history, with an
    improving, declining or stable label.
    """
    try:
        return await orchestrator.history_benchmark(entity_id, metric)
    except HTTPException:
        raise
    except Exception as e:
        raise _error_response(f"benchmarking {metric} history for {entity_id}", e)


@router.get("/{entity_id}/similar", response_model=SimilarEntitiesResponse)
async def get_similar_entities(
    orchestrator: OrchestratorDep,
    entity_id: str = Path(..., min_length=1),
    limit: Optional[int] = Query(None, ge=1, le=50, description="Maximum neighbours returned"),
) -> SimilarEntitiesResponse:
    """Nearest entities by weighted distance over normalized features."""
    try:
        return await orchestrator.similar_entities(entity_id, limit)
    except HTTPException:
        raise
    except Exception as e:
        raise _error_response(f"finding entities similar to {entity_id}", e)
