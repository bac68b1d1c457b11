"""
SQL Query Module for the Insights Engine.

Provides parameterized SQL queries for:
- Metric series, populations and entity features (metric_queries)
- Engine-owned state: the insight cache and fitted prediction models
  (state_queries)

Queries use asyncpg positional placeholders ($1, $2, ...) and are returned
by plain functions so that services own parameter binding.

Example usage:
    from insights_engine.sql import get_series_query

    async with pool.acquire() as conn:
        rows = await conn.fetch(get_series_query(), entity_id, metrics, start, end)
"""

# =============================================================================
# METRIC QUERIES - Read-only access to entity_metric_series / entity_profile
# =============================================================================

from insights_engine.sql.metric_queries import (
    get_series_query,
    get_all_series_query,
    get_population_query,
    get_entity_features_query,
    get_feature_population_query,
    get_list_entities_query,
)

# =============================================================================
# STATE QUERIES - Insight cache and prediction model tables
# =============================================================================

from insights_engine.sql.state_queries import (
    INSIGHT_CACHE_DDL,
    PREDICTION_MODEL_DDL,
    get_cache_entry_query,
    get_cache_upsert_query,
    get_cache_delete_query,
    get_models_query,
    get_model_upsert_query,
)

__all__ = [
    # Metric queries
    'get_series_query',
    'get_all_series_query',
    'get_population_query',
    'get_entity_features_query',
    'get_feature_population_query',
    'get_list_entities_query',
    # State queries
    'INSIGHT_CACHE_DDL',
    'PREDICTION_MODEL_DDL',
    'get_cache_entry_query',
    'get_cache_upsert_query',
    'get_cache_delete_query',
    'get_models_query',
    'get_model_upsert_query',
]
