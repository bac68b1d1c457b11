"""
Engine State Queries for the Insights Engine.

DDL and parameterized queries for the two tables the engine itself owns:

    insight_cache (entity_id, payload, created_at, expires_at)
        Latest generated InsightsResponse per entity as JSONB. Rows past
        expires_at are stale but kept for fallback until overwritten or
        invalidated.

    prediction_model (metric, payload, fitted_at)
        Latest fitted RegressionModel per metric as JSONB.

Both tables are created idempotently by the components that use them.
"""


# =============================================================================
# DDL
# =============================================================================

INSIGHT_CACHE_DDL: str = """
    CREATE TABLE IF NOT EXISTS insight_cache (
        entity_id   TEXT PRIMARY KEY,
        payload     JSONB NOT NULL,
        created_at  TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        expires_at  TIMESTAMPTZ NOT NULL
    )
"""

PREDICTION_MODEL_DDL: str = """
    CREATE TABLE IF NOT EXISTS prediction_model (
        metric      TEXT PRIMARY KEY,
        payload     JSONB NOT NULL,
        fitted_at   TIMESTAMPTZ NOT NULL
    )
"""


# =============================================================================
# Insight Cache
# =============================================================================

def get_cache_entry_query() -> str:
    """
    Parameters:
        $1: entity_id

    Returns:
        Query yielding (payload, expires_at) for the entity, if cached.
    """
    return """
        SELECT payload::text AS payload, expires_at
        FROM insight_cache
        WHERE entity_id = $1
    """


def get_cache_upsert_query() -> str:
    """
    Last-writer-wins upsert of one entity's cache entry.

    Parameters:
        $1: entity_id
        $2: payload (JSON text)
        $3: expires_at
    """
    return """
        INSERT INTO insight_cache (entity_id, payload, created_at, expires_at)
        VALUES ($1, $2::jsonb, NOW(), $3)
        ON CONFLICT (entity_id)
        DO UPDATE SET
            payload = EXCLUDED.payload,
            created_at = EXCLUDED.created_at,
            expires_at = EXCLUDED.expires_at
    """


def get_cache_delete_query() -> str:
    """
    Parameters:
        $1: entity_id
    """
    return "DELETE FROM insight_cache WHERE entity_id = $1"


# =============================================================================
# Prediction Models
# =============================================================================

def get_models_query() -> str:
    """Every stored model as (metric, payload)."""
    return """
        SELECT metric, payload::text AS payload
        FROM prediction_model
        ORDER BY metric
    """


def get_model_upsert_query() -> str:
    """
    Parameters:
        $1: metric
        $2: payload (JSON text)
        $3: fitted_at
    """
    return """
        INSERT INTO prediction_model (metric, payload, fitted_at)
        VALUES ($1, $2::jsonb, $3)
        ON CONFLICT (metric)
        DO UPDATE SET
            payload = EXCLUDED.payload,
            fitted_at = EXCLUDED.fitted_at
    """
