"""
Metric Store Queries for the Insights Engine.

Parameterized PostgreSQL queries (asyncpg `$n` placeholders) over the two
read-only tables produced by the upstream aggregation pipeline:

    entity_metric_series (entity_id, metric, date, value)
        One aggregated value per entity, metric and calendar date.

    entity_profile (entity_id, entity_type, partner_id, event_date,
                    attendance, engagement, merch_rate)
        One row per entity with the features used for similarity search.

Every series query takes a metric *list* (`metric = ANY($n::text[])`) so the
same statement serves base metrics (a single-element list) and derived
metrics (the formula's operand names).

Optional filters use the `($n::type IS NULL OR column = $n)` idiom so a
single statement handles every filter combination without string building.
"""


# =============================================================================
# Time Series
# =============================================================================

def get_series_query() -> str:
    """
    Series values for one entity and a set of metrics within a date range.

    Parameters:
        $1: entity_id (text)
        $2: metrics (text[])
        $3: start date (inclusive)
        $4: end date (inclusive)

    Returns:
        Query yielding (metric, date, value) ordered by metric, date ASC.
    """
    return """
        SELECT metric, date, value
        FROM entity_metric_series
        WHERE entity_id = $1
          AND metric = ANY($2::text[])
          AND date >= $3
          AND date <= $4
        ORDER BY metric, date ASC
    """


def get_all_series_query() -> str:
    """
    Series values for every entity, used when refitting prediction models.

    Parameters:
        $1: metrics (text[])
        $2: start date (inclusive)
        $3: end date (inclusive)

    Returns:
        Query yielding (entity_id, metric, date, value) ordered by entity,
        metric, date ASC.
    """
    return """
        SELECT entity_id, metric, date, value
        FROM entity_metric_series
        WHERE metric = ANY($1::text[])
          AND date >= $2
          AND date <= $3
        ORDER BY entity_id, metric, date ASC
    """


# =============================================================================
# Populations
# =============================================================================

def get_population_query() -> str:
    """
    Latest value per entity and metric for a filtered population.

    Parameters:
        $1: metrics (text[])
        $2: partner_id filter (text or NULL)
        $3: entity_type filter (text or NULL)
        $4: only values dated on or after (date or NULL)

    Returns:
        Query yielding (entity_id, metric, value) with one row per entity
        and metric (the most recent date wins).
    """
    return """
        SELECT DISTINCT ON (s.entity_id, s.metric)
            s.entity_id,
            s.metric,
            s.value
        FROM entity_metric_series s
        JOIN entity_profile p ON p.entity_id = s.entity_id
        WHERE s.metric = ANY($1::text[])
          AND ($2::text IS NULL OR p.partner_id = $2)
          AND ($3::text IS NULL OR p.entity_type = $3)
          AND ($4::date IS NULL OR s.date >= $4)
        ORDER BY s.entity_id, s.metric, s.date DESC
    """


# =============================================================================
# Entity Profiles
# =============================================================================

def get_entity_features_query() -> str:
    """
    Similarity features for one entity.

    Parameters:
        $1: entity_id (text)
    """
    return """
        SELECT entity_id, partner_id, event_date, attendance, engagement, merch_rate
        FROM entity_profile
        WHERE entity_id = $1
    """


def get_feature_population_query() -> str:
    """
    Similarity features for a filtered population.

    Parameters:
        $1: partner_id filter (text or NULL)
        $2: entity_type filter (text or NULL)
        $3: only entities with event_date on or after (date or NULL)
    """
    return """
        SELECT entity_id, partner_id, event_date, attendance, engagement, merch_rate
        FROM entity_profile
        WHERE ($1::text IS NULL OR partner_id = $1)
          AND ($2::text IS NULL OR entity_type = $2)
          AND ($3::date IS NULL OR event_date >= $3)
          AND event_date IS NOT NULL
        ORDER BY entity_id
    """


def get_list_entities_query() -> str:
    """
    Most recent entities, newest first.

    Parameters:
        $1: only entities with event_date on or after (date or NULL)
        $2: maximum number of rows
        $3: partner_id filter (text or NULL)
    """
    return """
        SELECT entity_id
        FROM entity_profile
        WHERE ($1::date IS NULL OR event_date >= $1)
          AND ($3::text IS NULL OR partner_id = $3)
          AND event_date IS NOT NULL
        ORDER BY event_date DESC, entity_id
        LIMIT $2
    """
