"""
Metric Store.

Read-only access to the per-entity aggregated metric series and entity
profiles produced upstream. The orchestrator and batch jobs depend only on
the MetricStore interface; PostgresMetricStore is the asyncpg-backed
implementation wired up by the API.

Derived Metrics:
    Metrics listed in settings.derived_metrics are not stored directly. The
    store fetches the formula's operand series, aligns them by date with a
    pandas pivot and evaluates the parsed formula per date. Dates where the
    formula is not available (missing operand, zero divisor) are dropped.

Normalization:
    Every fetched series passes through pandas to drop NULL values, collapse
    duplicate dates (last row wins) and sort ascending, so callers can rely on
    the TimeSeriesPoint ordering invariant.

Errors:
    Database and network failures (asyncpg.PostgresError, asyncpg
    InterfaceError, OSError, timeouts) are wrapped in StoreUnavailableError.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any, Dict, List, Optional

import asyncpg
import pandas as pd
from asyncpg import Pool

from insights_engine.core.config import Settings
from insights_engine.core.errors import StoreUnavailableError
from insights_engine.models.schemas import EntityFeatures, TimeSeriesPoint
from insights_engine.services.formula import Formula, parse_formula
from insights_engine.sql.metric_queries import (
    get_all_series_query,
    get_entity_features_query,
    get_feature_population_query,
    get_list_entities_query,
    get_population_query,
    get_series_query,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Query Parameters
# =============================================================================


@dataclass
class DateRange:
    """Inclusive calendar date range."""
    start: date
    end: date


@dataclass
class PopulationFilter:
    """
    Optional narrowing of a benchmark population.

    Attributes:
        partner_id: Only entities belonging to this partner
        entity_type: Only entities of this type (e.g. 'event')
        since: Only values / events dated on or after this date
    """
    partner_id: Optional[str] = None
    entity_type: Optional[str] = None
    since: Optional[date] = None


# =============================================================================
# Interface
# =============================================================================


class MetricStore:
    """
    Read interface over aggregated metrics.

    Subclasses implement every coroutine below. Implementations must raise
    StoreUnavailableError when the backing store cannot be reached.
    """

    async def get_series(
        self,
        entity_id: str,
        metric: str,
        date_range: Optional[DateRange] = None,
    ) -> List[TimeSeriesPoint]:
        raise NotImplementedError

    async def get_population(
        self,
        metric: str,
        population_filter: Optional[PopulationFilter] = None,
    ) -> Dict[str, float]:
        """Latest value of `metric` per entity, keyed by entity id."""
        raise NotImplementedError

    async def get_entity_features(self, entity_id: str) -> Optional[EntityFeatures]:
        raise NotImplementedError

    async def get_feature_population(
        self,
        population_filter: Optional[PopulationFilter] = None,
    ) -> List[EntityFeatures]:
        raise NotImplementedError

    async def list_entities(
        self,
        since: Optional[date] = None,
        limit: int = 10,
        partner_id: Optional[str] = None,
    ) -> List[str]:
        """Most recent entity ids, newest event first, optionally for one partner."""
        raise NotImplementedError

    async def get_all_series(
        self,
        metric: str,
        date_range: DateRange,
    ) -> Dict[str, List[TimeSeriesPoint]]:
        """Series of `metric` for every entity, keyed by entity id."""
        raise NotImplementedError


# =============================================================================
# Frame Helpers
# =============================================================================


def rows_to_series(rows: List[Dict[str, Any]]) -> List[TimeSeriesPoint]:
    """
    Normalize (date, value) rows into a sorted, de-duplicated series.

    Args:
        rows: Mappings with 'date' and 'value' keys

    Returns:
        Points sorted ascending with one point per date (last row wins) and
        NULL values removed
    """
    if not rows:
        return []

    frame = pd.DataFrame(rows, columns=['date', 'value'])
    frame['value'] = pd.to_numeric(frame['value'], errors='coerce')
    frame = frame.dropna(subset=['value'])
    frame = frame.drop_duplicates(subset='date', keep='last').sort_values('date')

    return [
        TimeSeriesPoint(date=row.date, value=float(row.value))
        for row in frame.itertuples(index=False)
    ]


def evaluate_derived(
    rows: List[Dict[str, Any]],
    formula: Formula,
    index: str,
) -> Dict[Any, float]:
    """
    Evaluate a formula over operand rows aligned on `index`.

    Args:
        rows: Mappings with `index`, 'metric' and 'value' keys
        formula: Parsed derived-metric formula
        index: Column to align operands on ('date' or 'entity_id')

    Returns:
        Formula result per index value, omitting values where the formula
        is not available
    """
    if not rows:
        return {}

    frame = pd.DataFrame(rows, columns=[index, 'metric', 'value'])
    frame['value'] = pd.to_numeric(frame['value'], errors='coerce')
    frame = frame.dropna(subset=['value'])
    if frame.empty:
        return {}

    table = frame.pivot_table(index=index, columns='metric', values='value', aggfunc='last')

    results: Dict[Any, float] = {}
    for key, row in table.iterrows():
        operands = {name: float(v) for name, v in row.items() if pd.notna(v)}
        value = formula.evaluate(operands)
        if value is not None:
            results[key] = value
    return results


# =============================================================================
# PostgreSQL Implementation
# =============================================================================


_STORE_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError)


class PostgresMetricStore(MetricStore):
    """
    MetricStore backed by the entity_metric_series and entity_profile tables.

    Args:
        pool: asyncpg connection pool
        settings: Application settings (derived metric formulas, series window)

    Raises:
        FormulaError: At construction, if a configured formula is invalid
    """

    def __init__(self, pool: Pool, settings: Settings):
        self._pool = pool
        self._series_window_days = settings.series_window_days
        self._formulas: Dict[str, Formula] = {
            metric: parse_formula(source)
            for metric, source in settings.derived_metrics.items()
        }

    async def _fetch(self, query: str, *args: Any) -> List[asyncpg.Record]:
        try:
            async with self._pool.acquire() as conn:
                return await conn.fetch(query, *args)
        except _STORE_ERRORS as e:
            logger.error(f"Metric store query failed: {e}")
            raise StoreUnavailableError("Metric store is unavailable", cause=e) from e

    def _default_range(self) -> DateRange:
        end = date.today()
        return DateRange(start=end - timedelta(days=self._series_window_days), end=end)

    def _operands(self, metric: str) -> List[str]:
        formula = self._formulas.get(metric)
        if formula is None:
            return [metric]
        return sorted(formula.variables)

    async def get_series(
        self,
        entity_id: str,
        metric: str,
        date_range: Optional[DateRange] = None,
    ) -> List[TimeSeriesPoint]:
        window = date_range or self._default_range()
        rows = await self._fetch(
            get_series_query(),
            entity_id,
            self._operands(metric),
            window.start,
            window.end,
        )
        records = [dict(r) for r in rows]

        formula = self._formulas.get(metric)
        if formula is None:
            return rows_to_series(records)

        derived = evaluate_derived(records, formula, index='date')
        return rows_to_series([{'date': d, 'value': v} for d, v in derived.items()])

    async def get_population(
        self,
        metric: str,
        population_filter: Optional[PopulationFilter] = None,
    ) -> Dict[str, float]:
        flt = population_filter or PopulationFilter()
        rows = await self._fetch(
            get_population_query(),
            self._operands(metric),
            flt.partner_id,
            flt.entity_type,
            flt.since,
        )
        records = [dict(r) for r in rows]

        formula = self._formulas.get(metric)
        if formula is None:
            return {r['entity_id']: float(r['value']) for r in records if r['value'] is not None}

        return evaluate_derived(records, formula, index='entity_id')

    @staticmethod
    def _row_to_features(row: Dict[str, Any]) -> EntityFeatures:
        return EntityFeatures(
            entityId=row['entity_id'],
            partnerId=row['partner_id'],
            eventDate=row['event_date'],
            attendance=float(row['attendance'] or 0.0),
            engagement=float(row['engagement'] or 0.0),
            merchRate=float(row['merch_rate'] or 0.0),
        )

    async def get_entity_features(self, entity_id: str) -> Optional[EntityFeatures]:
        rows = await self._fetch(get_entity_features_query(), entity_id)
        if not rows or rows[0]['event_date'] is None:
            return None
        return self._row_to_features(dict(rows[0]))

    async def get_feature_population(
        self,
        population_filter: Optional[PopulationFilter] = None,
    ) -> List[EntityFeatures]:
        flt = population_filter or PopulationFilter()
        rows = await self._fetch(
            get_feature_population_query(),
            flt.partner_id,
            flt.entity_type,
            flt.since,
        )
        return [self._row_to_features(dict(r)) for r in rows]

    async def list_entities(
        self,
        since: Optional[date] = None,
        limit: int = 10,
        partner_id: Optional[str] = None,
    ) -> List[str]:
        rows = await self._fetch(get_list_entities_query(), since, limit, partner_id)
        return [r['entity_id'] for r in rows]

    async def get_all_series(
        self,
        metric: str,
        date_range: DateRange,
    ) -> Dict[str, List[TimeSeriesPoint]]:
        rows = await self._fetch(
            get_all_series_query(),
            self._operands(metric),
            date_range.start,
            date_range.end,
        )

        by_entity: Dict[str, List[Dict[str, Any]]] = {}
        for row in rows:
            by_entity.setdefault(row['entity_id'], []).append(dict(row))

        formula = self._formulas.get(metric)
        result: Dict[str, List[TimeSeriesPoint]] = {}
        for entity_id, records in by_entity.items():
            if formula is None:
                series = rows_to_series(records)
            else:
                derived = evaluate_derived(records, formula, index='date')
                series = rows_to_series([{'date': d, 'value': v} for d, v in derived.items()])
            if series:
                result[entity_id] = series

        return result
