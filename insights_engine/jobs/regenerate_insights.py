"""
Nightly Insight Regeneration Job.

Regenerates and re-caches insights for the most recent entities so that the
first API request of the day is a cache hit. Entities are processed
concurrently, bounded by an asyncio.Semaphore sized to the worker count
(settings.batch_workers, defaulting to os.cpu_count()).

Each entity is independent: a failure for one entity is recorded in its
result and never stops the batch. Running the job twice over unchanged data
produces the same insights apart from ids and timestamps.

Usage:
    from insights_engine.jobs.regenerate_insights import regenerate_all_insights

    results = await regenerate_all_insights(orchestrator)
    print(results['summary'])

    # From the command line (uses DATABASE_URL)
    python -m insights_engine.jobs.regenerate_insights
"""

import asyncio
import logging
import os
from datetime import date
from typing import Any, Dict, List, Optional

from insights_engine.core.errors import StoreUnavailableError
from insights_engine.services.insights_orchestrator import InsightsOrchestrator

logger = logging.getLogger(__name__)


def resolve_worker_count(configured: Optional[int]) -> int:
    """Configured worker count, else the CPU count, never below 1."""
    if configured is not None and configured > 0:
        return configured
    return os.cpu_count() or 1


async def regenerate_entity_insights(
    orchestrator: InsightsOrchestrator,
    entity_id: str,
) -> Dict[str, Any]:
    """
    Regenerate insights for a single entity.

    Args:
        orchestrator: Configured orchestrator
        entity_id: Entity to regenerate

    Returns:
        Dict with the following keys:
        - success: bool indicating if generation produced a response
        - entity_id: The entity id
        - insight_count: Number of insights produced (if successful)
        - degraded: bool if any analysis failed (if successful)
        - skipped: Analyses skipped for insufficient data (if successful)
        - error: Error message if unsuccessful
    """
    try:
        response = await orchestrator.regenerate(entity_id)
    except StoreUnavailableError as e:
        logger.warning(f"Regeneration failed for {entity_id}: {e}")
        return {
            'success': False,
            'entity_id': entity_id,
            'error': str(e),
        }
    except Exception as e:
        logger.error(f"Regeneration failed for {entity_id}: {e}", exc_info=True)
        return {
            'success': False,
            'entity_id': entity_id,
            'error': f'Unexpected error: {e}',
        }

    return {
        'success': True,
        'entity_id': entity_id,
        'insight_count': len(response.insights),
        'degraded': response.degraded,
        'skipped': list(response.skipped),
    }


async def regenerate_all_insights(
    orchestrator: InsightsOrchestrator,
    since: Optional[date] = None,
    limit: Optional[int] = None,
    workers: Optional[int] = None,
) -> Dict[str, Any]:
    """
    Regenerate insights for the most recent entities.

    Args:
        orchestrator: Configured orchestrator (its store lists the entities)
        since: Only entities with events on or after this date
        limit: Maximum entities to process (default: settings.feed_entity_limit)
        workers: Concurrency bound (default: settings.batch_workers or CPU count)

    Returns:
        Dict with the following keys:
        - success: bool if every entity succeeded
        - results: List of per-entity result dicts, in entity order
        - summary: Dict with total, success_count, degraded_count, failed_count
          and workers

    Raises:
        StoreUnavailableError: If the entity list cannot be read
    """
    settings = orchestrator.settings
    if orchestrator.store is None:
        raise StoreUnavailableError("No metric store is configured")

    entity_ids = await orchestrator.store.list_entities(
        since=since,
        limit=limit or settings.feed_entity_limit,
    )

    worker_count = resolve_worker_count(workers if workers is not None else settings.batch_workers)
    semaphore = asyncio.Semaphore(worker_count)

    async def run_one(entity_id: str) -> Dict[str, Any]:
        async with semaphore:
            return await regenerate_entity_insights(orchestrator, entity_id)

    logger.info(f"Regenerating insights for {len(entity_ids)} entities with {worker_count} worker(s)")
    results: List[Dict[str, Any]] = await asyncio.gather(*(run_one(e) for e in entity_ids))

    success_count = sum(1 for r in results if r['success'])
    degraded_count = sum(1 for r in results if r['success'] and r['degraded'])
    failed_count = len(results) - success_count

    logger.info(
        f"Regeneration complete: {success_count} succeeded "
        f"({degraded_count} degraded), {failed_count} failed"
    )

    return {
        'success': failed_count == 0,
        'results': results,
        'summary': {
            'total': len(results),
            'success_count': success_count,
            'degraded_count': degraded_count,
            'failed_count': failed_count,
            'workers': worker_count,
        },
    }


async def _run_from_environment() -> Dict[str, Any]:
    from insights_engine.main import build_resources, release_resources

    resources = await build_resources()
    try:
        return await regenerate_all_insights(resources.orchestrator)
    finally:
        await release_resources(resources)


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    outcome = asyncio.run(_run_from_environment())
    logger.info(f"Summary: {outcome['summary']}")
