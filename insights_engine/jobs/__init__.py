"""
Batch jobs for the Insights Engine.

- regenerate_insights: Nightly regeneration and re-caching of entity insights
- refit_models: Refit of the per-metric prediction models

Both jobs return result dicts with per-item outcomes and a summary, and can
be run from the command line with `python -m insights_engine.jobs.<job>`.
"""

from insights_engine.jobs.regenerate_insights import (
    regenerate_entity_insights,
    regenerate_all_insights,
)
from insights_engine.jobs.refit_models import (
    refit_model,
    refit_all_models,
    evaluate_registered_model,
)

__all__ = [
    'regenerate_entity_insights',
    'regenerate_all_insights',
    'refit_model',
    'refit_all_models',
    'evaluate_registered_model',
]
