"""
Core infrastructure package for the Insights Engine.

Provides:
- Configuration management via pydantic-settings
- Async PostgreSQL connection pool lifecycle via asyncpg
- The engine's error hierarchy
- The Insight Cache (in-memory and PostgreSQL implementations)

FastAPI dependencies live in insights_engine.core.dependencies and are
imported from there directly, since they depend on the services layer.

Usage Examples:
    from insights_engine.core import get_settings, init_db, close_db

    settings = get_settings()
    print(settings.confidence_floor)
"""

from insights_engine.core.config import Settings, get_settings
from insights_engine.core.database import init_db, close_db, get_db_pool
from insights_engine.core.errors import (
    InsightsEngineError,
    InsufficientDataError,
    DegenerateInputError,
    ModelUnavailableError,
    StoreUnavailableError,
    FormulaError,
)

__all__ = [
    # Configuration management (from config.py)
    'Settings',
    'get_settings',
    # Database pool lifecycle (from database.py)
    'init_db',
    'close_db',
    'get_db_pool',
    # Errors (from errors.py)
    'InsightsEngineError',
    'InsufficientDataError',
    'DegenerateInputError',
    'ModelUnavailableError',
    'StoreUnavailableError',
    'FormulaError',
]
