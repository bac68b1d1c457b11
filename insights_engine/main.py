"""
FastAPI application entry point for the Insights Engine API.

This module wires the engine's long-lived resources and serves the insights
router. Resources are built once per process by build_resources():

    database pool (optional) -> Insight Cache -> Metric Store
        -> Model Registry -> InsightsOrchestrator

and stored on `app.state`, where core.dependencies picks them up. The batch
jobs in insights_engine.jobs reuse build_resources() / release_resources()
so that the API and the jobs share one wiring.

Without DATABASE_URL the API still starts: the cache falls back to memory
and every analysis reports the Metric Store as unavailable.
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncGenerator, Optional

from asyncpg import Pool
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from insights_engine import __version__
from insights_engine.api.insights import router as insights_router
from insights_engine.core.cache import InsightCache, create_insight_cache
from insights_engine.core.config import Settings, get_settings
from insights_engine.core.database import close_db, init_db
from insights_engine.core.dependencies import SettingsDep, SlidingWindowRateLimiter
from insights_engine.services.insights_orchestrator import InsightsOrchestrator
from insights_engine.services.metric_store import MetricStore, PostgresMetricStore
from insights_engine.services.prediction import ModelRegistry

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@dataclass
class EngineResources:
    """Everything the API and the batch jobs need, built once per process."""
    settings: Settings
    pool: Optional[Pool]
    cache: InsightCache
    store: Optional[MetricStore]
    registry: ModelRegistry
    orchestrator: InsightsOrchestrator


async def build_resources(settings: Optional[Settings] = None) -> EngineResources:
    """
    Build and initialize the engine's resources.

    A database that cannot be reached is logged and the engine continues
    without a Metric Store; a cache that cannot be initialized falls back
    to the in-memory implementation.

    Args:
        settings: Settings to use (default: get_settings())

    Returns:
        EngineResources with an initialized cache and loaded model registry
    """
    settings = settings or get_settings()

    pool: Optional[Pool] = None
    if settings.database_url:
        try:
            pool = await init_db()
            logger.info("Database connection pool initialized")
        except Exception as e:
            logger.error(f"Failed to initialize database: {e}")
            # Continue startup without a metric store
    else:
        logger.info("DATABASE_URL not set; starting without a metric store")

    try:
        cache = create_insight_cache(settings, pool)
        await cache.init()
    except Exception as e:
        logger.error(f"Failed to initialize {settings.cache_backend} insight cache: {e}")
        cache = create_insight_cache(settings.model_copy(update={'cache_backend': 'memory'}))
        await cache.init()

    store: Optional[MetricStore] = PostgresMetricStore(pool, settings) if pool is not None else None

    registry = ModelRegistry(pool)
    try:
        await registry.load()
    except Exception as e:
        logger.error(f"Failed to load prediction models: {e}")

    orchestrator = InsightsOrchestrator(store, cache, registry, settings)

    return EngineResources(
        settings=settings,
        pool=pool,
        cache=cache,
        store=store,
        registry=registry,
        orchestrator=orchestrator,
    )


async def release_resources(resources: EngineResources) -> None:
    """Tear down the cache and close the database pool."""
    try:
        await resources.cache.teardown()
    except Exception as e:
        logger.error(f"Error tearing down insight cache: {e}")

    if resources.pool is not None:
        try:
            await close_db()
            logger.info("Database connection pool closed")
        except Exception as e:
            logger.error(f"Error closing database pool: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Lifespan context manager for FastAPI application startup and shutdown events.

    On startup:
        - Build the pool, cache, store, registry and orchestrator
        - Store them on app.state

    On shutdown:
        - Tear down the cache and close the pool
    """
    # Startup
    logger.info("Insights Engine API starting")
    resources = await build_resources()
    app.state.resources = resources
    app.state.orchestrator = resources.orchestrator
    app.state.rate_limiter = SlidingWindowRateLimiter(
        resources.settings.regenerate_rate_limit_per_minute
    )

    yield

    # Shutdown
    logger.info("Insights Engine API shutting down")
    await release_resources(resources)


# Create FastAPI application
app = FastAPI(
    title="Insights Engine API",
    version=__version__,
    description=(
        "Anomaly detection, trend analysis, benchmarking and prediction "
        "over per-entity event metrics, delivered as ranked insights."
    ),
    lifespan=lifespan,
)

# Configure CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",  # Dashboard dev server
        "http://127.0.0.1:3000",  # Alternative localhost
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register API routers
app.include_router(insights_router)  # Has its own /insights prefix


@app.get("/health")
async def health_check(settings: SettingsDep):
    """
    Health check endpoint for monitoring and load balancer probes.

    Returns:
        Dict with status "healthy", the cache backend in use and the
        metrics insights are generated for
    """
    return {
        "status": "healthy",
        "cacheBackend": settings.cache_backend,
        "metrics": settings.insight_metrics,
    }


@app.get("/")
async def root():
    """
    Root endpoint providing API information.

    Returns:
        Dict with API name and version
    """
    return {
        "name": "Insights Engine API",
        "version": __version__,
        "docs": "/docs",
        "openapi": "/openapi.json",
    }


# Run with uvicorn when executed directly
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "insights_engine.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
