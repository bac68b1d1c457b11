"""
FastAPI dependency injection module for the Insights Engine.

This module provides reusable FastAPI dependencies for configuration access
and for the long-lived engine resources built by the application lifespan.
Endpoint handlers never construct a cache, store or orchestrator themselves;
they receive the instances stored on `app.state` at startup.

Key Dependencies Provided:
- get_settings_dependency: Returns the cached Settings singleton
- get_orchestrator: Returns the InsightsOrchestrator built at startup
- get_rate_limiter: Returns the regenerate endpoint's rate limiter
- SettingsDep / OrchestratorDep / RateLimiterDep: Annotated type aliases

Testing:
    Every dependency can be replaced through FastAPI's override mechanism:

        app.dependency_overrides[get_orchestrator] = lambda: fake_orchestrator

Usage Examples:
    @router.get("/{entity_id}")
    async def get_entity_insights(
        entity_id: str,
        orchestrator: OrchestratorDep,
    ) -> InsightsResponse:
        return await orchestrator.get_insights(entity_id)
"""

import threading
import time
from collections import deque
from typing import Annotated, Callable, Deque, Dict

from fastapi import Depends, HTTPException, Request

from insights_engine.core.config import Settings, get_settings
from insights_engine.services.insights_orchestrator import InsightsOrchestrator


# =============================================================================
# Settings Dependency
# =============================================================================

def get_settings_dependency() -> Settings:
    """
    Return the Settings singleton instance.

    This is a thin wrapper around get_settings() so that tests can swap
    configuration through app.dependency_overrides.
    """
    return get_settings()


# =============================================================================
# Orchestrator Dependency
# =============================================================================

def get_orchestrator(request: Request) -> InsightsOrchestrator:
    """
    Return the orchestrator created by the application lifespan.

    Raises:
        HTTPException: 503 if the application has not finished starting up
    """
    orchestrator = getattr(request.app.state, 'orchestrator', None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Insights engine is not initialized")
    return orchestrator


# =============================================================================
# Rate Limiting
# =============================================================================

class SlidingWindowRateLimiter:
    """
    In-memory sliding-window rate limiter keyed by caller.

    Args:
        limit: Requests allowed per window
        window_seconds: Window length in seconds
        clock: Monotonic time source; injectable for tests
    """

    def __init__(
        self,
        limit: int,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._hits: Dict[str, Deque[float]] = {}
        self._last_sweep = clock()
        self._lock = threading.Lock()

    def allow(self, key: str) -> bool:
        """Record a request for `key`; False if it exceeds the limit."""
        now = self._clock()
        cutoff = now - self.window_seconds

        with self._lock:
            if now - self._last_sweep >= self.window_seconds:
                self._evict_idle(cutoff)
                self._last_sweep = now

            hits = self._hits.setdefault(key, deque())
            while hits and hits[0] <= cutoff:
                hits.popleft()

            if len(hits) >= self.limit:
                return False

            hits.append(now)
            return True

    def _evict_idle(self, cutoff: float) -> None:
        """Drop callers with no request inside the window. Caller holds the lock."""
        idle = [key for key, hits in self._hits.items() if not hits or hits[-1] <= cutoff]
        for key in idle:
            del self._hits[key]

    def __len__(self) -> int:
        """Number of callers currently tracked."""
        return len(self._hits)


def get_rate_limiter(request: Request) -> SlidingWindowRateLimiter:
    """Return the regenerate rate limiter, creating it on first use."""
    limiter = getattr(request.app.state, 'rate_limiter', None)
    if limiter is None:
        limiter = SlidingWindowRateLimiter(get_settings().regenerate_rate_limit_per_minute)
        request.app.state.rate_limiter = limiter
    return limiter


# =============================================================================
# Type Aliases for Dependency Injection
# =============================================================================

# Usage: async def endpoint(settings: SettingsDep)
SettingsDep = Annotated[Settings, Depends(get_settings_dependency)]

# Usage: async def endpoint(orchestrator: OrchestratorDep)
OrchestratorDep = Annotated[InsightsOrchestrator, Depends(get_orchestrator)]

RateLimiterDep = Annotated[SlidingWindowRateLimiter, Depends(get_rate_limiter)]
