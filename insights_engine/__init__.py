"""
Insights Engine Package.

Turns per-entity event metrics into ranked, human-readable insights:
anomalies, trends, peer benchmarks, predictions and recommendations.

Subpackages:
    - api: FastAPI route handlers
    - core: Configuration, database pool, errors and the insight cache
    - models: Pydantic schemas and enums
    - services: Statistical analyses, metric store and orchestration
    - jobs: Batch regeneration and model refit jobs
    - sql: Parameterized SQL queries
"""

__version__ = "1.0.0"
