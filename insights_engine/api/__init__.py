"""
Insights Engine API package.

This package contains the FastAPI router modules:
- insights: Insight feed, per-entity insights, regeneration and detail views
"""
