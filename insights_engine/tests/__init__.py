'''
Insights Engine Test Suite

Test Modules:
-------------
- test_statistics.py: Descriptive statistics, regression, normalization
- test_formula.py: Derived-metric formula parsing and safe evaluation
- test_anomaly_detection.py: Z-score, IQR and moving-average detection
- test_trend_analysis.py: Trend classification, projection, trend changes
- test_benchmarking.py: Percentile ranking and similar-entity search
- test_prediction.py: Feature engineering, model fitting, model registry
- test_cache.py: In-memory and PostgreSQL insight caches
- test_metric_store.py: Series normalization and the PostgreSQL store
- test_orchestrator.py: Insight generation, caching, degradation, ranking
- test_api.py: HTTP routes, validation, error mapping, rate limiting
- test_jobs.py: Nightly regeneration and model refit jobs

Running Tests:
--------------
    pip install -e ".[test]"
    pytest -v

No test needs a database: PostgreSQL access is exercised through the
mock_db_pool fixture and analyses run against FakeMetricStore.
'''

__all__ = []
