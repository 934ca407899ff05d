"""Dependency providers for the API layer."""

from functools import lru_cache

from capture_analysis.services.analysis_pipeline import AnalysisPipeline


@lru_cache(maxsize=1)
def get_pipeline() -> AnalysisPipeline:
    """Process-wide pipeline; the app lifespan starts and stops it."""
    return AnalysisPipeline()
