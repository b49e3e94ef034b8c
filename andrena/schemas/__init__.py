"""API schemas."""

from .analysis import AnalysisRequest, AnalysisResponse, HealthResponse, SourceDescription  # noqa: F401
