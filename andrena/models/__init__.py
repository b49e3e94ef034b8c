"""Model loading and inference."""

from .engine import InferenceEngine, InferenceResult, ModelHandle  # noqa: F401
