"""Request pipeline orchestration."""

from .coordinator import PipelineCoordinator  # noqa: F401
from .state import InvalidTransition, PipelineRun, PipelineState  # noqa: F401
