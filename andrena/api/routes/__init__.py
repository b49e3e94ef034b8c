"""API routers."""

from .analyze import router as analyze_router  # noqa: F401
