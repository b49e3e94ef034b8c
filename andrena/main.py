"""FastAPI application entrypoint."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI

from andrena import __version__
from andrena.api.routes import analyze_router
from andrena.core.config import Settings, get_settings
from andrena.core.logging_config import configure_logging
from andrena.core.security import register_security
from andrena.models import InferenceEngine
from andrena.pipeline import PipelineCoordinator
from andrena.pipeline.coordinator import Fetcher
from andrena.schemas import HealthResponse
from andrena.services.audio import MediaFetcher

APP_TITLE = "andrena media analysis API"

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    engine: Optional[InferenceEngine] = None,
    fetcher: Optional[Fetcher] = None,
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        # The model handle and worker pool live for the whole process.
        model_engine = engine or InferenceEngine(settings)
        model_engine.load()

        media_fetcher = fetcher
        if media_fetcher is None:
            default_fetcher = MediaFetcher.from_settings(settings)
            logger.info("Using downloader at '%s'", default_fetcher.check_available())
            media_fetcher = default_fetcher

        coordinator = PipelineCoordinator.from_settings(settings, model_engine, fetcher=media_fetcher)
        app.state.engine = model_engine
        app.state.coordinator = coordinator
        try:
            yield
        finally:
            coordinator.shutdown()
            model_engine.release()

    app = FastAPI(title=APP_TITLE, version=__version__, lifespan=lifespan)

    register_security(app, settings)
    app.include_router(analyze_router)

    @app.get("/health", tags=["system"], response_model=HealthResponse)
    async def health_check() -> HealthResponse:
        model_engine: Optional[InferenceEngine] = getattr(app.state, "engine", None)
        version = model_engine.handle.model_version if model_engine and model_engine.is_loaded else None
        return HealthResponse(model_version=version)

    return app
