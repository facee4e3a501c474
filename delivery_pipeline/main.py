"""
FastAPI application for the delivery pipeline.

The scheduler and its components are created at startup from the process
settings, unless a prebuilt scheduler is passed to ``create_app``.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from delivery_pipeline import __version__
from delivery_pipeline.api import pipeline_router
from delivery_pipeline.config.settings import Settings, get_settings
from delivery_pipeline.services.scheduler import PipelineScheduler
from delivery_pipeline.utils.logging import get_logger, setup_logging
from delivery_pipeline.wiring import build_components, build_scheduler

logger = get_logger(__name__)


def create_app(settings: Optional[Settings] = None, scheduler: Optional[PipelineScheduler] = None) -> FastAPI:
    """
    Create the API application.

    Args:
        settings: Settings to use. Defaults to the process settings.
        scheduler: Prebuilt scheduler. When given, startup builds nothing
            and shutdown leaves it running.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        components = None
        if scheduler is None:
            setup_logging(settings.logging)
            components = build_components(settings)
            app.state.scheduler = build_scheduler(settings, components)
        logger.info("Delivery pipeline API started", extra={'pipeline_name': settings.pipeline_name})
        try:
            yield
        finally:
            if components is not None:
                app.state.scheduler.shutdown(wait=True)
                components.shutdown(wait=True)
            logger.info("Delivery pipeline API stopped")

    app = FastAPI(title=settings.app_name, version=__version__, lifespan=lifespan)
    if scheduler is not None:
        app.state.scheduler = scheduler

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.api.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(pipeline_router)

    @app.get("/health")
    def health():
        return {
            'status': 'healthy',
            'pipeline_name': settings.pipeline_name,
            'version': __version__,
        }

    return app


app = create_app()
