from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from embedgate.api.error_handling import register_exception_handlers
from embedgate.api.routes import router
from embedgate.config import Settings, get_settings
from embedgate.logging import get_logger, set_correlation_id
from embedgate.service.assembler import PipelineAssembler

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Assemble the inference pipeline before serving any request.

    A startup failure propagates out of the lifespan, so the server never
    starts accepting traffic with a partial pipeline.
    """
    assembler: PipelineAssembler = app.state.assembler
    logger.info(
        "startup_started",
        model_id=app.state.settings.model_id,
        revision=app.state.settings.revision,
        backend=app.state.settings.backend.value,
    )
    engine = await assembler.assemble()
    app.state.engine = engine
    app.state.info = assembler.info
    logger.info("startup_complete", version=__version__)

    try:
        yield
    finally:
        app.state.engine = None
        await engine.close()
        logger.info("engine_closed")


def create_app(
    settings: Optional[Settings] = None,
    *,
    assembler: Optional[PipelineAssembler] = None,
) -> FastAPI:
    settings = settings or get_settings()
    app = FastAPI(
        title="embedgate",
        description="Text embedding and sequence classification inference server",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.assembler = assembler or PipelineAssembler(settings)
    app.state.engine = None
    app.state.info = None

    @app.middleware("http")
    async def add_correlation_id(request, call_next):
        """Tag each request with the client's X-Request-ID or a fresh UUID."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    register_exception_handlers(app)
    app.include_router(router)
    return app


app = create_app()
