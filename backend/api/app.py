"""
FastAPI application factory for the predictions admin API.

Creates the app with:
- Admin trigger routes (reconcile, competition refresh, recalculation)
- Middleware stack
- Health check endpoint
- Lifespan management (open/close the configured repository)
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI

from ingest.normalization.normalizer import build_normalizer
from shared.config import get_settings
from shared.utils.logging import get_logger, setup_logging
from shared.utils.metrics import start_metrics_server
from storage.repository import create_repository

from api.dependencies import init_dependencies
from api.middleware import setup_middleware
from api.routes.admin import router as admin_router

logger = get_logger(__name__)


@asynccontextmanager
async def _noop_lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """No-op lifespan for tests that inject their own dependencies."""
    yield


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.
    Opens the configured repository and builds the normalizer on startup,
    releases the repository on shutdown.
    """
    settings = get_settings()
    setup_logging("api")
    start_metrics_server()

    repository = create_repository(settings)
    await repository.open()
    init_dependencies(repository, build_normalizer(settings.alias_file))

    logger.info(
        "api_service_started",
        host=settings.api_host,
        port=settings.api_port,
        storage=settings.storage_backend.value,
    )

    yield

    await repository.close()
    logger.info("api_service_stopped")


def create_app(*, use_lifespan: bool = True) -> FastAPI:
    """Create and configure the FastAPI application. Set use_lifespan=False for testing."""
    app = FastAPI(
        title="Rugby Predictions Admin API",
        description="Triggers for fixture import, result reconciliation and scoring",
        version="1.0.0",
        lifespan=lifespan if use_lifespan else _noop_lifespan,
        docs_url="/docs",
        redoc_url=None,
    )

    setup_middleware(app)
    app.include_router(admin_router)

    @app.get("/health", tags=["system"])
    async def health() -> dict[str, str]:
        return {"status": "ok", "service": "api"}

    return app


def run() -> None:
    """Console entrypoint: serve the admin API with uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run("api.app:app", host=settings.api_host, port=settings.api_port)


# For running with uvicorn directly
app = create_app()
