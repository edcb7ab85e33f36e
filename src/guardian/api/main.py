from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from guardian import __version__
from guardian.api.routes import admission, compliance, health, metrics
from guardian.bootstrap import build_aggregator
from guardian.clusters.aggregator import ClusterAggregator
from guardian.config import Settings, get_settings
from guardian.logging import configure_logging
from guardian.metrics import build_registry


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings: Settings = app.state.settings
    configure_logging(settings.log_level, json=settings.log_json)
    await app.state.aggregator.start()
    try:
        yield
    finally:
        await app.state.aggregator.stop()


def create_app(
    settings: Settings | None = None,
    aggregator: ClusterAggregator | None = None,
) -> FastAPI:
    settings = settings or get_settings()

    app = FastAPI(
        title="Guardian",
        version=__version__,
        docs_url=f"{settings.api_prefix}/docs",
        openapi_url=f"{settings.api_prefix}/openapi.json",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.aggregator = aggregator or build_aggregator(settings)
    app.state.metrics_registry = build_registry(app.state.aggregator)

    app.include_router(admission.router, tags=["admission"])
    app.include_router(compliance.router, prefix=settings.api_prefix, tags=["compliance"])
    app.include_router(health.router, tags=["health"])
    app.include_router(metrics.router, tags=["metrics"])
    return app
