# =============================================================================
# FastAPI Application — Entry Point
# =============================================================================
#
# Run locally:
#   uvicorn bankdoc_qa.main:app --reload
#
# LIFESPAN: the response cache is swept for expired entries by a
# background task started here and cancelled on shutdown.
# =============================================================================

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator

from fastapi import FastAPI

from bankdoc_qa.api import ask, cache
from bankdoc_qa.api.deps import get_pipeline
from bankdoc_qa.config import settings
from bankdoc_qa.models.responses import HealthResponse
from bankdoc_qa.services.cache import run_periodic_sweep

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    resolve = app.dependency_overrides.get(get_pipeline, get_pipeline)
    pipeline = resolve()
    sweeper = asyncio.create_task(run_periodic_sweep(pipeline.cache))
    logger.info("%s v%s started", settings.app_name, settings.app_version)
    try:
        yield
    finally:
        sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweeper
        logger.info("Cache sweep task stopped")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description=(
        "Question answering over Vietnamese banking regulations with "
        "collection routing, multi-variant retrieval and cited answers."
    ),
    lifespan=lifespan,
)

app.include_router(ask.router)
app.include_router(cache.router)


@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health() -> HealthResponse:
    return HealthResponse(version=settings.app_version, service=settings.app_name)
