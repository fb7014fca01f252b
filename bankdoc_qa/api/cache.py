# =============================================================================
# Cache API — Response Cache Administration
# =============================================================================
#
# GET    /cache/stats       → size, approximate hit rate, most-hit questions
# DELETE /cache             → drop every entry
# POST   /cache/invalidate  → drop entries whose question matches a regex
#
# Typical use: after a regulation is amended, invalidate the questions
# mentioning it so the next ask regenerates from the new text.
# =============================================================================

from __future__ import annotations

import logging
import re

from fastapi import APIRouter, Depends, HTTPException

from bankdoc_qa.agents.orchestrator import QueryPipeline
from bankdoc_qa.api.deps import get_pipeline
from bankdoc_qa.models.requests import InvalidateCacheRequest
from bankdoc_qa.models.responses import CacheClearResponse, CacheStatsResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Cache"])


@router.get(
    "/cache/stats",
    response_model=CacheStatsResponse,
    summary="Response cache statistics",
)
async def cache_stats(
    pipeline: QueryPipeline = Depends(get_pipeline),
) -> CacheStatsResponse:
    return CacheStatsResponse(**pipeline.cache.stats())


@router.delete(
    "/cache",
    response_model=CacheClearResponse,
    summary="Clear the response cache",
)
async def clear_cache(
    pipeline: QueryPipeline = Depends(get_pipeline),
) -> CacheClearResponse:
    removed = pipeline.cache.clear()
    logger.info("Cache cleared via API (%d entries)", removed)
    return CacheClearResponse(removed=removed)


@router.post(
    "/cache/invalidate",
    response_model=CacheClearResponse,
    summary="Invalidate cached answers by question pattern",
)
async def invalidate_cache(
    request: InvalidateCacheRequest,
    pipeline: QueryPipeline = Depends(get_pipeline),
) -> CacheClearResponse:
    try:
        removed = pipeline.cache.invalidate_by_pattern(request.pattern)
    except re.error as e:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid pattern: {e}",
        ) from e
    return CacheClearResponse(removed=removed)
