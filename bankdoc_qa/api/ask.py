# =============================================================================
# Ask API — Banking Regulation Q&A Endpoints
# =============================================================================
#
# POST /ask         → one JSON answer with numbered sources
# POST /ask/stream  → Server-Sent Events:
#
#   event: status    data: {"text": "Đang phân tích câu hỏi..."}
#   event: chunk     data: {"text": "Theo Điều 5 ..."}        (repeated)
#   event: complete  data: {"confidence": 82, "sources": [...], ...}
#   event: error     data: {"text": "..."}                    (instead of complete)
#
# The heavy lifting happens in the agents package; these handlers are
# thin: they validate the request and map errors and results to HTTP.
#
# DESIGN DECISION: Client disconnects are turned into the pipeline's
# cancel event. The pipeline then stops before its next emission, never
# caches the partial answer, and reports the attempt as cancelled.
# =============================================================================

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse

from bankdoc_qa.agents.analyst import StreamEvent
from bankdoc_qa.agents.orchestrator import QueryPipeline
from bankdoc_qa.api.deps import get_pipeline
from bankdoc_qa.models.requests import AskRequest
from bankdoc_qa.models.responses import AskResponse, SourceChunk, TokenUsageResponse
from bankdoc_qa.services.errors import (
    FatalUpstreamError,
    GenerationError,
    RetrievalError,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Question Answering"])


def format_sse(event: StreamEvent) -> str:
    """Encode one event as an SSE frame."""
    payload = dict(event.metadata)
    if event.text:
        payload["text"] = event.text
    data = json.dumps(payload, ensure_ascii=False)
    return f"event: {event.kind}\ndata: {data}\n\n"


# ---------------------------------------------------------------------------
# POST /ask — Batch answer
# ---------------------------------------------------------------------------


@router.post(
    "/ask",
    response_model=AskResponse,
    summary="Ask a question about banking regulations",
    description=(
        "Routes the question to the relevant document collections, "
        "retrieves and reranks regulation excerpts, and generates an "
        "answer citing them as [🔗n]. Repeated questions are served from "
        "the response cache."
    ),
)
async def ask_endpoint(
    request: AskRequest,
    pipeline: QueryPipeline = Depends(get_pipeline),
) -> AskResponse:
    """
    Error handling:
    - Missing API key / auth failure → 503 Service Unavailable
    - Retrieval or generation failure → 502 Bad Gateway
    - No relevant context → 200 with the "no information" answer
    """
    logger.info("Ask request: question='%s'", request.question[:80])

    try:
        result = await pipeline.ask(request.question)
    except (FatalUpstreamError, ValueError) as e:
        logger.error("Configuration error: %s", e)
        raise HTTPException(
            status_code=503,
            detail=f"Service configuration error: {e}",
        ) from e
    except (RetrievalError, GenerationError) as e:
        logger.error("Pipeline failed: %s", e)
        raise HTTPException(
            status_code=502,
            detail=f"Upstream service error: {e}",
        ) from e
    except Exception as e:
        logger.exception("Pipeline failed unexpectedly: %s", e)
        raise HTTPException(
            status_code=502,
            detail=f"LLM service error: {e}",
        ) from e

    return AskResponse(
        question=request.question,
        answer=result.text,
        sources=[SourceChunk(**source) for source in result.sources],
        confidence=result.confidence,
        model=result.model,
        token_usage=TokenUsageResponse(**result.token_usage.as_dict()),
        cached=result.cached,
    )


# ---------------------------------------------------------------------------
# POST /ask/stream — Server-Sent Events
# ---------------------------------------------------------------------------


async def _event_stream(
    http_request: Request,
    pipeline: QueryPipeline,
    question: str,
) -> AsyncIterator[str]:
    cancel_event = asyncio.Event()
    events = pipeline.ask_stream(question, cancel_event)
    try:
        async for event in events:
            if await http_request.is_disconnected():
                logger.info("Client disconnected, cancelling stream")
                cancel_event.set()
                break
            yield format_sse(event)
    finally:
        cancel_event.set()
        await events.aclose()


@router.post(
    "/ask/stream",
    summary="Ask a question and stream the answer (SSE)",
    response_class=StreamingResponse,
)
async def ask_stream_endpoint(
    http_request: Request,
    request: AskRequest,
    pipeline: QueryPipeline = Depends(get_pipeline),
) -> StreamingResponse:
    logger.info("Streaming ask request: question='%s'", request.question[:80])
    return StreamingResponse(
        _event_stream(http_request, pipeline, request.question),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
