# =============================================================================
# Query Pipeline — LangGraph Retrieval Graph + Cache + Generation
# =============================================================================
#
# Wires the components into one request flow:
#
#   question ──▶ ResponseCache.get ──hit──▶ stored answer (replayed if streaming)
#                     │ miss
#                     ▼
#   [Tìm trong: ...] + counting/summary intent?
#        │ yes                              │ no
#        ▼                                  ▼
#   load named documents          LangGraph retrieval graph:
#   (score 1.0, document order)     START ──▶ analyse ──▶ retrieve ──▶ rerank ──▶ END
#        │                                  │
#        └──────────────┬───────────────────┘
#                       ▼
#              AnswerOrchestrator (batch or stream)
#                       ▼
#              ResponseCache.put (only after full success)
#
# DESIGN DECISION: Graph covers retrieval only. Generation sits outside
# the graph because the streamed variant must hand fragments to the
# client as they arrive, which a node returning a state update cannot.
#
# DESIGN DECISION: The `analyse` node runs the router and the variant
# generator concurrently with asyncio.gather. Both are single cheap-model
# calls, so the question costs one round-trip of latency, not two.
#
# DESIGN DECISION: Plain TypedDict state, graph compiled once at module
# level. Components travel in the state, so one compiled graph serves
# every pipeline instance (tests build their own with fakes).
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import aclosing
from dataclasses import dataclass
from typing import Any

from langgraph.graph import END, START, StateGraph
from typing_extensions import TypedDict

from bankdoc_qa.agents.analyst import (
    AnswerOrchestrator,
    AnswerResult,
    StreamEvent,
    TokenUsage,
    no_context_result,
)
from bankdoc_qa.agents.prompts import DOCUMENTS_NOT_FOUND_ANSWER
from bankdoc_qa.agents.reranker import RankedResult, rerank
from bankdoc_qa.agents.retriever import MultiCollectionRetriever
from bankdoc_qa.agents.router import CollectionRouter, RoutingDecision
from bankdoc_qa.agents.variants import QueryVariantGenerator, VariantResult
from bankdoc_qa.config import settings
from bankdoc_qa.services.cache import CacheEntry, ResponseCache
from bankdoc_qa.services.vectorstore import RetrievedChunk, VectorSearchGateway

logger = logging.getLogger(__name__)

DOCUMENT_FILTER_RE = re.compile(r"\[Tìm trong:\s*([^\]]+)\]")

FULL_DOCUMENT_KEYWORDS: tuple[str, ...] = (
    "bao nhiêu", "có bao nhiêu", "số lượng", "đếm",
    "tính tổng", "tổng cộng", "tổng số", "cộng lại",
    "tóm tắt", "tổng hợp", "liệt kê tất cả", "liệt kê toàn bộ",
    "danh sách đầy đủ", "toàn bộ", "tất cả các",
)

REPLAY_WORDS_PER_CHUNK = 3

STATUS_ANALYSING = "Đang phân tích câu hỏi..."
STATUS_LOADING_DOCUMENTS = "Đang tải toàn bộ văn bản..."
STATUS_GENERATING = "Đang phân tích và tạo câu trả lời..."


# ---------------------------------------------------------------------------
# Retrieval Graph State
# ---------------------------------------------------------------------------


@dataclass
class PipelineComponents:
    router: CollectionRouter
    variant_generator: QueryVariantGenerator
    retriever: MultiCollectionRetriever
    vector_store: VectorSearchGateway
    top_k: int
    final_context_size: int


class RetrievalState(TypedDict, total=False):
    """
    State that flows through the retrieval graph.

    total=False so nodes only return the keys they update.
    """

    # --- Input (set by caller) ---
    question: str
    # NOTE: Not JSON-serialisable. Safe as long as no checkpointer is
    # configured on the graph.
    components: PipelineComponents

    # --- Set by analyse ---
    available_collections: list[str]
    routing: RoutingDecision
    variants: VariantResult

    # --- Set by retrieve / rerank ---
    chunks: list[RetrievedChunk]
    ranked: list[RankedResult]


# ---------------------------------------------------------------------------
# Node Functions
# ---------------------------------------------------------------------------


async def analyse_node(state: RetrievalState) -> dict:
    """Route and rewrite the question concurrently."""
    parts = state["components"]
    question = state["question"]

    available = await parts.vector_store.list_collections()
    routing, variants = await asyncio.gather(
        parts.router.route(question, available),
        parts.variant_generator.generate_variants(question),
    )

    logger.info(
        "Analysed question: collections=%s (confidence=%.2f), %d variants",
        routing.collections, routing.confidence, len(variants.variants),
    )
    return {
        "available_collections": available,
        "routing": routing,
        "variants": variants,
    }


async def retrieve_node(state: RetrievalState) -> dict:
    parts = state["components"]
    routing = state["routing"]

    chunks = await parts.retriever.retrieve(
        state["variants"].as_query_variants(),
        routing.collections,
        parts.top_k,
        question=state["question"],
        routing_confidence=routing.confidence,
    )
    return {"chunks": chunks}


async def rerank_node(state: RetrievalState) -> dict:
    parts = state["components"]
    ranked = rerank(state["chunks"], state["question"])
    return {"ranked": ranked[: parts.final_context_size]}


_builder = StateGraph(RetrievalState)
_builder.add_node("analyse", analyse_node)
_builder.add_node("retrieve", retrieve_node)
_builder.add_node("rerank", rerank_node)

_builder.add_edge(START, "analyse")
_builder.add_edge("analyse", "retrieve")
_builder.add_edge("retrieve", "rerank")
_builder.add_edge("rerank", END)

retrieval_graph = _builder.compile()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def parse_document_filter(question: str) -> tuple[str, list[str] | None]:
    """
    Split a `[Tìm trong: a, b]` tag off the question.

    Returns (question without the tag, document names or None).
    """
    match = DOCUMENT_FILTER_RE.search(question)
    if not match:
        return question, None
    names = [n.strip() for n in match.group(1).split(",") if n.strip()]
    stripped = (question[: match.start()] + question[match.end():]).strip()
    return stripped, names or None


def needs_full_document(question: str) -> bool:
    lowered = question.lower()
    return any(kw in lowered for kw in FULL_DOCUMENT_KEYWORDS)


def _answer_from_cache(entry: CacheEntry) -> AnswerResult:
    usage = entry.token_usage
    return AnswerResult(
        text=entry.answer_text,
        sources=entry.sources,
        confidence=entry.confidence,
        token_usage=TokenUsage(usage.get("input", 0), usage.get("output", 0)),
        model=entry.model,
        cached=True,
    )


def _complete_metadata(result: AnswerResult) -> dict[str, Any]:
    return {
        "confidence": result.confidence,
        "sources": result.sources,
        "model": result.model,
        "token_usage": result.token_usage.as_dict(),
        "cached": result.cached,
    }


def split_for_replay(text: str, words_per_chunk: int = REPLAY_WORDS_PER_CHUNK) -> list[str]:
    """Split text into groups of words, whitespace preserved."""
    words = re.findall(r"\S+\s*", text)
    return [
        "".join(words[i : i + words_per_chunk])
        for i in range(0, len(words), words_per_chunk)
    ]


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class QueryPipeline:
    """
    Request-level entry point used by the API layer.

    All collaborators are injected; api/deps.py builds the production
    instance from settings.
    """

    def __init__(
        self,
        router: CollectionRouter,
        variant_generator: QueryVariantGenerator,
        retriever: MultiCollectionRetriever,
        orchestrator: AnswerOrchestrator,
        vector_store: VectorSearchGateway,
        cache: ResponseCache,
        top_k: int | None = None,
        final_context_size: int | None = None,
        replay_delay: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.cache = cache
        self._orchestrator = orchestrator
        self._store = vector_store
        self._components = PipelineComponents(
            router=router,
            variant_generator=variant_generator,
            retriever=retriever,
            vector_store=vector_store,
            top_k=top_k or settings.retrieval_top_k,
            final_context_size=final_context_size or settings.final_context_size,
        )
        self._replay_delay = (
            settings.cache_replay_delay_seconds if replay_delay is None else replay_delay
        )
        self._sleep = sleep

    # -----------------------------------------------------------------------
    # Retrieval
    # -----------------------------------------------------------------------

    def _initial_state(self, question: str) -> RetrievalState:
        return {"question": question, "components": self._components}

    async def retrieve_context(self, question: str) -> list[RankedResult]:
        """Run the retrieval graph and return the final ranked context."""
        result = await retrieval_graph.ainvoke(self._initial_state(question))
        return result.get("ranked", [])

    async def load_documents(self, document_names: list[str]) -> list[RankedResult]:
        """Every chunk of the named documents, ranked in document order."""
        chunks = await self._store.get_document_chunks(document_names)
        return [
            RankedResult(chunk=chunk, rank=i, boosted_score=chunk.similarity_score)
            for i, chunk in enumerate(chunks, 1)
        ]

    # -----------------------------------------------------------------------
    # Batch
    # -----------------------------------------------------------------------

    async def ask(self, question: str) -> AnswerResult:
        """
        Answer one question.

        Raises:
            RetrievalError: No variant could be searched.
            GenerationError: Completion failed after retries.
            FatalUpstreamError: Authentication / configuration failure.
        """
        cached = self.cache.get(question)
        if cached is not None:
            return _answer_from_cache(cached)

        prompt_question, document_names = parse_document_filter(question)
        full_document = bool(document_names) and needs_full_document(prompt_question)

        logger.info(
            "Pipeline ask: '%s' (full_document=%s)", question[:80], full_document,
        )

        if full_document:
            ranked = await self.load_documents(document_names)
            if not ranked:
                return no_context_result(DOCUMENTS_NOT_FOUND_ANSWER)
            result = await self._orchestrator.answer(
                prompt_question, ranked, apply_filter=False,
            )
        else:
            ranked = await self.retrieve_context(question)
            result = await self._orchestrator.answer(prompt_question, ranked)

        self.cache.put(question, result)
        return result

    # -----------------------------------------------------------------------
    # Streaming
    # -----------------------------------------------------------------------

    async def _replay(
        self,
        result: AnswerResult,
        cancel_event: asyncio.Event | None,
    ) -> AsyncIterator[StreamEvent]:
        """Replay a stored answer as simulated streaming."""
        for piece in split_for_replay(result.text):
            if cancel_event is not None and cancel_event.is_set():
                return
            yield StreamEvent(kind="chunk", text=piece)
            await self._sleep(self._replay_delay)
        if cancel_event is not None and cancel_event.is_set():
            return
        yield StreamEvent(kind="complete", metadata=_complete_metadata(result))

    async def _stream_retrieval(
        self,
        question: str,
    ) -> AsyncIterator[StreamEvent | list[RankedResult]]:
        """Run the graph node by node, emitting a status after routing."""
        ranked: list[RankedResult] = []
        async for update in retrieval_graph.astream(
            self._initial_state(question), stream_mode="updates",
        ):
            if "analyse" in update:
                routing = update["analyse"]["routing"]
                yield StreamEvent(
                    kind="status",
                    text=f"Tìm kiếm trong: {', '.join(routing.collections)}...",
                )
            if "rerank" in update:
                ranked = update["rerank"]["ranked"]
        yield ranked

    async def ask_stream(
        self,
        question: str,
        cancel_event: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """
        Stream status, answer chunks and one terminal event.

        The terminal event is `complete` on success or `error` on failure.
        A cancelled stream simply stops and is never cached.
        """
        try:
            cached = self.cache.get(question)
            if cached is not None:
                async with aclosing(
                    self._replay(_answer_from_cache(cached), cancel_event)
                ) as replay:
                    async for event in replay:
                        yield event
                return

            prompt_question, document_names = parse_document_filter(question)
            full_document = bool(document_names) and needs_full_document(
                prompt_question
            )

            if full_document:
                yield StreamEvent(kind="status", text=STATUS_LOADING_DOCUMENTS)
                ranked = await self.load_documents(document_names)
                if not ranked:
                    result = no_context_result(DOCUMENTS_NOT_FOUND_ANSWER)
                    yield StreamEvent(kind="chunk", text=result.text)
                    yield StreamEvent(
                        kind="complete", metadata=_complete_metadata(result),
                    )
                    return
            else:
                yield StreamEvent(kind="status", text=STATUS_ANALYSING)
                ranked = []
                async with aclosing(self._stream_retrieval(question)) as steps:
                    async for step in steps:
                        if isinstance(step, StreamEvent):
                            yield step
                        else:
                            ranked = step

            if cancel_event is not None and cancel_event.is_set():
                return
            yield StreamEvent(kind="status", text=STATUS_GENERATING)

            fragments: list[str] = []
            async with aclosing(
                self._orchestrator.answer_stream(
                    prompt_question,
                    ranked,
                    cancel_event,
                    apply_filter=not full_document,
                )
            ) as answer_events:
                async for event in answer_events:
                    if event.kind == "chunk":
                        fragments.append(event.text)
                    elif event.kind == "complete":
                        self._store_streamed(question, fragments, event)
                    yield event

        except Exception as e:
            logger.exception("Streaming pipeline failed for '%s'", question[:80])
            yield StreamEvent(kind="error", text=str(e) or type(e).__name__)

    def _store_streamed(
        self,
        question: str,
        fragments: list[str],
        event: StreamEvent,
    ) -> None:
        meta = event.metadata
        usage = meta.get("token_usage", {})
        result = AnswerResult(
            text="".join(fragments),
            sources=meta.get("sources", []),
            confidence=meta.get("confidence", 0),
            token_usage=TokenUsage(usage.get("input", 0), usage.get("output", 0)),
            model=meta.get("model", ""),
        )
        self.cache.put(question, result)
