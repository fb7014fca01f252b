# =============================================================================
# Answer Orchestrator — Context Assembly and Generation
# =============================================================================
#
# Takes the reranked chunks and the user's question and drives one
# answer generation, batch or streamed.
#
#   ranked results
#     │ filter_context(): score ≥ 0.5, ≤ 3 per document,
#     │                   Jaccard > 0.8 near-duplicates removed, ≤ 12 total
#     ▼
#   build_prompt(): numbered sources [n] + question,
#     │             multiple-choice template or prose template with [🔗n]
#     ▼
#   ModelSelector.pick() ──▶ completion (retry on transient errors)
#     ▼
#   confidence = round(100 × mean similarity of the filtered chunks)
#
# DESIGN DECISION: Confidence is the mean retrieval similarity, not the
# model's self-assessment. It gates the response cache (≥ 70).
#
# DESIGN DECISION: A stream is only retried while nothing has been
# emitted. Once a fragment reached the client, a retry would duplicate
# text, so the failure surfaces instead.
#
# DESIGN DECISION: Context formatted with numbered references.
# Chunks are presented as [1], [2], ... so the model can cite them with
# [🔗n] markers that the client resolves back to the source list.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any

from bankdoc_qa.agents.prompts import (
    ANSWER_SYSTEM_PROMPT,
    ANSWER_USER_TEMPLATE,
    MULTIPLE_CHOICE_SYSTEM_PROMPT,
    NO_CONTEXT_ANSWER,
)
from bankdoc_qa.agents.reranker import RankedResult
from bankdoc_qa.config import settings
from bankdoc_qa.services.errors import (
    FatalUpstreamError,
    GenerationError,
    TransientUpstreamError,
    classify_error,
)
from bankdoc_qa.services.llm import LLMProvider, LLMStreamChunk, get_llm_provider
from bankdoc_qa.services.model_rotation import ModelSelector, get_model_rotation
from bankdoc_qa.services.retry import backoff_delay, retry_async
from bankdoc_qa.services.usage import LoggingUsageReporter, UsageRecord, UsageReporter
from bankdoc_qa.services.vectorstore import RetrievedChunk

logger = logging.getLogger(__name__)

NO_MODEL = "N/A"

_OPTION_MARKER_RE = re.compile(r"(?:^|\s)([A-Da-d])[\).]\s", re.MULTILINE)
MULTIPLE_CHOICE_PHRASES: tuple[str, ...] = (
    "chọn đáp án",
    "đáp án đúng",
    "câu nào sau đây",
    "phương án nào",
    "lựa chọn nào",
)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class TokenUsage:
    input: int = 0
    output: int = 0

    @property
    def total(self) -> int:
        return self.input + self.output

    def as_dict(self) -> dict[str, int]:
        return {"input": self.input, "output": self.output, "total": self.total}


@dataclass
class AnswerResult:
    """Final answer handed to the API layer and the response cache."""

    text: str
    sources: list[dict[str, Any]]
    confidence: int  # 0–100
    token_usage: TokenUsage
    model: str
    cached: bool = False


@dataclass
class StreamEvent:
    """
    One item of a streamed answer.

    kind: "status" (progress message), "chunk" (answer text fragment),
    "complete" (terminal metadata), "error" (terminal failure).
    """

    kind: str
    text: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class GenerationSession:
    """Per-request generation state. Discarded when the request ends."""

    question: str
    system: str
    user_message: str
    sources: list[dict[str, Any]]
    confidence: int
    model: str
    priority: int | None = None
    attempts: int = 0
    fragments: list[str] = field(default_factory=list)
    token_usage: TokenUsage = field(default_factory=TokenUsage)
    cancelled: bool = False
    completed: bool = False

    @property
    def text(self) -> str:
        return "".join(self.fragments)

    def absorb_usage(self, piece: LLMStreamChunk) -> None:
        self.token_usage = TokenUsage(
            input=piece.input_tokens or 0,
            output=piece.output_tokens or 0,
        )
        if piece.model:
            self.model = piece.model

    def complete_metadata(self) -> dict[str, Any]:
        return {
            "confidence": self.confidence,
            "sources": self.sources,
            "model": self.model,
            "token_usage": self.token_usage.as_dict(),
            "cached": False,
        }


# ---------------------------------------------------------------------------
# Context Filtering
# ---------------------------------------------------------------------------


def _token_set(text: str) -> set[str]:
    return set(text.lower().split())


def jaccard_similarity(a: str, b: str) -> float:
    tokens_a, tokens_b = _token_set(a), _token_set(b)
    if not tokens_a and not tokens_b:
        return 1.0
    return len(tokens_a & tokens_b) / len(tokens_a | tokens_b)


def filter_context(
    chunks: list[RetrievedChunk],
    *,
    min_score: float | None = None,
    max_per_document: int | None = None,
    max_chunks: int | None = None,
    similarity_threshold: float | None = None,
) -> list[RetrievedChunk]:
    """
    Select the chunks that go into the prompt.

    Input order (the rerank order) is preserved. Near-duplicates are
    resolved in favour of the higher similarity score.
    """
    min_score = settings.context_min_score if min_score is None else min_score
    per_doc_cap = max_per_document or settings.context_max_per_document
    total_cap = max_chunks or settings.context_max_chunks
    threshold = (
        settings.context_similarity_threshold
        if similarity_threshold is None
        else similarity_threshold
    )

    scored = [c for c in chunks if c.similarity_score >= min_score]

    # Per-document cap keeps each document's highest-scoring chunks.
    allowed: set[str] = set()
    by_document: dict[str, list[RetrievedChunk]] = {}
    for chunk in scored:
        by_document.setdefault(chunk.source_document, []).append(chunk)
    for group in by_document.values():
        group.sort(key=lambda c: (-c.similarity_score, c.id))
        allowed.update(c.id for c in group[:per_doc_cap])
    capped = [c for c in scored if c.id in allowed]

    kept: list[RetrievedChunk] = []
    for chunk in capped:
        duplicate_at = next(
            (
                i for i, other in enumerate(kept)
                if jaccard_similarity(chunk.content, other.content) > threshold
            ),
            None,
        )
        if duplicate_at is None:
            kept.append(chunk)
        elif chunk.similarity_score > kept[duplicate_at].similarity_score:
            kept[duplicate_at] = chunk

    selected = kept[:total_cap]
    logger.debug(
        "Context filter: %d in, %d above score, %d after cap, %d selected",
        len(chunks), len(scored), len(capped), len(selected),
    )
    return selected


def compute_confidence(chunks: list[RetrievedChunk]) -> int:
    """round(100 × mean similarity), half rounded up; 0 when empty."""
    if not chunks:
        return 0
    mean = sum(c.similarity_score for c in chunks) / len(chunks)
    return int(mean * 100 + 0.5)


# ---------------------------------------------------------------------------
# Prompt Assembly
# ---------------------------------------------------------------------------


def is_multiple_choice(question: str) -> bool:
    """Two or more distinct option markers (A), B., c) ...) or a choice phrase."""
    lowered = question.lower()
    if any(phrase in lowered for phrase in MULTIPLE_CHOICE_PHRASES):
        return True
    markers = {m.upper() for m in _OPTION_MARKER_RE.findall(question)}
    return len(markers) >= 2


def _location_label(chunk: RetrievedChunk) -> str:
    parts = []
    loc = chunk.source_location
    if loc.chapter:
        parts.append(f"Chương {loc.chapter}")
    if loc.article:
        parts.append(f"Điều {loc.article}")
    if loc.section:
        parts.append(f"Khoản {loc.section}")
    return ", ".join(parts)


def format_source_header(index: int, chunk: RetrievedChunk) -> str:
    """`[n] Document (number) - Chương X, Điều Y, Khoản Z`"""
    source = chunk.source_document
    if chunk.document_number:
        source = f"{source} ({chunk.document_number})"
    location = _location_label(chunk)
    return f"[{index}] {source}" + (f" - {location}" if location else "")


def format_context(chunks: list[RetrievedChunk]) -> str:
    return "\n\n---\n\n".join(
        f"{format_source_header(i, chunk)}:\n{chunk.content}"
        for i, chunk in enumerate(chunks, 1)
    )


def build_prompt(question: str, chunks: list[RetrievedChunk]) -> tuple[str, str]:
    """Return (system prompt, user message)."""
    system = (
        MULTIPLE_CHOICE_SYSTEM_PROMPT if is_multiple_choice(question)
        else ANSWER_SYSTEM_PROMPT
    )
    user_message = ANSWER_USER_TEMPLATE.format(
        context=format_context(chunks), question=question,
    )
    return system, user_message


def source_dict(index: int, chunk: RetrievedChunk) -> dict[str, Any]:
    return {
        "index": index,
        "chunk_id": chunk.id,
        "document_name": chunk.source_document,
        "document_number": chunk.document_number,
        "chapter": chunk.source_location.chapter,
        "article": chunk.source_location.article,
        "section": chunk.source_location.section,
        "collection": chunk.collection,
        "similarity_score": chunk.similarity_score,
        "content": chunk.content,
    }


def no_context_result(text: str = NO_CONTEXT_ANSWER) -> AnswerResult:
    return AnswerResult(
        text=text,
        sources=[],
        confidence=0,
        token_usage=TokenUsage(),
        model=NO_MODEL,
    )


def _is_cancelled(cancel_event: asyncio.Event | None) -> bool:
    return cancel_event is not None and cancel_event.is_set()


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class AnswerOrchestrator:
    """
    Args:
        llm: Completion provider; resolved from config when None.
        selector: Model picker (defaults to the configured rotation).
        usage: Receives one UsageRecord per completion attempt.
        max_attempts / base_delay: Retry policy.
        sleep: Injected by tests so backoff does not slow the suite.
    """

    def __init__(
        self,
        llm: LLMProvider | None = None,
        selector: ModelSelector | None = None,
        usage: UsageReporter | None = None,
        max_attempts: int | None = None,
        base_delay: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._llm = llm
        self._selector = selector
        self._usage = usage or LoggingUsageReporter()
        self._max_attempts = max_attempts or settings.retry_max_attempts
        self._base_delay = (
            settings.retry_base_delay_seconds if base_delay is None else base_delay
        )
        self._sleep = sleep

    def _resolve_llm(self) -> LLMProvider:
        if self._llm is None:
            try:
                self._llm = get_llm_provider()
            except ValueError as e:
                raise FatalUpstreamError(str(e)) from e
        return self._llm

    def _resolve_selector(self) -> ModelSelector:
        if self._selector is None:
            self._selector = get_model_rotation()
        return self._selector

    def _start_session(
        self,
        question: str,
        chunks: list[RetrievedChunk],
    ) -> GenerationSession:
        system, user_message = build_prompt(question, chunks)
        model, priority = self._resolve_selector().pick()
        return GenerationSession(
            question=question,
            system=system,
            user_message=user_message,
            sources=[source_dict(i, c) for i, c in enumerate(chunks, 1)],
            confidence=compute_confidence(chunks),
            model=model,
            priority=priority,
        )

    def _report(
        self,
        session: GenerationSession,
        request_type: str,
        success: bool,
        error: str | None = None,
    ) -> None:
        self._usage.report(UsageRecord(
            request_type=request_type,
            model=session.model,
            input_tokens=session.token_usage.input,
            output_tokens=session.token_usage.output,
            success=success,
            priority=session.priority,
            error=error,
        ))

    # -----------------------------------------------------------------------
    # Batch
    # -----------------------------------------------------------------------

    async def answer(
        self,
        question: str,
        ranked_results: list[RankedResult],
        *,
        apply_filter: bool = True,
    ) -> AnswerResult:
        """
        Generate a complete answer.

        apply_filter=False sends every chunk to the model unchanged
        (full-document mode).

        Raises:
            FatalUpstreamError: Non-retryable failure (auth, config).
            GenerationError: Transient failures exhausted the retry budget.
        """
        chunks = [r.chunk for r in ranked_results]
        if apply_filter:
            chunks = filter_context(chunks)
        if not chunks:
            logger.info("No usable context for '%s'", question[:60])
            return no_context_result()

        llm = self._resolve_llm()
        session = self._start_session(question, chunks)
        selector = self._resolve_selector()

        async def _attempt():
            session.attempts += 1
            selector.record_request(session.model)
            try:
                return await llm.complete(
                    messages=[{"role": "user", "content": session.user_message}],
                    system=session.system,
                    model=session.model,
                )
            except Exception as e:
                self._report(session, "chat", success=False, error=str(e))
                raise

        logger.info(
            "Generating answer: model=%s, chunks=%d, confidence=%d",
            session.model, len(chunks), session.confidence,
        )
        try:
            response = await retry_async(
                _attempt,
                max_attempts=self._max_attempts,
                base_delay=self._base_delay,
                description="Answer generation",
                sleep=self._sleep,
            )
        except TransientUpstreamError as e:
            raise GenerationError(
                f"Answer generation failed after {session.attempts} attempts: {e}"
            ) from e

        session.model = response.model or session.model
        session.token_usage = TokenUsage(response.input_tokens, response.output_tokens)
        self._report(session, "chat", success=True)

        logger.info(
            "Answer complete: model=%s, tokens=%d+%d",
            session.model, response.input_tokens, response.output_tokens,
        )
        return AnswerResult(
            text=response.content,
            sources=session.sources,
            confidence=session.confidence,
            token_usage=session.token_usage,
            model=session.model,
        )

    # -----------------------------------------------------------------------
    # Streaming
    # -----------------------------------------------------------------------

    async def answer_stream(
        self,
        question: str,
        ranked_results: list[RankedResult],
        cancel_event: asyncio.Event | None = None,
        *,
        apply_filter: bool = True,
    ) -> AsyncIterator[StreamEvent]:
        """
        Stream the answer as `chunk` events followed by one `complete` event.

        The cancel signal is checked before every emission. A cancelled
        stream ends silently without a `complete` event.

        Raises:
            FatalUpstreamError: Non-retryable failure (auth, config).
            GenerationError: Retries exhausted, or a failure after text
                was already emitted.
        """
        chunks = [r.chunk for r in ranked_results]
        if apply_filter:
            chunks = filter_context(chunks)
        if not chunks:
            result = no_context_result()
            if not _is_cancelled(cancel_event):
                yield StreamEvent(kind="chunk", text=result.text)
            if not _is_cancelled(cancel_event):
                yield StreamEvent(
                    kind="complete",
                    metadata={
                        "confidence": 0,
                        "sources": [],
                        "model": NO_MODEL,
                        "token_usage": result.token_usage.as_dict(),
                        "cached": False,
                    },
                )
            return

        llm = self._resolve_llm()
        session = self._start_session(question, chunks)
        selector = self._resolve_selector()

        for attempt in range(1, self._max_attempts + 1):
            session.attempts = attempt
            selector.record_request(session.model)
            status = "failed"
            error_text: str | None = None
            delay = 0.0

            try:
                stream = llm.stream(
                    messages=[{"role": "user", "content": session.user_message}],
                    system=session.system,
                    model=session.model,
                )
                async with aclosing(stream):
                    async for piece in stream:
                        if piece.is_usage:
                            session.absorb_usage(piece)
                            continue
                        if not piece.text:
                            continue
                        if _is_cancelled(cancel_event):
                            session.cancelled = True
                            break
                        session.fragments.append(piece.text)
                        yield StreamEvent(kind="chunk", text=piece.text)
                status = "cancelled" if session.cancelled else "ok"

            except (GeneratorExit, asyncio.CancelledError):
                session.cancelled = True
                status = "cancelled"
                raise

            except Exception as exc:
                error = classify_error(exc)
                error_text = str(exc)
                transient = isinstance(error, TransientUpstreamError)

                if session.fragments or not transient or attempt >= self._max_attempts:
                    logger.error(
                        "Streaming failed (attempt %d/%d, %d fragments sent): %s",
                        attempt, self._max_attempts, len(session.fragments), exc,
                    )
                    if transient:
                        raise GenerationError(
                            f"Streaming failed after {attempt} attempts: {exc}"
                        ) from exc
                    if error is exc:
                        raise
                    raise error from exc

                delay = backoff_delay(attempt, self._base_delay)
                logger.warning(
                    "Streaming retry %d/%d after transient error: %s. Waiting %.1fs",
                    attempt, self._max_attempts, exc, delay,
                )

            finally:
                if status == "ok":
                    self._report(session, "chat_stream", success=True)
                elif status == "cancelled":
                    self._report(
                        session, "chat_stream", success=False, error="cancelled",
                    )
                else:
                    self._report(
                        session, "chat_stream", success=False, error=error_text,
                    )

            if status != "failed":
                break
            await self._sleep(delay)

        if session.cancelled or _is_cancelled(cancel_event):
            logger.info(
                "Stream cancelled after %d fragments", len(session.fragments),
            )
            return

        session.completed = True
        logger.info(
            "Stream complete: model=%s, fragments=%d, confidence=%d",
            session.model, len(session.fragments), session.confidence,
        )
        yield StreamEvent(kind="complete", metadata=session.complete_metadata())
