# =============================================================================
# Multi-Collection Retriever — Variant Embedding, Search and Merge
# =============================================================================
#
# Turns query variants plus a routing decision into one deduplicated,
# score-sorted candidate list.
#
# ALGORITHM:
#   1. Embed the variants (one batch call; per-variant calls if the batch
#      fails so one bad variant cannot sink the others).
#   2. Multi-variant search when the question is complex (counting,
#      aggregation, summary) or routing confidence < 0.7; otherwise only
#      the primary embedding (variant 0) is searched.
#   3. Multi: ≤ 3 variants, each asking for ceil(top_k / n) results,
#      searched concurrently. Single: one call over the selected
#      collection(s).
#   4. Merge: dedup by chunk id keeping the highest score, sort, truncate.
#   5. Domain post-filter: deposit questions drop loan documents and
#      vice versa. Vector similarity alone cannot separate "lãi suất tiền
#      gửi" from "lãi suất cho vay".
#
# FAILURE MODEL: a variant fails if its embedding or its search fails.
# Failed variants are logged and skipped. Only when every variant failed
# does retrieval raise RetrievalError. Zero hits is an empty list, not an
# error.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Sequence
from typing import Protocol

from bankdoc_qa.agents.variants import QueryVariant
from bankdoc_qa.config import settings
from bankdoc_qa.services.errors import RetrievalError
from bankdoc_qa.services.vectorstore import RetrievedChunk, VectorSearchGateway

logger = logging.getLogger(__name__)

MAX_SEARCH_VARIANTS = 3

COMPLEX_QUESTION_KEYWORDS: tuple[str, ...] = (
    "bao nhiêu", "số lượng", "đếm", "tổng cộng", "tổng số",
    "tóm tắt", "tổng hợp", "liệt kê", "danh sách", "toàn bộ",
    "tất cả các", "so sánh",
)

DEPOSIT_QUESTION_KEYWORDS = ("tiền gửi", "gửi tiền", "tiết kiệm", "tài khoản tiền gửi")
LOAN_QUESTION_KEYWORDS = ("cho vay", "vay vốn", "tín dụng", "khoản vay", "nợ")
DEPOSIT_DOCUMENT_KEYWORDS = ("tiền gửi", "gửi tiền")
LOAN_DOCUMENT_KEYWORDS = ("cho vay", "vay vốn", "tín dụng")


class Embedder(Protocol):
    async def embed(self, text: str) -> list[float]:
        ...

    async def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        ...


def is_complex_question(question: str) -> bool:
    """Counting / aggregation / summary intent."""
    lowered = question.lower()
    return any(kw in lowered for kw in COMPLEX_QUESTION_KEYWORDS)


def apply_domain_filter(
    chunks: list[RetrievedChunk],
    question: str,
) -> list[RetrievedChunk]:
    """
    Drop chunks from the opposite banking domain.

    Applies only when the question is clearly about deposits or clearly
    about loans; questions mentioning both (or neither) pass through.
    """
    lowered = question.lower()
    is_deposit = any(kw in lowered for kw in DEPOSIT_QUESTION_KEYWORDS)
    is_loan = any(kw in lowered for kw in LOAN_QUESTION_KEYWORDS)

    if is_deposit and not is_loan:
        excluded = LOAN_DOCUMENT_KEYWORDS
        label = "deposit"
    elif is_loan and not is_deposit:
        excluded = DEPOSIT_DOCUMENT_KEYWORDS
        label = "loan"
    else:
        return chunks

    kept = [
        c for c in chunks
        if not any(kw in c.source_document.lower() for kw in excluded)
    ]
    if len(kept) != len(chunks):
        logger.info(
            "Domain filter (%s question) removed %d of %d chunks",
            label, len(chunks) - len(kept), len(chunks),
        )
    return kept


def merge_results(
    result_lists: Sequence[Sequence[RetrievedChunk]],
    top_k: int,
) -> list[RetrievedChunk]:
    """Dedup by id keeping the highest score; sort desc; truncate."""
    best: dict[str, RetrievedChunk] = {}
    for results in result_lists:
        for chunk in results:
            current = best.get(chunk.id)
            if current is None or chunk.similarity_score > current.similarity_score:
                best[chunk.id] = chunk
    merged = sorted(best.values(), key=lambda c: (-c.similarity_score, c.id))
    return merged[:top_k]


class MultiCollectionRetriever:
    """
    Args:
        embedder: Embedding gateway (embed / embed_batch).
        vector_store: Vector search gateway.
        multi_variant_threshold: Routing confidence below which every
            variant is searched.
    """

    def __init__(
        self,
        embedder: Embedder,
        vector_store: VectorSearchGateway,
        multi_variant_threshold: float | None = None,
    ) -> None:
        self._embedder = embedder
        self._store = vector_store
        self._threshold = (
            settings.multi_variant_confidence_threshold
            if multi_variant_threshold is None
            else multi_variant_threshold
        )

    async def retrieve(
        self,
        variants: list[QueryVariant],
        collections: list[str],
        top_k: int | None = None,
        *,
        question: str | None = None,
        routing_confidence: float = 1.0,
        min_score: float | None = None,
    ) -> list[RetrievedChunk]:
        """
        Search `collections` with the variants and return merged chunks.

        Raises:
            RetrievalError: No variant could be embedded and searched.
        """
        if not variants:
            raise ValueError("retrieve() needs at least the original question")
        top_k = top_k or settings.retrieval_top_k
        min_score = settings.retrieval_min_score if min_score is None else min_score
        question = question or variants[0].text

        if not collections:
            logger.warning("No collections to search for '%s'", question[:60])
            return []

        multi = is_complex_question(question) or routing_confidence < self._threshold
        searched = variants[:MAX_SEARCH_VARIANTS] if multi else variants[:1]
        per_variant_k = (
            math.ceil(top_k / len(searched)) if multi else top_k
        )

        logger.info(
            "Retrieving: %s search, %d variant(s), collections=%s, k=%d",
            "multi-variant" if multi else "single", len(searched),
            collections, per_variant_k,
        )

        embed_error = await self._embed_variants(searched)

        embedded = [v for v in searched if v.embedding is not None]
        outcomes = await asyncio.gather(
            *(
                self._search(v.embedding, collections, per_variant_k, min_score)
                for v in embedded
            ),
            return_exceptions=True,
        )

        successes: list[list[RetrievedChunk]] = []
        last_error: BaseException | None = embed_error
        for variant, outcome in zip(embedded, outcomes):
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                logger.warning(
                    "Search failed for variant '%s': %s", variant.text[:60], outcome,
                )
                last_error = outcome
                continue
            successes.append(outcome)

        if not successes:
            raise RetrievalError(
                f"All {len(searched)} variant searches failed"
            ) from last_error

        merged = merge_results(successes, top_k)
        filtered = apply_domain_filter(merged, question)
        logger.info(
            "Retrieved %d chunks (%d/%d variants succeeded)",
            len(filtered), len(successes), len(searched),
        )
        return filtered

    async def _embed_variants(
        self, variants: list[QueryVariant],
    ) -> BaseException | None:
        """
        Fill in missing embeddings; failed variants keep embedding=None.

        Returns the last per-variant error, if any.
        """
        pending = [v for v in variants if v.embedding is None]
        if not pending:
            return None

        try:
            vectors = await self._embedder.embed_batch([v.text for v in pending])
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(
                "Batch embedding failed (%s); embedding %d variants one by one",
                e, len(pending),
            )
        else:
            for variant, vector in zip(pending, vectors):
                variant.embedding = vector
            return None

        last_error: BaseException | None = None
        results = await asyncio.gather(
            *(self._embedder.embed(v.text) for v in pending),
            return_exceptions=True,
        )
        for variant, result in zip(pending, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                logger.warning(
                    "Embedding failed for variant '%s': %s", variant.text[:60], result,
                )
                last_error = result
                continue
            variant.embedding = result
        return last_error

    async def _search(
        self,
        embedding: list[float],
        collections: list[str],
        top_k: int,
        min_score: float,
    ) -> list[RetrievedChunk]:
        if len(collections) > 1:
            return await self._store.search_many(
                embedding, collections, top_k=top_k, min_score=min_score,
            )
        return await self._store.search(
            embedding, collections[0], top_k=top_k, min_score=min_score,
        )
