# =============================================================================
# Result Reranker — Keyword Boost + Per-Document Diversity Cap
# =============================================================================
#
# 1. Boost: +keyword_weight (once) when the chunk's document name
#    contains a query keyword (lowercase whitespace token, length > 2).
# 2. Diversity: at most max_per_document chunks per source document, so
#    one verbose circular cannot crowd out the others.
# 3. Global sort by boosted score, ranks 1..n.
#
# Pure and deterministic: ties are broken by chunk id, and chunks are
# wrapped in RankedResult rather than modified.
# =============================================================================

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass

from bankdoc_qa.config import settings
from bankdoc_qa.services.vectorstore import RetrievedChunk


@dataclass(frozen=True)
class RankedResult:
    chunk: RetrievedChunk
    rank: int
    boosted_score: float


def query_keywords(question: str) -> list[str]:
    return [w for w in question.lower().split() if len(w) > 2]


def rerank(
    chunks: list[RetrievedChunk],
    question: str,
    *,
    keyword_weight: float | None = None,
    max_per_document: int | None = None,
) -> list[RankedResult]:
    """Reorder and cap `chunks` for relevance and source diversity."""
    weight = settings.rerank_keyword_weight if keyword_weight is None else keyword_weight
    cap = settings.rerank_max_per_document if max_per_document is None else max_per_document
    keywords = query_keywords(question)

    scored: list[tuple[float, RetrievedChunk]] = []
    for chunk in chunks:
        document = chunk.source_document.lower()
        boost = weight if any(kw in document for kw in keywords) else 0.0
        scored.append((chunk.similarity_score + boost, chunk))

    by_document: dict[str, list[tuple[float, RetrievedChunk]]] = defaultdict(list)
    for item in scored:
        by_document[item[1].source_document].append(item)

    kept: list[tuple[float, RetrievedChunk]] = []
    for group in by_document.values():
        group.sort(key=lambda item: (-item[0], item[1].id))
        kept.extend(group[:cap])

    kept.sort(key=lambda item: (-item[0], item[1].id))
    return [
        RankedResult(chunk=chunk, rank=rank, boosted_score=round(score, 4))
        for rank, (score, chunk) in enumerate(kept, 1)
    ]
