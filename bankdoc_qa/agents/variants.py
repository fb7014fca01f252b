# =============================================================================
# Query Variant Generator — Question Rewriting for Retrieval
# =============================================================================
#
# Users ask conversationally ("Cho em hỏi vay tiền mua nhà cần gì ạ?")
# while regulations are written formally ("Điều kiện vay vốn mua nhà").
# The generator rewrites one question into 1–4 search phrasings that
# use the documents' own terminology.
#
#   question ──▶ lookup cache hit? ──yes──▶ cached VariantResult
#                      │ no
#                      ▼
#              completion (JSON) ──parse ok──▶ cache + return
#                      │ failure / bad JSON
#                      ▼
#              deterministic fallback (not cached)
#
# INVARIANT: variants[0] is always the verbatim question; at most 4.
#
# DESIGN DECISION: Fallback results are not cached. A transient outage
# would otherwise pin the weaker rule-based rewrite for the lifetime of
# the cache entry.
# =============================================================================

from __future__ import annotations

import logging
import re
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from bankdoc_qa.agents.parsing import parse_model_output
from bankdoc_qa.agents.prompts import REWRITE_PROMPT
from bankdoc_qa.config import settings
from bankdoc_qa.services.llm import LLMProvider, get_llm_provider
from bankdoc_qa.services.usage import LoggingUsageReporter, UsageRecord, UsageReporter

logger = logging.getLogger(__name__)

MAX_VARIANTS = 4
FALLBACK_MAX_VARIANTS = 3
DEFAULT_CONFIDENCE = 0.7
FALLBACK_CONFIDENCE = 0.5

REWRITE_TEMPERATURE = 0.4
REWRITE_MAX_TOKENS = 800

_FILLER_RE = re.compile(
    r"xin hỏi|cho (?:em|tôi|mình) (?:biết|hỏi)|vui lòng|giúp (?:em|tôi|mình)"
    r"|\bạ\b|\bà\b",
    re.IGNORECASE,
)
_END_PUNCTUATION_RE = re.compile(r"[?!.]")
_WHITESPACE_RE = re.compile(r"\s+")

# Colloquial term → formal term used in the regulations.
SYNONYM_EXPANSIONS: dict[str, str] = {
    "vay tiền": "vay vốn",
    "gửi tiền": "tiền gửi",
    "lãi suất": "mức lãi",
    "điều kiện": "quy định",
    "được phép": "có quyền",
}


@dataclass
class QueryVariant:
    """One phrasing used for retrieval. Embedding is filled in lazily."""

    text: str
    provenance: str  # "original" or "generated"
    embedding: list[float] | None = None


@dataclass
class VariantResult:
    variants: list[str]
    confidence: float
    rationale: str
    from_fallback: bool = False

    def as_query_variants(self) -> list[QueryVariant]:
        return [
            QueryVariant(text=text, provenance="original" if i == 0 else "generated")
            for i, text in enumerate(self.variants)
        ]


class _RewriteOutput(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    simplified_queries: list[Any] = Field(default_factory=list, alias="simplifiedQueries")
    reasoning: str | None = None
    confidence: float | None = None


# ---------------------------------------------------------------------------
# Generator
# ---------------------------------------------------------------------------


class QueryVariantGenerator:
    """
    Rewrites questions into retrieval phrasings.

    Args:
        llm: Completion provider. When None, the configured provider is
            resolved on first use; a missing API key means fallback only.
        usage: Receives one UsageRecord per completion call.
        model: Model for rewriting (defaults to the cheap model).
        cache_size: Capacity of the lookup cache.
    """

    def __init__(
        self,
        llm: LLMProvider | None = None,
        usage: UsageReporter | None = None,
        model: str | None = None,
        cache_size: int | None = None,
    ) -> None:
        self._llm = llm
        self._usage = usage or LoggingUsageReporter()
        self._model = model or settings.llm_cheap_model
        self._cache_size = cache_size or settings.variant_cache_size
        self._cache: OrderedDict[str, VariantResult] = OrderedDict()

    def _resolve_llm(self) -> LLMProvider | None:
        if self._llm is None:
            try:
                self._llm = get_llm_provider()
            except ValueError as e:
                logger.warning("No completion provider for rewriting: %s", e)
                return None
        return self._llm

    async def generate_variants(self, question: str) -> VariantResult:
        key = question.lower().strip()
        cached = self._cache.get(key)
        if cached is not None:
            logger.debug("Variant cache hit for '%s'", question[:60])
            return cached

        llm = self._resolve_llm()
        if llm is None:
            return basic_variants(question)

        try:
            response = await llm.complete(
                messages=[
                    {"role": "user", "content": REWRITE_PROMPT.format(question=question)}
                ],
                temperature=REWRITE_TEMPERATURE,
                max_tokens=REWRITE_MAX_TOKENS,
                model=self._model,
            )
        except Exception as e:
            logger.warning("Query rewriting failed, using fallback: %s", e)
            self._usage.report(UsageRecord(
                request_type="query_preprocessing",
                model=self._model,
                success=False,
                error=str(e),
            ))
            return basic_variants(question)

        self._usage.report(UsageRecord(
            request_type="query_preprocessing",
            model=response.model,
            input_tokens=response.input_tokens,
            output_tokens=response.output_tokens,
        ))

        result = parse_variants(response.content, question)
        if result is None:
            return basic_variants(question)

        self._remember(key, result)
        logger.info(
            "Generated %d variants (confidence=%.2f) for '%s'",
            len(result.variants), result.confidence, question[:60],
        )
        return result

    def _remember(self, key: str, result: VariantResult) -> None:
        self._cache[key] = result
        self._cache.move_to_end(key)
        while len(self._cache) > self._cache_size:
            self._cache.popitem(last=False)

    def clear_cache(self) -> None:
        self._cache.clear()

    def cache_stats(self) -> dict[str, int]:
        return {"size": len(self._cache), "max_size": self._cache_size}


# ---------------------------------------------------------------------------
# Parsing & Fallback
# ---------------------------------------------------------------------------


def parse_variants(text: str, question: str) -> VariantResult | None:
    """Turn model output into a VariantResult, or None if unusable."""
    parsed = parse_model_output(text, _RewriteOutput)
    if parsed is None:
        return None

    generated = [
        q.strip()
        for q in parsed.simplified_queries
        if isinstance(q, str) and q.strip()
    ]
    variants = [question] + [q for q in generated if q != question]
    variants = variants[:MAX_VARIANTS]

    confidence = (
        DEFAULT_CONFIDENCE if parsed.confidence is None else parsed.confidence
    )
    return VariantResult(
        variants=variants,
        confidence=min(max(confidence, 0.0), 1.0),
        rationale=parsed.reasoning or "Phân tích tự động",
    )


def clean_question(question: str) -> str:
    """Lowercase, drop end punctuation and filler phrases."""
    cleaned = _END_PUNCTUATION_RE.sub("", question.lower())
    cleaned = _FILLER_RE.sub("", cleaned)
    return _WHITESPACE_RE.sub(" ", cleaned).strip()


def basic_variants(question: str) -> VariantResult:
    """Rule-based rewrite used when the model is unavailable or unparseable."""
    cleaned = clean_question(question)
    variants = [question]
    if cleaned and cleaned != question:
        variants.append(cleaned)

    for term, replacement in SYNONYM_EXPANSIONS.items():
        if term in cleaned:
            expanded = cleaned.replace(term, replacement)
            if expanded not in variants:
                variants.append(expanded)
            break

    return VariantResult(
        variants=variants[:FALLBACK_MAX_VARIANTS],
        confidence=FALLBACK_CONFIDENCE,
        rationale="Xử lý cơ bản (không dùng AI)",
        from_fallback=True,
    )
