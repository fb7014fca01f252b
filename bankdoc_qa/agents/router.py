# =============================================================================
# Collection Router — Which Document Categories to Search
# =============================================================================
#
# Each document category (deposits, loans, transfers, cards) lives in its
# own vector collection. The router narrows the search to the relevant
# ones.
#
# POLICY: routing is conservative. Whenever the router is unsure
# (confidence < 0.5, zero valid names, unparseable output) the decision
# widens to ALL available collections. Over-retrieval costs a little
# latency; a missed collection costs a wrong answer.
#
#   question ──▶ completion (JSON) ──ok──▶ validate names ──▶ widen if unsure
#                     │ no provider / call raised
#                     ▼
#                quick_route(): accent-free keyword table
# =============================================================================

from __future__ import annotations

import logging
import re
import unicodedata
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, Field

from bankdoc_qa.agents.parsing import parse_model_output
from bankdoc_qa.agents.prompts import ROUTING_PROMPT
from bankdoc_qa.config import settings
from bankdoc_qa.services.llm import LLMProvider, get_llm_provider
from bankdoc_qa.services.usage import LoggingUsageReporter, UsageRecord, UsageReporter

logger = logging.getLogger(__name__)

ROUTING_TEMPERATURE = 0.3
ROUTING_MAX_TOKENS = 500

WIDEN_BELOW_CONFIDENCE = 0.5
UNSURE_CONFIDENCE = 0.3

# Accent-free keywords per collection, matched on whole words.
COLLECTION_KEYWORDS: dict[str, list[str]] = {
    "tien_gui": ["tien gui", "gui tiet kiem", "lai suat gui", "ky han", "so tiet kiem"],
    "tien_vay": ["tien vay", "vay von", "cho vay", "lai suat vay", "khoan vay", "tin dung"],
    "chuyen_tien": ["chuyen tien", "chuyen khoan", "giao dich", "thanh toan"],
    "the": ["the", "the tin dung", "the ghi no", "the atm"],
}


@dataclass
class RoutingDecision:
    collections: list[str]
    confidence: float
    rationale: str


class _RoutingOutput(BaseModel):
    collections: list[Any] = Field(default_factory=list)
    reasoning: str | None = None
    confidence: float | None = None


def strip_accents(text: str) -> str:
    """Lowercase and remove Vietnamese diacritics ("Tiền gửi" → "tien gui")."""
    decomposed = unicodedata.normalize("NFD", text.lower())
    stripped = "".join(c for c in decomposed if not unicodedata.combining(c))
    return stripped.replace("đ", "d")


def _normalise_name(name: str) -> str:
    return re.sub(r"[\s\-]+", "_", strip_accents(name).strip())


def _widen_if_unsure(
    decision: RoutingDecision,
    available: list[str],
) -> RoutingDecision:
    if decision.confidence < WIDEN_BELOW_CONFIDENCE or not decision.collections:
        return RoutingDecision(
            collections=list(available),
            confidence=decision.confidence,
            rationale=decision.rationale,
        )
    return decision


def quick_route(
    question: str,
    available_collections: list[str],
    keywords: dict[str, list[str]] | None = None,
) -> RoutingDecision:
    """
    Keyword routing used when no completion call is possible.

    Each available collection counts its matched keywords; every
    collection with at least one match is selected.
    confidence = min(0.5 + 0.1 × best match count, 0.9).
    """
    if not available_collections:
        return RoutingDecision([], 0.0, "Không có collection nào")

    table = COLLECTION_KEYWORDS if keywords is None else keywords
    text = strip_accents(question)

    matched: list[str] = []
    max_matches = 0
    for collection in available_collections:
        count = sum(
            1
            for kw in table.get(collection, [])
            if re.search(rf"\b{re.escape(kw)}\b", text)
        )
        if count:
            matched.append(collection)
            max_matches = max(max_matches, count)

    if not matched:
        return RoutingDecision(
            collections=list(available_collections),
            confidence=UNSURE_CONFIDENCE,
            rationale="Không tìm thấy từ khóa cụ thể, tìm trong tất cả collections",
        )

    decision = RoutingDecision(
        collections=matched,
        confidence=min(0.5 + 0.1 * max_matches, 0.9),
        rationale=f"Tìm thấy từ khóa liên quan đến: {', '.join(matched)}",
    )
    return _widen_if_unsure(decision, available_collections)


def parse_routing(text: str, available_collections: list[str]) -> RoutingDecision:
    """Validate model output against the available names; widen if unsure."""
    parsed = parse_model_output(text, _RoutingOutput)
    if parsed is None:
        return RoutingDecision(
            collections=list(available_collections),
            confidence=UNSURE_CONFIDENCE,
            rationale="Không thể phân tích, tìm trong tất cả collections",
        )

    by_normalised = {_normalise_name(c): c for c in available_collections}
    valid: list[str] = []
    for name in parsed.collections:
        if not isinstance(name, str):
            continue
        resolved = name if name in available_collections else by_normalised.get(
            _normalise_name(name)
        )
        if resolved and resolved not in valid:
            valid.append(resolved)

    if not valid:
        logger.warning("Router returned no valid collections, using all")
        return RoutingDecision(
            collections=list(available_collections),
            confidence=UNSURE_CONFIDENCE,
            rationale=parsed.reasoning
            or "Không tìm thấy collection phù hợp, tìm trong tất cả",
        )

    confidence = 0.5 if parsed.confidence is None else parsed.confidence
    decision = RoutingDecision(
        collections=valid,
        confidence=min(max(confidence, 0.0), 1.0),
        rationale=parsed.reasoning or "Phân tích tự động",
    )
    return _widen_if_unsure(decision, available_collections)


class CollectionRouter:
    """
    Picks collections for a question.

    Args:
        llm: Completion provider; resolved from config when None. A
            missing API key means keyword routing only.
        usage: Receives one UsageRecord per completion call.
        model: Model for routing (defaults to the cheap model).
        hints: Collection name → domain description shown to the model.
    """

    def __init__(
        self,
        llm: LLMProvider | None = None,
        usage: UsageReporter | None = None,
        model: str | None = None,
        hints: dict[str, str] | None = None,
    ) -> None:
        self._llm = llm
        self._usage = usage or LoggingUsageReporter()
        self._model = model or settings.llm_cheap_model
        self._hints = settings.collection_hints if hints is None else hints

    def _resolve_llm(self) -> LLMProvider | None:
        if self._llm is None:
            try:
                self._llm = get_llm_provider()
            except ValueError as e:
                logger.warning("No completion provider for routing: %s", e)
                return None
        return self._llm

    def _format_collections(self, available: list[str]) -> str:
        lines = []
        for i, name in enumerate(available, 1):
            hint = self._hints.get(name)
            lines.append(f"{i}. {name}" + (f" ({hint})" if hint else ""))
        return "\n".join(lines)

    async def route(
        self,
        question: str,
        available_collections: list[str],
    ) -> RoutingDecision:
        if not available_collections:
            return RoutingDecision([], 0.0, "Không có collection nào")

        llm = self._resolve_llm()
        if llm is None:
            return quick_route(question, available_collections)

        prompt = ROUTING_PROMPT.format(
            question=question,
            collections=self._format_collections(available_collections),
        )
        try:
            response = await llm.complete(
                messages=[{"role": "user", "content": prompt}],
                temperature=ROUTING_TEMPERATURE,
                max_tokens=ROUTING_MAX_TOKENS,
                model=self._model,
            )
        except Exception as e:
            logger.warning("Routing call failed, using keyword routing: %s", e)
            self._usage.report(UsageRecord(
                request_type="query_analysis",
                model=self._model,
                success=False,
                error=str(e),
            ))
            return quick_route(question, available_collections)

        self._usage.report(UsageRecord(
            request_type="query_analysis",
            model=response.model,
            input_tokens=response.input_tokens,
            output_tokens=response.output_tokens,
        ))

        decision = parse_routing(response.content, available_collections)
        logger.info(
            "Routed to %s (confidence=%.2f)", decision.collections, decision.confidence,
        )
        return decision
