# =============================================================================
# Unit Tests — Result Reranking
# =============================================================================

from __future__ import annotations

import random
from collections import Counter

import pytest

from bankdoc_qa.agents.reranker import query_keywords, rerank
from tests.fakes import make_chunk


def _fifteen_chunks():
    """15 candidates: 7 from doc A, 5 from doc B, 3 from doc C."""
    chunks = []
    for i in range(7):
        chunks.append(make_chunk(f"a{i}", 0.9 - i * 0.01, document="Văn bản A"))
    for i in range(5):
        chunks.append(make_chunk(f"b{i}", 0.8 - i * 0.01, document="Văn bản B"))
    for i in range(3):
        chunks.append(make_chunk(f"c{i}", 0.7 - i * 0.01, document="Văn bản C"))
    return chunks


class TestQueryKeywords:
    def test_short_words_dropped(self):
        assert query_keywords("Phí của thẻ ATM là gì") == ["phí", "của", "thẻ", "atm"]


class TestRerank:
    def test_per_document_cap(self):
        ranked = rerank(_fifteen_chunks(), "câu hỏi", keyword_weight=0.1, max_per_document=5)
        counts = Counter(r.chunk.source_document for r in ranked)
        assert counts["Văn bản A"] == 5
        assert counts["Văn bản B"] == 5
        assert counts["Văn bản C"] == 3
        assert len(ranked) <= 15

    def test_cap_keeps_highest_of_document(self):
        ranked = rerank(_fifteen_chunks(), "câu hỏi", max_per_document=2)
        kept_a = {r.chunk.id for r in ranked if r.chunk.source_document == "Văn bản A"}
        assert kept_a == {"a0", "a1"}

    @pytest.mark.parametrize("cap", [1, 2, 3])
    def test_cap_holds_for_random_inputs(self, cap):
        rng = random.Random(cap)
        chunks = [
            make_chunk(str(i), round(rng.random(), 3), document=f"Doc {rng.randint(0, 3)}")
            for i in range(40)
        ]
        ranked = rerank(chunks, "bất kỳ", max_per_document=cap)
        counts = Counter(r.chunk.source_document for r in ranked)
        assert max(counts.values()) <= cap

    def test_keyword_boost_reorders(self):
        chunks = [
            make_chunk("plain", 0.80, document="Quy định chung"),
            make_chunk("named", 0.75, document="Biểu phí thẻ tín dụng"),
        ]
        ranked = rerank(chunks, "Biểu phí thẻ tín dụng", keyword_weight=0.1)
        assert [r.chunk.id for r in ranked] == ["named", "plain"]
        assert ranked[0].boosted_score == pytest.approx(0.85)
        assert ranked[1].boosted_score == pytest.approx(0.80)

    def test_boost_applied_once(self):
        chunks = [make_chunk("x", 0.5, document="phí thẻ phí thẻ")]
        ranked = rerank(chunks, "phí thẻ", keyword_weight=0.1)
        assert ranked[0].boosted_score == pytest.approx(0.6)

    def test_original_scores_untouched(self):
        chunks = [make_chunk("x", 0.5, document="Biểu phí")]
        ranked = rerank(chunks, "biểu phí", keyword_weight=0.1)
        assert ranked[0].chunk.similarity_score == 0.5

    def test_ranks_sequential(self):
        ranked = rerank(_fifteen_chunks(), "q", max_per_document=5)
        assert [r.rank for r in ranked] == list(range(1, len(ranked) + 1))

    def test_idempotent(self):
        chunks = _fifteen_chunks()
        first = rerank(chunks, "văn bản", max_per_document=4)
        second = rerank(chunks, "văn bản", max_per_document=4)
        assert first == second

    def test_ties_broken_by_id(self):
        chunks = [make_chunk("b", 0.7, document="X"), make_chunk("a", 0.7, document="Y")]
        assert [r.chunk.id for r in rerank(chunks, "q")] == ["a", "b"]

    def test_empty(self):
        assert rerank([], "q") == []
