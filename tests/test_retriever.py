# =============================================================================
# Unit Tests — Multi-Collection Retrieval
# =============================================================================

from __future__ import annotations

import pytest

from bankdoc_qa.agents.retriever import (
    MultiCollectionRetriever,
    apply_domain_filter,
    is_complex_question,
    merge_results,
)
from bankdoc_qa.agents.variants import QueryVariant
from bankdoc_qa.services.errors import FatalUpstreamError, RetrievalError
from tests.fakes import FakeEmbedder, FakeVectorStore, _run, make_chunk

V1, V2, V3 = [1.0, 0.0], [0.0, 1.0], [0.5, 0.5]


def _variants(*texts):
    return [
        QueryVariant(text=t, provenance="original" if i == 0 else "generated")
        for i, t in enumerate(texts)
    ]


class TestHelpers:
    def test_complex_question(self):
        assert is_complex_question("Có bao nhiêu loại phí?")
        assert not is_complex_question("Phí rút tiền là gì?")

    def test_merge_keeps_max_score(self):
        merged = merge_results(
            [[make_chunk("a", 0.6), make_chunk("b", 0.7)], [make_chunk("a", 0.9)]],
            top_k=10,
        )
        assert [c.id for c in merged] == ["a", "b"]
        assert merged[0].similarity_score == 0.9

    def test_merge_truncates(self):
        chunks = [make_chunk(str(i), 0.5 + i / 100) for i in range(10)]
        assert len(merge_results([chunks], top_k=3)) == 3

    def test_domain_filter_deposit_question(self):
        chunks = [
            make_chunk("a", 0.8, document="Quy định tiền gửi"),
            make_chunk("b", 0.8, document="Quy định cho vay"),
        ]
        kept = apply_domain_filter(chunks, "Lãi suất tiền gửi bao nhiêu?")
        assert [c.id for c in kept] == ["a"]

    def test_domain_filter_mixed_question_passes(self):
        chunks = [
            make_chunk("a", 0.8, document="Quy định tiền gửi"),
            make_chunk("b", 0.8, document="Quy định cho vay"),
        ]
        assert apply_domain_filter(chunks, "So sánh tiền gửi và cho vay") == chunks


class TestMultiCollectionRetriever:
    def test_single_mode_uses_primary_variant(self):
        embedder = FakeEmbedder({"q": V1, "v2": V2})
        store = FakeVectorStore({tuple(V1): [make_chunk("a", 0.8)]})
        retriever = MultiCollectionRetriever(embedder, store)

        chunks = _run(retriever.retrieve(
            _variants("q", "v2"), ["tien_gui"], top_k=5, routing_confidence=0.9,
        ))

        assert [c.id for c in chunks] == ["a"]
        assert embedder.embedded == ["q"]
        assert store.searches == [{"collections": ["tien_gui"], "top_k": 5}]

    def test_low_confidence_searches_three_variants(self):
        embedder = FakeEmbedder({"q": V1, "v2": V2, "v3": V3, "v4": [9.0, 9.0]})
        store = FakeVectorStore()
        retriever = MultiCollectionRetriever(embedder, store)

        _run(retriever.retrieve(
            _variants("q", "v2", "v3", "v4"), ["tien_gui", "tien_vay"],
            top_k=10, routing_confidence=0.4,
        ))

        assert len(store.searches) == 3
        assert all(s["top_k"] == 4 for s in store.searches)
        assert all(s["collections"] == ["tien_gui", "tien_vay"] for s in store.searches)

    def test_complex_question_forces_multi(self):
        embedder = FakeEmbedder({"Có bao nhiêu điều?": V1, "v2": V2})
        store = FakeVectorStore()
        retriever = MultiCollectionRetriever(embedder, store)

        _run(retriever.retrieve(
            _variants("Có bao nhiêu điều?", "v2"), ["tien_gui"], top_k=10,
        ))

        assert len(store.searches) == 2
        assert all(s["top_k"] == 5 for s in store.searches)

    def test_no_duplicate_ids_and_max_score(self):
        embedder = FakeEmbedder({"q": V1, "v2": V2})
        store = FakeVectorStore({
            tuple(V1): [make_chunk("a", 0.7), make_chunk("b", 0.6)],
            tuple(V2): [make_chunk("a", 0.95), make_chunk("c", 0.55)],
        })
        retriever = MultiCollectionRetriever(embedder, store)

        chunks = _run(retriever.retrieve(
            _variants("q", "v2"), ["tien_gui"], top_k=10, routing_confidence=0.2,
        ))

        ids = [c.id for c in chunks]
        assert len(ids) == len(set(ids))
        assert chunks[0].id == "a"
        assert chunks[0].similarity_score == 0.95

    def test_one_variant_embedding_fails(self):
        embedder = FakeEmbedder(
            {"q": V1, "v2": V2, "v3": V3},
            fail_texts={"v2": FatalUpstreamError("invalid input")},
            fail_batch=FatalUpstreamError("invalid input"),
        )
        store = FakeVectorStore({
            tuple(V1): [make_chunk("a", 0.8)],
            tuple(V2): [make_chunk("b", 0.9)],
            tuple(V3): [make_chunk("c", 0.7)],
        })
        retriever = MultiCollectionRetriever(embedder, store)

        chunks = _run(retriever.retrieve(
            _variants("q", "v2", "v3"), ["tien_gui"], top_k=10, routing_confidence=0.3,
        ))

        assert sorted(c.id for c in chunks) == ["a", "c"]

    def test_one_search_fails(self):
        embedder = FakeEmbedder({"q": V1, "v2": V2})
        store = FakeVectorStore(
            {tuple(V2): [make_chunk("b", 0.9)]},
            fail_for={tuple(V1): RuntimeError("connection reset")},
        )
        retriever = MultiCollectionRetriever(embedder, store)

        chunks = _run(retriever.retrieve(
            _variants("q", "v2"), ["tien_gui"], routing_confidence=0.1,
        ))

        assert [c.id for c in chunks] == ["b"]

    def test_all_variants_fail_raises(self):
        boom = FatalUpstreamError("auth")
        embedder = FakeEmbedder(
            fail_texts={"q": boom, "v2": boom}, fail_batch=boom,
        )
        retriever = MultiCollectionRetriever(embedder, FakeVectorStore())

        with pytest.raises(RetrievalError):
            _run(retriever.retrieve(
                _variants("q", "v2"), ["tien_gui"], routing_confidence=0.1,
            ))

    def test_zero_hits_is_empty_not_error(self):
        retriever = MultiCollectionRetriever(FakeEmbedder(), FakeVectorStore())
        assert _run(retriever.retrieve(_variants("q"), ["tien_gui"])) == []

    def test_no_collections(self):
        embedder = FakeEmbedder()
        retriever = MultiCollectionRetriever(embedder, FakeVectorStore())
        assert _run(retriever.retrieve(_variants("q"), [])) == []
        assert embedder.embedded == []

    def test_min_score_passed_through(self):
        embedder = FakeEmbedder({"q": V1})
        store = FakeVectorStore({tuple(V1): [make_chunk("a", 0.4), make_chunk("b", 0.6)]})
        retriever = MultiCollectionRetriever(embedder, store)

        chunks = _run(retriever.retrieve(_variants("q"), ["tien_gui"], min_score=0.5))

        assert [c.id for c in chunks] == ["b"]
