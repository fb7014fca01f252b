# =============================================================================
# Unit Tests — Collection Routing
# =============================================================================

from __future__ import annotations

import json

import pytest

from bankdoc_qa.agents.router import (
    CollectionRouter,
    parse_routing,
    quick_route,
    strip_accents,
)
from tests.fakes import RecordingUsage, ScriptedLLM, _run

AVAILABLE = ["tien_gui", "tien_vay"]
DEPOSIT_QUESTION = "Lãi suất tiền gửi tiết kiệm 12 tháng là bao nhiêu?"


def _routing_json(collections, confidence=0.9):
    return json.dumps({
        "collections": collections,
        "reasoning": "câu hỏi về tiền gửi",
        "confidence": confidence,
    })


class TestStripAccents:
    def test_vietnamese(self):
        assert strip_accents("Tiền gửi Đặc biệt") == "tien gui dac biet"


class TestQuickRoute:
    def test_deposit_question_routes_to_deposits(self):
        decision = quick_route(DEPOSIT_QUESTION, AVAILABLE)
        assert decision.collections == ["tien_gui"]
        assert decision.confidence >= 0.7

    def test_no_keyword_uses_all(self):
        decision = quick_route("Giờ làm việc của chi nhánh?", AVAILABLE)
        assert decision.collections == AVAILABLE
        assert decision.confidence == pytest.approx(0.3)

    def test_single_match_widened(self):
        # One keyword gives confidence 0.6, which is kept.
        decision = quick_route("Điều kiện vay vốn?", AVAILABLE)
        assert decision.collections == ["tien_vay"]
        assert decision.confidence == pytest.approx(0.6)

    def test_confidence_capped(self):
        question = "tiền gửi gửi tiết kiệm lãi suất gửi kỳ hạn sổ tiết kiệm"
        decision = quick_route(question, AVAILABLE)
        assert decision.confidence == pytest.approx(0.9)

    def test_word_boundaries(self):
        # "the" must not match inside "theo".
        decision = quick_route("Theo quy định hiện hành", ["the", "tien_vay"])
        assert decision.collections == ["the", "tien_vay"]
        assert decision.confidence == pytest.approx(0.3)

    def test_empty_available(self):
        decision = quick_route("bất kỳ", [])
        assert decision.collections == []
        assert decision.confidence == 0.0


class TestParseRouting:
    def test_valid_names(self):
        decision = parse_routing(_routing_json(["tien_gui"]), AVAILABLE)
        assert decision.collections == ["tien_gui"]
        assert decision.confidence == pytest.approx(0.9)

    def test_normalised_name_matches(self):
        decision = parse_routing(_routing_json(["Tiền Gửi"]), AVAILABLE)
        assert decision.collections == ["tien_gui"]

    def test_unknown_names_use_all(self):
        decision = parse_routing(_routing_json(["bao_hiem"]), AVAILABLE)
        assert decision.collections == AVAILABLE
        assert decision.confidence == pytest.approx(0.3)

    def test_low_confidence_widens(self):
        decision = parse_routing(_routing_json(["tien_gui"], 0.4), AVAILABLE)
        assert decision.collections == AVAILABLE
        assert decision.confidence == pytest.approx(0.4)

    def test_zero_confidence_widens(self):
        decision = parse_routing(_routing_json(["tien_gui"], 0.0), AVAILABLE)
        assert decision.collections == AVAILABLE
        assert decision.confidence == 0.0

    def test_missing_confidence_defaults_to_half(self):
        decision = parse_routing(json.dumps({"collections": ["tien_vay"]}), AVAILABLE)
        assert decision.collections == ["tien_vay"]
        assert decision.confidence == pytest.approx(0.5)

    def test_unparseable_output(self):
        decision = parse_routing("tôi nghĩ là tiền gửi", AVAILABLE)
        assert decision.collections == AVAILABLE
        assert decision.confidence == pytest.approx(0.3)


class TestCollectionRouter:
    @pytest.mark.parametrize("output", [
        _routing_json(["tien_gui"], 0.1),
        _routing_json([]),
        "garbage",
        _routing_json(["tien_gui"], 0.95),
    ])
    def test_never_empty_when_collections_exist(self, output):
        router = CollectionRouter(llm=ScriptedLLM([output]), usage=RecordingUsage())
        decision = _run(router.route(DEPOSIT_QUESTION, AVAILABLE))
        assert decision.collections

    def test_model_routing_reports_usage(self):
        llm = ScriptedLLM([_routing_json(["tien_gui"])])
        usage = RecordingUsage()
        router = CollectionRouter(llm=llm, usage=usage, model="cheap")

        decision = _run(router.route(DEPOSIT_QUESTION, AVAILABLE))

        assert decision.collections == ["tien_gui"]
        assert llm.calls[0]["temperature"] == 0.3
        assert llm.calls[0]["max_tokens"] == 500
        assert usage.records[0].request_type == "query_analysis"

    def test_prompt_lists_hints(self):
        llm = ScriptedLLM([_routing_json(["tien_gui"])])
        router = CollectionRouter(
            llm=llm, usage=RecordingUsage(), hints={"tien_gui": "Tiền gửi"},
        )
        _run(router.route(DEPOSIT_QUESTION, AVAILABLE))
        prompt = llm.calls[0]["messages"][0]["content"]
        assert "tien_gui (Tiền gửi)" in prompt
        assert "2. tien_vay" in prompt

    def test_call_failure_uses_keyword_routing(self):
        llm = ScriptedLLM([RuntimeError("429 rate limit")])
        usage = RecordingUsage()
        router = CollectionRouter(llm=llm, usage=usage)

        decision = _run(router.route(DEPOSIT_QUESTION, AVAILABLE))

        assert decision.collections == ["tien_gui"]
        assert not usage.records[0].success

    def test_no_collections(self):
        router = CollectionRouter(llm=ScriptedLLM([]), usage=RecordingUsage())
        decision = _run(router.route(DEPOSIT_QUESTION, []))
        assert decision.collections == []
