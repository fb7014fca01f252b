# =============================================================================
# Unit Tests — Answer Orchestrator
# =============================================================================
#
# Context filtering, prompt assembly, batch generation with retry, and the
# streaming contract (ordered chunks, one terminal event, retry only before
# the first fragment, cancellation).
# =============================================================================

from __future__ import annotations

import asyncio

import pytest

from bankdoc_qa.agents.analyst import (
    AnswerOrchestrator,
    build_prompt,
    compute_confidence,
    filter_context,
    format_source_header,
    is_multiple_choice,
    jaccard_similarity,
)
from bankdoc_qa.agents.prompts import (
    ANSWER_SYSTEM_PROMPT,
    MULTIPLE_CHOICE_SYSTEM_PROMPT,
    NO_CONTEXT_ANSWER,
)
from bankdoc_qa.agents.reranker import RankedResult
from bankdoc_qa.services.errors import FatalUpstreamError, GenerationError
from tests.fakes import FixedSelector, RecordingUsage, ScriptedLLM, _run, make_chunk

QUESTION = "Lãi suất tiền gửi kỳ hạn 12 tháng là bao nhiêu?"


def _ranked(*chunks):
    return [RankedResult(chunk=c, rank=i, boosted_score=c.similarity_score)
            for i, c in enumerate(chunks, 1)]


def _context():
    return _ranked(
        make_chunk("c1", 0.9, content="Lãi suất kỳ hạn 12 tháng là 5,5%/năm.", article="5"),
        make_chunk("c2", 0.7, content="Tiền lãi được trả vào cuối kỳ.", article="6"),
    )


def _orchestrator(llm, usage=None, selector=None, delays=None, max_attempts=3):
    async def sleep(seconds):
        if delays is not None:
            delays.append(seconds)

    return AnswerOrchestrator(
        llm=llm,
        selector=selector or FixedSelector(),
        usage=usage or RecordingUsage(),
        max_attempts=max_attempts,
        base_delay=2.0,
        sleep=sleep,
    )


async def _collect(agen):
    return [event async for event in agen]


# ---------------------------------------------------------------------------
# Context filtering & confidence
# ---------------------------------------------------------------------------


class TestFilterContext:
    def test_drops_low_scores(self):
        chunks = [make_chunk("a", 0.49), make_chunk("b", 0.5)]
        assert [c.id for c in filter_context(chunks)] == ["b"]

    def test_per_document_cap_keeps_best(self):
        chunks = [
            make_chunk(f"x{i}", 0.6 + i / 100, content=f"đoạn khác biệt số {i} {'x' * i}")
            for i in range(5)
        ]
        kept = filter_context(chunks, max_per_document=3)
        assert {c.id for c in kept} == {"x2", "x3", "x4"}

    def test_order_preserved(self):
        chunks = [
            make_chunk("low", 0.6, document="A", content="một hai ba"),
            make_chunk("high", 0.9, document="B", content="bốn năm sáu"),
        ]
        assert [c.id for c in filter_context(chunks)] == ["low", "high"]

    def test_near_duplicates_keep_higher_score(self):
        text = "Điều 5 quy định lãi suất tiền gửi kỳ hạn mười hai tháng cụ thể"
        chunks = [
            make_chunk("first", 0.6, document="A", content=text),
            make_chunk("dup", 0.8, document="B", content=text + " năm"),
        ]
        kept = filter_context(chunks)
        assert [c.id for c in kept] == ["dup"]

    def test_total_cap(self):
        chunks = [
            make_chunk(str(i), 0.8, document=f"Doc {i}", content=f"nội dung {i}")
            for i in range(20)
        ]
        assert len(filter_context(chunks, max_chunks=12)) == 12

    def test_jaccard(self):
        assert jaccard_similarity("a b", "a b") == 1.0
        assert jaccard_similarity("a b", "c d") == 0.0


class TestConfidence:
    def test_mean_percentage(self):
        chunks = [make_chunk("a", 0.9), make_chunk("b", 0.7)]
        assert compute_confidence(chunks) == 80

    def test_rounds_half_up(self):
        assert compute_confidence([make_chunk("a", 0.625)]) == 63

    def test_empty(self):
        assert compute_confidence([]) == 0


# ---------------------------------------------------------------------------
# Prompt assembly
# ---------------------------------------------------------------------------


class TestPrompt:
    def test_multiple_choice_detection(self):
        assert is_multiple_choice("Chọn ý đúng: A. 3 tháng B. 6 tháng C. 12 tháng")
        assert is_multiple_choice("Câu nào sau đây đúng?")
        assert not is_multiple_choice(QUESTION)

    def test_source_header(self):
        chunk = make_chunk(
            "c", 0.9, document="Thông tư tiền gửi", article="5",
            document_number="48/2018/TT-NHNN",
        )
        assert format_source_header(1, chunk) == (
            "[1] Thông tư tiền gửi (48/2018/TT-NHNN) - Điều 5"
        )

    def test_source_header_without_location(self):
        assert format_source_header(2, make_chunk("c", 0.9, document="Biểu phí")) == (
            "[2] Biểu phí"
        )

    def test_build_prompt_numbers_sources(self):
        chunks = [r.chunk for r in _context()]
        system, user = build_prompt(QUESTION, chunks)
        assert system == ANSWER_SYSTEM_PROMPT
        assert "[1] Quy định tiền gửi tiết kiệm - Điều 5:" in user
        assert "[2] Quy định tiền gửi tiết kiệm - Điều 6:" in user
        assert QUESTION in user

    def test_build_prompt_multiple_choice(self):
        system, _ = build_prompt("A) 1%  B) 2%  C) 3%", [make_chunk("a", 0.9)])
        assert system == MULTIPLE_CHOICE_SYSTEM_PROMPT


# ---------------------------------------------------------------------------
# Batch generation
# ---------------------------------------------------------------------------


class TestAnswer:
    def test_success(self):
        llm = ScriptedLLM(responses=["Lãi suất là 5,5%/năm [🔗1]."])
        usage = RecordingUsage()
        selector = FixedSelector("model-b", priority=2)

        result = _run(_orchestrator(llm, usage, selector).answer(QUESTION, _context()))

        assert result.text == "Lãi suất là 5,5%/năm [🔗1]."
        assert result.confidence == 80
        assert result.model == "model-b"
        assert [s["index"] for s in result.sources] == [1, 2]
        assert result.sources[0]["article"] == "5"
        assert result.token_usage.total == 120
        assert llm.calls[0]["model"] == "model-b"
        assert selector.recorded == ["model-b"]
        assert usage.records[-1].request_type == "chat"
        assert usage.records[-1].priority == 2
        assert usage.records[-1].success

    def test_no_context_skips_model(self):
        llm = ScriptedLLM()
        result = _run(_orchestrator(llm).answer(QUESTION, []))
        assert result.text == NO_CONTEXT_ANSWER
        assert result.confidence == 0
        assert result.model == "N/A"
        assert llm.calls == []

    def test_all_chunks_filtered_skips_model(self):
        llm = ScriptedLLM()
        result = _run(_orchestrator(llm).answer(QUESTION, _ranked(make_chunk("a", 0.2))))
        assert result.confidence == 0
        assert llm.calls == []

    def test_full_document_mode_skips_filter(self):
        llm = ScriptedLLM(responses=["Có 2 điều."])
        ranked = _ranked(make_chunk("a", 0.2), make_chunk("b", 0.3))
        result = _run(_orchestrator(llm).answer(QUESTION, ranked, apply_filter=False))
        assert len(result.sources) == 2

    def test_retries_transient_with_backoff(self):
        llm = ScriptedLLM(responses=[
            RuntimeError("429 Too Many Requests"),
            RuntimeError("overloaded"),
            "Trả lời.",
        ])
        usage = RecordingUsage()
        delays: list[float] = []

        result = _run(_orchestrator(llm, usage, delays=delays).answer(QUESTION, _context()))

        assert result.text == "Trả lời."
        assert delays == [2.0, 4.0]
        assert [r.success for r in usage.records] == [False, False, True]

    def test_exhausted_raises_generation_error(self):
        llm = ScriptedLLM(responses=[RuntimeError("503")] * 3)
        with pytest.raises(GenerationError):
            _run(_orchestrator(llm).answer(QUESTION, _context()))
        assert len(llm.calls) == 3

    def test_fatal_aborts_without_retry(self):
        llm = ScriptedLLM(responses=[RuntimeError("invalid x-api-key")])
        delays: list[float] = []
        with pytest.raises(FatalUpstreamError):
            _run(_orchestrator(llm, delays=delays).answer(QUESTION, _context()))
        assert len(llm.calls) == 1
        assert delays == []


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------


class TestAnswerStream:
    def test_chunks_then_complete(self):
        llm = ScriptedLLM(streams=[["Lãi ", "suất ", "5,5%."]])
        usage = RecordingUsage()

        events = _run(_collect(_orchestrator(llm, usage).answer_stream(QUESTION, _context())))

        assert [e.kind for e in events] == ["chunk", "chunk", "chunk", "complete"]
        assert "".join(e.text for e in events[:-1]) == "Lãi suất 5,5%."
        meta = events[-1].metadata
        assert meta["confidence"] == 80
        assert meta["model"] == "model-a"
        assert meta["token_usage"] == {"input": 50, "output": 10, "total": 60}
        assert meta["cached"] is False
        assert len(usage.records) == 1
        assert usage.records[0].request_type == "chat_stream"
        assert usage.records[0].success

    def test_empty_context(self):
        llm = ScriptedLLM()
        events = _run(_collect(_orchestrator(llm).answer_stream(QUESTION, [])))
        assert [e.kind for e in events] == ["chunk", "complete"]
        assert events[0].text == NO_CONTEXT_ANSWER
        assert events[1].metadata["confidence"] == 0
        assert events[1].metadata["model"] == "N/A"
        assert llm.calls == []

    def test_retry_before_first_fragment(self):
        llm = ScriptedLLM(streams=[[RuntimeError("529 overloaded")], ["ok"]])
        usage = RecordingUsage()
        delays: list[float] = []

        events = _run(_collect(
            _orchestrator(llm, usage, delays=delays).answer_stream(QUESTION, _context())
        ))

        assert [e.kind for e in events] == ["chunk", "complete"]
        assert delays == [2.0]
        assert [r.success for r in usage.records] == [False, True]

    def test_no_retry_after_fragment_emitted(self):
        llm = ScriptedLLM(streams=[["Lãi ", RuntimeError("503")], ["lần hai"]])
        received = []

        async def consume():
            async for event in _orchestrator(llm).answer_stream(QUESTION, _context()):
                received.append(event)

        with pytest.raises(GenerationError):
            _run(consume())
        assert [e.text for e in received] == ["Lãi "]
        assert len(llm.calls) == 1

    def test_fatal_error_not_retried(self):
        llm = ScriptedLLM(streams=[[RuntimeError("authentication failed")]])
        with pytest.raises(FatalUpstreamError):
            _run(_collect(_orchestrator(llm).answer_stream(QUESTION, _context())))
        assert len(llm.calls) == 1

    def test_cancel_event_stops_before_next_emission(self):
        llm = ScriptedLLM(streams=[["một ", "hai ", "ba"]])
        usage = RecordingUsage()
        cancel = asyncio.Event()

        async def consume():
            events = []
            async for event in _orchestrator(llm, usage).answer_stream(
                QUESTION, _context(), cancel,
            ):
                events.append(event)
                cancel.set()
            return events

        events = _run(consume())

        assert [e.kind for e in events] == ["chunk"]
        assert len(usage.records) == 1
        assert usage.records[0].error == "cancelled"

    def test_consumer_closing_stream_reports_cancel(self):
        llm = ScriptedLLM(streams=[["một ", "hai ", "ba"]])
        usage = RecordingUsage()

        async def consume():
            stream = _orchestrator(llm, usage).answer_stream(QUESTION, _context())
            first = await stream.__anext__()
            await stream.aclose()
            return first

        first = _run(consume())

        assert first.text == "một "
        assert len(usage.records) == 1
        assert usage.records[0].error == "cancelled"
