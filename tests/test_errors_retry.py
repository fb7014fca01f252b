# =============================================================================
# Unit Tests — Error Classification and Retry
# =============================================================================

from __future__ import annotations

import asyncio

import pytest

from bankdoc_qa.services.errors import (
    FatalUpstreamError,
    TransientUpstreamError,
    classify_error,
    is_transient_error,
)
from bankdoc_qa.services.retry import backoff_delay, retry_async
from tests.fakes import _run


class TestClassifyError:
    def test_rate_limit_message_is_transient(self):
        assert is_transient_error(RuntimeError("Error code: 429 - rate limit"))

    def test_overloaded_is_transient(self):
        assert is_transient_error(RuntimeError("Overloaded"))

    def test_quota_is_transient(self):
        assert is_transient_error(RuntimeError("Quota exceeded for model"))

    def test_service_unavailable_is_transient(self):
        assert is_transient_error(RuntimeError("503 Service Unavailable"))

    def test_auth_failure_is_fatal(self):
        assert not is_transient_error(RuntimeError("Invalid API key provided"))

    def test_classify_wraps_with_cause(self):
        original = RuntimeError("529 overloaded")
        wrapped = classify_error(original)
        assert isinstance(wrapped, TransientUpstreamError)
        assert wrapped.__cause__ is original

    def test_classify_fatal(self):
        assert isinstance(classify_error(KeyError("model")), FatalUpstreamError)

    def test_already_classified_passes_through(self):
        error = FatalUpstreamError("bad config")
        assert classify_error(error) is error


class TestBackoff:
    def test_doubles_each_attempt(self):
        assert backoff_delay(1, 2.0) == 2.0
        assert backoff_delay(2, 2.0) == 4.0
        assert backoff_delay(3, 2.0) == 8.0


class TestRetryAsync:
    def _sleeper(self):
        delays: list[float] = []

        async def sleep(seconds: float) -> None:
            delays.append(seconds)

        return delays, sleep

    def test_success_first_try(self):
        delays, sleep = self._sleeper()

        async def op():
            return "ok"

        assert _run(retry_async(op, sleep=sleep)) == "ok"
        assert delays == []

    def test_transient_then_success(self):
        delays, sleep = self._sleeper()
        outcomes = [RuntimeError("429"), RuntimeError("503"), "done"]

        async def op():
            item = outcomes.pop(0)
            if isinstance(item, Exception):
                raise item
            return item

        result = _run(retry_async(op, max_attempts=3, base_delay=2.0, sleep=sleep))
        assert result == "done"
        assert delays == [2.0, 4.0]

    def test_exhausted_raises_transient(self):
        delays, sleep = self._sleeper()
        calls = 0

        async def op():
            nonlocal calls
            calls += 1
            raise RuntimeError("overloaded")

        with pytest.raises(TransientUpstreamError):
            _run(retry_async(op, max_attempts=3, base_delay=1.0, sleep=sleep))
        assert calls == 3
        assert delays == [1.0, 2.0]

    def test_fatal_aborts_immediately(self):
        delays, sleep = self._sleeper()
        calls = 0

        async def op():
            nonlocal calls
            calls += 1
            raise RuntimeError("invalid api key")

        with pytest.raises(FatalUpstreamError):
            _run(retry_async(op, max_attempts=3, sleep=sleep))
        assert calls == 1
        assert delays == []

    def test_cancellation_is_not_retried(self):
        delays, sleep = self._sleeper()

        async def op():
            raise asyncio.CancelledError()

        with pytest.raises(asyncio.CancelledError):
            _run(retry_async(op, sleep=sleep))
        assert delays == []

    def test_exhausted_error_keeps_cause(self):
        _, sleep = self._sleeper()
        cause = RuntimeError("503 unavailable")

        async def op():
            raise cause

        with pytest.raises(TransientUpstreamError) as info:
            _run(retry_async(op, max_attempts=2, base_delay=0, sleep=sleep))
        assert info.value.__cause__ is cause

    def test_zero_budget_still_attempts_once(self):
        delays, sleep = self._sleeper()
        calls = 0

        async def op():
            nonlocal calls
            calls += 1
            raise TransientUpstreamError("429")

        with pytest.raises(TransientUpstreamError):
            _run(retry_async(op, max_attempts=0, sleep=sleep))
        assert calls == 1
        assert delays == []
