"""Tests for RetryPolicy and RetryController."""

from __future__ import annotations

import pytest

from promptcascade.core.errors import (
    CascadeCancelledError,
    ProviderError,
    RateLimitExhaustedError,
)
from promptcascade.core.retry import RetryController, RetryPolicy
from promptcascade.core.tracing import TracingRecorder
from promptcascade.core.types import ExecutionResult, PromptNode


def _attempts(*outcomes):
    """Attempt callable replaying outcomes (exceptions are raised)."""
    queue = list(outcomes)
    calls = []

    async def attempt():
        calls.append(len(calls) + 1)
        item = queue.pop(0)
        if isinstance(item, BaseException):
            raise item
        return ExecutionResult(response=item)

    attempt.calls = calls
    return attempt


@pytest.fixture
def tracer():
    return TracingRecorder()


@pytest.fixture
async def trace_id(tracer):
    return await tracer.start_trace("n", "cascade_top")


@pytest.fixture
def controller(tracer, host, sleep):
    return RetryController(RetryPolicy(max_retries=3, max_rate_limit_waits=2), tracer, host, sleep=sleep)


NODE = PromptNode(id="n", name="Node")


class TestRateLimitDelay:
    """Tests for RetryPolicy.rate_limit_delay."""

    def test_retry_after_attribute(self):
        """A retry-after hint gets the safety margin added."""
        error = ProviderError("slow down", status=429, retry_after_s=3)

        assert RetryPolicy().rate_limit_delay(error) == pytest.approx(3.25)

    def test_try_again_in_message(self):
        """A "try again in Ns" hint in the message is honoured."""
        error = RuntimeError("Rate limit reached. Please try again in 1.5s.")

        assert RetryPolicy().rate_limit_delay(error) == pytest.approx(1.75)

    def test_fractional_hint_rounds_up_to_millisecond(self):
        """Hints are rounded up to whole milliseconds."""
        error = RuntimeError("try again in 0.0004s")

        assert RetryPolicy().rate_limit_delay(error) == pytest.approx(0.251)

    def test_bare_429(self):
        """A 429 without a hint uses the bare delay."""
        assert RetryPolicy().rate_limit_delay(ProviderError("Too many", status=429)) == 2.5

    def test_not_rate_limited(self):
        """Other errors are not rate limits."""
        assert RetryPolicy().rate_limit_delay(ProviderError("boom", status=500)) == 0.0
        assert RetryPolicy().rate_limit_delay(RuntimeError("boom")) == 0.0

    def test_invalid_policy(self):
        """Policies validate their bounds."""
        with pytest.raises(ValueError):
            RetryPolicy(max_retries=0)


class TestRetryController:
    """Tests for RetryController.run."""

    async def test_first_attempt_succeeds(self, controller, tracer, trace_id):
        """One success span, no retries."""
        outcome = await controller.run(NODE, _attempts("ok"), trace_id)

        assert outcome.succeeded
        assert outcome.result.response == "ok"
        assert outcome.retries == 0
        spans = tracer.get(trace_id).spans
        assert [(s.span_type, s.status, s.attempt_number) for s in spans] == [("generation", "success", 1)]

    async def test_retries_then_succeeds(self, controller, tracer, trace_id, host, sleep):
        """Failures are retried immediately with linked retry spans."""
        outcome = await controller.run(NODE, _attempts(RuntimeError("a"), RuntimeError("b"), "ok"), trace_id)

        assert outcome.succeeded
        assert outcome.retries == 2
        assert sleep.delays == []
        spans = tracer.get(trace_id).spans
        assert [s.span_type for s in spans] == ["generation", "retry", "retry"]
        assert [s.status for s in spans] == ["failed", "failed", "success"]
        assert spans[2].previous_span_id == spans[1].span_id
        assert [n.title for n in host.notifications] == ["Retrying: Node", "Retrying: Node"]

    async def test_exhausted_returns_error(self, controller, trace_id):
        """After max_retries failures the last error is returned."""
        attempt = _attempts(RuntimeError("a"), RuntimeError("b"), RuntimeError("c"))

        outcome = await controller.run(NODE, attempt, trace_id)

        assert not outcome.succeeded
        assert str(outcome.error) == "c"
        assert outcome.retries == 3
        assert attempt.calls == [1, 2, 3]

    async def test_rate_limits_do_not_count_as_retries(self, controller, trace_id, sleep):
        """Rate-limited attempts sleep and keep the retry budget."""
        limited = ProviderError("slow", status=429, retry_after_s=1)
        attempt = _attempts(limited, RuntimeError("a"), limited, "ok")

        outcome = await controller.run(NODE, attempt, trace_id)

        assert outcome.succeeded
        assert outcome.retries == 1
        assert outcome.rate_limit_waits == 2
        assert sleep.delays == [pytest.approx(1.25), pytest.approx(1.25)]

    async def test_rate_limit_budget_exhausted(self, controller, tracer, trace_id):
        """One more rate limit than allowed raises."""
        limited = ProviderError("slow", status=429)

        with pytest.raises(RateLimitExhaustedError):
            await controller.run(NODE, _attempts(limited, limited, limited), trace_id)

        spans = tracer.get(trace_id).spans
        assert len(spans) == 3
        assert spans[-1].error["retry_recommended"] is False

    async def test_quota_short_circuits(self, controller, trace_id):
        """Quota errors stop after one attempt."""
        attempt = _attempts(ProviderError("insufficient_quota"))

        outcome = await controller.run(NODE, attempt, trace_id)

        assert outcome.quota_exceeded
        assert attempt.calls == [1]

    async def test_abort_propagates(self, controller, tracer, trace_id):
        """Cancellation is not retried and closes the span as skipped."""
        with pytest.raises(CascadeCancelledError):
            await controller.run(NODE, _attempts(CascadeCancelledError("stop")), trace_id)

        assert tracer.get(trace_id).spans[0].status == "skipped"

    async def test_works_without_host(self, tracer, trace_id, sleep):
        """Notifications are optional."""
        controller = RetryController(RetryPolicy(), tracer, sleep=sleep)

        outcome = await controller.run(NODE, _attempts(RuntimeError("a"), "ok"), trace_id)

        assert outcome.succeeded

