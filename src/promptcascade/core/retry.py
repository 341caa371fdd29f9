"""Retry and rate-limit handling for one node's execution.

Two independent budgets apply to every node:

- ``max_retries``: ordinary failures. Exhausting it hands the decision
  (retry/skip/stop) back to the orchestrator.
- ``max_rate_limit_waits``: rate-limited attempts. These sleep for the
  provider-suggested delay and never consume a retry. Exhausting it raises
  RateLimitExhaustedError.

Every attempt gets its own tracing span linked to the previous attempt's.
"""

from __future__ import annotations

import asyncio
import logging
import math
import re
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from promptcascade.core.errors import (
    CascadeAbort,
    RateLimitExhaustedError,
    is_quota_error,
    parse_api_error,
)
from promptcascade.core.protocols import CascadeHost, Notification
from promptcascade.core.tracing import TracingRecorder
from promptcascade.core.types import ExecutionResult, PromptNode

logger = logging.getLogger(__name__)

TRY_AGAIN_PATTERN = re.compile(r"try again in ([0-9.]+)s", re.IGNORECASE)

Sleep = Callable[[float], Awaitable[None]]


@dataclass
class RetryPolicy:
    """Bounds and delays for node attempts.

    Attributes:
        max_retries: Ordinary failures allowed before escalation.
        max_rate_limit_waits: Rate-limit backoffs allowed before a hard failure.
        rate_limit_margin_s: Safety margin added to every rate-limit delay.
        bare_rate_limit_delay_s: Delay for a 429 without a retry hint.
    """

    max_retries: int = 3
    max_rate_limit_waits: int = 12
    rate_limit_margin_s: float = 0.25
    bare_rate_limit_delay_s: float = 2.5

    def __post_init__(self) -> None:
        if self.max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        if self.max_rate_limit_waits < 0:
            raise ValueError("max_rate_limit_waits cannot be negative")
        if self.rate_limit_margin_s < 0 or self.bare_rate_limit_delay_s < 0:
            raise ValueError("rate-limit delays cannot be negative")

    def _hinted_delay(self, seconds: float) -> float:
        return (math.ceil(seconds * 1000) + round(self.rate_limit_margin_s * 1000)) / 1000.0

    def rate_limit_delay(self, error: BaseException) -> float:
        """Seconds to wait before retrying a rate-limited attempt.

        Returns:
            0.0 when the error is not a rate limit.
        """
        retry_after = getattr(error, "retry_after_s", None)
        if isinstance(retry_after, (int, float)) and retry_after > 0:
            return self._hinted_delay(float(retry_after))

        match = TRY_AGAIN_PATTERN.search(str(error))
        if match:
            try:
                return self._hinted_delay(float(match.group(1)))
            except ValueError:
                pass

        status = getattr(error, "status", None) or getattr(error, "status_code", None)
        if status == 429:
            return self.bare_rate_limit_delay_s
        return 0.0


@dataclass
class AttemptOutcome:
    """Result of running a node through the retry loop.

    Exactly one of ``result`` / ``error`` is set.
    """

    result: ExecutionResult | None = None
    error: BaseException | None = None
    span_id: str | None = None
    latency_ms: int = 0
    retries: int = 0
    rate_limit_waits: int = 0
    quota_exceeded: bool = False

    @property
    def succeeded(self) -> bool:
        return self.result is not None


class RetryController:
    """Runs attempts for one node until success, escalation or abort.

    Args:
        policy: Retry bounds.
        tracer: Span recorder.
        host: Receives retry/rate-limit notifications.
        sleep: Awaitable sleep, injectable for tests.
    """

    def __init__(
        self,
        policy: RetryPolicy,
        tracer: TracingRecorder,
        host: CascadeHost | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.policy = policy
        self.tracer = tracer
        self.host = host
        self.sleep = sleep

    def _notify(self, notification: Notification) -> None:
        if self.host is not None:
            self.host.notify(notification)

    async def run(
        self,
        node: PromptNode,
        attempt: Callable[[], Awaitable[ExecutionResult]],
        trace_id: str,
    ) -> AttemptOutcome:
        """Attempt ``node`` until it succeeds or its retry budget is spent.

        Raises:
            CascadeAbort: Propagated untouched from the attempt.
            RateLimitExhaustedError: Too many rate-limited attempts.
        """
        retries = 0
        rate_limit_waits = 0
        span_id: str | None = None

        while True:
            span_id = await self.tracer.open_span(
                trace_id,
                node.id,
                "retry" if retries > 0 else "generation",
                attempt_number=retries + rate_limit_waits + 1,
                previous_span_id=span_id,
            )
            started = time.monotonic()
            try:
                result = await attempt()
            except CascadeAbort:
                await self.tracer.complete_span(
                    span_id, "skipped", output="Cancelled", latency_ms=_elapsed_ms(started)
                )
                raise
            except Exception as e:
                latency_ms = _elapsed_ms(started)
                parsed = parse_api_error(e)

                delay = self.policy.rate_limit_delay(e)
                if delay > 0:
                    rate_limit_waits += 1
                    await self.tracer.fail_span(
                        span_id,
                        "RATE_LIMITED",
                        str(e),
                        error_code="RATE_LIMITED",
                        retry_recommended=rate_limit_waits <= self.policy.max_rate_limit_waits,
                        latency_ms=latency_ms,
                    )
                    if rate_limit_waits > self.policy.max_rate_limit_waits:
                        logger.error(
                            "rate_limit_exhausted: node_id=%s, waits=%d", node.id, rate_limit_waits
                        )
                        raise RateLimitExhaustedError(
                            f"Rate limited {rate_limit_waits} times on {node.display_name}",
                            details={"node_id": node.id},
                        ) from e
                    logger.info(
                        "rate_limited: node_id=%s, delay_s=%.2f, wait=%d/%d",
                        node.id,
                        delay,
                        rate_limit_waits,
                        self.policy.max_rate_limit_waits,
                    )
                    self._notify(
                        Notification(
                            "warning",
                            f"Rate limited: {node.display_name}",
                            f"Waiting {delay:.1f}s before retrying "
                            f"({rate_limit_waits}/{self.policy.max_rate_limit_waits})",
                            code="RATE_LIMITED",
                        )
                    )
                    await self.sleep(delay)
                    continue

                quota = is_quota_error(e)
                await self.tracer.fail_span(
                    span_id,
                    type(e).__name__,
                    str(e),
                    error_code=parsed.code,
                    retry_recommended=parsed.recoverable and not quota,
                    latency_ms=latency_ms,
                )
                if quota:
                    logger.error("quota_exceeded: node_id=%s", node.id)
                    return AttemptOutcome(
                        error=e,
                        span_id=span_id,
                        retries=retries,
                        rate_limit_waits=rate_limit_waits,
                        quota_exceeded=True,
                    )

                retries += 1
                logger.warning(
                    "node_attempt_failed: node_id=%s, retry=%d/%d, error=%s",
                    node.id,
                    retries,
                    self.policy.max_retries,
                    e,
                )
                if retries >= self.policy.max_retries:
                    return AttemptOutcome(
                        error=e, span_id=span_id, retries=retries, rate_limit_waits=rate_limit_waits
                    )
                self._notify(
                    Notification(
                        "warning",
                        f"Retrying: {node.display_name}",
                        f"Attempt {retries + 1} of {self.policy.max_retries}",
                        code=parsed.code,
                    )
                )
                continue

            latency_ms = _elapsed_ms(started)
            await self.tracer.complete_span(
                span_id,
                "success",
                output=result.response,
                latency_ms=latency_ms,
                response_id=result.response_id,
                usage=result.usage,
            )
            return AttemptOutcome(
                result=result,
                span_id=span_id,
                latency_ms=latency_ms,
                retries=retries,
                rate_limit_waits=rate_limit_waits,
            )


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
