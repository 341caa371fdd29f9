"""Execution tracing for cascade runs.

TracingRecorder is a best-effort facade over a TracingBackend: backend
failures are logged and never abort the cascade. The one exception is a
``CONCURRENT_EXECUTION`` rejection at trace start, which is raised as
ConcurrentExecutionError so the orchestrator can abort the run.

Every trace and span is also kept in a local ledger so a run can be
explained without the backend:

    >>> recorder = TracingRecorder(backend)
    >>> trace_id = await recorder.start_trace("root", "cascade_top")
    >>> ...
    >>> print(recorder.get(trace_id).explain())
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

from promptcascade.core.errors import ConcurrentExecutionError
from promptcascade.core.protocols import TracingBackend
from promptcascade.core.types import TokenUsage

logger = logging.getLogger(__name__)

SpanType = Literal["generation", "retry", "tool_call", "action", "error"]
SpanStatus = Literal["running", "success", "failed", "skipped"]
TraceStatus = Literal["running", "completed", "failed", "cancelled"]

EXECUTION_TYPE_TOP = "cascade_top"
EXECUTION_TYPE_CHILD = "cascade_child"

_local_ids = itertools.count(1)


def _local_id(kind: str) -> str:
    return f"local-{kind}-{next(_local_ids)}"


@dataclass
class SpanRecord:
    """Local record of one execution attempt.

    Attributes:
        span_id: Backend span id, or a local id when the backend has none.
        trace_id: Owning trace.
        node_id: Node the attempt ran.
        span_type: generation, retry, tool_call, action or error.
        attempt_number: 1-based attempt within the node.
        previous_span_id: Span of the previous attempt, if retrying.
        status: Terminal status once closed.
        remote: Whether the backend knows this span.
        output: Response text or skip reason.
        error: Error evidence for failed spans.
        latency_ms: Attempt duration.
        usage: Token usage.
    """

    span_id: str
    trace_id: str
    node_id: str
    span_type: SpanType
    attempt_number: int | None = None
    previous_span_id: str | None = None
    status: SpanStatus = "running"
    remote: bool = False
    output: str | None = None
    error: dict[str, Any] | None = None
    latency_ms: int = 0
    usage: TokenUsage | None = None
    started_at: datetime = field(default_factory=datetime.now)
    ended_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "span_id": self.span_id,
            "trace_id": self.trace_id,
            "node_id": self.node_id,
            "span_type": self.span_type,
            "attempt_number": self.attempt_number,
            "previous_span_id": self.previous_span_id,
            "status": self.status,
            "output": self.output,
            "error": self.error,
            "latency_ms": self.latency_ms,
            "usage": self.usage.to_dict() if self.usage else None,
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
        }


@dataclass
class TraceRecord:
    """Local record of one cascade run (or standalone child cascade)."""

    trace_id: str
    entry_node_id: str
    execution_type: str
    remote: bool = False
    status: TraceStatus = "running"
    spans: list[SpanRecord] = field(default_factory=list)
    error_summary: str | None = None
    started_at: datetime = field(default_factory=datetime.now)
    ended_at: datetime | None = None

    @property
    def total_tokens(self) -> int:
        return sum(s.usage.total_tokens for s in self.spans if s.usage)

    def explain(self) -> str:
        """Human-readable summary of the run's attempts."""
        lines = [
            f"Trace: {self.trace_id} ({self.execution_type})",
            f"Status: {self.status}",
            f"Spans: {len(self.spans)}",
        ]
        if self.total_tokens:
            lines.append(f"Tokens: {self.total_tokens}")

        indicators = {"success": "+", "failed": "x", "skipped": "-", "running": "~"}
        for span in self.spans:
            attempt = f" #{span.attempt_number}" if span.attempt_number else ""
            lines.append(
                f"  [{indicators[span.status]}] {span.node_id} {span.span_type}{attempt}: "
                f"{span.latency_ms}ms"
            )
            if span.error:
                lines.append(f"      Error: {span.error.get('error_message')}")

        if self.error_summary:
            lines.append(f"Error: {self.error_summary}")
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        return {
            "trace_id": self.trace_id,
            "entry_node_id": self.entry_node_id,
            "execution_type": self.execution_type,
            "status": self.status,
            "error_summary": self.error_summary,
            "spans": [span.to_dict() for span in self.spans],
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
        }


class TracingRecorder:
    """Best-effort trace/span recording.

    Args:
        backend: Remote tracing service. None keeps only the local ledger.
    """

    def __init__(self, backend: TracingBackend | None = None) -> None:
        self.backend = backend
        self.traces: dict[str, TraceRecord] = {}
        self._spans: dict[str, SpanRecord] = {}

    def get(self, trace_id: str) -> TraceRecord | None:
        return self.traces.get(trace_id)

    def span(self, span_id: str) -> SpanRecord | None:
        return self._spans.get(span_id)

    async def start_trace(self, entry_node_id: str, execution_type: str) -> str:
        """Open a trace for a run.

        Raises:
            ConcurrentExecutionError: A run is already active for this entry node.
        """
        remote_id: str | None = None
        if self.backend is not None:
            try:
                result = await self.backend.start_trace(entry_node_id, execution_type)
            except Exception as e:
                logger.warning("trace_start_failed: node_id=%s, error=%s", entry_node_id, e)
                result = {}
            if result.get("success"):
                remote_id = result.get("trace_id")
            elif result.get("error_code") == ConcurrentExecutionError.code:
                raise ConcurrentExecutionError(
                    result.get("error") or "A cascade is already running for this prompt",
                    details={"entry_node_id": entry_node_id},
                )
            elif result:
                logger.warning(
                    "trace_start_rejected: node_id=%s, error=%s", entry_node_id, result.get("error")
                )

        trace = TraceRecord(
            trace_id=remote_id or _local_id("trace"),
            entry_node_id=entry_node_id,
            execution_type=execution_type,
            remote=remote_id is not None,
        )
        self.traces[trace.trace_id] = trace
        logger.debug("trace_started: trace_id=%s, type=%s", trace.trace_id, execution_type)
        return trace.trace_id

    async def open_span(
        self,
        trace_id: str,
        node_id: str,
        span_type: SpanType = "generation",
        attempt_number: int | None = None,
        previous_span_id: str | None = None,
    ) -> str:
        """Open a span for one attempt and return its id."""
        trace = self.traces.get(trace_id)
        remote_id: str | None = None
        if self.backend is not None and trace is not None and trace.remote:
            previous = self._spans.get(previous_span_id) if previous_span_id else None
            try:
                result = await self.backend.create_span(
                    trace_id,
                    node_id,
                    span_type,
                    attempt_number=attempt_number,
                    previous_attempt_span_id=(
                        previous_span_id if previous is not None and previous.remote else None
                    ),
                )
                if result.get("success"):
                    remote_id = result.get("span_id")
                else:
                    logger.warning("span_create_rejected: node_id=%s, error=%s", node_id, result.get("error"))
            except Exception as e:
                logger.warning("span_create_failed: node_id=%s, error=%s", node_id, e)

        span = SpanRecord(
            span_id=remote_id or _local_id("span"),
            trace_id=trace_id,
            node_id=node_id,
            span_type=span_type,
            attempt_number=attempt_number,
            previous_span_id=previous_span_id,
            remote=remote_id is not None,
        )
        self._spans[span.span_id] = span
        if trace is not None:
            trace.spans.append(span)
        return span.span_id

    async def complete_span(
        self,
        span_id: str,
        status: Literal["success", "failed", "skipped"],
        output: str | None = None,
        latency_ms: int = 0,
        response_id: str | None = None,
        usage: TokenUsage | None = None,
    ) -> None:
        span = self._spans.get(span_id)
        if span is None:
            return
        span.status = status
        span.output = output
        span.latency_ms = latency_ms
        span.usage = usage
        span.ended_at = datetime.now()

        if self.backend is not None and span.remote:
            try:
                await self.backend.complete_span(
                    span_id,
                    status,
                    response_id=response_id,
                    output=output,
                    latency_ms=latency_ms,
                    usage_tokens=usage.to_dict() if usage else None,
                )
            except Exception as e:
                logger.warning("span_complete_failed: span_id=%s, error=%s", span_id, e)

    async def fail_span(
        self,
        span_id: str,
        error_type: str,
        error_message: str,
        error_code: str | None = None,
        retry_recommended: bool = False,
        latency_ms: int = 0,
    ) -> None:
        span = self._spans.get(span_id)
        if span is None:
            return
        evidence = {
            "error_type": error_type,
            "error_message": error_message,
            "error_code": error_code,
            "retry_recommended": retry_recommended,
        }
        span.status = "failed"
        span.error = evidence
        span.latency_ms = latency_ms
        span.ended_at = datetime.now()

        if self.backend is not None and span.remote:
            try:
                await self.backend.fail_span(span_id, evidence)
            except Exception as e:
                logger.warning("span_fail_failed: span_id=%s, error=%s", span_id, e)

    async def record_skipped(self, trace_id: str, node_id: str, reason: str) -> str:
        """Zero-duration skipped span for a node that is not executed."""
        span_id = await self.open_span(trace_id, node_id, "generation")
        await self.complete_span(span_id, "skipped", output=reason, latency_ms=0)
        return span_id

    async def complete_trace(
        self,
        trace_id: str,
        status: Literal["completed", "failed", "cancelled"],
        error_summary: str | None = None,
    ) -> None:
        trace = self.traces.get(trace_id)
        if trace is None:
            return
        if trace.status != "running":
            logger.debug("trace_already_closed: trace_id=%s, status=%s", trace_id, trace.status)
            return
        trace.status = status
        trace.error_summary = error_summary
        trace.ended_at = datetime.now()
        logger.debug("trace_completed: trace_id=%s, status=%s", trace_id, status)

        if self.backend is not None and trace.remote:
            try:
                await self.backend.complete_trace(trace_id, status, error_summary)
            except Exception as e:
                logger.warning("trace_complete_failed: trace_id=%s, error=%s", trace_id, e)
