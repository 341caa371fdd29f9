"""Collaborator interfaces and the value types that cross them.

The engine never talks to a database, an HTTP server or a UI directly. It
is handed objects implementing these protocols:

- StorageBackend: prompt rows, variable rows, settings, current user
- ExecutionBackend: conversation calls, background responses, external tasks
- TracingBackend: trace/span audit records
- CascadeHost: progress callbacks, pause/cancel predicates, user dialogs
- EventSink: side-channel broadcast events for host views
"""

from __future__ import annotations

import time
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, Protocol

from promptcascade.core.types import (
    ErrorAction,
    ExecutionResult,
    PromptNode,
    PromptVariable,
    ThreadMode,
    TokenUsage,
    UserInfo,
)

# =============================================================================
# Events and notifications
# =============================================================================


class CascadeEventType(Enum):
    """Broadcast events observed by the host to refresh its views."""

    TREE_REFRESH_NEEDED = "tree-refresh-needed"
    PROMPT_RESULT_UPDATED = "prompt-result-updated"
    VARIABLES_UPDATED = "variables-updated"


@dataclass(frozen=True)
class CascadeEvent:
    """Event emitted by the engine.

    Attributes:
        type: The event type.
        data: Event payload.
        node_id: Node the event is about.
        timestamp: When the event occurred.
    """

    type: CascadeEventType
    data: dict[str, Any] = field(default_factory=dict)
    node_id: str | None = None
    timestamp: float = field(default_factory=time.time)


class EventSink(Protocol):
    """Consumer of engine broadcast events."""

    async def emit(self, event: CascadeEvent) -> None: ...


NotificationLevel = Literal["success", "info", "warning", "error"]


@dataclass(frozen=True)
class Notification:
    """User-visible notification for a terminal state or warning."""

    level: NotificationLevel
    title: str
    description: str | None = None
    code: str | None = None


@dataclass(frozen=True)
class QuestionPrompt:
    """A clarifying question raised by the model mid-execution."""

    question: str
    variable_name: str
    node_name: str
    max_questions: int
    description: str | None = None
    attempt: int = 1


@dataclass(frozen=True)
class ActionPreview:
    """What a child-creating post-action is about to do."""

    node_id: str
    node_name: str
    action: str
    config: dict[str, Any]
    json_response: Any
    item_count: int


# =============================================================================
# Execution values
# =============================================================================


@dataclass
class ConversationRequest:
    """One conversation call against the execution backend."""

    context_id: str | None
    node_id: str
    message: str
    thread_mode: ThreadMode = ThreadMode.NEW
    template_variables: dict[str, str] = field(default_factory=dict)
    store_in_history: bool = False
    model: str | None = None
    resume_response_id: str | None = None
    resume_answer: str | None = None
    resume_variable_name: str | None = None
    resume_call_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "context_id": self.context_id,
            "node_id": self.node_id,
            "message": self.message,
            "thread_mode": self.thread_mode.value,
            "template_variables": self.template_variables,
            "store_in_history": self.store_in_history,
            "model": self.model,
        }
        if self.resume_response_id:
            data.update(
                {
                    "resume_response_id": self.resume_response_id,
                    "resume_answer": self.resume_answer,
                    "resume_variable_name": self.resume_variable_name,
                    "resume_call_id": self.resume_call_id,
                }
            )
        return data


BACKGROUND_TERMINAL = frozenset({"completed", "failed", "cancelled", "incomplete"})


@dataclass
class BackgroundStatus:
    """State of a provider-side background response."""

    response_id: str
    status: str
    output: str | None = None
    error: str | None = None
    usage: TokenUsage | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in BACKGROUND_TERMINAL

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BackgroundStatus:
        return cls(
            response_id=str(data.get("response_id", "")),
            status=str(data.get("status", "pending")),
            output=data.get("output") or data.get("output_text"),
            error=data.get("error"),
            usage=TokenUsage.from_raw(data.get("usage")),
        )


TASK_TERMINAL = frozenset({"completed", "failed", "cancelled", "requires_input"})


@dataclass
class TaskHandle:
    """A created external task."""

    task_id: str
    task_url: str | None = None


@dataclass
class TaskRequest:
    """Creation request for an external agentic task."""

    node_id: str
    message: str
    model: str | None = None
    template_variables: dict[str, str] = field(default_factory=dict)
    context_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "node_id": self.node_id,
            "message": self.message,
            "model": self.model,
            "template_variables": self.template_variables,
            "context_id": self.context_id,
        }


@dataclass
class TaskStatus:
    """State of an external agentic task."""

    task_id: str
    status: str
    result: str | None = None
    task_url: str | None = None
    attachments: list[dict[str, Any]] = field(default_factory=list)
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TASK_TERMINAL

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskStatus:
        return cls(
            task_id=str(data.get("task_id", "")),
            status=str(data.get("status", "pending")),
            result=data.get("result"),
            task_url=data.get("task_url"),
            attachments=list(data.get("attachments") or []),
            error=data.get("error") or data.get("stop_reason"),
        )


# =============================================================================
# Collaborators
# =============================================================================


class StorageBackend(Protocol):
    """Prompt tree persistence. All tree queries skip soft-deleted rows."""

    async def get_node(self, node_id: str) -> PromptNode | None: ...

    async def get_children(self, parent_ids: list[str]) -> list[PromptNode]:
        """Non-deleted children of the given parents, ascending by position."""
        ...

    async def update_node(self, node_id: str, fields: dict[str, Any]) -> None: ...

    async def create_node(self, fields: dict[str, Any]) -> PromptNode:
        """Insert a node at the end of its parent's children."""
        ...

    async def get_variables(self, node_id: str) -> list[PromptVariable]: ...

    async def update_variable(self, variable_id: str, value: str) -> None: ...

    async def create_variable(self, node_id: str, name: str, value: str) -> PromptVariable: ...

    async def get_setting(self, key: str) -> str | None: ...

    async def get_current_user(self) -> UserInfo | None: ...


class ExecutionBackend(Protocol):
    """Provider-facing execution calls."""

    async def refresh_session(self) -> None: ...

    async def run_conversation(self, request: ConversationRequest) -> ExecutionResult: ...

    async def cancel_run(self) -> None: ...

    async def get_background_status(self, response_id: str) -> BackgroundStatus | None: ...

    def subscribe_background(self, response_id: str) -> AsyncIterator[BackgroundStatus]: ...

    async def create_task(self, request: TaskRequest) -> TaskHandle: ...

    async def get_task_status(self, task_id: str) -> TaskStatus | None: ...

    def subscribe_task(self, task_id: str) -> AsyncIterator[TaskStatus]: ...

    async def cancel_task(self, task_id: str) -> None: ...


class TracingBackend(Protocol):
    """Backend-owned audit records. Every call returns ``{"success": bool, ...}``."""

    async def start_trace(self, entry_node_id: str, execution_type: str) -> dict[str, Any]: ...

    async def create_span(
        self,
        trace_id: str,
        node_id: str,
        span_type: str,
        attempt_number: int | None = None,
        previous_attempt_span_id: str | None = None,
    ) -> dict[str, Any]: ...

    async def complete_span(
        self,
        span_id: str,
        status: str,
        response_id: str | None = None,
        output: str | None = None,
        latency_ms: int | None = None,
        usage_tokens: dict[str, int] | None = None,
    ) -> dict[str, Any]: ...

    async def fail_span(self, span_id: str, error_evidence: dict[str, Any]) -> dict[str, Any]: ...

    async def complete_trace(
        self, trace_id: str, status: str, error_summary: str | None = None
    ) -> dict[str, Any]: ...


class CascadeHost(Protocol):
    """UI side of a cascade run."""

    def start_cascade(self, total_levels: int, total_nodes: int) -> None: ...

    def update_progress(self, level: int, name: str, index: int, node_id: str) -> None: ...

    def mark_complete(self, node_id: str, name: str, response: str) -> None: ...

    def mark_skipped(self, node_id: str, name: str, reason: str) -> None: ...

    def complete_cascade(self) -> None: ...

    def is_cancelled(self) -> bool: ...

    async def check_paused(self) -> bool:
        """Block while paused. Returns False if the run was cancelled."""
        ...

    def on_cancel(self, handler: Callable[[], Awaitable[None] | None]) -> Callable[[], None]: ...

    async def show_error(self, node: PromptNode, error: BaseException) -> ErrorAction: ...

    async def show_action_preview(self, preview: ActionPreview) -> bool: ...

    async def show_question(self, question: QuestionPrompt) -> str | None: ...

    def add_collected_question_var(self, name: str, value: str) -> None: ...

    def notify(self, notification: Notification) -> None: ...
