"""In-memory collaborators.

Used by the CLI for tree files and by tests:

- InMemoryStorage: prompt rows, variables and settings held in dicts
- InMemoryTracing: trace/span records with concurrent-run rejection
- InMemoryEventSink: records broadcast events
- EchoExecutionBackend: answers every call locally, no provider involved

Tree files are YAML (or JSON) documents of nested prompts:

    settings:
      def_admin_prompt: You are a helpful assistant.
    user:
      id: u1
      email: ada@example.com
    prompts:
      - id: root
        name: Outline
        user_prompt: Write an outline about {{topic}}
        variables:
          topic: rivers
        children:
          - name: Section 1
            user_prompt: Expand on {{cascade_previous_response}}
"""

from __future__ import annotations

import copy
import json
import logging
import uuid
from collections.abc import AsyncIterator, Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from promptcascade.core.errors import ConcurrentExecutionError
from promptcascade.core.protocols import (
    BackgroundStatus,
    CascadeEvent,
    ConversationRequest,
    TaskHandle,
    TaskRequest,
    TaskStatus,
)
from promptcascade.core.types import (
    ExecutionResult,
    NodeType,
    PromptNode,
    PromptVariable,
    QuestionConfig,
    UserInfo,
)
from promptcascade.core.variables import apply_template_variables

logger = logging.getLogger(__name__)

POSITION_WIDTH = 8


def _new_id() -> str:
    return str(uuid.uuid4())


def _position(index: int) -> str:
    return f"{index:0{POSITION_WIDTH}d}"


class InMemoryStorage:
    """StorageBackend over plain dicts.

    Reads return copies, so callers only change stored rows through
    ``update_node``.
    """

    def __init__(
        self,
        nodes: Iterable[PromptNode] = (),
        variables: Iterable[PromptVariable] = (),
        settings: dict[str, str] | None = None,
        user: UserInfo | None = None,
    ) -> None:
        self.nodes: dict[str, PromptNode] = {node.id: node for node in nodes}
        self.variables: dict[str, PromptVariable] = {v.id: v for v in variables}
        self.settings: dict[str, str] = dict(settings or {})
        self.user = user
        self.writes: list[tuple[str, dict[str, Any]]] = []

    # -- loading / dumping --------------------------------------------------

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> InMemoryStorage:
        """Build storage from a nested tree document."""
        storage = cls(settings={k: str(v) for k, v in (data.get("settings") or {}).items()})
        user = data.get("user")
        if user:
            storage.user = UserInfo(
                id=str(user.get("id", "user")),
                email=user.get("email"),
                display_name=user.get("display_name") or user.get("name"),
            )
        for index, prompt in enumerate(data.get("prompts") or []):
            storage._load_prompt(prompt, None, index)
        return storage

    def _load_prompt(self, prompt: dict[str, Any], parent_id: str | None, index: int) -> None:
        row = {k: v for k, v in prompt.items() if k not in ("children", "variables")}
        row.setdefault("id", _new_id())
        row["parent_id"] = parent_id
        row.setdefault("position", _position(index))
        node = PromptNode.from_dict(row)
        if node.id in self.nodes:
            raise ValueError(f"Duplicate prompt id: {node.id}")
        self.nodes[node.id] = node

        for name, value in (prompt.get("variables") or {}).items():
            variable = PromptVariable(id=_new_id(), node_id=node.id, name=name, value=str(value))
            self.variables[variable.id] = variable

        for child_index, child in enumerate(prompt.get("children") or []):
            self._load_prompt(child, node.id, child_index)

    @classmethod
    def load_tree_file(cls, path: str | Path) -> InMemoryStorage:
        """Load a YAML or JSON tree file."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Tree file must contain a mapping: {path}")
        return cls.from_dict(data)

    def dump(self, include_deleted: bool = False) -> dict[str, Any]:
        """Nested tree document, the inverse of ``from_dict``."""

        def render(node: PromptNode) -> dict[str, Any]:
            row = {k: v for k, v in node.to_dict().items() if k != "parent_id"}
            variables = {v.name: v.resolved for v in self.variables.values() if v.node_id == node.id}
            if variables:
                row["variables"] = variables
            children = self._children_of(node.id, include_deleted)
            if children:
                row["children"] = [render(child) for child in children]
            return row

        data: dict[str, Any] = {}
        if self.settings:
            data["settings"] = dict(self.settings)
        if self.user:
            data["user"] = {
                "id": self.user.id,
                "email": self.user.email,
                "display_name": self.user.display_name,
            }
        data["prompts"] = [render(root) for root in self._children_of(None, include_deleted)]
        return data

    def save(self, path: str | Path) -> None:
        path = Path(path)
        with open(path, "w") as f:
            if path.suffix == ".json":
                json.dump(self.dump(), f, indent=2)
            else:
                yaml.safe_dump(self.dump(), f, sort_keys=False, allow_unicode=True)

    # -- tree helpers -------------------------------------------------------

    def _children_of(self, parent_id: str | None, include_deleted: bool = False) -> list[PromptNode]:
        children = [
            node
            for node in self.nodes.values()
            if node.parent_id == parent_id and (include_deleted or not node.is_deleted)
        ]
        return sorted(children, key=lambda n: n.position)

    def roots(self) -> list[PromptNode]:
        return [copy.deepcopy(node) for node in self._children_of(None)]

    def delete_node(self, node_id: str) -> None:
        """Soft-delete a node; its descendants drop out of tree queries with it."""
        if node_id not in self.nodes:
            raise KeyError(node_id)
        self.nodes[node_id].is_deleted = True

    # -- StorageBackend -----------------------------------------------------

    async def get_node(self, node_id: str) -> PromptNode | None:
        node = self.nodes.get(node_id)
        if node is None or node.is_deleted:
            return None
        return copy.deepcopy(node)

    async def get_children(self, parent_ids: list[str]) -> list[PromptNode]:
        wanted = set(parent_ids)
        children = [
            node
            for node in self.nodes.values()
            if node.parent_id in wanted and not node.is_deleted
        ]
        return [copy.deepcopy(node) for node in sorted(children, key=lambda n: n.position)]

    async def update_node(self, node_id: str, fields: dict[str, Any]) -> None:
        node = self.nodes.get(node_id)
        if node is None:
            raise KeyError(f"Prompt not found: {node_id}")
        for key, value in fields.items():
            if not hasattr(node, key) or key == "id":
                raise ValueError(f"Unknown prompt field: {key}")
            if key == "node_type":
                value = NodeType(value)
            elif key == "question_config" and isinstance(value, dict):
                value = QuestionConfig.from_dict(value)
            setattr(node, key, copy.deepcopy(value))
        self.writes.append((node_id, dict(fields)))

    async def create_node(self, fields: dict[str, Any]) -> PromptNode:
        row = dict(fields)
        row.setdefault("id", _new_id())
        siblings = self._children_of(row.get("parent_id"), include_deleted=True)
        if "position" not in row:
            last = max((int(s.position) for s in siblings if s.position.isdigit()), default=-1)
            row["position"] = _position(max(last + 1, len(siblings)))
        node = PromptNode.from_dict(row)
        self.nodes[node.id] = node
        logger.debug("prompt_created: id=%s, parent_id=%s", node.id, node.parent_id)
        return copy.deepcopy(node)

    async def get_variables(self, node_id: str) -> list[PromptVariable]:
        return [copy.copy(v) for v in self.variables.values() if v.node_id == node_id]

    async def update_variable(self, variable_id: str, value: str) -> None:
        if variable_id not in self.variables:
            raise KeyError(f"Variable not found: {variable_id}")
        self.variables[variable_id].value = value

    async def create_variable(self, node_id: str, name: str, value: str) -> PromptVariable:
        variable = PromptVariable(id=_new_id(), node_id=node_id, name=name, value=value)
        self.variables[variable.id] = variable
        return copy.copy(variable)

    async def get_setting(self, key: str) -> str | None:
        return self.settings.get(key)

    async def get_current_user(self) -> UserInfo | None:
        return self.user


class InMemoryTracing:
    """TracingBackend keeping records in dicts.

    A second ``start_trace`` for an entry node with a running trace is
    rejected with ``CONCURRENT_EXECUTION``.
    """

    def __init__(self) -> None:
        self.traces: dict[str, dict[str, Any]] = {}
        self.spans: dict[str, dict[str, Any]] = {}

    def spans_for(self, trace_id: str) -> list[dict[str, Any]]:
        return [span for span in self.spans.values() if span["trace_id"] == trace_id]

    async def start_trace(self, entry_node_id: str, execution_type: str) -> dict[str, Any]:
        for trace in self.traces.values():
            if trace["entry_node_id"] == entry_node_id and trace["status"] == "running":
                return {
                    "success": False,
                    "error": "A cascade is already running for this prompt",
                    "error_code": ConcurrentExecutionError.code,
                }
        trace_id = _new_id()
        self.traces[trace_id] = {
            "trace_id": trace_id,
            "entry_node_id": entry_node_id,
            "execution_type": execution_type,
            "status": "running",
            "error_summary": None,
        }
        return {"success": True, "trace_id": trace_id}

    async def create_span(
        self,
        trace_id: str,
        node_id: str,
        span_type: str,
        attempt_number: int | None = None,
        previous_attempt_span_id: str | None = None,
    ) -> dict[str, Any]:
        if trace_id not in self.traces:
            return {"success": False, "error": f"Unknown trace: {trace_id}"}
        span_id = _new_id()
        self.spans[span_id] = {
            "span_id": span_id,
            "trace_id": trace_id,
            "node_id": node_id,
            "span_type": span_type,
            "attempt_number": attempt_number,
            "previous_attempt_span_id": previous_attempt_span_id,
            "status": "running",
        }
        return {"success": True, "span_id": span_id}

    async def complete_span(
        self,
        span_id: str,
        status: str,
        response_id: str | None = None,
        output: str | None = None,
        latency_ms: int | None = None,
        usage_tokens: dict[str, int] | None = None,
    ) -> dict[str, Any]:
        span = self.spans.get(span_id)
        if span is None:
            return {"success": False, "error": f"Unknown span: {span_id}"}
        span.update(
            status=status,
            response_id=response_id,
            output=output,
            latency_ms=latency_ms,
            usage_tokens=usage_tokens,
        )
        return {"success": True}

    async def fail_span(self, span_id: str, error_evidence: dict[str, Any]) -> dict[str, Any]:
        span = self.spans.get(span_id)
        if span is None:
            return {"success": False, "error": f"Unknown span: {span_id}"}
        span.update(status="failed", error_evidence=error_evidence)
        return {"success": True}

    async def complete_trace(
        self, trace_id: str, status: str, error_summary: str | None = None
    ) -> dict[str, Any]:
        trace = self.traces.get(trace_id)
        if trace is None:
            return {"success": False, "error": f"Unknown trace: {trace_id}"}
        trace.update(status=status, error_summary=error_summary)
        return {"success": True}


@dataclass
class InMemoryEventSink:
    """EventSink that records every event."""

    events: list[CascadeEvent] = field(default_factory=list)

    async def emit(self, event: CascadeEvent) -> None:
        self.events.append(event)


Responder = Callable[[ConversationRequest], str]


def echo_response(request: ConversationRequest) -> str:
    """The request's message with its template variables applied."""
    return apply_template_variables(request.message, request.template_variables)


class EchoExecutionBackend:
    """ExecutionBackend answering locally.

    Args:
        responder: Builds the response text for a call; defaults to echoing
            the rendered message.
    """

    def __init__(self, responder: Responder | None = None) -> None:
        self.responder = responder or echo_response
        self.requests: list[ConversationRequest] = []
        self.tasks: dict[str, TaskStatus] = {}
        self.cancel_count = 0

    async def refresh_session(self) -> None:
        return None

    async def run_conversation(self, request: ConversationRequest) -> ExecutionResult:
        self.requests.append(request)
        return ExecutionResult(response=self.responder(request), response_id=_new_id())

    async def cancel_run(self) -> None:
        self.cancel_count += 1

    async def get_background_status(self, response_id: str) -> BackgroundStatus | None:
        return None

    async def subscribe_background(self, response_id: str) -> AsyncIterator[BackgroundStatus]:
        return
        yield

    async def create_task(self, request: TaskRequest) -> TaskHandle:
        task_id = _new_id()
        conversation = ConversationRequest(
            context_id=request.context_id,
            node_id=request.node_id,
            message=request.message,
            template_variables=request.template_variables,
            model=request.model,
        )
        self.tasks[task_id] = TaskStatus(
            task_id=task_id, status="completed", result=self.responder(conversation)
        )
        return TaskHandle(task_id=task_id)

    async def get_task_status(self, task_id: str) -> TaskStatus | None:
        return self.tasks.get(task_id)

    async def subscribe_task(self, task_id: str) -> AsyncIterator[TaskStatus]:
        return
        yield

    async def cancel_task(self, task_id: str) -> None:
        task = self.tasks.get(task_id)
        if task is not None and not task.is_terminal:
            task.status = "cancelled"
