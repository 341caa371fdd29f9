"""Pure data types for the cascade engine.

These types have no dependencies on storage, transport or UI. Backends
convert their own row formats into them via ``from_dict``.
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class NodeType(str, Enum):
    """Node-type tag of a prompt node."""

    STANDARD = "standard"
    ACTION = "action"


class InterruptType(str, Enum):
    """Mid-execution interrupt signals reported by the execution backend."""

    QUESTION = "question"
    LONG_RUNNING = "long_running"
    TOOL_APPROVAL = "tool_approval"


class ErrorAction(str, Enum):
    """User decision after a node exhausted its retries."""

    RETRY = "retry"
    SKIP = "skip"
    STOP = "stop"


class ThreadMode(str, Enum):
    """Whether a conversation call starts a new thread or continues one."""

    NEW = "new"
    CONTINUE = "continue"


@dataclass
class QuestionConfig:
    """Per-node question-interrupt settings."""

    max_questions: int | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> QuestionConfig | None:
        if not data:
            return None
        value = data.get("max_questions")
        return cls(max_questions=int(value) if value is not None else None)


@dataclass
class PromptNode:
    """A node in the prompt tree.

    Attributes:
        id: Unique node id.
        parent_id: Parent node id, None for a top-level node.
        position: Sibling ordering key (ascending).
        name: Display name.
        admin_prompt: System-style prompt text.
        user_prompt: User-style prompt text.
        output: Last response, None until executed.
        user_prompt_result: Echo of the last response.
        model: Model selector; the provider is derived from it.
        node_type: Plain or action node.
        post_action: Post-action id (e.g. "create_children_json").
        post_action_config: Configuration for the post-action.
        variable_assignments_config: Configuration for writing JSON values to variables.
        exclude_from_cascade: Recorded as skipped instead of executed.
        auto_run_children: Run children created by the post-action immediately.
        is_assistant: Context/assistant role; never executed at level 0.
        question_config: Question-interrupt cap.
        system_variables: Free-form stored system variables.
        extracted_variables: JSON extracted by the last post-action.
        last_action_result: Outcome record of the last post-action.
        owner_id: Owner of the row.
        is_deleted: Soft-deletion flag.
    """

    id: str
    parent_id: str | None = None
    position: str = ""
    name: str = ""
    admin_prompt: str = ""
    user_prompt: str = ""
    output: str | None = None
    user_prompt_result: str | None = None
    model: str | None = None
    node_type: NodeType = NodeType.STANDARD
    post_action: str | None = None
    post_action_config: dict[str, Any] = field(default_factory=dict)
    variable_assignments_config: dict[str, Any] = field(default_factory=dict)
    exclude_from_cascade: bool = False
    auto_run_children: bool = False
    is_assistant: bool = False
    question_config: QuestionConfig | None = None
    system_variables: dict[str, Any] = field(default_factory=dict)
    extracted_variables: Any = None
    last_action_result: dict[str, Any] | None = None
    owner_id: str | None = None
    is_deleted: bool = False

    @property
    def display_name(self) -> str:
        return self.name or "Untitled"

    @property
    def has_content(self) -> bool:
        return bool(self.user_prompt.strip() or self.admin_prompt.strip())

    def message(self, fallback: str) -> str:
        """Message sent to the provider: user prompt, else admin prompt, else fallback."""
        return self.user_prompt.strip() or self.admin_prompt.strip() or fallback

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PromptNode:
        """Build a node from a storage row."""
        return cls(
            id=str(data["id"]),
            parent_id=data.get("parent_id"),
            position=str(data.get("position") or ""),
            name=data.get("name") or "",
            admin_prompt=data.get("admin_prompt") or "",
            user_prompt=data.get("user_prompt") or "",
            output=data.get("output"),
            user_prompt_result=data.get("user_prompt_result"),
            model=data.get("model"),
            node_type=NodeType(data.get("node_type") or NodeType.STANDARD.value),
            post_action=data.get("post_action") or None,
            post_action_config=dict(data.get("post_action_config") or {}),
            variable_assignments_config=dict(data.get("variable_assignments_config") or {}),
            exclude_from_cascade=bool(data.get("exclude_from_cascade", False)),
            auto_run_children=bool(data.get("auto_run_children", False)),
            is_assistant=bool(data.get("is_assistant", False)),
            question_config=QuestionConfig.from_dict(data.get("question_config")),
            system_variables=dict(data.get("system_variables") or {}),
            extracted_variables=data.get("extracted_variables"),
            last_action_result=data.get("last_action_result"),
            owner_id=data.get("owner_id"),
            is_deleted=bool(data.get("is_deleted", False)),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON/YAML-serializable row."""
        return {
            "id": self.id,
            "parent_id": self.parent_id,
            "position": self.position,
            "name": self.name,
            "admin_prompt": self.admin_prompt,
            "user_prompt": self.user_prompt,
            "output": self.output,
            "user_prompt_result": self.user_prompt_result,
            "model": self.model,
            "node_type": self.node_type.value,
            "post_action": self.post_action,
            "post_action_config": self.post_action_config,
            "variable_assignments_config": self.variable_assignments_config,
            "exclude_from_cascade": self.exclude_from_cascade,
            "auto_run_children": self.auto_run_children,
            "is_assistant": self.is_assistant,
            "question_config": (
                {"max_questions": self.question_config.max_questions}
                if self.question_config
                else None
            ),
            "system_variables": self.system_variables,
            "extracted_variables": self.extracted_variables,
            "last_action_result": self.last_action_result,
            "owner_id": self.owner_id,
            "is_deleted": self.is_deleted,
        }


@dataclass
class PromptVariable:
    """A stored per-node variable row."""

    id: str
    node_id: str
    name: str
    value: str | None = None
    default_value: str | None = None

    @property
    def resolved(self) -> str:
        return self.value or self.default_value or ""


@dataclass
class UserInfo:
    """Identity of the user running the cascade."""

    id: str
    email: str | None = None
    display_name: str | None = None

    @property
    def name(self) -> str:
        if self.display_name:
            return self.display_name
        if self.email:
            return self.email.split("@")[0]
        return "Unknown"


@dataclass
class Level:
    """One level of a PromptHierarchy."""

    level: int
    nodes: list[PromptNode]


@dataclass
class PromptHierarchy:
    """Level-ordered view of the tree under one root, built once per run."""

    levels: list[Level]

    @property
    def root(self) -> PromptNode:
        return self.levels[0].nodes[0]

    @property
    def total_levels(self) -> int:
        return len(self.levels)

    @property
    def total_nodes(self) -> int:
        return sum(len(level.nodes) for level in self.levels)

    def iter_nodes(self) -> Iterator[tuple[int, PromptNode]]:
        """Yield (level, node) in execution order."""
        for level in self.levels:
            for node in level.nodes:
                yield level.level, node

    def lookup(self) -> dict[str, PromptNode]:
        return {node.id: node for _, node in self.iter_nodes()}


@dataclass
class TokenUsage:
    """Token counts reported for one response."""

    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    @classmethod
    def from_raw(cls, raw: dict[str, Any] | None) -> TokenUsage | None:
        """Accept both input/output and prompt/completion naming."""
        if not raw:
            return None
        return cls(
            input_tokens=int(raw.get("input_tokens", raw.get("prompt_tokens", 0)) or 0),
            output_tokens=int(raw.get("output_tokens", raw.get("completion_tokens", 0)) or 0),
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "input": self.input_tokens,
            "output": self.output_tokens,
            "total": self.total_tokens,
        }


@dataclass
class ExecutionResult:
    """Normalized result of one execution, whatever the strategy.

    Attributes:
        response: Response text, None when the call produced none.
        response_id: Provider response id.
        usage: Token usage if reported.
        interrupted: The call stopped on an interrupt.
        interrupt_type: Kind of interrupt.
        interrupt_data: Interrupt payload (question text, variable name, call id...).
        cancelled: The backend reports the run was cancelled.
        attachments: Files returned by an external task.
        task_id: External task id.
        task_url: External task URL.
    """

    response: str | None = None
    response_id: str | None = None
    usage: TokenUsage | None = None
    interrupted: bool = False
    interrupt_type: InterruptType | None = None
    interrupt_data: dict[str, Any] = field(default_factory=dict)
    cancelled: bool = False
    attachments: list[dict[str, Any]] = field(default_factory=list)
    task_id: str | None = None
    task_url: str | None = None

    @property
    def is_question(self) -> bool:
        return self.interrupted and self.interrupt_type == InterruptType.QUESTION

    @property
    def is_long_running(self) -> bool:
        return self.interrupted and self.interrupt_type == InterruptType.LONG_RUNNING

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExecutionResult:
        """Build a result from a backend payload."""
        interrupt_type = data.get("interrupt_type")
        return cls(
            response=data.get("response"),
            response_id=data.get("response_id"),
            usage=TokenUsage.from_raw(data.get("usage")),
            interrupted=bool(data.get("interrupted", False)),
            interrupt_type=InterruptType(interrupt_type) if interrupt_type else None,
            interrupt_data=dict(data.get("interrupt_data") or {}),
            cancelled=bool(data.get("cancelled", False)),
            attachments=list(data.get("attachments") or []),
            task_id=data.get("task_id"),
            task_url=data.get("task_url"),
        )
