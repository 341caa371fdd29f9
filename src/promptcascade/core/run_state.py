"""Transient state owned by one cascade invocation."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

from promptcascade.core.types import PromptNode


@dataclass(frozen=True)
class AccumulatedResponse:
    """One executed (or user-skipped) node's contribution to run context."""

    level: int
    node_id: str
    name: str
    response: str
    skipped: bool = False


@dataclass(frozen=True)
class PromptSnapshot:
    """Resolved fields of an executed node, for cross-references."""

    node_id: str
    name: str
    output: str
    user_prompt_result: str
    admin_prompt: str
    user_prompt: str
    system_variables: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def of(cls, node: PromptNode, response: str) -> PromptSnapshot:
        return cls(
            node_id=node.id,
            name=node.name,
            output=response,
            user_prompt_result=response,
            admin_prompt=node.admin_prompt,
            user_prompt=node.user_prompt,
            system_variables=dict(node.system_variables),
        )


@dataclass
class CascadeRunState:
    """Per-run bookkeeping. Accumulated responses are append-only."""

    status: Literal["pending", "running", "completed", "failed", "cancelled"] = "pending"
    trace_id: str | None = None
    error: str | None = None
    total_levels: int = 0
    total_nodes: int = 0
    current_level: int = 0
    current_index: int = 0
    accumulated: list[AccumulatedResponse] = field(default_factory=list)
    prompt_data: dict[str, PromptSnapshot] = field(default_factory=dict)
    completed_ids: list[str] = field(default_factory=list)
    skipped_ids: list[str] = field(default_factory=list)

    def record_success(self, level: int, node: PromptNode, response: str) -> None:
        self.accumulated.append(AccumulatedResponse(level, node.id, node.name, response))
        self.prompt_data[node.id] = PromptSnapshot.of(node, response)
        self.completed_ids.append(node.id)

    def record_user_skip(self, level: int, node: PromptNode, reason: str) -> None:
        self.accumulated.append(
            AccumulatedResponse(level, node.id, node.name, f"[SKIPPED: {reason}]", skipped=True)
        )
        self.skipped_ids.append(node.id)

    def record_excluded(self, node: PromptNode) -> None:
        self.skipped_ids.append(node.id)
