"""Variable resolution for cascade node executions.

Each node execution receives one flat ``{name: str}`` mapping built from
four layers (later layers win on key collision):

1. System variables: ``q.today``, ``q.user.name``, ``q.parent.prompt.name``...
2. Cascade history: previous response, all responses as JSON, per-level
   and per-index responses.
3. Cross-references ``q.ref[<node id>].*`` for every node already executed
   in the run.
4. Stored per-node variables (applied by the orchestrator after resolving).

Everything in this module is pure: no I/O and no clock access unless the
caller omits ``now``.
"""

from __future__ import annotations

import json
import re
from collections.abc import Mapping, Sequence
from datetime import UTC, datetime
from typing import Any

from promptcascade.core.run_state import AccumulatedResponse, PromptSnapshot
from promptcascade.core.types import PromptNode, PromptVariable, UserInfo

SYSTEM_PREFIX = "q."

# Keys derived from the running context. A snapshot's stored copy of one of
# these describes the context it was saved in, not the current run.
CONTEXT_VARIABLE_KEYS = frozenset(
    {
        "q.today",
        "q.now",
        "q.year",
        "q.month",
        "q.user.name",
        "q.user.email",
        "q.toplevel.prompt.name",
        "q.parent.prompt.name",
        "q.parent.prompt.id",
        "q.parent.output_response",
        "q.parent.user_prompt_result",
        "q.prompt.name",
        "q.prompt.id",
    }
)

VARIABLE_NAME_PATTERN = re.compile(r"^[a-zA-Z][a-zA-Z0-9_-]*$")
MAX_VARIABLE_NAME_LENGTH = 50

TEMPLATE_PATTERN = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value)


def build_system_variables(
    node: PromptNode,
    parent: PromptNode | None = None,
    root: PromptNode | None = None,
    user: UserInfo | None = None,
    now: datetime | None = None,
) -> dict[str, str]:
    """Static system variables plus the node's stored system variables."""
    now = now or datetime.now(UTC)
    variables = {
        "q.today": now.date().isoformat(),
        "q.now": now.isoformat(),
        "q.year": str(now.year),
        "q.month": now.strftime("%B"),
        "q.user.name": user.name if user else "Unknown",
        "q.user.email": (user.email or "") if user else "",
        "q.toplevel.prompt.name": root.name if root else "",
        "q.parent.prompt.name": parent.name if parent else "",
    }

    for key, value in node.system_variables.items():
        if value not in (None, ""):
            variables[key] = _stringify(value)

    variables["q.prompt.name"] = node.name
    variables["q.prompt.id"] = node.id
    if parent:
        variables["q.parent.prompt.name"] = parent.name
        variables["q.parent.prompt.id"] = parent.id
        variables["q.parent.output_response"] = parent.output or ""
        variables["q.parent.user_prompt_result"] = parent.user_prompt_result or ""
    return variables


def resolve_cascade_variables(
    accumulated: Sequence[AccumulatedResponse],
    level: int,
    node: PromptNode,
    parent: PromptNode | None,
    user: UserInfo | None,
    prompt_data: Mapping[str, PromptSnapshot],
    root: PromptNode | None,
    now: datetime | None = None,
) -> dict[str, str]:
    """Build the template variables for one node execution.

    Args:
        accumulated: Responses of the nodes already run, in order.
        level: Hierarchy level of ``node``.
        node: Node about to run.
        parent: Its parent (may be outside the fetched hierarchy).
        user: Current user.
        prompt_data: Snapshots of executed nodes, by id.
        root: Root node of the hierarchy.
        now: Clock override.

    Returns:
        Flat name-to-string mapping, without stored variable overrides.
    """
    variables = build_system_variables(node, parent, root, user, now)

    if accumulated:
        previous = accumulated[-1]
        variables["cascade_previous_response"] = previous.response
        variables["cascade_previous_name"] = previous.name
        variables["q.previous.response"] = previous.response
        variables["q.previous.name"] = previous.name

    variables["cascade_all_responses"] = json.dumps(
        [{"level": r.level, "name": r.name, "response": r.response} for r in accumulated]
    )
    variables["cascade_level"] = str(level)
    variables["cascade_prompt_count"] = str(len(accumulated))

    per_level: dict[int, int] = {}
    for response in accumulated:
        index = per_level.get(response.level, 0)
        variables[f"cascade_level_{response.level}_response_{index}"] = response.response
        per_level[response.level] = index + 1

    for node_id, snapshot in prompt_data.items():
        prefix = f"q.ref[{node_id}]"
        variables[f"{prefix}.output_response"] = snapshot.output
        variables[f"{prefix}.user_prompt_result"] = snapshot.user_prompt_result
        variables[f"{prefix}.prompt_name"] = snapshot.name
        variables[f"{prefix}.input_admin_prompt"] = snapshot.admin_prompt
        variables[f"{prefix}.input_user_prompt"] = snapshot.user_prompt
        for key, value in snapshot.system_variables.items():
            if key in CONTEXT_VARIABLE_KEYS or value in (None, ""):
                continue
            variables[f"{prefix}.{key}"] = _stringify(value)

    return variables


def apply_stored_overrides(
    variables: dict[str, str], stored: Sequence[PromptVariable]
) -> dict[str, str]:
    """Overlay stored per-node variables (value, else default, else empty)."""
    merged = dict(variables)
    for variable in stored:
        merged[variable.name] = variable.resolved
    return merged


def apply_template_variables(text: str, variables: Mapping[str, str]) -> str:
    """Replace ``{{name}}`` placeholders; unknown names are left untouched."""
    if not text:
        return text

    def substitute(match: re.Match[str]) -> str:
        name = match.group(1)
        if name in variables:
            return variables[name]
        return match.group(0)

    return TEMPLATE_PATTERN.sub(substitute, text)


def validate_variable_name(name: str) -> str | None:
    """Check a user variable name.

    Returns:
        An error message, or None when the name is valid.
    """
    if not name or not name.strip():
        return "Variable name is required"
    if name.startswith(SYSTEM_PREFIX):
        return f"Variable names cannot start with '{SYSTEM_PREFIX}' (reserved for system variables)"
    if len(name) > MAX_VARIABLE_NAME_LENGTH:
        return f"Variable name must be {MAX_VARIABLE_NAME_LENGTH} characters or fewer"
    if not VARIABLE_NAME_PATTERN.match(name):
        return (
            "Variable name must start with a letter and contain only "
            "letters, digits, underscores and hyphens"
        )
    return None
