"""Post-action executors that materialize child nodes.

Each executor takes an ActionContext and returns an ActionResult. They are
registered by action id in ACTION_EXECUTORS:

- create_children_json: one child per item of an array in the response
- create_children_text: a fixed number of named children
- create_children_sections: one child per matching top-level key
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from promptcascade.core.actions.extraction import (
    available_array_keys,
    configured_json_path,
    get_nested_value,
)
from promptcascade.core.actions.naming import child_name
from promptcascade.core.errors import ActionValidationError
from promptcascade.core.protocols import StorageBackend
from promptcascade.core.types import NodeType, PromptNode

logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 100

NAME_KEYS = (
    "prompt_name",
    "name",
    "title",
    "heading",
    "label",
    "section_name",
    "section_title",
    "topic",
    "subject",
    "key",
    "id",
)
CONTENT_KEYS = ("admin_prompt", "input_admin_prompt", "system_prompt", "content", "text", "body", "description")

DEFAULT_SETTING_KEYS = ("def_admin_prompt", "default_user_prompt", "default_model")

PLACEMENT_TEXT = {
    "children": "as children",
    "siblings": "as siblings",
    "top_level": "as top-level prompts",
}


@dataclass
class ActionContext:
    """Inputs shared by every executor."""

    storage: StorageBackend
    node: PromptNode
    data: Any
    config: dict[str, Any] = field(default_factory=dict)
    user_id: str | None = None


@dataclass
class ActionResult:
    """Outcome of one executor run."""

    action: str
    success: bool = True
    created_count: int = 0
    children: list[PromptNode] = field(default_factory=list)
    target_parent_id: str | None = None
    placement: str | None = None
    message: str | None = None
    error: str | None = None


Executor = Callable[[ActionContext], Awaitable[ActionResult]]


def target_parent_id(node: PromptNode, config: dict[str, Any]) -> str | None:
    """Parent id for created children according to ``placement``."""
    placement = config.get("placement", "children")
    if placement == "siblings":
        return node.parent_id
    if placement == "top_level":
        return None
    if placement == "specific_prompt":
        return config.get("target_prompt_id") or node.id
    return node.id


async def _defaults(storage: StorageBackend) -> dict[str, str]:
    settings: dict[str, str] = {}
    for key in DEFAULT_SETTING_KEYS:
        value = await storage.get_setting(key)
        if value:
            settings[key] = value
    return settings


def _base_child(
    ctx: ActionContext, parent_id: str | None, name: str, defaults: dict[str, str]
) -> dict[str, Any]:
    return {
        "parent_id": parent_id,
        "name": name[:MAX_NAME_LENGTH],
        "node_type": NodeType(ctx.config.get("child_node_type") or NodeType.STANDARD.value).value,
        "owner_id": ctx.user_id or ctx.node.owner_id,
        "model": ctx.node.model or defaults.get("default_model"),
        "is_deleted": False,
    }


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, indent=2)


def _item_name(item: Any, index: int, name_field: str | None) -> str:
    if isinstance(item, str):
        return item[:MAX_NAME_LENGTH] or f"Item {index + 1}"
    if not isinstance(item, dict):
        return f"Item {index + 1}"

    name = get_nested_value(item, name_field) if name_field else None
    if not name:
        name = next((item[k] for k in NAME_KEYS if item.get(k)), None)
    if not name:
        name = next(
            (v for v in item.values() if isinstance(v, str) and 0 < len(v) < 150),
            None,
        )
    return str(name) if name else f"Item {index + 1}"


def _item_content(item: Any, content_field: str | None) -> str:
    if isinstance(item, str):
        return item
    content = get_nested_value(item, content_field) if content_field else None
    if not content and isinstance(item, dict):
        content = next((item[k] for k in CONTENT_KEYS if item.get(k)), None)
    if not content and not content_field:
        content = item
    return _as_text(content)


def _summary(count: int, config: dict[str, Any], source: str) -> str:
    kind = " action" if config.get("child_node_type") == NodeType.ACTION.value else ""
    placement = PLACEMENT_TEXT.get(config.get("placement", "children"), "")
    where = f" {placement}" if placement else ""
    return f"Created {count}{kind} node(s){where} from {source}"


async def create_children_json(ctx: ActionContext) -> ActionResult:
    """One child per item of the array at ``json_path``.

    Raises:
        ActionValidationError: ``json_path`` does not point to an array.
    """
    config = ctx.config
    json_path = configured_json_path(config)
    items = get_nested_value(ctx.data, json_path)
    if not isinstance(items, list):
        arrays = available_array_keys(ctx.data)
        raise ActionValidationError(
            f'JSON path "{json_path}" does not point to an array. '
            f"Available array keys: {', '.join(arrays) or 'none'}",
            available_arrays=arrays,
            suggestion=f'Try changing json_path to "{arrays[0]}"' if arrays else None,
        )
    if not items:
        return ActionResult(
            action="create_children_json", message="No items found in JSON array"
        )

    name_field = config.get("name_field")
    content_field = config.get("content_field")
    to_system = config.get("content_destination", "system") == "system"

    defaults = await _defaults(ctx.storage)
    parent_id = target_parent_id(ctx.node, config)
    children: list[PromptNode] = []

    for index, item in enumerate(items):
        content = _item_content(item, content_field)
        fields = _base_child(ctx, parent_id, _item_name(item, index, name_field), defaults)
        default_admin = defaults.get("def_admin_prompt", "")
        fields["admin_prompt"] = (content or default_admin) if to_system else default_admin
        fields["user_prompt"] = "" if to_system else content
        fields["extracted_variables"] = item if isinstance(item, dict) else {"value": item}
        children.append(await ctx.storage.create_node(fields))

    logger.info("children_created: action=create_children_json, count=%d, parent_id=%s", len(children), parent_id)
    return ActionResult(
        action="create_children_json",
        created_count=len(children),
        children=children,
        target_parent_id=parent_id,
        placement=config.get("placement", "children"),
        message=_summary(len(children), config, "JSON array"),
    )


async def create_children_text(ctx: ActionContext) -> ActionResult:
    """``children_count`` children named from ``name_prefix``."""
    config = ctx.config
    try:
        count = int(config.get("children_count") or 3)
    except (TypeError, ValueError):
        count = 3
    if count <= 0:
        count = 3
    prefix = config.get("name_prefix") or "Child"

    defaults = await _defaults(ctx.storage)
    parent_id = target_parent_id(ctx.node, config)
    children: list[PromptNode] = []

    for index in range(count):
        fields = _base_child(ctx, parent_id, child_name(prefix, index), defaults)
        fields["admin_prompt"] = defaults.get("def_admin_prompt", "")
        fields["user_prompt"] = defaults.get("default_user_prompt", "")
        children.append(await ctx.storage.create_node(fields))

    logger.info("children_created: action=create_children_text, count=%d, parent_id=%s", count, parent_id)
    return ActionResult(
        action="create_children_text",
        created_count=len(children),
        children=children,
        target_parent_id=parent_id,
        placement=config.get("placement", "children"),
        message=_summary(len(children), config, "text configuration"),
    )


def _section_keys(data: dict[str, Any], config: dict[str, Any], suffix: str) -> list[str]:
    target_keys = config.get("target_keys") or []
    if isinstance(target_keys, str):
        target_keys = [target_keys]
    if target_keys:
        keys = [key for key in target_keys if key in data]
    else:
        pattern = config.get("section_pattern") or r"^section\s*\d+"
        try:
            regex = re.compile(pattern, re.IGNORECASE)
        except re.error as e:
            raise ActionValidationError(f"Invalid regex pattern: {pattern}") from e
        endings = (suffix.lower(), re.sub(r"\s+", "_", suffix.lower())) if suffix else ()
        keys = [key for key in data if not key.lower().endswith(endings) and regex.search(key)]

    def natural(key: str) -> int:
        match = re.search(r"\d+", key)
        return int(match.group(0)) if match else 0

    return sorted(keys, key=natural)


def _section_content(data: dict[str, Any], key: str, suffix: str) -> str:
    if not suffix:
        return ""
    lowered = {k.lower(): k for k in data}
    underscored = re.sub(r"\s+", "_", suffix)
    candidates = (f"{key} {suffix}", f"{key}_{underscored}")
    for candidate in candidates:
        match = lowered.get(candidate.lower())
        if match is not None:
            return _as_text(data[match])
    return ""


async def create_children_sections(ctx: ActionContext) -> ActionResult:
    """One child per section key, with optional "<key> system prompt" content."""
    config = ctx.config
    if not isinstance(ctx.data, dict):
        return ActionResult(
            action="create_children_sections",
            success=False,
            error="JSON response must be an object",
        )

    suffix = (config.get("content_key_suffix", "system prompt") or "").strip()
    keys = _section_keys(ctx.data, config, suffix)
    if not keys:
        return ActionResult(
            action="create_children_sections",
            message="No keys matching criteria found in JSON response",
        )

    name_source = config.get("name_source", "key_value")

    defaults = await _defaults(ctx.storage)
    parent_id = target_parent_id(ctx.node, config)
    children: list[PromptNode] = []

    for key in keys:
        value = ctx.data[key]
        value_text = value if isinstance(value, str) else json.dumps(value)
        if name_source == "key_name":
            name = key
        elif name_source == "both":
            name = f"{key}: {value_text}"
        else:
            name = value_text

        content = _section_content(ctx.data, key, suffix)
        fields = _base_child(ctx, parent_id, name, defaults)
        fields["admin_prompt"] = content or ctx.node.admin_prompt or defaults.get("def_admin_prompt", "")
        fields["user_prompt"] = "" if content else (value if isinstance(value, str) else "")
        fields["extracted_variables"] = {
            "section_key": key,
            "section_value": value,
            "has_content": bool(content),
        }
        children.append(await ctx.storage.create_node(fields))

    logger.info("children_created: action=create_children_sections, count=%d, parent_id=%s", len(children), parent_id)
    return ActionResult(
        action="create_children_sections",
        created_count=len(children),
        children=children,
        target_parent_id=parent_id,
        placement=config.get("placement", "children"),
        message=_summary(len(children), config, "section keys"),
    )


ACTION_EXECUTORS: dict[str, Executor] = {
    "create_children_json": create_children_json,
    "create_children_text": create_children_text,
    "create_children_sections": create_children_sections,
}

# Actions whose effect is shown to the user before it runs
PREVIEW_ACTIONS = frozenset({"create_children_json"})


async def execute_post_action(action_id: str, ctx: ActionContext) -> ActionResult:
    """Run a registered executor; unknown ids fail without raising."""
    executor = ACTION_EXECUTORS.get(action_id)
    if executor is None:
        return ActionResult(action=action_id, success=False, error=f"Unknown action: {action_id}")
    return await executor(ctx)
