"""JSON extraction and shape validation for post-action responses."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any

from promptcascade.core.errors import JsonExtractionError

CODE_FENCE_PATTERN = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)

ROOT_PATH = "root"
DEFAULT_JSON_PATH = "sections"

# Actions whose response must contain an array at json_path
ARRAY_ACTIONS = frozenset({"create_children_json"})


def extract_json_from_response(response: str) -> Any:
    """Parse JSON from a response, unwrapping a markdown code fence.

    Raises:
        JsonExtractionError: No parseable JSON.
    """
    text = (response or "").strip()
    match = CODE_FENCE_PATTERN.search(text)
    if match:
        text = match.group(1).strip()
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise JsonExtractionError(f"JSON parse error: {e}") from e


def get_nested_value(data: Any, path: str | None) -> Any:
    """Value at a dot path; ``""``/``"root"`` is the whole document.

    Numeric segments index into lists (``"items.0.name"``). Missing keys give None.
    """
    if not path or path == ROOT_PATH:
        return data
    value = data
    for key in path.split("."):
        if isinstance(value, list) and key.isdigit():
            index = int(key)
            value = value[index] if index < len(value) else None
        elif isinstance(value, dict):
            value = value.get(key)
        else:
            return None
        if value is None:
            return None
    return value


def configured_json_path(config: dict[str, Any] | None) -> str:
    """``json_path`` may be a string or a list (first entry wins)."""
    raw = (config or {}).get("json_path")
    if isinstance(raw, list):
        return str(raw[0]) if raw else DEFAULT_JSON_PATH
    if isinstance(raw, str):
        return raw
    return DEFAULT_JSON_PATH


def available_array_keys(data: Any) -> list[str]:
    if not isinstance(data, dict):
        return []
    return [key for key, value in data.items() if isinstance(value, list)]


@dataclass
class ActionValidation:
    """Outcome of checking a response against an action's expected shape."""

    valid: bool
    error: str | None = None
    available_arrays: list[str] = field(default_factory=list)
    suggestion: str | None = None
    json_path: str | None = None
    items: list[Any] = field(default_factory=list)

    @property
    def item_count(self) -> int:
        return len(self.items)

    @property
    def is_empty(self) -> bool:
        return self.valid and self.json_path is not None and not self.items


def validate_action_response(
    data: Any, config: dict[str, Any] | None, action_id: str
) -> ActionValidation:
    """Check that an array action's json_path points to an array."""
    if action_id not in ARRAY_ACTIONS:
        return ActionValidation(valid=True)

    json_path = configured_json_path(config)
    target = get_nested_value(data, json_path)
    arrays = available_array_keys(data)

    if not isinstance(target, list):
        if isinstance(target, str):
            suggestion = (
                "The value at this path is a string; the model may have returned "
                "stringified JSON instead of an array."
            )
        elif arrays:
            suggestion = f'Try setting json_path to "{arrays[0]}"'
        elif isinstance(data, list):
            suggestion = 'The response itself is an array; set json_path to "root".'
        else:
            suggestion = "Ensure the response contains an array field for child items."
        return ActionValidation(
            valid=False,
            error=(
                f'Path "{json_path}" is not an array (found {type(target).__name__}). '
                f"Available array keys: {', '.join(arrays) or 'none'}"
            ),
            available_arrays=arrays,
            suggestion=suggestion,
            json_path=json_path,
        )

    return ActionValidation(valid=True, json_path=json_path, items=target)
