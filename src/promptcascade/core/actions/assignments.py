"""Write variable assignments from a JSON response to a node's variables.

The response carries an array of ``{"name": ..., "value": ...}`` items at
``json_path`` (default ``variable_assignments``). Existing variables are
updated; missing ones are created only when ``auto_create_variables`` is on.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from promptcascade.core.actions.extraction import get_nested_value
from promptcascade.core.protocols import StorageBackend
from promptcascade.core.variables import validate_variable_name

logger = logging.getLogger(__name__)

DEFAULT_ASSIGNMENTS_PATH = "variable_assignments"


@dataclass
class AssignmentError:
    error: str
    name: str | None = None


@dataclass
class AssignmentResult:
    processed: int = 0
    created: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    errors: list[AssignmentError] = field(default_factory=list)


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value)


async def process_variable_assignments(
    storage: StorageBackend,
    node_id: str,
    data: Any,
    config: dict[str, Any] | None,
) -> AssignmentResult:
    """Apply the assignments found in ``data`` to ``node_id``'s variables.

    Storage failures are recorded per item; they do not raise.
    """
    result = AssignmentResult()
    if not config or not config.get("enabled") or data is None:
        return result

    json_path = config.get("json_path") or DEFAULT_ASSIGNMENTS_PATH
    auto_create = config.get("auto_create_variables") is True

    assignments = get_nested_value(data, json_path)
    if not isinstance(assignments, list) or not assignments:
        logger.debug("variable_assignments_missing: node_id=%s, path=%s", node_id, json_path)
        return result

    try:
        existing = {variable.name: variable for variable in await storage.get_variables(node_id)}
    except Exception as e:
        logger.error("variable_fetch_failed: node_id=%s, error=%s", node_id, e)
        result.errors.append(AssignmentError(f"Failed to fetch existing variables: {e}"))
        return result

    for item in assignments:
        name = item.get("name") if isinstance(item, dict) else None
        if not name or not isinstance(name, str):
            result.errors.append(AssignmentError("Missing or invalid name field"))
            continue
        problem = validate_variable_name(name)
        if problem:
            result.errors.append(AssignmentError(problem, name=name))
            continue

        value = _stringify(item.get("value"))
        variable = existing.get(name)
        try:
            if variable is not None:
                await storage.update_variable(variable.id, value)
                result.updated.append(name)
            elif auto_create:
                existing[name] = await storage.create_variable(node_id, name, value)
                result.created.append(name)
            else:
                logger.debug("variable_assignment_skipped: name=%s, reason=not_found", name)
                continue
        except Exception as e:
            result.errors.append(AssignmentError(f"Write failed: {e}", name=name))
            continue
        result.processed += 1

    logger.info(
        "variable_assignments_processed: node_id=%s, processed=%d, errors=%d",
        node_id,
        result.processed,
        len(result.errors),
    )
    return result
