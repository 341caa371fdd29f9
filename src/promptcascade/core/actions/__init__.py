"""Post-actions: JSON extraction, variable assignment and child creation."""

from promptcascade.core.actions.assignments import AssignmentResult, process_variable_assignments
from promptcascade.core.actions.executors import (
    ACTION_EXECUTORS,
    ActionContext,
    ActionResult,
    execute_post_action,
    target_parent_id,
)
from promptcascade.core.actions.extraction import (
    extract_json_from_response,
    get_nested_value,
    validate_action_response,
)
from promptcascade.core.actions.processor import PostActionOutcome, PostActionProcessor

__all__ = [
    "ACTION_EXECUTORS",
    "ActionContext",
    "ActionResult",
    "AssignmentResult",
    "PostActionOutcome",
    "PostActionProcessor",
    "execute_post_action",
    "extract_json_from_response",
    "get_nested_value",
    "process_variable_assignments",
    "target_parent_id",
    "validate_action_response",
]
