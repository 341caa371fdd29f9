"""Post-action processing for an executed node.

Runs after the node's own output has been persisted. Every failure here is
scoped to the post-action: it is written to ``last_action_result`` and
reported, and the cascade moves on.

Stages:

1. Extract JSON from the response text.
2. Apply variable assignments, if configured.
3. Validate the response shape for array actions.
4. Preview child creation to the user (interactive runs only).
5. Run the executor and record the outcome.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from promptcascade.core.actions.assignments import process_variable_assignments
from promptcascade.core.actions.executors import (
    PREVIEW_ACTIONS,
    ActionContext,
    ActionResult,
    execute_post_action,
)
from promptcascade.core.actions.extraction import (
    extract_json_from_response,
    validate_action_response,
)
from promptcascade.core.config import CascadeConfig
from promptcascade.core.errors import JsonExtractionError
from promptcascade.core.protocols import (
    ActionPreview,
    CascadeEvent,
    CascadeEventType,
    CascadeHost,
    EventSink,
    Notification,
    StorageBackend,
)
from promptcascade.core.tracing import TracingRecorder
from promptcascade.core.types import NodeType, PromptNode

logger = logging.getLogger(__name__)

RESPONSE_PREVIEW_CHARS = 300


@dataclass
class PostActionOutcome:
    """What a post-action produced.

    Attributes:
        status: success, failed, cancelled or empty.
        node_updates: Fields to persist on the action node.
        children: Nodes created by the executor.
        target_parent_id: Parent the children were created under.
        created_count: Count reported by the executor.
    """

    status: str
    node_updates: dict[str, Any] = field(default_factory=dict)
    children: list[PromptNode] = field(default_factory=list)
    target_parent_id: str | None = None
    created_count: int = 0


def _now() -> str:
    return datetime.now(UTC).isoformat()


class PostActionProcessor:
    """Runs a node's post-action against its response."""

    def __init__(
        self,
        storage: StorageBackend,
        tracer: TracingRecorder,
        host: CascadeHost,
        events: EventSink | None = None,
        config: CascadeConfig | None = None,
    ) -> None:
        self.storage = storage
        self.tracer = tracer
        self.host = host
        self.events = events
        self.config = config or CascadeConfig()

    async def _emit(self, event_type: CascadeEventType, node_id: str, data: dict[str, Any]) -> None:
        if self.events is None:
            return
        try:
            await self.events.emit(CascadeEvent(type=event_type, data=data, node_id=node_id))
        except Exception as e:
            logger.warning("event_emit_failed: type=%s, error=%s", event_type.value, e)

    def _failed(self, node: PromptNode, error: str, response: str, **extra: Any) -> PostActionOutcome:
        self.host.notify(
            Notification(
                "error",
                f"Action failed: {node.display_name}",
                error,
                code=extra.pop("code", None),
            )
        )
        result = {
            "status": "failed",
            "action": node.post_action,
            "error": error,
            "response_preview": response[:RESPONSE_PREVIEW_CHARS],
            "executed_at": _now(),
        }
        result.update(extra)
        return PostActionOutcome(status="failed", node_updates={"last_action_result": result})

    async def process(
        self,
        node: PromptNode,
        response: str,
        trace_id: str,
        user_id: str | None = None,
        interactive: bool = True,
    ) -> PostActionOutcome:
        """Run ``node.post_action`` against ``response``.

        Args:
            node: The executed node.
            response: Its raw response text.
            trace_id: Trace receiving the action span.
            user_id: Owner for created children.
            interactive: Whether the user may be asked to confirm.

        Returns:
            The outcome; ``node_updates`` must be persisted by the caller.
        """
        action = node.post_action
        if not action:
            return PostActionOutcome(status="none")
        if node.node_type != NodeType.ACTION:
            logger.warning(
                "post_action_on_plain_node: node_id=%s, action=%s, node_type=%s",
                node.id,
                action,
                node.node_type.value,
            )

        config = node.post_action_config
        logger.info("post_action_started: node_id=%s, action=%s", node.id, action)

        try:
            data = extract_json_from_response(response)
        except JsonExtractionError as e:
            logger.warning("post_action_json_invalid: node_id=%s, error=%s", node.id, e)
            return self._failed(node, str(e), response, code=e.code)

        updates: dict[str, Any] = {"extracted_variables": data}

        if node.variable_assignments_config.get("enabled"):
            assigned = await process_variable_assignments(
                self.storage, node.id, data, node.variable_assignments_config
            )
            if assigned.processed:
                await self._emit(
                    CascadeEventType.VARIABLES_UPDATED,
                    node.id,
                    {"created": assigned.created, "updated": assigned.updated},
                )
            if assigned.errors:
                self.host.notify(
                    Notification(
                        "warning",
                        f"Variable assignment issues: {node.display_name}",
                        "; ".join(
                            f"{err.name}: {err.error}" if err.name else err.error
                            for err in assigned.errors
                        ),
                    )
                )

        validation = validate_action_response(data, config, action)
        if not validation.valid:
            outcome = self._failed(
                node,
                validation.error or "Invalid response shape",
                response,
                code="ACTION_VALIDATION_FAILED",
                available_arrays=validation.available_arrays,
                suggestion=validation.suggestion,
            )
            outcome.node_updates = {**updates, **outcome.node_updates}
            return outcome

        if validation.is_empty:
            message = "No items found in JSON array"
            span_id = await self.tracer.open_span(trace_id, node.id, "action")
            await self.tracer.complete_span(span_id, "skipped", output=message)
            self.host.notify(
                Notification(
                    "warning",
                    f"Nothing to create: {node.display_name}",
                    f'The array at "{validation.json_path}" is empty',
                )
            )
            updates["last_action_result"] = {
                "status": "success",
                "action": action,
                "created_count": 0,
                "message": message,
                "executed_at": _now(),
            }
            return PostActionOutcome(status="empty", node_updates=updates)

        if (
            interactive
            and action in PREVIEW_ACTIONS
            and not config.get("skip_preview")
            and not self.config.skip_all_previews
        ):
            approved = await self.host.show_action_preview(
                ActionPreview(
                    node_id=node.id,
                    node_name=node.display_name,
                    action=action,
                    config=config,
                    json_response=data,
                    item_count=validation.item_count,
                )
            )
            if not approved:
                logger.info("post_action_declined: node_id=%s, action=%s", node.id, action)
                self.host.notify(Notification("info", f"Action cancelled: {node.display_name}"))
                updates["last_action_result"] = {
                    "status": "cancelled",
                    "action": action,
                    "reason": "user_cancelled",
                    "executed_at": _now(),
                }
                return PostActionOutcome(status="cancelled", node_updates=updates)

        span_id = await self.tracer.open_span(trace_id, node.id, "action")
        started = time.monotonic()
        try:
            result = await execute_post_action(
                action,
                ActionContext(
                    storage=self.storage,
                    node=node,
                    data=data,
                    config=config,
                    user_id=user_id,
                ),
            )
        except Exception as e:
            logger.error("post_action_failed: node_id=%s, action=%s, error=%s", node.id, action, e)
            result = ActionResult(action=action, success=False, error=str(e))

        latency_ms = int((time.monotonic() - started) * 1000)
        if result.success:
            await self.tracer.complete_span(
                span_id, "success", output=result.message, latency_ms=latency_ms
            )
        else:
            await self.tracer.fail_span(
                span_id,
                "ActionError",
                result.error or "Action failed",
                error_code="ACTION_FAILED",
                latency_ms=latency_ms,
            )

        updates["last_action_result"] = {
            "status": "success" if result.success else "failed",
            "action": action,
            "created_count": result.created_count,
            "target_parent_id": result.target_parent_id,
            "message": result.message,
            "error": result.error,
            "executed_at": _now(),
        }

        if not result.success:
            self.host.notify(
                Notification(
                    "error",
                    f"Action failed: {node.display_name}",
                    result.error,
                    code="ACTION_FAILED",
                )
            )
            return PostActionOutcome(status="failed", node_updates=updates)

        logger.info(
            "post_action_completed: node_id=%s, action=%s, created=%d",
            node.id,
            action,
            result.created_count,
        )
        if result.created_count:
            await self._emit(
                CascadeEventType.TREE_REFRESH_NEEDED,
                node.id,
                {
                    "reason": "post_action",
                    "created_count": result.created_count,
                    "parent_id": result.target_parent_id,
                },
            )
        self.host.notify(
            Notification("success", f"Action complete: {node.display_name}", result.message)
        )
        return PostActionOutcome(
            status="success",
            node_updates=updates,
            children=result.children,
            target_parent_id=result.target_parent_id,
            created_count=result.created_count,
        )
