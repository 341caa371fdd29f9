"""Cascade orchestrator.

CascadeExecutor walks a prompt tree level by level and runs every runnable
node once, in order:

    >>> executor = CascadeExecutor(storage, execution, host, tracing=tracing)
    >>> state = await executor.execute_cascade("root-id")
    >>> state.status
    'completed'

Per node it resolves variables, runs the node through the retry controller
and the execution dispatcher, persists the output and runs the node's
post-action. Children created by a post-action on an auto-run node are
executed straight away by :meth:`CascadeExecutor.execute_child_cascade`,
outside the main level loop.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from promptcascade.core.actions.processor import PostActionOutcome, PostActionProcessor
from promptcascade.core.config import CascadeConfig
from promptcascade.core.errors import (
    CascadeAbort,
    CascadeCancelledError,
    ConcurrentExecutionError,
    HierarchyError,
    NoResponseError,
    format_error_for_display,
    parse_api_error,
)
from promptcascade.core.execution import ExecutionDispatcher, ExecutionRequest
from promptcascade.core.protocols import (
    CascadeEvent,
    CascadeEventType,
    CascadeHost,
    EventSink,
    ExecutionBackend,
    Notification,
    NotificationLevel,
    StorageBackend,
    TracingBackend,
)
from promptcascade.core.retry import RetryController, RetryPolicy, Sleep
from promptcascade.core.run_state import CascadeRunState
from promptcascade.core.tracing import EXECUTION_TYPE_CHILD, EXECUTION_TYPE_TOP, TracingRecorder
from promptcascade.core.types import (
    ErrorAction,
    ExecutionResult,
    Level,
    PromptHierarchy,
    PromptNode,
    UserInfo,
)
from promptcascade.core.variables import apply_stored_overrides, resolve_cascade_variables

logger = logging.getLogger(__name__)

EXCLUDED_REASON = "Excluded from cascade"


class NodeOutcome(Enum):
    COMPLETED = "completed"
    SKIPPED = "skipped"
    STOPPED = "stopped"
    QUOTA = "quota"


@dataclass
class ChildRunResult:
    """One child executed by an auto-cascade."""

    node_id: str
    name: str
    success: bool
    depth: int
    response: str | None = None
    error: str | None = None


@dataclass
class ChildCascadeResult:
    """Outcome of an auto-cascade burst.

    Attributes:
        success: No child failed.
        results: Every attempted child, in execution order.
        depth_limit_reached: Recursion stopped at the depth cap.
    """

    success: bool = True
    results: list[ChildRunResult] = field(default_factory=list)
    depth_limit_reached: bool = False

    @property
    def executed(self) -> int:
        return sum(1 for r in self.results if r.success)


@dataclass
class _ChildFrame:
    pending: deque[PromptNode]
    parent: PromptNode
    depth: int
    variables: dict[str, str]


class CascadeExecutor:
    """Runs cascades over a prompt tree.

    Args:
        storage: Prompt tree persistence.
        execution: Provider-facing execution backend.
        host: UI callbacks, dialogs and the pause/cancel predicates.
        tracing: Trace/span backend; None keeps traces local.
        events: Receives tree/result/variable broadcast events.
        config: Engine tunables.
        dispatcher: Prebuilt dispatcher; built from ``execution`` if omitted.
        sleep: Awaitable sleep used for rate-limit backoff.
    """

    def __init__(
        self,
        storage: StorageBackend | None,
        execution: ExecutionBackend | None,
        host: CascadeHost,
        *,
        tracing: TracingBackend | None = None,
        events: EventSink | None = None,
        config: CascadeConfig | None = None,
        dispatcher: ExecutionDispatcher | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.config = config or CascadeConfig()
        self.storage = storage
        self.execution = execution
        self.host = host
        self.events = events

        if dispatcher is None:
            if execution is None:
                raise ValueError("Either an execution backend or a dispatcher is required")
            dispatcher = ExecutionDispatcher.create(execution, storage, host, self.config)
        self.dispatcher = dispatcher

        self.tracer = TracingRecorder(tracing)
        self.retry = RetryController(
            RetryPolicy(
                max_retries=self.config.max_retries,
                max_rate_limit_waits=self.config.max_rate_limit_waits,
                rate_limit_margin_s=self.config.rate_limit_margin_s,
                bare_rate_limit_delay_s=self.config.bare_rate_limit_delay_s,
            ),
            self.tracer,
            host,
            sleep=sleep,
        )
        self.actions = (
            PostActionProcessor(storage, self.tracer, host, events, self.config)
            if storage is not None
            else None
        )

    # -- helpers ------------------------------------------------------------

    def _notify(
        self,
        level: NotificationLevel,
        title: str,
        description: str | None = None,
        code: str | None = None,
    ) -> None:
        self.host.notify(Notification(level, title, description, code))

    async def _emit(self, event_type: CascadeEventType, node_id: str, data: dict[str, Any]) -> None:
        if self.events is None:
            return
        try:
            await self.events.emit(CascadeEvent(type=event_type, data=data, node_id=node_id))
        except Exception as e:
            logger.warning("event_emit_failed: type=%s, error=%s", event_type.value, e)

    async def _current_user(self) -> UserInfo | None:
        try:
            return await self.storage.get_current_user()
        except Exception as e:
            logger.warning("current_user_fetch_failed: error=%s", e)
            return None

    async def _fallback_message(self) -> str:
        try:
            value = await self.storage.get_setting(self.config.fallback_setting_key)
        except Exception as e:
            logger.warning("fallback_setting_fetch_failed: error=%s", e)
            value = None
        return value or self.config.fallback_message

    async def _parent_of(self, node: PromptNode, lookup: dict[str, PromptNode]) -> PromptNode | None:
        if not node.parent_id:
            return None
        parent = lookup.get(node.parent_id)
        if parent is not None:
            return parent
        try:
            parent = await self.storage.get_node(node.parent_id)
        except Exception as e:
            logger.warning("parent_fetch_failed: node_id=%s, parent_id=%s, error=%s", node.id, node.parent_id, e)
            return None
        if parent is not None:
            lookup[parent.id] = parent
        return parent

    async def _variables_for(
        self,
        node: PromptNode,
        level: int,
        parent: PromptNode | None,
        root: PromptNode | None,
        state: CascadeRunState,
        user: UserInfo | None,
        inherited: dict[str, str] | None = None,
    ) -> dict[str, str]:
        variables = dict(inherited or {})
        variables.update(
            resolve_cascade_variables(
                state.accumulated, level, node, parent, user, state.prompt_data, root
            )
        )
        variables["cascade_admin_prompt"] = node.admin_prompt
        try:
            stored = await self.storage.get_variables(node.id)
        except Exception as e:
            logger.warning("stored_variables_fetch_failed: node_id=%s, error=%s", node.id, e)
            stored = []
        return apply_stored_overrides(variables, stored)

    async def _attempt(self, request: ExecutionRequest) -> ExecutionResult:
        """One execution attempt, normalized to a response or an exception."""
        if self.execution is not None:
            try:
                await self.execution.refresh_session()
            except Exception as e:
                logger.warning("session_refresh_failed: error=%s", e)

        if self.host.is_cancelled():
            raise CascadeCancelledError("Cascade cancelled")

        result = await self.dispatcher.dispatch(request)
        if result.cancelled or self.host.is_cancelled():
            raise CascadeCancelledError("Cascade cancelled during execution")
        if result.response is None:
            raise NoResponseError(f"No response received for {request.node.display_name}")
        return result

    async def _attempt_and_persist(self, request: ExecutionRequest) -> ExecutionResult:
        """An attempt that only succeeds once its output is stored."""
        result = await self._attempt(request)
        await self._persist_result(request.node, result.response)
        return result

    async def _persist_result(self, node: PromptNode, response: str) -> None:
        await self.storage.update_node(node.id, {"output": response, "user_prompt_result": response})
        node.output = response
        node.user_prompt_result = response
        await self._emit(
            CascadeEventType.PROMPT_RESULT_UPDATED, node.id, {"output": response}
        )

    async def _run_post_action(
        self,
        node: PromptNode,
        response: str,
        trace_id: str,
        user: UserInfo | None,
        interactive: bool,
    ) -> list[PromptNode]:
        """Run and persist a node's post-action; returns the created children.

        Failures stay with the node: they are recorded as a failed
        ``last_action_result`` and no children are returned.
        """
        try:
            outcome: PostActionOutcome = await self.actions.process(
                node, response, trace_id, user_id=user.id if user else None, interactive=interactive
            )
            if outcome.node_updates:
                await self.storage.update_node(node.id, outcome.node_updates)
                node.extracted_variables = outcome.node_updates.get("extracted_variables", node.extracted_variables)
                node.last_action_result = outcome.node_updates.get("last_action_result")

            children = outcome.children
            if outcome.created_count and not children and outcome.target_parent_id:
                logger.info(
                    "created_children_refetch: node_id=%s, parent_id=%s",
                    node.id,
                    outcome.target_parent_id,
                )
                children = await self.storage.get_children([outcome.target_parent_id])
            return children
        except CascadeAbort:
            raise
        except Exception as e:
            logger.warning("post_action_failed: node_id=%s, action=%s, error=%s", node.id, node.post_action, e)
            self._notify("warning", f"Action failed: {node.display_name}", str(e))
            await self._record_action_failure(node, e)
            return []

    async def _record_action_failure(self, node: PromptNode, error: Exception) -> None:
        failure = {
            "status": "failed",
            "action": node.post_action,
            "error": str(error),
            "executed_at": datetime.now(UTC).isoformat(),
        }
        node.last_action_result = failure
        try:
            await self.storage.update_node(node.id, {"last_action_result": failure})
        except Exception as e:
            logger.warning("action_failure_write_failed: node_id=%s, error=%s", node.id, e)

    # -- hierarchy ----------------------------------------------------------

    async def fetch_hierarchy(self, root_id: str) -> PromptHierarchy:
        """Load the level-ordered tree under ``root_id``.

        Raises:
            HierarchyError: The root is missing or a query failed.
        """
        try:
            root = await self.storage.get_node(root_id)
        except Exception as e:
            raise HierarchyError(f"Failed to load prompt {root_id}: {e}") from e
        if root is None or root.is_deleted:
            raise HierarchyError(f"Prompt {root_id} not found")

        levels = [Level(0, [root])]
        seen = {root.id}
        parent_ids = [root.id]
        while parent_ids:
            try:
                fetched = await self.storage.get_children(parent_ids)
            except Exception as e:
                raise HierarchyError(f"Failed to load level {len(levels)}: {e}") from e
            children = [n for n in fetched if not n.is_deleted and n.id not in seen]
            if not children:
                break
            parent_order = {n.id: i for i, n in enumerate(levels[-1].nodes)}
            children.sort(key=lambda n: (parent_order.get(n.parent_id, len(parent_order)), n.position))
            seen.update(n.id for n in children)
            levels.append(Level(len(levels), children))
            parent_ids = [n.id for n in children]

        hierarchy = PromptHierarchy(levels)
        logger.debug(
            "hierarchy_fetched: root_id=%s, levels=%d, nodes=%d",
            root_id,
            hierarchy.total_levels,
            hierarchy.total_nodes,
        )
        return hierarchy

    async def has_children(self, node_id: str) -> bool:
        """Whether the node has any live children."""
        return bool(await self.storage.get_children([node_id]))

    # -- main run -----------------------------------------------------------

    async def execute_cascade(self, root_id: str, context_id: str | None = None) -> CascadeRunState:
        """Run every runnable node under ``root_id``.

        Never raises; the outcome is reported through the host and the
        returned state's ``status``.
        """
        state = CascadeRunState()
        if self.storage is None:
            self._notify("error", "Cascade failed", "Storage is not available", "STORAGE_UNAVAILABLE")
            state.status = "failed"
            state.error = "Storage is not available"
            return state

        try:
            hierarchy = await self.fetch_hierarchy(root_id)
        except HierarchyError as e:
            logger.error("hierarchy_fetch_failed: root_id=%s, error=%s", root_id, e)
            self._notify("error", "Cascade failed", str(e), e.code)
            state.status = "failed"
            state.error = str(e)
            return state

        runnable = [
            node
            for level, node in hierarchy.iter_nodes()
            if not node.exclude_from_cascade and not (level == 0 and node.is_assistant)
        ]
        if not runnable:
            self._notify("error", "Nothing to run", "No prompts to execute in this cascade", "NO_PROMPTS")
            state.status = "failed"
            state.error = "No prompts to execute"
            return state

        fallback = await self._fallback_message()
        empty = [node.display_name for node in runnable if not node.has_content]
        if empty:
            self._notify(
                "warning",
                f"{len(empty)} prompt(s) have no content",
                f'{", ".join(empty)} will be sent as "{fallback}"',
            )

        try:
            trace_id = await self.tracer.start_trace(root_id, EXECUTION_TYPE_TOP)
        except ConcurrentExecutionError as e:
            logger.warning("cascade_rejected: root_id=%s, reason=concurrent", root_id)
            self._notify("error", "Cascade already running", str(e), e.code)
            state.status = "failed"
            state.error = str(e)
            return state

        state.trace_id = trace_id
        state.status = "running"
        state.total_levels = hierarchy.total_levels
        state.total_nodes = hierarchy.total_nodes
        logger.info(
            "cascade_started: root_id=%s, trace_id=%s, levels=%d, nodes=%d",
            root_id,
            trace_id,
            state.total_levels,
            state.total_nodes,
        )
        self.host.start_cascade(state.total_levels, state.total_nodes)
        unregister = self.host.on_cancel(self.dispatcher.cancel)

        try:
            outcome = await self._run_levels(hierarchy, state, trace_id, context_id, fallback)
            if outcome == NodeOutcome.STOPPED:
                await self.tracer.complete_trace(trace_id, "cancelled", "Stopped by user")
                self._notify("info", "Cascade stopped", f"{len(state.completed_ids)} prompt(s) completed")
                state.status = "cancelled"
            elif outcome == NodeOutcome.QUOTA:
                await self.tracer.complete_trace(trace_id, "failed", state.error)
                state.status = "failed"
            else:
                await self.tracer.complete_trace(trace_id, "completed")
                self._notify(
                    "success",
                    "Cascade complete",
                    f"{len(state.completed_ids)} prompt(s) executed, {len(state.skipped_ids)} skipped",
                )
                state.status = "completed"
        except CascadeAbort as e:
            logger.info("cascade_cancelled: root_id=%s, reason=%s", root_id, e)
            await self.tracer.complete_trace(trace_id, "cancelled", str(e))
            self._notify("info", "Cascade cancelled", str(e), e.code)
            state.status = "cancelled"
            state.error = str(e)
        except Exception as e:
            logger.exception("cascade_failed: root_id=%s", root_id)
            formatted = format_error_for_display(e)
            await self.tracer.complete_trace(trace_id, "failed", str(e))
            self._notify("error", formatted.title, formatted.description, formatted.code)
            state.status = "failed"
            state.error = str(e)
        finally:
            unregister()
            self.host.complete_cascade()

        logger.info(
            "cascade_finished: root_id=%s, status=%s, completed=%d, skipped=%d",
            root_id,
            state.status,
            len(state.completed_ids),
            len(state.skipped_ids),
        )
        return state

    async def _run_levels(
        self,
        hierarchy: PromptHierarchy,
        state: CascadeRunState,
        trace_id: str,
        context_id: str | None,
        fallback: str,
    ) -> NodeOutcome:
        lookup = hierarchy.lookup()
        user = await self._current_user()

        for level in hierarchy.levels:
            state.current_level = level.level
            for index, node in enumerate(level.nodes):
                state.current_index = index
                if self.host.is_cancelled():
                    raise CascadeCancelledError("Cascade cancelled")
                if not await self.host.check_paused():
                    raise CascadeCancelledError("Cascade cancelled while paused")

                if level.level == 0 and node.is_assistant:
                    continue
                if node.exclude_from_cascade:
                    logger.debug("cascade_node_excluded: node_id=%s", node.id)
                    state.record_excluded(node)
                    await self.tracer.record_skipped(trace_id, node.id, EXCLUDED_REASON)
                    self.host.mark_skipped(node.id, node.display_name, EXCLUDED_REASON)
                    continue

                self.host.update_progress(level.level, node.display_name, index, node.id)
                outcome = await self._run_node(
                    node, level.level, hierarchy, state, lookup, trace_id, context_id, fallback, user
                )
                if outcome in (NodeOutcome.STOPPED, NodeOutcome.QUOTA):
                    return outcome
                await asyncio.sleep(0)

        return NodeOutcome.COMPLETED

    async def _run_node(
        self,
        node: PromptNode,
        level: int,
        hierarchy: PromptHierarchy,
        state: CascadeRunState,
        lookup: dict[str, PromptNode],
        trace_id: str,
        context_id: str | None,
        fallback: str,
        user: UserInfo | None,
    ) -> NodeOutcome:
        logger.info("cascade_node_started: node_id=%s, level=%d", node.id, level)
        parent = await self._parent_of(node, lookup)
        variables = await self._variables_for(node, level, parent, hierarchy.root, state, user)
        request = ExecutionRequest(
            node=node,
            message=node.message(fallback),
            variables=variables,
            context_id=context_id,
        )

        while True:
            attempt = await self.retry.run(node, lambda: self._attempt_and_persist(request), trace_id)
            if attempt.succeeded:
                break

            error = attempt.error
            if attempt.quota_exceeded:
                formatted = format_error_for_display(error, node.display_name)
                self._notify("error", formatted.title, formatted.description, formatted.code)
                state.error = str(error)
                return NodeOutcome.QUOTA

            decision = await self.host.show_error(node, error)
            logger.info("cascade_node_escalated: node_id=%s, decision=%s", node.id, decision.value)
            if decision == ErrorAction.RETRY:
                continue
            if decision == ErrorAction.SKIP:
                reason = str(error)
                state.record_user_skip(level, node, reason)
                if attempt.span_id:
                    await self.tracer.complete_span(attempt.span_id, "skipped", output=f"Skipped: {reason}")
                self.host.mark_skipped(node.id, node.display_name, reason)
                self._notify("warning", f"Skipped: {node.display_name}", reason, parse_api_error(error).code)
                return NodeOutcome.SKIPPED
            return NodeOutcome.STOPPED

        response = attempt.result.response
        state.record_success(level, node, response)
        self.host.mark_complete(node.id, node.display_name, response)
        self._notify("success", f"Completed: {node.display_name}")
        logger.info(
            "cascade_node_completed: node_id=%s, retries=%d, rate_limit_waits=%d",
            node.id,
            attempt.retries,
            attempt.rate_limit_waits,
        )

        if node.post_action and self.actions is not None:
            children = await self._run_post_action(node, response, trace_id, user, interactive=True)
            if children and node.auto_run_children:
                burst = await self.execute_child_cascade(
                    children, node, current_depth=0, trace_id=trace_id, context_id=context_id
                )
                self._report_burst(node, burst)
        return NodeOutcome.COMPLETED

    def _report_burst(self, parent: PromptNode, burst: ChildCascadeResult) -> None:
        if burst.depth_limit_reached:
            self._notify(
                "warning",
                "Auto-cascade depth limit reached",
                f"Stopped at depth {self.config.max_auto_cascade_depth} under {parent.display_name}",
                "DEPTH_LIMIT_REACHED",
            )
        failed = len(burst.results) - burst.executed
        self._notify(
            "success" if burst.success else "warning",
            f"Auto-cascade finished: {parent.display_name}",
            f"{burst.executed} child prompt(s) executed" + (f", {failed} failed" if failed else ""),
        )

    # -- auto-cascade -------------------------------------------------------

    async def execute_child_cascade(
        self,
        children: list[PromptNode],
        parent: PromptNode,
        max_depth: int | None = None,
        current_depth: int = 0,
        inherited_variables: dict[str, str] | None = None,
        trace_id: str | None = None,
        context_id: str | None = None,
    ) -> ChildCascadeResult:
        """Run freshly created children, recursing into their own creations.

        Recursion is an explicit stack of frames, depth-first: a child's
        created children run before its remaining siblings. Children are run
        once each, without retry or preview.

        Args:
            children: Nodes to run, in order.
            parent: Node that created them.
            max_depth: Depth cap; defaults to ``config.max_auto_cascade_depth``.
            current_depth: Depth of ``parent``.
            inherited_variables: Base variables for every child.
            trace_id: Trace to append spans to; a ``cascade_child`` trace is
                opened (and closed) when omitted.
            context_id: Conversation context.

        Raises:
            CascadeAbort: The user cancelled.
            ConcurrentExecutionError: A standalone burst was rejected.
        """
        if max_depth is None:
            max_depth = self.config.max_auto_cascade_depth
        result = ChildCascadeResult()
        if current_depth >= max_depth:
            logger.warning("auto_cascade_depth_limit: parent_id=%s, depth=%d", parent.id, current_depth)
            result.depth_limit_reached = True
            return result

        owns_trace = trace_id is None
        if owns_trace:
            trace_id = await self.tracer.start_trace(parent.id, EXECUTION_TYPE_CHILD)

        logger.info(
            "auto_cascade_started: parent_id=%s, children=%d, depth=%d",
            parent.id,
            len(children),
            current_depth,
        )
        user = await self._current_user()
        fallback = await self._fallback_message()
        state = CascadeRunState()
        frames = [_ChildFrame(deque(children), parent, current_depth, dict(inherited_variables or {}))]

        try:
            while frames:
                frame = frames[-1]
                if not frame.pending:
                    frames.pop()
                    continue
                if self.host.is_cancelled():
                    raise CascadeCancelledError("Cascade cancelled")
                if not await self.host.check_paused():
                    raise CascadeCancelledError("Cascade cancelled while paused")

                child = await self._fetch_child(frame.pending.popleft(), frame.depth + 1, result)
                if child is None:
                    continue
                grandchildren = await self._run_child(
                    child, frame, state, result, trace_id, context_id, fallback, user
                )
                if not grandchildren:
                    continue
                if frame.depth + 1 >= max_depth:
                    logger.warning("auto_cascade_depth_limit: parent_id=%s, depth=%d", child.id, frame.depth + 1)
                    result.depth_limit_reached = True
                    continue
                frames.append(_ChildFrame(deque(grandchildren), child, frame.depth + 1, frame.variables))
        except CascadeAbort as e:
            if owns_trace:
                await self.tracer.complete_trace(trace_id, "cancelled", str(e))
            raise
        except Exception as e:
            if owns_trace:
                await self.tracer.complete_trace(trace_id, "failed", str(e))
            raise

        if owns_trace:
            await self.tracer.complete_trace(
                trace_id,
                "completed" if result.success else "failed",
                None if result.success else f"{len(result.results) - result.executed} child prompt(s) failed",
            )
        logger.info(
            "auto_cascade_finished: parent_id=%s, executed=%d, depth_limit_reached=%s",
            parent.id,
            result.executed,
            result.depth_limit_reached,
        )
        return result

    async def _fetch_child(
        self, pending: PromptNode, depth: int, result: ChildCascadeResult
    ) -> PromptNode | None:
        """Fresh copy of a queued child; a missing child counts as a failure."""
        try:
            child = await self.storage.get_node(pending.id)
        except Exception as e:
            error = str(e)
        else:
            if child is not None and not child.is_deleted:
                return child
            error = "Prompt not found"

        logger.warning("auto_cascade_child_unavailable: node_id=%s, error=%s", pending.id, error)
        result.success = False
        result.results.append(ChildRunResult(pending.id, pending.display_name, False, depth, error=error))
        return None

    async def _run_child(
        self,
        child: PromptNode,
        frame: _ChildFrame,
        state: CascadeRunState,
        result: ChildCascadeResult,
        trace_id: str,
        context_id: str | None,
        fallback: str,
        user: UserInfo | None,
    ) -> list[PromptNode]:
        """Run one child once; returns the children its post-action created."""
        depth = frame.depth + 1
        self.host.update_progress(depth, child.display_name, len(result.results), child.id)
        variables = await self._variables_for(
            child, depth, frame.parent, None, state, user, inherited=frame.variables
        )
        request = ExecutionRequest(
            node=child,
            message=child.message(fallback),
            variables=variables,
            context_id=context_id,
        )

        span_id = await self.tracer.open_span(trace_id, child.id, "generation", attempt_number=1)
        started = time.monotonic()
        try:
            executed = await self._attempt_and_persist(request)
        except CascadeAbort:
            await self.tracer.complete_span(span_id, "skipped", output="Cancelled")
            raise
        except Exception as e:
            parsed = parse_api_error(e)
            await self.tracer.fail_span(
                span_id,
                type(e).__name__,
                str(e),
                error_code=parsed.code,
                retry_recommended=parsed.recoverable,
                latency_ms=int((time.monotonic() - started) * 1000),
            )
            logger.warning("auto_cascade_child_failed: node_id=%s, error=%s", child.id, e)
            formatted = format_error_for_display(e, child.display_name)
            self._notify("error", formatted.title, formatted.description, formatted.code)
            result.success = False
            result.results.append(
                ChildRunResult(child.id, child.display_name, False, depth, error=str(e))
            )
            return []

        response = executed.response
        await self.tracer.complete_span(
            span_id,
            "success",
            output=response,
            latency_ms=int((time.monotonic() - started) * 1000),
            response_id=executed.response_id,
            usage=executed.usage,
        )
        state.record_success(depth, child, response)
        self.host.mark_complete(child.id, child.display_name, response)
        result.results.append(ChildRunResult(child.id, child.display_name, True, depth, response=response))

        if child.post_action and child.auto_run_children and self.actions is not None:
            return await self._run_post_action(child, response, trace_id, user, interactive=False)
        return []
