"""Execution strategies.

One strategy per provider family, each turning an ExecutionRequest into a
normalized ExecutionResult:

- StandardStrategy: a conversation call that returns when the provider does.
- BackgroundStrategy: a conversation call whose ``long_running`` signal is
  followed by a push/poll wait for the background response.
- ExternalTaskStrategy: an opaque remote agent task, created then awaited.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Protocol

from promptcascade.core.config import CascadeConfig
from promptcascade.core.errors import (
    BackgroundWaitError,
    CascadeCancelledError,
    CascadeError,
    ExternalTaskError,
)
from promptcascade.core.protocols import (
    BackgroundStatus,
    ConversationRequest,
    ExecutionBackend,
    StorageBackend,
    TaskRequest,
    TaskStatus,
)
from promptcascade.core.types import ExecutionResult, PromptNode, ThreadMode
from promptcascade.core.waiting import wait_for_terminal

logger = logging.getLogger(__name__)


@dataclass
class ExecutionRequest:
    """What to run: a node, its resolved message and template variables."""

    node: PromptNode
    message: str
    variables: dict[str, str] = field(default_factory=dict)
    context_id: str | None = None


class ExecutionStrategy(Protocol):
    name: str

    async def execute(self, request: ExecutionRequest) -> ExecutionResult: ...

    async def cancel(self) -> None: ...


class StandardStrategy:
    """Synchronous conversation call scoped to a conversation context."""

    name = "standard"

    def __init__(self, backend: ExecutionBackend) -> None:
        self.backend = backend

    async def execute(self, request: ExecutionRequest) -> ExecutionResult:
        return await self.backend.run_conversation(
            ConversationRequest(
                context_id=request.context_id,
                node_id=request.node.id,
                message=request.message,
                thread_mode=ThreadMode.NEW,
                template_variables=request.variables,
                store_in_history=False,
                model=request.node.model,
            )
        )

    async def resume(
        self,
        request: ExecutionRequest,
        interrupted: ExecutionResult,
        variable_name: str,
        answer: str,
    ) -> ExecutionResult:
        """Continue an interrupted call with the user's answer injected."""
        return await self.backend.run_conversation(
            ConversationRequest(
                context_id=request.context_id,
                node_id=request.node.id,
                message=request.message,
                thread_mode=ThreadMode.CONTINUE,
                template_variables=request.variables,
                store_in_history=False,
                model=request.node.model,
                resume_response_id=interrupted.response_id,
                resume_answer=answer,
                resume_variable_name=variable_name,
                resume_call_id=interrupted.interrupt_data.get("call_id"),
            )
        )

    async def cancel(self) -> None:
        await self.backend.cancel_run()


class BackgroundStrategy:
    """Conversation call completed out-of-band by the provider.

    Args:
        backend: Execution backend with background status read/subscribe.
        storage: Used for the persisted-output fallback.
        config: Timeouts and intervals.
        is_cancelled: Cancel predicate checked during the wait.
    """

    name = "background"

    def __init__(
        self,
        backend: ExecutionBackend,
        storage: StorageBackend | None,
        config: CascadeConfig,
        is_cancelled: Callable[[], bool] | None = None,
    ) -> None:
        self.backend = backend
        self.storage = storage
        self.config = config
        self.is_cancelled = is_cancelled
        self._standard = StandardStrategy(backend)

    async def execute(self, request: ExecutionRequest) -> ExecutionResult:
        result = await self._standard.execute(request)
        if result.is_long_running:
            return await self.wait(request.node, result)
        return result

    async def wait(self, node: PromptNode, interrupted: ExecutionResult) -> ExecutionResult:
        """Wait for a long_running response to finish.

        Falls back to the node's persisted output (a webhook may have
        written it) when the wait fails or times out.

        Raises:
            CascadeCancelledError: The user cancelled during the wait.
            BackgroundWaitError: No response could be recovered.
        """
        response_id = interrupted.response_id or interrupted.interrupt_data.get("response_id")
        if not response_id:
            raise BackgroundWaitError("Background response has no response id")

        logger.info("background_wait_started: node_id=%s, response_id=%s", node.id, response_id)
        outcome = await wait_for_terminal(
            subscribe=lambda: self.backend.subscribe_background(response_id),
            poll=lambda: self.backend.get_background_status(response_id),
            is_terminal=lambda state: state.is_terminal,
            timeout=self.config.background_timeout_s,
            poll_interval=self.config.background_poll_interval_s,
            is_cancelled=self.is_cancelled,
            cancel_check_interval=self.config.cancel_check_interval_s,
            label="background_wait",
        )

        if outcome.status == "cancelled":
            raise CascadeCancelledError("Cascade cancelled while waiting for a background response")

        status: BackgroundStatus | None = outcome.value
        if status is not None and status.status == "completed" and status.output is not None:
            logger.info(
                "background_wait_completed: node_id=%s, response_id=%s, source=%s",
                node.id,
                response_id,
                outcome.source,
            )
            return ExecutionResult(response=status.output, response_id=response_id, usage=status.usage)

        reason = (
            f"background response {status.status}: {status.error or 'no output'}"
            if status is not None
            else f"background wait {outcome.status}"
        )
        logger.warning("background_wait_failed: node_id=%s, reason=%s", node.id, reason)

        recovered = await self._persisted_output(node)
        if recovered is not None:
            logger.info("background_output_recovered: node_id=%s", node.id)
            return ExecutionResult(response=recovered, response_id=response_id)
        raise BackgroundWaitError(f"No result for {node.display_name}: {reason}")

    async def _persisted_output(self, node: PromptNode) -> str | None:
        if self.storage is None:
            return None
        try:
            fresh = await self.storage.get_node(node.id)
        except Exception as e:
            logger.warning("background_fallback_read_failed: node_id=%s, error=%s", node.id, e)
            return None
        if fresh is None or not fresh.output or fresh.output == node.output:
            return None
        return fresh.output

    async def cancel(self) -> None:
        await self.backend.cancel_run()


class ExternalTaskStrategy:
    """Remote agentic task, created then awaited via push and poll."""

    name = "external_task"

    def __init__(
        self,
        backend: ExecutionBackend,
        config: CascadeConfig,
        is_cancelled: Callable[[], bool] | None = None,
    ) -> None:
        self.backend = backend
        self.config = config
        self.is_cancelled = is_cancelled
        self._active_task_id: str | None = None

    async def execute(self, request: ExecutionRequest) -> ExecutionResult:
        """Run the node as an external task.

        Raises:
            ExternalTaskError: Creation failed, or the task failed, was
                cancelled remotely, needs input, or timed out.
            CascadeCancelledError: The user cancelled during the wait.
        """
        try:
            handle = await self.backend.create_task(
                TaskRequest(
                    node_id=request.node.id,
                    message=request.message,
                    model=request.node.model,
                    template_variables=request.variables,
                    context_id=request.context_id,
                )
            )
        except CascadeError as e:
            if isinstance(e, ExternalTaskError):
                raise
            raise ExternalTaskError(f"Failed to create task: {e}", code="TASK_CREATE_FAILED") from e
        except Exception as e:
            raise ExternalTaskError(f"Failed to create task: {e}", code="TASK_CREATE_FAILED") from e

        task_id = handle.task_id
        logger.info("external_task_created: node_id=%s, task_id=%s", request.node.id, task_id)

        self._active_task_id = task_id
        try:
            outcome = await wait_for_terminal(
                subscribe=lambda: self.backend.subscribe_task(task_id),
                poll=lambda: self.backend.get_task_status(task_id),
                is_terminal=lambda state: state.is_terminal,
                timeout=self.config.task_timeout_s,
                poll_interval=self.config.task_poll_interval_s,
                is_cancelled=self.is_cancelled,
                cancel_check_interval=self.config.cancel_check_interval_s,
                label="external_task_wait",
            )
        finally:
            self._active_task_id = None

        if outcome.status == "cancelled":
            await self._cancel_remote(task_id)
            raise CascadeCancelledError("Cascade cancelled while waiting for an external task")

        status: TaskStatus | None = outcome.value
        if status is None:
            minutes = self.config.task_timeout_s / 60
            raise ExternalTaskError(
                f"Task timed out after {minutes:g} minutes",
                code="TASK_TIMEOUT",
                task_id=task_id,
                task_url=handle.task_url,
            )

        task_url = status.task_url or handle.task_url
        if status.status == "completed":
            logger.info("external_task_completed: task_id=%s, source=%s", task_id, outcome.source)
            return ExecutionResult(
                response=status.result or "",
                response_id=task_id,
                attachments=status.attachments,
                task_id=task_id,
                task_url=task_url,
            )
        if status.status == "requires_input":
            raise ExternalTaskError(
                "Task requires interactive input, which cascade runs do not support",
                code="TASK_REQUIRES_INPUT",
                task_id=task_id,
                task_url=task_url,
            )
        raise ExternalTaskError(
            status.error or f"Task {status.status}",
            code=f"TASK_{status.status.upper()}",
            task_id=task_id,
            task_url=task_url,
        )

    async def _cancel_remote(self, task_id: str) -> None:
        try:
            await self.backend.cancel_task(task_id)
        except Exception as e:
            logger.warning("external_task_cancel_failed: task_id=%s, error=%s", task_id, e)

    async def cancel(self) -> None:
        if self._active_task_id:
            await self._cancel_remote(self._active_task_id)
