"""Pytest configuration and fixtures."""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

import pytest

from promptcascade.backends.memory import InMemoryEventSink, InMemoryStorage, InMemoryTracing
from promptcascade.core.config import CascadeConfig
from promptcascade.core.host import BaseCascadeHost
from promptcascade.core.orchestrator import CascadeExecutor
from promptcascade.core.protocols import (
    BackgroundStatus,
    ConversationRequest,
    TaskHandle,
    TaskRequest,
    TaskStatus,
)
from promptcascade.core.types import ExecutionResult


class ScriptedExecution:
    """ExecutionBackend replaying scripted results per node.

    ``scripts[node_id]`` is a list consumed one entry per call; an entry is
    an ExecutionResult, a response string, an exception to raise, or an
    async callable taking the request and returning one of those. Nodes
    without a script (or with an exhausted one) answer
    ``"response for <node_id>"``.
    """

    def __init__(self, scripts: dict[str, list[Any]] | None = None) -> None:
        self.scripts = {k: list(v) for k, v in (scripts or {}).items()}
        self.requests: list[ConversationRequest] = []
        self.refreshes = 0
        self.cancel_runs = 0
        self.background_statuses: dict[str, list[BackgroundStatus | None]] = {}
        self.background_pushes: dict[str, list[BackgroundStatus]] = {}
        self.task_statuses: dict[str, list[TaskStatus | None]] = {}
        self.task_requests: list[TaskRequest] = []
        self.cancelled_tasks: list[str] = []
        self.create_task_error: Exception | None = None

    @property
    def called_nodes(self) -> list[str]:
        return [r.node_id for r in self.requests]

    def _next(self, node_id: str) -> Any:
        script = self.scripts.get(node_id)
        if script:
            return script.pop(0)
        return f"response for {node_id}"

    async def refresh_session(self) -> None:
        self.refreshes += 1

    async def run_conversation(self, request: ConversationRequest) -> ExecutionResult:
        self.requests.append(request)
        item = self._next(request.node_id)
        if callable(item) and not isinstance(item, BaseException):
            item = await item(request)
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, ExecutionResult):
            return item
        return ExecutionResult(response=item, response_id=f"resp-{len(self.requests)}")

    async def cancel_run(self) -> None:
        self.cancel_runs += 1

    async def get_background_status(self, response_id: str) -> BackgroundStatus | None:
        statuses = self.background_statuses.get(response_id) or [None]
        return statuses.pop(0) if len(statuses) > 1 else statuses[0]

    async def subscribe_background(self, response_id: str) -> AsyncIterator[BackgroundStatus]:
        for status in self.background_pushes.get(response_id, []):
            yield status

    async def create_task(self, request: TaskRequest) -> TaskHandle:
        self.task_requests.append(request)
        if self.create_task_error is not None:
            raise self.create_task_error
        return TaskHandle(task_id="task-1", task_url="https://tasks.example.com/task-1")

    async def get_task_status(self, task_id: str) -> TaskStatus | None:
        statuses = self.task_statuses.get(task_id) or [None]
        return statuses.pop(0) if len(statuses) > 1 else statuses[0]

    async def subscribe_task(self, task_id: str) -> AsyncIterator[TaskStatus]:
        return
        yield

    async def cancel_task(self, task_id: str) -> None:
        self.cancelled_tasks.append(task_id)


class SleepRecorder:
    """Awaitable sleep that records delays instead of waiting."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class TreeBuilder:
    """Builds InMemoryStorage from nested prompt entries."""

    @staticmethod
    def prompt(
        id: str,
        name: str | None = None,
        children: list[dict[str, Any]] | None = None,
        **fields: Any,
    ) -> dict[str, Any]:
        entry: dict[str, Any] = {"id": id, "name": name or id, "user_prompt": f"Prompt {id}"}
        entry.update(fields)
        if children:
            entry["children"] = children
        return entry

    @staticmethod
    def storage(*prompts: dict[str, Any], settings: dict[str, str] | None = None) -> InMemoryStorage:
        return InMemoryStorage.from_dict(
            {
                "settings": settings or {},
                "user": {"id": "u1", "email": "ada@example.com", "display_name": "Ada"},
                "prompts": list(prompts),
            }
        )


@pytest.fixture
def trees():
    return TreeBuilder()


@pytest.fixture
def execution():
    return ScriptedExecution()


@pytest.fixture
def host():
    return BaseCascadeHost()


@pytest.fixture
def tracing():
    return InMemoryTracing()


@pytest.fixture
def events():
    return InMemoryEventSink()


@pytest.fixture
def sleep():
    return SleepRecorder()


@pytest.fixture
def config():
    return CascadeConfig(
        background_timeout_s=1.0,
        background_poll_interval_s=0.01,
        cancel_check_interval_s=0.01,
        task_timeout_s=1.0,
        task_poll_interval_s=0.01,
    )


@pytest.fixture
def make_executor(execution, host, tracing, events, sleep, config):
    """Factory building a CascadeExecutor over the shared fakes."""

    def factory(storage: InMemoryStorage, **overrides: Any) -> CascadeExecutor:
        backend = overrides.pop("execution", execution)
        cascade_host = overrides.pop("host", host)
        kwargs: dict[str, Any] = {
            "tracing": tracing,
            "events": events,
            "config": config,
            "sleep": sleep,
        }
        kwargs.update(overrides)
        return CascadeExecutor(storage, backend, cascade_host, **kwargs)

    return factory
