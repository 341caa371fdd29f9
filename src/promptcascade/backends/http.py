"""HTTP collaborators for a functions-style backend server.

Every call is ``POST {base_url}/functions/{name}`` with a JSON body and a
JSON reply. Push channels are websockets at ``{ws_url}/realtime/{channel}``
that stream one JSON object per text message.

Example:
    >>> async with FunctionsClient("https://api.example.com", token="...") as client:
    ...     execution = HttpExecutionBackend(client)
    ...     tracing = HttpTracingBackend(client)
    ...     executor = CascadeExecutor(storage, execution, host, tracing=tracing)
    ...     await executor.execute_cascade("root")
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

import aiohttp

from promptcascade.core.errors import ExternalTaskError, ProviderError
from promptcascade.core.protocols import (
    BackgroundStatus,
    ConversationRequest,
    TaskHandle,
    TaskRequest,
    TaskStatus,
)
from promptcascade.core.types import ExecutionResult

logger = logging.getLogger(__name__)


def _retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


@dataclass
class FunctionsClient:
    """Thin aiohttp client for the functions server.

    Args:
        base_url: Server root, e.g. ``https://api.example.com``.
        token: Bearer token sent with every request.
        timeout: Per-request timeout in seconds.
    """

    base_url: str
    token: str | None = None
    timeout: float = 300.0
    _session: Any = None  # aiohttp.ClientSession

    async def connect(self) -> None:
        if self._session is not None:
            return
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        self._session = aiohttp.ClientSession(headers=headers)
        logger.debug("functions_client_connected: base_url=%s", self.base_url)

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def __aenter__(self) -> FunctionsClient:
        await self.connect()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    @property
    def ws_url(self) -> str:
        return self.base_url.replace("http://", "ws://").replace("https://", "wss://")

    async def call(self, name: str, payload: dict[str, Any]) -> dict[str, Any]:
        """Invoke a function and return its JSON body.

        Raises:
            ProviderError: Network failure or an HTTP error status. A 429
                carries ``status`` and the ``Retry-After`` hint.
        """
        await self.connect()
        url = f"{self.base_url.rstrip('/')}/functions/{name}"
        try:
            async with self._session.post(
                url,
                json=payload,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as response:
                try:
                    data = await response.json(content_type=None)
                except (aiohttp.ContentTypeError, json.JSONDecodeError):
                    data = {"error": await response.text()}
                if not isinstance(data, dict):
                    data = {"data": data}

                if response.status >= 400:
                    retry_after = _retry_after(response.headers.get("Retry-After"))
                    if retry_after is None:
                        retry_after = data.get("retry_after_s")
                    raise ProviderError(
                        data.get("error") or f"{name} failed with HTTP {response.status}",
                        code=data.get("error_code")
                        or ("RATE_LIMITED" if response.status == 429 else None),
                        status=response.status,
                        retry_after_s=retry_after,
                    )
                return data
        except aiohttp.ClientError as e:
            raise ProviderError(f"Network error calling {name}: {e}", code="NETWORK_ERROR") from e
        except TimeoutError:
            raise ProviderError(
                f"{name} timed out after {self.timeout}s", code="NETWORK_ERROR"
            ) from None

    async def subscribe(self, channel: str) -> AsyncIterator[dict[str, Any]]:
        """Yield JSON messages pushed on ``channel`` until it closes."""
        await self.connect()
        url = f"{self.ws_url.rstrip('/')}/realtime/{channel}"
        async with self._session.ws_connect(url) as ws:
            logger.debug("realtime_subscribed: channel=%s", channel)
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        data = json.loads(msg.data)
                    except json.JSONDecodeError as e:
                        logger.warning("realtime_message_invalid: channel=%s, error=%s", channel, e)
                        continue
                    if isinstance(data, dict):
                        yield data
                elif msg.type in (aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                    break
        logger.debug("realtime_closed: channel=%s", channel)


class HttpExecutionBackend:
    """ExecutionBackend over a FunctionsClient."""

    def __init__(self, client: FunctionsClient) -> None:
        self.client = client

    async def refresh_session(self) -> None:
        await self.client.call("session-refresh", {})

    async def run_conversation(self, request: ConversationRequest) -> ExecutionResult:
        data = await self.client.call("conversation-run", request.to_dict())
        if data.get("error") and data.get("response") is None and not data.get("interrupted"):
            raise ProviderError(
                data["error"],
                code=data.get("error_code"),
                status=data.get("status"),
                retry_after_s=data.get("retry_after_s"),
            )
        return ExecutionResult.from_dict(data)

    async def cancel_run(self) -> None:
        await self.client.call("conversation-cancel", {})

    async def get_background_status(self, response_id: str) -> BackgroundStatus | None:
        data = await self.client.call("background-status", {"response_id": response_id})
        if not data.get("status"):
            return None
        return BackgroundStatus.from_dict({"response_id": response_id, **data})

    async def subscribe_background(self, response_id: str) -> AsyncIterator[BackgroundStatus]:
        async for message in self.client.subscribe(f"background:{response_id}"):
            yield BackgroundStatus.from_dict({"response_id": response_id, **message})

    async def create_task(self, request: TaskRequest) -> TaskHandle:
        data = await self.client.call("task-create", request.to_dict())
        if not data.get("task_id"):
            raise ExternalTaskError(
                data.get("error") or "No task id returned", code="TASK_CREATE_FAILED"
            )
        return TaskHandle(task_id=str(data["task_id"]), task_url=data.get("task_url"))

    async def get_task_status(self, task_id: str) -> TaskStatus | None:
        data = await self.client.call("task-status", {"task_id": task_id})
        if not data.get("status"):
            return None
        return TaskStatus.from_dict({"task_id": task_id, **data})

    async def subscribe_task(self, task_id: str) -> AsyncIterator[TaskStatus]:
        async for message in self.client.subscribe(f"task:{task_id}"):
            yield TaskStatus.from_dict({"task_id": task_id, **message})

    async def cancel_task(self, task_id: str) -> None:
        await self.client.call("task-cancel", {"task_id": task_id})


class HttpTracingBackend:
    """TracingBackend over a FunctionsClient.

    All operations go through the ``execution-trace`` function, selected by
    ``action``.
    """

    def __init__(self, client: FunctionsClient) -> None:
        self.client = client

    async def _call(self, action: str, **params: Any) -> dict[str, Any]:
        return await self.client.call("execution-trace", {"action": action, **params})

    async def start_trace(self, entry_node_id: str, execution_type: str) -> dict[str, Any]:
        try:
            return await self._call(
                "start_trace", entry_node_id=entry_node_id, execution_type=execution_type
            )
        except ProviderError as e:
            # 409 is the concurrent-run rejection
            if e.status == 409:
                return {"success": False, "error": e.message, "error_code": "CONCURRENT_EXECUTION"}
            raise

    async def create_span(
        self,
        trace_id: str,
        node_id: str,
        span_type: str,
        attempt_number: int | None = None,
        previous_attempt_span_id: str | None = None,
    ) -> dict[str, Any]:
        return await self._call(
            "create_span",
            trace_id=trace_id,
            node_id=node_id,
            span_type=span_type,
            attempt_number=attempt_number,
            previous_attempt_span_id=previous_attempt_span_id,
        )

    async def complete_span(
        self,
        span_id: str,
        status: str,
        response_id: str | None = None,
        output: str | None = None,
        latency_ms: int | None = None,
        usage_tokens: dict[str, int] | None = None,
    ) -> dict[str, Any]:
        return await self._call(
            "complete_span",
            span_id=span_id,
            status=status,
            response_id=response_id,
            output=output,
            latency_ms=latency_ms,
            usage_tokens=usage_tokens,
        )

    async def fail_span(self, span_id: str, error_evidence: dict[str, Any]) -> dict[str, Any]:
        return await self._call("fail_span", span_id=span_id, error_evidence=error_evidence)

    async def complete_trace(
        self, trace_id: str, status: str, error_summary: str | None = None
    ) -> dict[str, Any]:
        return await self._call(
            "complete_trace", trace_id=trace_id, status=status, error_summary=error_summary
        )
