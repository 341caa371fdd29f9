"""Cooperative cancel/pause control for cascade runs.

Cancellation and pausing are cooperative: the orchestrator checks the token
between nodes and while paused, never in the middle of a provider call.

Typical usage:
1. The host creates a RunControl and hands it to the executor.
2. UI code calls control.cancel() / control.pause() / control.resume().
3. The orchestrator calls ``await control.wait_while_paused()`` before each node.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

CancelHandler = Callable[[], Awaitable[None] | None]


class RunControl:
    """Token carrying the cancel and pause flags of one cascade run.

    Example:
        >>> control = RunControl()
        >>> task = asyncio.create_task(executor.execute_cascade("root"))
        >>> control.pause()
        >>> control.resume()
        >>> await control.cancel()
    """

    def __init__(self, poll_interval: float = 0.2) -> None:
        self.poll_interval = poll_interval
        self._cancelled = False
        self._paused = False
        self._cancel_handlers: list[CancelHandler] = []

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    @property
    def is_paused(self) -> bool:
        return self._paused

    def pause(self) -> None:
        self._paused = True

    def resume(self) -> None:
        self._paused = False

    async def cancel(self) -> None:
        """Request cancellation and notify registered cancel handlers.

        Safe to call multiple times; handlers only run on the first call.
        Handler failures are logged and do not stop other handlers.
        """
        if self._cancelled:
            return
        self._cancelled = True
        self._paused = False

        for handler in list(self._cancel_handlers):
            try:
                outcome = handler()
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                logger.warning("cancel_handler_failed: error=%s", e)

    def on_cancel(self, handler: CancelHandler) -> Callable[[], None]:
        """Register a handler run when the run is cancelled.

        Returns:
            A function that unregisters the handler.
        """
        self._cancel_handlers.append(handler)

        def unregister() -> None:
            if handler in self._cancel_handlers:
                self._cancel_handlers.remove(handler)

        return unregister

    async def wait_while_paused(self) -> bool:
        """Block while paused, re-checking cancel on each tick.

        Returns:
            True if the run may continue, False if it was cancelled.
        """
        while self._paused and not self._cancelled:
            await asyncio.sleep(self.poll_interval)
        return not self._cancelled
