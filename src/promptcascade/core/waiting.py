"""Race a push subscription against a poll backstop until a terminal state.

Background responses and external tasks both finish out-of-band. We listen
on the push channel and poll at a fixed interval in case a push event is
missed, while also watching the cancel flag and a timeout. The first
producer to observe a terminal state settles the wait and every other
producer is cancelled before returning.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from typing import Generic, Literal, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

WaitStatus = Literal["terminal", "cancelled", "timeout", "closed"]


@dataclass
class WaitOutcome(Generic[T]):
    """How a wait settled.

    Attributes:
        status: terminal (value set), cancelled, timeout, or closed when
            every producer ended without a terminal state.
        value: The terminal state observed.
        source: Which producer observed it ("push" or "poll").
    """

    status: WaitStatus
    value: T | None = None
    source: str | None = None


async def wait_for_terminal(
    *,
    is_terminal: Callable[[T], bool],
    timeout: float,
    subscribe: Callable[[], AsyncIterator[T]] | None = None,
    poll: Callable[[], Awaitable[T | None]] | None = None,
    poll_interval: float = 10.0,
    is_cancelled: Callable[[], bool] | None = None,
    cancel_check_interval: float = 1.0,
    label: str = "wait",
) -> WaitOutcome[T]:
    """Wait until push or poll reports a terminal state.

    Args:
        is_terminal: Whether an observed state ends the wait.
        timeout: Overall bound in seconds.
        subscribe: Opens the push channel.
        poll: Reads the current state; called immediately, then every
            ``poll_interval`` seconds. Errors are logged and retried.
        poll_interval: Seconds between polls.
        is_cancelled: Cancel predicate checked every ``cancel_check_interval``.
        cancel_check_interval: Seconds between cancel checks.
        label: Log prefix identifying the wait.

    Returns:
        The settled outcome. Push/poll failures never raise.
    """

    async def push_producer() -> WaitOutcome[T] | None:
        assert subscribe is not None
        stream = subscribe()
        try:
            async for state in stream:
                if is_terminal(state):
                    return WaitOutcome("terminal", state, "push")
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()
        logger.debug("%s_push_closed", label)
        return None

    async def poll_producer() -> WaitOutcome[T] | None:
        assert poll is not None
        while True:
            try:
                state = await poll()
            except Exception as e:
                logger.warning("%s_poll_failed: error=%s", label, e)
            else:
                if state is not None and is_terminal(state):
                    return WaitOutcome("terminal", state, "poll")
            await asyncio.sleep(poll_interval)

    async def cancel_watcher() -> WaitOutcome[T]:
        assert is_cancelled is not None
        while not is_cancelled():
            await asyncio.sleep(cancel_check_interval)
        return WaitOutcome("cancelled")

    pending: set[asyncio.Task[WaitOutcome[T] | None]] = set()
    if subscribe is not None:
        pending.add(asyncio.create_task(push_producer(), name=f"{label}-push"))
    if poll is not None:
        pending.add(asyncio.create_task(poll_producer(), name=f"{label}-poll"))
    if is_cancelled is not None:
        pending.add(asyncio.create_task(cancel_watcher(), name=f"{label}-cancel"))

    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    outcome: WaitOutcome[T] = WaitOutcome("closed")

    try:
        while pending:
            remaining = deadline - loop.time()
            if remaining <= 0:
                outcome = WaitOutcome("timeout")
                break
            done, pending = await asyncio.wait(
                pending, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
            )
            if not done:
                outcome = WaitOutcome("timeout")
                break

            settled = None
            for task in done:
                if task.cancelled():
                    continue
                error = task.exception()
                if error is not None:
                    logger.warning("%s_producer_failed: task=%s, error=%s", label, task.get_name(), error)
                    continue
                result = task.result()
                if result is not None and settled is None:
                    settled = result
            if settled is not None:
                outcome = settled
                break
    finally:
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    logger.debug("%s_settled: status=%s, source=%s", label, outcome.status, outcome.source)
    return outcome
