"""Provider-keyed execution dispatch.

The dispatcher maps a node's model to a provider id, looks the provider up
in its strategy table, runs the strategy and resolves interrupts, so every
caller gets one normalized ExecutionResult.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping

from promptcascade.core.config import CascadeConfig
from promptcascade.core.execution.interrupts import InterruptHandler
from promptcascade.core.execution.strategies import (
    BackgroundStrategy,
    ExecutionRequest,
    ExecutionStrategy,
    ExternalTaskStrategy,
    StandardStrategy,
)
from promptcascade.core.protocols import CascadeHost, ExecutionBackend, StorageBackend
from promptcascade.core.types import ExecutionResult, PromptNode

logger = logging.getLogger(__name__)


class ExecutionDispatcher:
    """Selects and runs the strategy for a node's provider.

    Args:
        strategies: Provider id to strategy.
        resolve_provider: Model selector to provider id.
        default_provider: Used when the resolved provider has no strategy.
        interrupts: Resolves question/long_running interrupts; None to skip.
    """

    def __init__(
        self,
        strategies: Mapping[str, ExecutionStrategy],
        resolve_provider: Callable[[str | None], str],
        default_provider: str,
        interrupts: InterruptHandler | None = None,
    ) -> None:
        if default_provider not in strategies:
            raise ValueError(f"No strategy registered for default provider {default_provider!r}")
        self.strategies = dict(strategies)
        self.resolve_provider = resolve_provider
        self.default_provider = default_provider
        self.interrupts = interrupts

    @classmethod
    def create(
        cls,
        backend: ExecutionBackend,
        storage: StorageBackend | None,
        host: CascadeHost,
        config: CascadeConfig,
        extra: Mapping[str, ExecutionStrategy] | None = None,
    ) -> ExecutionDispatcher:
        """Build the default table.

        The default provider runs standard calls, ``background`` waits for
        out-of-band responses and ``manus`` runs external agent tasks.
        Entries in ``extra`` override or extend the table.
        """
        standard = StandardStrategy(backend)
        background = BackgroundStrategy(backend, storage, config, is_cancelled=host.is_cancelled)
        external = ExternalTaskStrategy(backend, config, is_cancelled=host.is_cancelled)

        strategies: dict[str, ExecutionStrategy] = {
            config.default_provider: standard,
            "background": background,
            "manus": external,
        }
        strategies.update(extra or {})
        return cls(
            strategies=strategies,
            resolve_provider=config.provider_for_model,
            default_provider=config.default_provider,
            interrupts=InterruptHandler(standard, background, host, config),
        )

    def strategy_for(self, node: PromptNode) -> ExecutionStrategy:
        provider = self.resolve_provider(node.model)
        strategy = self.strategies.get(provider)
        if strategy is None:
            logger.debug("provider_unrouted: provider=%s, falling back to %s", provider, self.default_provider)
            strategy = self.strategies[self.default_provider]
        return strategy

    async def dispatch(self, request: ExecutionRequest) -> ExecutionResult:
        """Run ``request`` and return its final, interrupt-free result."""
        strategy = self.strategy_for(request.node)
        logger.debug("dispatch: node_id=%s, strategy=%s", request.node.id, strategy.name)
        result = await strategy.execute(request)
        if self.interrupts is not None:
            result = await self.interrupts.handle(request, result)
        return result

    async def cancel(self) -> None:
        """Forward a user cancel to every distinct strategy."""
        seen: set[int] = set()
        for strategy in self.strategies.values():
            if id(strategy) in seen:
                continue
            seen.add(id(strategy))
            try:
                await strategy.cancel()
            except Exception as e:
                logger.warning("strategy_cancel_failed: strategy=%s, error=%s", strategy.name, e)
