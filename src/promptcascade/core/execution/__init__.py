"""Execution strategies and provider-keyed dispatch."""

from promptcascade.core.execution.dispatcher import ExecutionDispatcher
from promptcascade.core.execution.strategies import (
    BackgroundStrategy,
    ExecutionRequest,
    ExecutionStrategy,
    ExternalTaskStrategy,
    StandardStrategy,
)

__all__ = [
    "BackgroundStrategy",
    "ExecutionDispatcher",
    "ExecutionRequest",
    "ExecutionStrategy",
    "ExternalTaskStrategy",
    "StandardStrategy",
]
