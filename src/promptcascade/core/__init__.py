"""Core - the cascade execution engine.

This module contains no knowledge of:
- Databases, HTTP or websockets
- Terminals or dialogs

Collaborators are handed in through the protocols in ``core.protocols``.

Architecture:
    orchestrator   CascadeExecutor: level loop, escalation, auto-cascade
    execution/     Strategies, provider dispatch and interrupt handling
    actions/       Post-actions: JSON extraction, assignments, child creation
    variables      Variable resolution and template substitution
    retry          Retry and rate-limit controller
    tracing        Best-effort trace/span recording
    waiting        Push/poll/cancel/timeout race

Example:
    >>> from promptcascade.core import BaseCascadeHost, CascadeExecutor
    >>> from promptcascade.backends.memory import EchoExecutionBackend, InMemoryStorage
    >>>
    >>> storage = InMemoryStorage.from_dict(tree)
    >>> executor = CascadeExecutor(storage, EchoExecutionBackend(), BaseCascadeHost())
    >>> state = await executor.execute_cascade("root")
"""

from promptcascade.core.config import CascadeConfig, load_config
from promptcascade.core.control import RunControl
from promptcascade.core.errors import (
    CascadeAbort,
    CascadeCancelledError,
    CascadeError,
    ConcurrentExecutionError,
    ProviderError,
)
from promptcascade.core.host import BaseCascadeHost
from promptcascade.core.orchestrator import CascadeExecutor, ChildCascadeResult, ChildRunResult
from promptcascade.core.protocols import (
    CascadeEvent,
    CascadeEventType,
    CascadeHost,
    EventSink,
    ExecutionBackend,
    Notification,
    StorageBackend,
    TracingBackend,
)
from promptcascade.core.run_state import CascadeRunState
from promptcascade.core.types import (
    ErrorAction,
    ExecutionResult,
    NodeType,
    PromptHierarchy,
    PromptNode,
    PromptVariable,
    UserInfo,
)

__all__ = [
    # Engine
    "CascadeExecutor",
    "ChildCascadeResult",
    "ChildRunResult",
    "CascadeRunState",
    # Host
    "BaseCascadeHost",
    "RunControl",
    # Config
    "CascadeConfig",
    "load_config",
    # Protocols
    "CascadeEvent",
    "CascadeEventType",
    "CascadeHost",
    "EventSink",
    "ExecutionBackend",
    "Notification",
    "StorageBackend",
    "TracingBackend",
    # Types
    "ErrorAction",
    "ExecutionResult",
    "NodeType",
    "PromptHierarchy",
    "PromptNode",
    "PromptVariable",
    "UserInfo",
    # Errors
    "CascadeAbort",
    "CascadeCancelledError",
    "CascadeError",
    "ConcurrentExecutionError",
    "ProviderError",
]
