"""PromptCascade - cascade execution engine for hierarchical prompt trees.

A prompt tree is run level by level: every node's output feeds the template
variables of the nodes after it, structured responses can create new child
nodes, and those children can be run straight away.

Layers:
    core/       The engine (orchestrator, strategies, post-actions, variables)
    backends/   Collaborator implementations (in-memory, HTTP functions server)
    frontends/  User interfaces (CLI)

Quick Start:
    >>> from promptcascade import BaseCascadeHost, CascadeExecutor
    >>> from promptcascade.backends.memory import EchoExecutionBackend, InMemoryStorage
    >>>
    >>> storage = InMemoryStorage.load_tree_file("tree.yaml")
    >>> executor = CascadeExecutor(storage, EchoExecutionBackend(), BaseCascadeHost())
    >>> state = await executor.execute_cascade(storage.roots()[0].id)
    >>> print(state.status)
"""

from promptcascade.__version__ import __version__
from promptcascade.core import (
    BaseCascadeHost,
    CascadeConfig,
    CascadeError,
    CascadeExecutor,
    CascadeRunState,
    PromptNode,
    RunControl,
    load_config,
)

__all__ = [
    "__version__",
    "BaseCascadeHost",
    "CascadeConfig",
    "CascadeError",
    "CascadeExecutor",
    "CascadeRunState",
    "PromptNode",
    "RunControl",
    "load_config",
]
