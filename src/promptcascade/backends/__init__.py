"""Backends - collaborator implementations for the cascade engine.

    memory      In-memory storage/tracing/events and a local echo executor
    http        aiohttp client for a functions-style backend server
"""

from promptcascade.backends.memory import (
    EchoExecutionBackend,
    InMemoryEventSink,
    InMemoryStorage,
    InMemoryTracing,
)

__all__ = [
    "EchoExecutionBackend",
    "InMemoryEventSink",
    "InMemoryStorage",
    "InMemoryTracing",
]
