"""Persistence backends for flows and executions."""

from chatflow.backends.base import ExecutionStore
from chatflow.backends.memory import MemoryBackend
from chatflow.backends.sqlite import SQLiteBackend

__all__ = [
    "ExecutionStore",
    "MemoryBackend",
    "SQLiteBackend",
]
