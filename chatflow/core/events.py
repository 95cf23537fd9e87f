"""Event system for publishing execution lifecycle updates.

The scheduler emits one event per lifecycle transition and per node step so
that callers (websocket fan-out, analytics, tests) can observe runs without
polling the store.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Optional, Tuple

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Execution and node lifecycle event types."""

    # Execution lifecycle
    EXECUTION_START = "execution.start"
    EXECUTION_WAITING = "execution.waiting"
    EXECUTION_RESUMED = "execution.resumed"
    EXECUTION_COMPLETE = "execution.complete"
    EXECUTION_FAILED = "execution.failed"
    EXECUTION_CANCELLED = "execution.cancelled"
    EXECUTION_RETRY = "execution.retry"

    # Node lifecycle
    NODE_START = "node.start"
    NODE_COMPLETE = "node.complete"
    NODE_ERROR = "node.error"


@dataclass
class ExecutionEvent:
    """A single lifecycle event.

    Node metadata (node_id, node_type) is set on node events and on
    execution events that happen at a node (waiting, failed).
    """

    type: EventType
    execution_id: str
    flow_id: Optional[str] = None
    node_id: Optional[str] = None
    node_type: Optional[str] = None
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """JSON-safe form; unset optional fields are omitted."""
        optional = {
            "flow_id": self.flow_id,
            "node_id": self.node_id,
            "node_type": self.node_type,
            "error": self.error,
        }
        data: Dict[str, Any] = {"execution_id": self.execution_id, "timestamp": self.timestamp.isoformat()}
        data.update({key: value for key, value in optional.items() if value is not None})
        if self.metadata:
            data["metadata"] = self.metadata
        return {"type": self.type.value, "data": data}


Listener = Callable[[ExecutionEvent], Awaitable[None]]


class EventEmitter:
    """Fans execution events out to async subscribers.

    A subscriber registered with event types only receives those types.
    Subscriber failures are logged and never interrupt execution.
    """

    def __init__(self):
        self._subscribers: List[Tuple[Listener, FrozenSet[EventType]]] = []

    def on(self, listener: Listener, *types: EventType) -> Listener:
        """Subscribe ``listener`` to ``types`` (every type when none are given).

        Returns the listener so it can be passed to ``off`` later.
        """
        self._subscribers.append((listener, frozenset(types)))
        return listener

    def off(self, listener: Listener) -> None:
        self._subscribers = [(fn, kinds) for fn, kinds in self._subscribers if fn is not listener]

    async def emit(self, event: ExecutionEvent) -> None:
        for listener, kinds in list(self._subscribers):
            if kinds and event.type not in kinds:
                continue
            try:
                await listener(event)
            except Exception:
                logger.exception(
                    "Event subscriber failed",
                    extra={"event_type": event.type.value, "execution_id": event.execution_id},
                )

    def __len__(self) -> int:
        return len(self._subscribers)
