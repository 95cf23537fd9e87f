"""Core data model: graphs, flow definitions, executions, effects and events."""

from chatflow.core.graph import FlowGraph, FlowNode, Edge
from chatflow.core.definition import FlowDefinition, FlowStatus, TriggerConfig
from chatflow.core.execution import Execution, ExecutionStatus, PathEntry, WakeCondition, WakeEvent
from chatflow.core.events import ExecutionEvent, EventEmitter

__all__ = [
    "FlowGraph",
    "FlowNode",
    "Edge",
    "FlowDefinition",
    "FlowStatus",
    "TriggerConfig",
    "Execution",
    "ExecutionStatus",
    "PathEntry",
    "WakeCondition",
    "WakeEvent",
    "ExecutionEvent",
    "EventEmitter",
]
