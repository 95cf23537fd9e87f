"""
Chatflow: Conversational Flow Execution Engine

Runs versioned, multi-tenant conversation flows: directed graphs of typed
nodes (messages, templates, conditions, waits for user input, buttons,
delays, HTTP calls, conversation and contact actions). Executions suspend on
waits, resume on replies or timers, retry transient failures with backoff
and keep a step-by-step path for replay.

Example:
    >>> from chatflow import FlowDefinitionStore, Scheduler, StepExecutor, TriggerMatcher
    >>> from chatflow.backends import MemoryBackend
    >>>
    >>> store = MemoryBackend()
    >>> flows = FlowDefinitionStore(store)
    >>> flow = await flows.create("tenant-1", "Welcome", graph, {"type": "keyword", "keywords": ["hi"]})
    >>> await flows.activate(flow.id)
    >>>
    >>> scheduler = Scheduler(store, StepExecutor(capabilities=capabilities))
    >>> matcher = TriggerMatcher(store, scheduler)
    >>> await matcher.handle(InboundEvent(kind="message", tenant_id="tenant-1",
    ...                                   conversation_id="c1", text="hi there"))
"""

__version__ = "0.1.0"

# Core components
from chatflow.core.graph import FlowGraph, FlowNode, Edge
from chatflow.core.definition import (
    FlowDefinition,
    FlowStatus,
    ReentryPolicy,
    TriggerConfig,
    TriggerType,
)
from chatflow.core.execution import (
    Execution,
    ExecutionStatus,
    PathEntry,
    PathOutcome,
    WakeCondition,
    WakeEvent,
    WakeKind,
)
from chatflow.core.events import EventEmitter, EventType, ExecutionEvent

# Node registry
from chatflow.nodes.base import NodeInput, NodeSpec
from chatflow.nodes.registry import NodeRegistry, default_registry

# Engine
from chatflow.capabilities import Capabilities, HttpResponse, HttpxCapability
from chatflow.executor import Advanced, Completed, Failed, StepExecutor, Suspended
from chatflow.scheduler import Scheduler
from chatflow.triggers import InboundEvent, TriggerMatcher, TriggerOutcome
from chatflow.flows import FlowDefinitionStore

# Backends
from chatflow.backends.base import ExecutionStore
from chatflow.backends.memory import MemoryBackend
from chatflow.backends.sqlite import SQLiteBackend

# Parsers
from chatflow.parsers.react_flow import ReactFlowParser

# Dry runs
from chatflow.simulation import SimulationResult, simulate_flow

# Configuration
from chatflow.utils.config import EngineSettings, load_env
from chatflow.utils.logging import configure_logging

__all__ = [
    # Version
    "__version__",
    # Core
    "FlowGraph",
    "FlowNode",
    "Edge",
    "FlowDefinition",
    "FlowStatus",
    "ReentryPolicy",
    "TriggerConfig",
    "TriggerType",
    "Execution",
    "ExecutionStatus",
    "PathEntry",
    "PathOutcome",
    "WakeCondition",
    "WakeEvent",
    "WakeKind",
    "EventEmitter",
    "EventType",
    "ExecutionEvent",
    # Registry
    "NodeInput",
    "NodeSpec",
    "NodeRegistry",
    "default_registry",
    # Engine
    "Capabilities",
    "HttpResponse",
    "HttpxCapability",
    "Advanced",
    "Completed",
    "Failed",
    "StepExecutor",
    "Suspended",
    "Scheduler",
    "InboundEvent",
    "TriggerMatcher",
    "TriggerOutcome",
    "FlowDefinitionStore",
    # Backends
    "ExecutionStore",
    "MemoryBackend",
    "SQLiteBackend",
    # Parsers
    "ReactFlowParser",
    # Dry runs
    "SimulationResult",
    "simulate_flow",
    # Configuration
    "EngineSettings",
    "load_env",
    "configure_logging",
]
