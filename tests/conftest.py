"""Pytest configuration and fixtures for chatflow tests."""

from typing import Any, Dict, List, Optional, Tuple

import pytest

from chatflow import (
    EngineSettings,
    EventEmitter,
    FlowDefinitionStore,
    FlowGraph,
    MemoryBackend,
    NodeRegistry,
    ReentryPolicy,
    Scheduler,
    StepExecutor,
)
from chatflow.testing import FakeClock, recording_capabilities

NodeTuple = Tuple[str, str, Dict[str, Any]]
EdgeTuple = Tuple  # (source, target) or (source, target, handle)


def build_graph(nodes: List[NodeTuple], edges: List[EdgeTuple]) -> FlowGraph:
    """Build a FlowGraph from ``(id, type, data)`` and ``(source, target[, handle])`` tuples."""
    return FlowGraph(
        nodes=[{"id": node_id, "type": node_type, "data": data} for node_id, node_type, data in nodes],
        edges=[
            {"source": edge[0], "target": edge[1], "source_handle": edge[2] if len(edge) > 2 else None}
            for edge in edges
        ],
    )


@pytest.fixture
def make_graph():
    return build_graph


@pytest.fixture
def clock():
    """Deterministic clock starting at 2024-01-01 12:00 UTC."""
    return FakeClock()


@pytest.fixture
def settings():
    return EngineSettings(
        max_attempts=3,
        retry_base_seconds=2.0,
        retry_max_seconds=60.0,
        external_timeout_seconds=5.0,
        claim_lease_seconds=300.0,
    )


@pytest.fixture
def registry():
    """Create a fresh node registry."""
    return NodeRegistry()


@pytest.fixture
def backend():
    """Create an in-memory backend for testing."""
    return MemoryBackend()


@pytest.fixture
def capabilities():
    return recording_capabilities()


@pytest.fixture
def events():
    """Emitter that records every event it sees in ``emitter.seen``."""
    emitter = EventEmitter()
    emitter.seen = []

    async def record(event):
        emitter.seen.append(event)

    emitter.on(record)
    return emitter


@pytest.fixture
def executor(registry, capabilities, settings, clock):
    return StepExecutor(registry=registry, capabilities=capabilities, settings=settings, clock=clock)


@pytest.fixture
def scheduler(backend, executor, settings, clock, events):
    return Scheduler(
        backend, executor, settings=settings, clock=clock, events=events, worker_id="test-worker"
    )


@pytest.fixture
def flows(backend, registry):
    return FlowDefinitionStore(backend, registry)


@pytest.fixture
def activate_flow(flows):
    """Create and activate a flow in one call."""

    async def _activate(
        graph: FlowGraph,
        trigger: Optional[Dict[str, Any]] = None,
        reentry_policy: ReentryPolicy = ReentryPolicy.SKIP,
        tenant_id: str = "tenant-1",
        name: str = "Test flow",
    ):
        flow = await flows.create(tenant_id, name, graph, trigger, reentry_policy=reentry_policy)
        return await flows.activate(flow.id)

    return _activate


@pytest.fixture
def delay_graph():
    """start -> greet -> wait (10s) -> end"""
    return build_graph(
        [
            ("start", "start", {}),
            ("greet", "message", {"text": "Hello {{name}}"}),
            ("wait", "delay", {"delay_seconds": 10}),
            ("end", "end", {}),
        ],
        [("start", "greet"), ("greet", "wait"), ("wait", "end")],
    )


@pytest.fixture
def age_graph():
    """Ask for an age, then branch on age > 18."""
    return build_graph(
        [
            ("start", "start", {}),
            ("ask_age", "input", {
                "prompt": "How old are you?",
                "variable_name": "age",
                "validation": "number",
                "error_message": "Please send a number",
            }),
            ("check", "condition", {
                "logic": "AND",
                "rules": [{"field": "age", "operator": "greaterThan", "value": 18}],
            }),
            ("adult", "message", {"text": "Welcome, adult"}),
            ("minor", "message", {"text": "Sorry, adults only"}),
            ("end", "end", {}),
        ],
        [
            ("start", "ask_age"),
            ("ask_age", "check", "received"),
            ("check", "adult", "true"),
            ("check", "minor", "false"),
            ("adult", "end"),
            ("minor", "end"),
        ],
    )


@pytest.fixture
def api_graph():
    """start -> lookup (GET, maps $.data.tier) -> end"""
    return build_graph(
        [
            ("start", "start", {}),
            ("lookup", "api", {
                "url": "https://crm.example.com/contacts/{{$contact_id}}",
                "method": "GET",
                "response_variable": "crm",
                "response_mapping": {"tier": "$.data.tier"},
            }),
            ("end", "end", {}),
        ],
        [("start", "lookup"), ("lookup", "end", "success")],
    )
