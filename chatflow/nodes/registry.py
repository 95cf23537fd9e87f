"""Node registry mapping type tags to node specs.

The registry is the only place node types are known: graph validation asks
it which edge labels a node may emit, and the StepExecutor asks it for the
effect of a node. New node types are added with ``register()`` without
touching the scheduler.

Example:
    >>> registry = NodeRegistry()
    >>> registry.register(NodeSpec(type="noop", builder=lambda step: Mutate()))
    >>> registry.get("noop").terminal
    False
"""

import copy
from datetime import datetime
from typing import Dict, FrozenSet, List, Optional, Set

from chatflow.core.effects import Effect
from chatflow.core.execution import Execution, WakeKind
from chatflow.core.graph import NEXT, FlowNode
from chatflow.nodes.base import NodeInput, NodeSpec
from chatflow.utils.config import EngineSettings
from chatflow.utils.errors import InvalidNodeTypeError


class NodeRegistry:
    """Registry of node types available to flows."""

    def __init__(self):
        """Initialize registry with the built-in node types."""
        self._specs: Dict[str, NodeSpec] = {}
        self._register_builtin_nodes()

    def _register_builtin_nodes(self):
        """Register built-in node types."""
        from chatflow.nodes.actions import ASSIGNMENT, TAG, UPDATE_CONTACT
        from chatflow.nodes.condition import CONDITION
        from chatflow.nodes.end import END
        from chatflow.nodes.http import API, WEBHOOK
        from chatflow.nodes.messaging import MESSAGE, TEMPLATE
        from chatflow.nodes.start import START
        from chatflow.nodes.waits import BUTTON, DELAY, INPUT

        for spec in (
            START, END, MESSAGE, TEMPLATE, CONDITION, INPUT, BUTTON, DELAY,
            API, WEBHOOK, ASSIGNMENT, TAG, UPDATE_CONTACT,
        ):
            self._specs[spec.type] = spec

    def register(self, spec: NodeSpec) -> None:
        """Register (or replace) a node type.

        Args:
            spec: Node spec keyed by its ``type``
        """
        self._specs[spec.type] = spec

    def has(self, type_name: str) -> bool:
        return type_name in self._specs

    def list_types(self) -> List[str]:
        """List registered node type tags."""
        return sorted(self._specs)

    def get(self, type_name: str, node_id: Optional[str] = None) -> NodeSpec:
        """Get a node spec by type tag.

        Raises:
            InvalidNodeTypeError: If type not registered
        """
        if type_name not in self._specs:
            raise InvalidNodeTypeError(
                f"Node type '{type_name}' not registered. "
                f"Available types: {', '.join(self.list_types())}",
                node_id=node_id,
            )
        return self._specs[type_name]

    def validate_node(self, node: FlowNode) -> None:
        """Check the node type is known and its config is complete.

        Raises:
            ConfigurationError: If the node is misconfigured
        """
        self.get(node.type, node_id=node.id).validate(node)

    def edge_labels(self, node: FlowNode) -> Set[str]:
        """Edge labels a node may emit; ``next`` stands for an unlabelled edge."""
        spec = self.get(node.type, node_id=node.id)
        labels = spec.labels(node)
        if spec.primary_edges or spec.dynamic_fallback:
            labels.add(NEXT)
        return labels

    def required_edges(self, node: FlowNode) -> Set[str]:
        """Edge labels that must be wired for this node's config."""
        spec = self.get(node.type, node_id=node.id)
        if spec.required_edges is None:
            return set()
        return spec.required_edges(node)

    def dispatch(
        self,
        node: FlowNode,
        execution: Execution,
        now: datetime,
        settings: Optional[EngineSettings] = None,
        wired: FrozenSet[str] = frozenset(),
    ) -> Effect:
        """Compute the effect of ``node`` for ``execution``.

        The builder sees a copy of the context, so it cannot mutate the
        execution. A pending retry wake is not handed to the builder: a retried
        node is rebuilt from scratch.
        """
        spec = self.get(node.type, node_id=node.id)
        wake = execution.wake
        event = execution.pending_event
        if wake is not None and wake.kind == WakeKind.RETRY:
            wake, event = None, None

        step = NodeInput(
            node=node,
            context=copy.deepcopy(execution.context),
            execution_id=execution.id,
            conversation_id=execution.conversation_id,
            contact_id=execution.contact_id,
            now=now,
            wake=wake,
            event=event,
            settings=settings or EngineSettings(),
            wired=wired,
        )
        return spec.builder(step)


_default: Optional[NodeRegistry] = None


def default_registry() -> NodeRegistry:
    """Shared registry with the built-in node types."""
    global _default
    if _default is None:
        _default = NodeRegistry()
    return _default
