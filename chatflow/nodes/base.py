"""Node type contract.

Every node type is described by a NodeSpec: the tag it is registered under, a
pure builder turning a node plus the execution view into an Effect, and the
edge labels the node may emit. Builders never perform I/O; the StepExecutor
performs the effect they return.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, FrozenSet, Mapping, Optional, Set

from chatflow.core.effects import Effect
from chatflow.core.execution import WakeCondition, WakeEvent
from chatflow.core.graph import FlowNode
from chatflow.utils.config import EngineSettings
from chatflow.utils.errors import ConfigurationError
from chatflow.utils.variables import VariableResolver


@dataclass(frozen=True)
class NodeInput:
    """Read-only view a builder works from.

    Attributes:
        node: Node being stepped
        context: Execution context (builders must not mutate it)
        execution_id: Running execution
        conversation_id: Conversation driven by the run
        contact_id: Contact of the run
        now: Current time from the scheduler clock
        wake: Wake condition registered by this node, if resuming
        event: Wake event being consumed, if resuming
        settings: Engine settings (default timeouts)
        wired: Edge labels actually connected to this node
    """

    node: FlowNode
    context: Mapping[str, Any]
    execution_id: str
    conversation_id: Optional[str]
    contact_id: Optional[str]
    now: datetime
    wake: Optional[WakeCondition] = None
    event: Optional[WakeEvent] = None
    settings: EngineSettings = field(default_factory=EngineSettings)
    wired: FrozenSet[str] = frozenset()

    @property
    def config(self) -> Dict[str, Any]:
        return self.node.data

    @property
    def resumed(self) -> bool:
        """True when a wake event registered by this node is being consumed."""
        return (
            self.event is not None
            and self.wake is not None
            and self.wake.node_id == self.node.id
        )

    def resolution(self) -> Optional[str]:
        """How the pending event resolves this node's wait, if it does."""
        if not self.resumed:
            return None
        return self.wake.accepts(self.event, self.now)

    def resolver(self) -> VariableResolver:
        return VariableResolver(
            dict(self.context),
            builtins={
                "execution": {"id": self.execution_id},
                "execution_id": self.execution_id,
                "conversation_id": self.conversation_id,
                "contact_id": self.contact_id,
                "now": self.now.isoformat(),
            },
        )


Builder = Callable[[NodeInput], Effect]


@dataclass(frozen=True)
class NodeSpec:
    """Registration record for one node type.

    Attributes:
        type: Node type tag
        builder: Pure function producing the node's Effect
        edges: Static edge labels the node may emit
        required: Config keys that must be present and non-empty
        terminal: Terminal nodes have no outgoing edges
        primary_edges: Labels that fall back to an unlabelled edge
        dynamic_edges: Extra labels derived from the node config
        dynamic_fallback: Dynamic labels also fall back to an unlabelled edge
        validate_config: Extra config check, raises ConfigurationError
        required_edges: Labels that must be wired for this node config
    """

    type: str
    builder: Builder
    edges: FrozenSet[str] = frozenset({"next"})
    required: FrozenSet[str] = frozenset()
    terminal: bool = False
    primary_edges: FrozenSet[str] = frozenset({"next"})
    dynamic_edges: Optional[Callable[[FlowNode], Set[str]]] = None
    dynamic_fallback: bool = False
    validate_config: Optional[Callable[[FlowNode], None]] = None
    required_edges: Optional[Callable[[FlowNode], Set[str]]] = None

    def labels(self, node: FlowNode) -> Set[str]:
        labels = set(self.edges)
        if self.dynamic_edges is not None:
            labels |= self.dynamic_edges(node)
        return labels

    def falls_back(self, label: str) -> bool:
        """Whether ``label`` may be satisfied by an unlabelled edge."""
        if label in self.primary_edges:
            return True
        return self.dynamic_fallback and label not in self.edges

    def validate(self, node: FlowNode) -> None:
        for key in sorted(self.required):
            value = node.data.get(key)
            if value is None or value == "" or value == [] or value == {}:
                raise ConfigurationError(
                    f"missing required config '{key}' for {self.type} node",
                    node_id=node.id,
                )
        if self.validate_config is not None:
            self.validate_config(node)

