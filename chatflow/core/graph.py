"""Flow graph data structures.

A flow graph is a directed graph of typed nodes. Edges carry an optional
``source_handle`` naming the branch they belong to (``true``/``false``,
``success``/``failure``, ``received``/``timeout``, a button id, a case label).
An edge without a handle is the node's plain ``next`` edge.

The JSON shape matches what the flow builder stores, so React Flow aliases
(``sourceHandle``) are accepted on input.
"""

from typing import Any, Dict, FrozenSet, List, Optional, Set, TYPE_CHECKING

from pydantic import BaseModel, Field

from chatflow.utils.errors import ConfigurationError, GraphValidationError

if TYPE_CHECKING:
    from chatflow.nodes.registry import NodeRegistry

NEXT = "next"
DEFAULT = "default"


class Edge(BaseModel):
    """Represents a directed connection between two nodes in the graph."""

    source: str
    target: str
    source_handle: Optional[str] = Field(None, alias="sourceHandle")
    id: Optional[str] = None

    class Config:
        populate_by_name = True

    @property
    def label(self) -> str:
        """Branch label, ``next`` when the edge has no handle."""
        return self.source_handle or NEXT

    def __hash__(self):
        return hash((self.source, self.target, self.source_handle))


class FlowNode(BaseModel):
    """A typed step in a flow.

    Attributes:
        id: Node identifier, unique within the graph
        type: Node type tag resolved through the NodeRegistry
        data: Type-specific configuration payload
        label: Human readable name shown in replays
    """

    id: str
    type: str
    data: Dict[str, Any] = Field(default_factory=dict)
    label: Optional[str] = None

    class Config:
        populate_by_name = True

    @property
    def display_name(self) -> str:
        return self.label or self.data.get("label") or self.type


class FlowGraph(BaseModel):
    """Nodes, edges and the entry node of one flow version.

    The graph is immutable once its flow is active; every helper here is a
    read-only lookup.
    """

    nodes: List[FlowNode] = Field(default_factory=list)
    edges: List[Edge] = Field(default_factory=list)
    entry_node_id: Optional[str] = Field(None, alias="entryNodeId")

    class Config:
        populate_by_name = True

    def node_map(self) -> Dict[str, FlowNode]:
        return {node.id: node for node in self.nodes}

    def has_node(self, node_id: str) -> bool:
        """Check if a node exists in the graph."""
        return any(node.id == node_id for node in self.nodes)

    def get_node(self, node_id: str) -> Optional[FlowNode]:
        """Get a node by ID, or None if it does not exist."""
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def outgoing(self, node_id: str) -> List[Edge]:
        """Edges leaving a node, in definition order."""
        return [edge for edge in self.edges if edge.source == node_id]

    def wired_labels(self, node_id: str) -> FrozenSet[str]:
        """Labels of the edges leaving a node (``next`` for unlabelled ones)."""
        return frozenset(edge.label for edge in self.outgoing(node_id))

    def get_children(self, node_id: str) -> List[str]:
        """Get child node IDs for a given node."""
        children: List[str] = []
        for edge in self.outgoing(node_id):
            if edge.target not in children:
                children.append(edge.target)
        return children

    def resolve_entry(self) -> str:
        """Return the entry node id.

        Raises:
            GraphValidationError: If there is not exactly one start node
        """
        if self.entry_node_id:
            return self.entry_node_id
        starts = [node.id for node in self.nodes if node.type == "start"]
        if len(starts) != 1:
            raise GraphValidationError(
                f"Flow must have exactly one start node, found {len(starts)}"
            )
        return starts[0]

    def resolve_edge(
        self,
        node_id: str,
        label: str,
        accept_unlabelled: bool = False,
        accept_default: bool = False,
    ) -> Optional[Edge]:
        """Find the edge a node should follow for a given outcome label.

        Lookup order: an edge with exactly this label, then (when
        ``accept_unlabelled``) an edge without a handle, then (when
        ``accept_default``) the ``default`` edge.

        Returns:
            The matching Edge, or None when the node has no such branch
        """
        edges = self.outgoing(node_id)
        for edge in edges:
            if edge.source_handle == label or (label == NEXT and edge.source_handle is None):
                return edge
        if accept_unlabelled:
            for edge in edges:
                if edge.source_handle in (None, NEXT):
                    return edge
        if accept_default:
            for edge in edges:
                if edge.source_handle == DEFAULT:
                    return edge
        return None

    def _get_reachable_nodes(self, entry: str) -> Set[str]:
        """Get all nodes reachable from the entry node."""
        reachable: Set[str] = set()
        queue = [entry]

        while queue:
            node_id = queue.pop(0)
            if node_id in reachable:
                continue

            reachable.add(node_id)
            queue.extend(self.get_children(node_id))

        return reachable

    def validate(self, registry: Optional["NodeRegistry"] = None) -> None:
        """Validate graph topology and node configuration.

        Checks for:
        - Unique node ids and registered node types with valid config
        - Every edge endpoint exists and every edge label is one the node can emit
        - Exactly one entry node, and it is a start node
        - Every non-terminal node has at least one outgoing edge, and the
          edges its config requires (e.g. ``timeout`` for timed waits)
        - No orphan nodes (all reachable from the entry node)

        Raises:
            ConfigurationError: If a node type or node config is invalid
            GraphValidationError: If the topology is invalid
        """
        if registry is None:
            from chatflow.nodes.registry import default_registry

            registry = default_registry()

        if not self.nodes:
            raise GraphValidationError("Flow graph has no nodes")

        seen: Set[str] = set()
        for node in self.nodes:
            if node.id in seen:
                raise GraphValidationError(f"Duplicate node id: {node.id}")
            seen.add(node.id)
            registry.validate_node(node)

        for edge in self.edges:
            if edge.source not in seen:
                raise GraphValidationError(
                    f"Edge references non-existent source node: {edge.source}"
                )
            if edge.target not in seen:
                raise GraphValidationError(
                    f"Edge references non-existent target node: {edge.target}"
                )

        starts = [node for node in self.nodes if node.type == "start"]
        if len(starts) != 1:
            raise GraphValidationError(
                f"Flow must have exactly one start node, found {len(starts)}"
            )
        entry = self.resolve_entry()
        if entry != starts[0].id:
            raise GraphValidationError(
                f"Entry node '{entry}' is not the flow's start node '{starts[0].id}'"
            )

        for node in self.nodes:
            spec = registry.get(node.type)
            edges = self.outgoing(node.id)
            if spec.terminal:
                if edges:
                    raise GraphValidationError(
                        f"Terminal node '{node.id}' ({node.type}) must not have outgoing edges"
                    )
                continue
            if not edges:
                raise GraphValidationError(
                    f"Node '{node.id}' ({node.type}) has no outgoing edge"
                )
            allowed = registry.edge_labels(node)
            for edge in edges:
                if edge.label not in allowed:
                    raise ConfigurationError(
                        f"edge label '{edge.label}' is not one of {sorted(allowed)}",
                        node_id=node.id,
                    )
            wired = {edge.label for edge in edges}
            missing = registry.required_edges(node) - wired
            if missing:
                raise ConfigurationError(
                    f"missing required edge(s): {', '.join(sorted(missing))}",
                    node_id=node.id,
                )

        reachable = self._get_reachable_nodes(entry)
        unreachable = [node.id for node in self.nodes if node.id not in reachable]
        if unreachable:
            raise GraphValidationError(
                f"Graph contains unreachable nodes: {', '.join(unreachable)}"
            )
