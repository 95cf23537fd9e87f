"""React Flow JSON parser for flows saved by the visual builder.

The builder stores React Flow documents: node configuration lives under
``nodes[].data`` with camelCase keys, branch labels under
``edges[].sourceHandle``. This module turns such a document into a
``FlowGraph`` with engine type tags and snake_case config keys.
"""

import re
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError

from chatflow.core.graph import Edge, FlowGraph, FlowNode
from chatflow.nodes.registry import NodeRegistry, default_registry
from chatflow.utils.errors import GraphValidationError

_CAMEL = re.compile(r"(?<!^)(?=[A-Z])")


class ReactFlowNode(BaseModel):
    """Schema for a node in React Flow JSON."""
    id: str
    type: str
    data: Dict[str, Any] = Field(default_factory=dict)
    position: Optional[Dict[str, float]] = None

    class Config:
        populate_by_name = True


class ReactFlowEdge(BaseModel):
    """Schema for an edge in React Flow JSON."""
    id: Optional[str] = None
    source: str
    target: str
    source_handle: Optional[str] = Field(None, alias="sourceHandle")
    target_handle: Optional[str] = Field(None, alias="targetHandle")

    class Config:
        populate_by_name = True


class ReactFlowJSON(BaseModel):
    """Schema for a React Flow document."""
    nodes: List[ReactFlowNode]
    edges: List[ReactFlowEdge] = Field(default_factory=list)
    viewport: Optional[Dict[str, float]] = None


def snake_case(key: str) -> str:
    return _CAMEL.sub("_", key).lower()


class ReactFlowParser:
    """Parse React Flow JSON into a FlowGraph.

    Builder node types map to engine type tags:
    - trigger / welcome / startNode -> start
    - messageNode / sendMessage -> message
    - templateNode / sendTemplate -> template
    - conditionNode -> condition
    - userInput / inputNode -> input
    - buttonNode / interactiveButtons -> button
    - delayNode / wait -> delay
    - apiRequest / apiNode -> api
    - webhookNode -> webhook
    - assignConversation -> assignment
    - tagManagement -> tag
    - updateContact / customField -> update_contact
    - action -> update_contact, tag or assignment, by its ``actionType``
    - endNode -> end

    Example:
        >>> parser = ReactFlowParser()
        >>> graph = parser.parse(flow_json)
        >>> flow = await flows.create("tenant-1", "Onboarding", graph)
    """

    NODE_TYPE_MAP = {
        "trigger": "start",
        "welcome": "start",
        "startNode": "start",
        "messageNode": "message",
        "sendMessage": "message",
        "templateNode": "template",
        "sendTemplate": "template",
        "conditionNode": "condition",
        "userInput": "input",
        "inputNode": "input",
        "buttonNode": "button",
        "interactiveButtons": "button",
        "delayNode": "delay",
        "wait": "delay",
        "apiRequest": "api",
        "apiNode": "api",
        "webhookNode": "webhook",
        "assignConversation": "assignment",
        "assignNode": "assignment",
        "tagManagement": "tag",
        "tagNode": "tag",
        "updateContact": "update_contact",
        "customField": "update_contact",
        "endNode": "end",
    }

    # Generic ``action`` nodes name their concrete type in ``actionType``
    ACTION_TYPES = {
        "updateContact": "update_contact",
        "addTag": "tag",
        "assignAgent": "assignment",
    }

    # Builder-only keys with an engine name that is not their snake_case form
    KEY_MAP = {
        "validationType": "validation",
        "message": "text",
        "delay": "delay_seconds",
        "timeout": "timeout_seconds",
        "apiUrl": "url",
    }

    # Keys whose values are user data and keep their own key casing
    OPAQUE_KEYS = {
        "variables", "headers", "query_params", "body", "response_mapping",
        "conditions", "expression", "rules", "fields",
    }

    # React Flow display-only keys
    UI_KEYS = {"selected", "dragging", "width", "height", "positionAbsolute"}

    def __init__(self, registry: Optional[NodeRegistry] = None, validate: bool = True):
        """Initialize parser.

        Args:
            registry: Registry used to validate the parsed graph
            validate: Validate the graph after parsing
        """
        self.registry = registry or default_registry()
        self.validate = validate

    def parse(self, json_data: Dict[str, Any]) -> FlowGraph:
        """Parse React Flow JSON into a FlowGraph.

        Args:
            json_data: React Flow JSON dictionary

        Returns:
            FlowGraph ready to be stored as a flow definition

        Raises:
            GraphValidationError: If the JSON structure or the graph is invalid
        """
        try:
            flow_data = ReactFlowJSON(**json_data)
        except ValidationError as e:
            raise GraphValidationError(f"Invalid React Flow JSON: {e}")

        nodes = [self._convert_node(node) for node in flow_data.nodes]
        edges = [
            Edge(
                id=edge.id,
                source=edge.source,
                target=edge.target,
                source_handle=self._handle(edge.source_handle),
            )
            for edge in flow_data.edges
        ]

        entry = next((n.id for n in nodes if n.type == "start"), None)
        graph = FlowGraph(nodes=nodes, edges=edges, entry_node_id=entry)

        if self.validate:
            graph.validate(self.registry)
        return graph

    def _convert_node(self, node: ReactFlowNode) -> FlowNode:
        if node.type == "action" and node.data.get("actionType") in self.ACTION_TYPES:
            return self._convert_action(node)
        node_type = self.NODE_TYPE_MAP.get(node.type, node.type)
        data = self._convert_data(node.data)
        label = data.pop("label", None)
        return FlowNode(id=node.id, type=node_type, data=data, label=label)

    def _convert_action(self, node: ReactFlowNode) -> FlowNode:
        node_type = self.ACTION_TYPES[node.data["actionType"]]
        action_data = node.data.get("actionData") or {}

        if node_type == "update_contact":
            data: Dict[str, Any] = {"fields": dict(action_data)}
        elif node_type == "tag":
            tags = action_data.get("tags") or ([action_data["tag"]] if action_data.get("tag") else [])
            data = {"action": "add", "tags": list(tags)}
        else:
            assignee = {"agent_id": action_data.get("agentId"), "team_id": action_data.get("teamId")}
            data = {key: value for key, value in assignee.items() if value}
        return FlowNode(id=node.id, type=node_type, data=data, label=node.data.get("label"))

    def _convert_data(self, raw: Dict[str, Any]) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        # Builder aliases last so an explicit engine key wins
        for key, value in sorted(raw.items(), key=lambda item: item[0] in self.KEY_MAP):
            if key in self.UI_KEYS:
                continue
            name = self.KEY_MAP.get(key) or snake_case(key)
            if name in data:
                continue
            if isinstance(value, dict) and name not in self.OPAQUE_KEYS:
                value = self._convert_data(value)
            elif isinstance(value, list) and name not in self.OPAQUE_KEYS:
                value = [self._convert_data(v) if isinstance(v, dict) else v for v in value]
            data[name] = value
        return data

    def _handle(self, handle: Optional[str]) -> Optional[str]:
        """Normalize a source handle; the builder's ``source``/``output`` handles mean ``next``."""
        if handle in (None, "", "source", "output", "next"):
            return None
        return handle


def parse_react_flow(json_data: Dict[str, Any], registry: Optional[NodeRegistry] = None) -> FlowGraph:
    """Shortcut for ``ReactFlowParser(registry).parse(json_data)``."""
    return ReactFlowParser(registry).parse(json_data)
