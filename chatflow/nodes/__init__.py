"""Built-in node types."""

from chatflow.nodes.base import NodeInput, NodeSpec
from chatflow.nodes.registry import NodeRegistry, default_registry

__all__ = [
    "NodeInput",
    "NodeSpec",
    "NodeRegistry",
    "default_registry",
]
