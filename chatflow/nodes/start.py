"""Start node implementation.

The start node is the entry point of a flow. It seeds the context with the
flow's declared default variables (keys already present win) and follows its
single ``next`` edge.
"""

from chatflow.core.effects import Effect, Mutate
from chatflow.nodes.base import NodeInput, NodeSpec
from chatflow.utils.errors import ConfigurationError


def build_start(step: NodeInput) -> Effect:
    defaults = step.config.get("variables") or {}
    patch = {key: value for key, value in defaults.items() if key not in step.context}
    return Mutate(patch=patch)


def _validate(node) -> None:
    variables = node.data.get("variables")
    if variables is not None and not isinstance(variables, dict):
        raise ConfigurationError("'variables' must be an object", node_id=node.id)


START = NodeSpec(type="start", builder=build_start, validate_config=_validate)
