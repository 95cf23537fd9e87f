"""Outbound message nodes: free text and approved templates.

Both resolve ``{{variables}}`` against the execution context before the
message is handed to the messaging capability. A rejected send follows the
optional ``error`` edge.
"""

from chatflow.core.effects import Effect, OutboundMessage, Send
from chatflow.nodes.base import NodeInput, NodeSpec
from chatflow.utils.errors import ConfigurationError


def build_message(step: NodeInput) -> Effect:
    resolver = step.resolver()
    return Send(OutboundMessage(kind="text", text=resolver.resolve(step.config["text"])))


def build_template(step: NodeInput) -> Effect:
    """Resolve template variables; a lone ``{{var}}`` keeps its raw type."""
    resolver = step.resolver()
    variables = resolver.resolve_value(step.config.get("variables") or {})
    return Send(
        OutboundMessage(
            kind="template",
            template_name=step.config["template_name"],
            language=step.config.get("language") or "en",
            variables=variables,
        )
    )


def _validate_text(node) -> None:
    if not isinstance(node.data.get("text"), str):
        raise ConfigurationError("'text' must be a string", node_id=node.id)


def _validate_template(node) -> None:
    variables = node.data.get("variables")
    if variables is not None and not isinstance(variables, (dict, list)):
        raise ConfigurationError("'variables' must be an object or a list", node_id=node.id)


MESSAGE = NodeSpec(
    type="message",
    builder=build_message,
    edges=frozenset({"next", "error"}),
    required=frozenset({"text"}),
    validate_config=_validate_text,
)

TEMPLATE = NodeSpec(
    type="template",
    builder=build_template,
    edges=frozenset({"next", "error"}),
    required=frozenset({"template_name"}),
    validate_config=_validate_template,
)
