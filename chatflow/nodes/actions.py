"""Conversation and contact mutations: agent/team assignment, contact tags and fields."""

from chatflow.core.effects import (
    AssignConversation,
    CallExternal,
    Effect,
    UpdateContactFields,
    UpdateContactTags,
)
from chatflow.core.graph import FlowNode
from chatflow.nodes.base import NodeInput, NodeSpec
from chatflow.utils.errors import ConfigurationError

TAG_ACTIONS = {"add", "remove"}


def build_assignment(step: NodeInput) -> Effect:
    resolver = step.resolver()
    agent_id = step.config.get("agent_id")
    team_id = step.config.get("team_id")
    return CallExternal(
        AssignConversation(
            agent_id=resolver.resolve(agent_id) if agent_id else None,
            team_id=resolver.resolve(team_id) if team_id else None,
        )
    )


def build_tag(step: NodeInput) -> Effect:
    resolver = step.resolver()
    tags = [resolver.resolve(str(tag)) for tag in step.config.get("tags") or []]
    return CallExternal(UpdateContactTags(action=step.config.get("action") or "add", tags=tags))


def build_update_contact(step: NodeInput) -> Effect:
    """Write resolved field values to the contact.

    A value that is exactly one ``{{variable}}`` keeps the variable's type,
    anything else is interpolated as text.
    """
    resolver = step.resolver()
    fields = step.config.get("fields") or {}
    return CallExternal(
        UpdateContactFields(fields={name: resolver.resolve_value(value) for name, value in fields.items()})
    )


def _validate_assignment(node: FlowNode) -> None:
    if not node.data.get("agent_id") and not node.data.get("team_id"):
        raise ConfigurationError("assignment needs 'agent_id' or 'team_id'", node_id=node.id)


def _validate_tag(node: FlowNode) -> None:
    action = node.data.get("action") or "add"
    if action not in TAG_ACTIONS:
        raise ConfigurationError(f"unknown tag action '{action}'", node_id=node.id)
    if not isinstance(node.data.get("tags"), list):
        raise ConfigurationError("'tags' must be a list", node_id=node.id)


def _validate_update_contact(node: FlowNode) -> None:
    fields = node.data.get("fields")
    if not isinstance(fields, dict) or not fields:
        raise ConfigurationError("'fields' must be a non-empty mapping", node_id=node.id)


ASSIGNMENT = NodeSpec(
    type="assignment",
    builder=build_assignment,
    edges=frozenset({"next", "error"}),
    validate_config=_validate_assignment,
)

TAG = NodeSpec(
    type="tag",
    builder=build_tag,
    edges=frozenset({"next", "error"}),
    required=frozenset({"tags"}),
    validate_config=_validate_tag,
)

UPDATE_CONTACT = NodeSpec(
    type="update_contact",
    builder=build_update_contact,
    edges=frozenset({"next", "error"}),
    required=frozenset({"fields"}),
    validate_config=_validate_update_contact,
)
