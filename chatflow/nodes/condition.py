"""Condition node for conditional branching.

The node evaluates a structured expression against the execution context and
follows the edge whose label matches the result:

- boolean expression -> ``true`` / ``false``
- multi-way expression -> the first matching case label, else ``default``

Three config shapes are accepted:

    {"expression": {...}}                          any evaluator form
    {"logic": "AND", "rules": [...]}               single rule list
    {"conditions": [{"id": "vip", "logic": "OR", "rules": [...]}, ...]}
                                                   one case per condition id

A missing ``true``/``false``/case edge falls back to the ``default`` edge.
"""

from typing import Any, Set

from chatflow.conditions import case_labels, evaluate, is_multiway, validate_expression
from chatflow.core.effects import Branch, Effect
from chatflow.core.graph import DEFAULT, FlowNode
from chatflow.nodes.base import NodeInput, NodeSpec
from chatflow.utils.errors import ConfigurationError


def expression_for(node: FlowNode) -> Any:
    """Normalize the node config into a single evaluator expression."""
    data = node.data
    if "expression" in data:
        return data["expression"]
    if "conditions" in data:
        return {
            "cases": [
                {
                    "label": condition.get("id"),
                    "when": {
                        "logic": condition.get("logic", "AND"),
                        "rules": condition.get("rules") or [],
                    },
                }
                for condition in data["conditions"]
            ],
            "default": DEFAULT,
        }
    if "rules" in data:
        return {"logic": data.get("logic", "AND"), "rules": data["rules"]}
    return None


def build_condition(step: NodeInput) -> Effect:
    result = evaluate(expression_for(step.node), dict(step.context))
    if isinstance(result.value, bool):
        label = "true" if result.value else "false"
    else:
        label = result.value
    return Branch(label=label, warnings=list(result.warnings))


def _labels(node: FlowNode) -> Set[str]:
    expression = expression_for(node)
    if is_multiway(expression):
        return set(case_labels(expression))
    return {"true", "false"}


def _validate(node: FlowNode) -> None:
    expression = expression_for(node)
    if expression is None:
        raise ConfigurationError(
            "condition node needs 'expression', 'rules' or 'conditions'",
            node_id=node.id,
        )
    if "conditions" in node.data:
        conditions = node.data["conditions"]
        if not isinstance(conditions, list) or not conditions:
            raise ConfigurationError("'conditions' must be a non-empty list", node_id=node.id)
        for condition in conditions:
            if not isinstance(condition, dict) or not condition.get("id"):
                raise ConfigurationError("every condition needs an 'id'", node_id=node.id)
    try:
        validate_expression(expression)
    except ConfigurationError as e:
        raise ConfigurationError(str(e), node_id=node.id)


CONDITION = NodeSpec(
    type="condition",
    builder=build_condition,
    edges=frozenset({DEFAULT}),
    primary_edges=frozenset(),
    dynamic_edges=_labels,
    validate_config=_validate,
)
