"""Structured condition evaluation against an execution context.

Expressions are small JSON trees, never free text:

    {"all": [expr, ...]}                  logical AND (empty -> True)
    {"any": [expr, ...]}                  logical OR  (empty -> False)
    {"not": expr}                         negation
    {"op": "greater_than",                comparison
     "left": {"var": "profile.age"},
     "right": 18}
    {"field": "age", "operator": "greaterThan", "value": 18}
                                          comparison shortcut
    {"logic": "AND", "rules": [{"field", "operator", "value"}, ...]}
                                          rule list
    {"cases": [{"label": "vip", "when": expr}, ...], "default": "default"}
                                          multi-way; evaluates to a label

Missing context fields make a comparison False and leave a
ConditionEvaluationWarning behind instead of raising. Numeric comparisons
coerce strings that parse as numbers; any other type mismatch is False.

Example:
    >>> evaluate_bool({"op": "greater_than", "left": {"var": "age"}, "right": 18}, {"age": "20"})
    True
    >>> evaluate_bool({"op": "greater_than", "left": {"var": "age"}, "right": 18}, {})
    False
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from chatflow.utils.errors import ConditionEvaluationWarning, ConfigurationError
from chatflow.utils.variables import get_path

_MISSING = object()

OPERATOR_ALIASES = {
    "eq": "equals",
    "equal": "equals",
    "==": "equals",
    "ne": "not_equals",
    "not_equal": "not_equals",
    "notEquals": "not_equals",
    "!=": "not_equals",
    "notContains": "not_contains",
    "gt": "greater_than",
    "greaterThan": "greater_than",
    ">": "greater_than",
    "gte": "greater_or_equal",
    "greaterThanOrEqual": "greater_or_equal",
    ">=": "greater_or_equal",
    "lt": "less_than",
    "lessThan": "less_than",
    "<": "less_than",
    "lte": "less_or_equal",
    "lessThanOrEqual": "less_or_equal",
    "<=": "less_or_equal",
    "regex": "matches",
    "notExists": "not_exists",
    "isEmpty": "is_empty",
}

OPERATORS = {
    "equals",
    "not_equals",
    "contains",
    "not_contains",
    "greater_than",
    "greater_or_equal",
    "less_than",
    "less_or_equal",
    "matches",
    "exists",
    "not_exists",
    "is_empty",
}

UNARY_OPERATORS = {"exists", "not_exists", "is_empty"}

CaseLabel = str


@dataclass
class Evaluation:
    """Result of evaluating an expression.

    Attributes:
        value: bool for boolean expressions, a case label for multi-way ones
        warnings: Non-fatal problems encountered while evaluating
    """

    value: Union[bool, CaseLabel]
    warnings: List[ConditionEvaluationWarning] = field(default_factory=list)


def normalize_operator(op: Optional[str]) -> str:
    if op is None:
        raise ConfigurationError("Comparison is missing an operator")
    return OPERATOR_ALIASES.get(op, op)


def _to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def is_multiway(expression: Any) -> bool:
    return isinstance(expression, dict) and "cases" in expression


def case_labels(expression: Dict[str, Any]) -> List[str]:
    """Labels a multi-way expression can produce, default included."""
    labels = [case.get("label") for case in expression.get("cases", [])]
    labels.append(expression.get("default") or "default")
    return labels


class _Evaluator:
    """Single-use evaluator that accumulates warnings."""

    def __init__(self, context: Dict[str, Any]):
        self.context = context
        self.warnings: List[ConditionEvaluationWarning] = []

    def warn(self, message: str, path: Optional[str] = None, **detail: Any) -> None:
        self.warnings.append(ConditionEvaluationWarning(message=message, path=path, detail=detail))

    def operand(self, raw: Any) -> Any:
        if isinstance(raw, dict) and "var" in raw:
            path = raw["var"]
            value = get_path(self.context, path, _MISSING)
            if value is _MISSING:
                self.warn("Missing context field", path=path)
            return value
        return raw

    def expr(self, node: Any) -> bool:
        if isinstance(node, bool):
            return node
        if not isinstance(node, dict):
            raise ConfigurationError(f"Invalid condition expression: {node!r}")

        if "all" in node:
            return all([self.expr(child) for child in node["all"]])
        if "any" in node:
            return any([self.expr(child) for child in node["any"]])
        if "not" in node:
            return not self.expr(node["not"])
        if "rules" in node:
            return self.rules(node)
        return self.compare(node)

    def rules(self, node: Dict[str, Any]) -> bool:
        rules = node.get("rules") or []
        if not rules:
            return True
        results = [self.compare(rule) for rule in rules]
        logic = str(node.get("logic", "AND")).upper()
        return all(results) if logic == "AND" else any(results)

    def compare(self, node: Dict[str, Any]) -> bool:
        op = normalize_operator(node.get("op") or node.get("operator"))
        if "left" in node:
            left = self.operand(node["left"])
            path = node["left"].get("var") if isinstance(node["left"], dict) else None
        else:
            path = node.get("field") or node.get("variable")
            left = self.operand({"var": path})

        if op == "exists":
            return left is not _MISSING and left is not None
        if op == "not_exists":
            return left is _MISSING or left is None

        if left is _MISSING:
            return False

        if op == "is_empty":
            return left is None or (isinstance(left, (str, list, dict)) and len(left) == 0)

        right = self.operand(node.get("right", node.get("value")))
        if right is _MISSING:
            return False

        if op == "equals":
            return self.equals(left, right, path)
        if op == "not_equals":
            if not self.comparable(left, right):
                self.warn("Type mismatch", path=path, left=repr(left), right=repr(right))
                return False
            return not self.equals(left, right, path)
        if op in ("contains", "not_contains"):
            found = self.contains(left, right, path)
            if found is None:
                return False
            return found if op == "contains" else not found
        if op == "matches":
            return self.matches(left, right, path)
        return self.ordered(op, left, right, path)

    def comparable(self, left: Any, right: Any) -> bool:
        if type(left) is type(right):
            return True
        if _to_number(left) is not None and _to_number(right) is not None:
            return True
        return left is None or right is None

    def equals(self, left: Any, right: Any, path: Optional[str]) -> bool:
        if isinstance(left, bool) or isinstance(right, bool):
            return left is right or left == right and type(left) is type(right)
        if isinstance(left, (int, float)) or isinstance(right, (int, float)):
            left_num, right_num = _to_number(left), _to_number(right)
            if left_num is None or right_num is None:
                self.warn("Type mismatch", path=path, left=repr(left), right=repr(right))
                return False
            return left_num == right_num
        if type(left) is not type(right) and left is not None and right is not None:
            self.warn("Type mismatch", path=path, left=repr(left), right=repr(right))
            return False
        return left == right

    def contains(self, left: Any, right: Any, path: Optional[str]) -> Optional[bool]:
        if isinstance(left, str):
            if isinstance(right, (dict, list)):
                self.warn("Type mismatch", path=path, left=repr(left), right=repr(right))
                return None
            return str(right) in left
        if isinstance(left, list):
            return right in left
        if isinstance(left, dict):
            return isinstance(right, str) and right in left
        self.warn("Type mismatch", path=path, left=repr(left), right=repr(right))
        return None

    def matches(self, left: Any, right: Any, path: Optional[str]) -> bool:
        if not isinstance(right, str):
            self.warn("Pattern must be a string", path=path, pattern=repr(right))
            return False
        if isinstance(left, (int, float)) and not isinstance(left, bool):
            left = str(left)
        if not isinstance(left, str):
            self.warn("Type mismatch", path=path, left=repr(left))
            return False
        try:
            return re.search(right, left) is not None
        except re.error as e:
            self.warn("Invalid pattern", path=path, pattern=right, error=str(e))
            return False

    def ordered(self, op: str, left: Any, right: Any, path: Optional[str]) -> bool:
        left_num, right_num = _to_number(left), _to_number(right)
        if left_num is None or right_num is None:
            self.warn("Type mismatch", path=path, left=repr(left), right=repr(right))
            return False
        if op == "greater_than":
            return left_num > right_num
        if op == "greater_or_equal":
            return left_num >= right_num
        if op == "less_than":
            return left_num < right_num
        if op == "less_or_equal":
            return left_num <= right_num
        raise ConfigurationError(f"Unknown operator: {op}")


def evaluate(expression: Any, context: Dict[str, Any]) -> Evaluation:
    """Evaluate an expression against a context.

    Args:
        expression: Boolean or multi-way expression tree
        context: Execution context map (never mutated)

    Returns:
        Evaluation with a bool, or a case label for multi-way expressions
    """
    evaluator = _Evaluator(context)

    if is_multiway(expression):
        for case in expression.get("cases", []):
            if evaluator.expr(case.get("when", False)):
                return Evaluation(value=case["label"], warnings=evaluator.warnings)
        return Evaluation(
            value=expression.get("default") or "default",
            warnings=evaluator.warnings,
        )

    return Evaluation(value=bool(evaluator.expr(expression)), warnings=evaluator.warnings)


def evaluate_bool(expression: Any, context: Dict[str, Any]) -> bool:
    """Evaluate a boolean expression, discarding warnings."""
    result = evaluate(expression, context).value
    if not isinstance(result, bool):
        raise ConfigurationError("Multi-way expression used where a boolean is required")
    return result


def evaluate_case(expression: Dict[str, Any], context: Dict[str, Any]) -> str:
    """Evaluate a multi-way expression to its case label, discarding warnings."""
    if not is_multiway(expression):
        raise ConfigurationError("Boolean expression used where a case label is required")
    return evaluate(expression, context).value


def validate_expression(expression: Any) -> None:
    """Check expression structure, operators and literal regexes.

    Raises:
        ConfigurationError: If the expression cannot be evaluated
    """
    if isinstance(expression, bool):
        return
    if not isinstance(expression, dict):
        raise ConfigurationError(f"Invalid condition expression: {expression!r}")

    if "cases" in expression:
        cases = expression["cases"]
        if not isinstance(cases, list) or not cases:
            raise ConfigurationError("Multi-way condition needs a non-empty 'cases' list")
        for case in cases:
            if not isinstance(case, dict) or not case.get("label"):
                raise ConfigurationError(f"Case without a label: {case!r}")
            validate_expression(case.get("when", False))
        return

    for key in ("all", "any"):
        if key in expression:
            children = expression[key]
            if not isinstance(children, list):
                raise ConfigurationError(f"'{key}' must be a list")
            for child in children:
                validate_expression(child)
            return

    if "not" in expression:
        validate_expression(expression["not"])
        return

    if "rules" in expression:
        for rule in expression.get("rules") or []:
            validate_expression(rule)
        return

    op = normalize_operator(expression.get("op") or expression.get("operator"))
    if op not in OPERATORS:
        raise ConfigurationError(f"Unknown operator: {op}")

    has_left = "left" in expression or expression.get("field") or expression.get("variable")
    if not has_left:
        raise ConfigurationError(f"Comparison '{op}' has no left operand")

    if op not in UNARY_OPERATORS and "right" not in expression and "value" not in expression:
        raise ConfigurationError(f"Comparison '{op}' has no right operand")

    if op == "matches":
        pattern = expression.get("right", expression.get("value"))
        if isinstance(pattern, str):
            try:
                re.compile(pattern)
            except re.error as e:
                raise ConfigurationError(f"Invalid pattern '{pattern}': {e}")
