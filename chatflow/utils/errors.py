"""Custom error classes for chatflow."""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional


class ChatflowError(Exception):
    """Base exception for all chatflow errors."""

    pass


class GraphValidationError(ChatflowError):
    """Raised when a flow graph fails structural validation."""

    pass


class ConfigurationError(GraphValidationError):
    """Raised when a node or flow is misconfigured.

    Always surfaced before a flow is activated, never mid-run.
    """

    def __init__(self, message: str, node_id: Optional[str] = None):
        self.node_id = node_id
        if node_id:
            message = f"Node '{node_id}': {message}"
        super().__init__(message)


class InvalidNodeTypeError(ConfigurationError):
    """Raised when a node type tag is not registered."""

    pass


class GraphCorruption(ChatflowError):
    """Raised when a running execution references a node or edge that is gone.

    Fatal: the flow has to be fixed and re-versioned.
    """

    def __init__(self, message: str, node_id: Optional[str] = None):
        self.node_id = node_id
        super().__init__(message)


class ExternalCallError(ChatflowError):
    """Non-retryable failure reported by an external capability."""

    def __init__(self, message: str, status_code: Optional[int] = None, response: Any = None):
        self.status_code = status_code
        self.response = response
        super().__init__(message)


class TransientExternalFailure(ExternalCallError):
    """Retryable failure (timeout, 5xx, network error) from an external capability."""

    pass


class VariableResolutionError(ChatflowError):
    """Raised when variable resolution fails."""

    def __init__(self, variable: str, message: str):
        self.variable = variable
        super().__init__(f"Variable '{variable}' resolution failed: {message}")


class FlowNotFoundError(ChatflowError):
    """Raised when a flow definition does not exist."""

    def __init__(self, flow_id: str):
        self.flow_id = flow_id
        super().__init__(f"Flow not found: {flow_id}")


class ExecutionNotFoundError(ChatflowError):
    """Raised when an execution does not exist."""

    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(f"Execution not found: {execution_id}")


class InvalidTransitionError(ChatflowError):
    """Raised when a status transition or lifecycle change is not allowed."""

    pass


class ClaimLostError(ChatflowError):
    """Raised when a persisted write finds that another writer moved the row."""

    def __init__(self, execution_id: str, expected_version: int):
        self.execution_id = execution_id
        self.expected_version = expected_version
        super().__init__(
            f"Execution {execution_id} changed underneath the claim holder "
            f"(expected version {expected_version})"
        )


@dataclass
class ConditionEvaluationWarning:
    """Non-fatal condition problem, recorded in the execution path.

    Not raised: a missing field or type mismatch evaluates to False and
    leaves one of these behind for debugging.
    """

    message: str
    path: Optional[str] = None
    detail: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"message": self.message}
        if self.path is not None:
            data["path"] = self.path
        if self.detail:
            data["detail"] = self.detail
        return data
