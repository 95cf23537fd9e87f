"""Effects produced by node builders.

A builder never performs I/O: it describes what the step should do as one of
a closed set of effect variants and the StepExecutor carries it out.

    Send(message)            deliver an outbound message, follow ``next``
    CallExternal(request)    HTTP call or conversation/contact mutation
    Branch(label)            follow the edge with this label
    SuspendUntil(wake)       park the execution until the wake condition holds
    Mutate(patch, edge)      merge into the context, follow ``edge``
    Terminate(outcome)       end the execution
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from chatflow.core.execution import WakeCondition
from chatflow.utils.errors import ConditionEvaluationWarning


@dataclass(frozen=True)
class OutboundMessage:
    """Message handed to the messaging capability.

    Attributes:
        kind: "text", "template" or "interactive"
        text: Resolved body text
        template_name: Approved template identifier (template messages)
        language: Template language code
        variables: Resolved template variables
        buttons: Interactive reply buttons, ``{"id", "title"}`` each
    """

    kind: str = "text"
    text: Optional[str] = None
    template_name: Optional[str] = None
    language: Optional[str] = None
    variables: Dict[str, Any] = field(default_factory=dict)
    buttons: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"kind": self.kind}
        if self.text is not None:
            data["text"] = self.text
        if self.template_name is not None:
            data["template_name"] = self.template_name
            data["language"] = self.language
            data["variables"] = self.variables
        if self.buttons:
            data["buttons"] = self.buttons
        return data


@dataclass(frozen=True)
class HttpCall:
    method: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    params: Dict[str, Any] = field(default_factory=dict)
    body: Any = None
    timeout_seconds: Optional[float] = None
    response_variable: Optional[str] = None
    response_mapping: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"method": self.method, "url": self.url}


@dataclass(frozen=True)
class AssignConversation:
    agent_id: Optional[str] = None
    team_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"agent_id": self.agent_id, "team_id": self.team_id}


@dataclass(frozen=True)
class UpdateContactTags:
    action: str
    tags: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"action": self.action, "tags": list(self.tags)}


@dataclass(frozen=True)
class UpdateContactFields:
    fields: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"fields": dict(self.fields)}


ExternalRequest = Union[HttpCall, AssignConversation, UpdateContactTags, UpdateContactFields]


@dataclass(frozen=True)
class Send:
    message: OutboundMessage


@dataclass(frozen=True)
class CallExternal:
    request: ExternalRequest


@dataclass(frozen=True)
class Branch:
    label: str
    warnings: List[ConditionEvaluationWarning] = field(default_factory=list)


@dataclass(frozen=True)
class SuspendUntil:
    """Wait for ``wake``; ``notice`` is sent first (prompt, buttons, re-prompt)."""

    wake: WakeCondition
    notice: Optional[OutboundMessage] = None
    detail: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Mutate:
    patch: Dict[str, Any] = field(default_factory=dict)
    edge: str = "next"


@dataclass(frozen=True)
class Terminate:
    outcome: str = "completed"


Effect = Union[Send, CallExternal, Branch, SuspendUntil, Mutate, Terminate]
