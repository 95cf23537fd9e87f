"""Nodes that suspend the execution: input, button and delay.

Each wait node is stepped twice. The first step returns SuspendUntil with a
wake condition (and the prompt to send). Once the scheduler has stored a
matching wake event, the second step consumes it and picks the edge:

    input   received | timeout        (an invalid reply re-prompts and waits again)
    button  <button id> | timeout     (unlabelled edge for unwired buttons)
    delay   next
"""

import re
from datetime import timedelta
from typing import Any, Dict, List, Optional, Set

from chatflow.core.effects import Effect, Mutate, OutboundMessage, SuspendUntil
from chatflow.core.execution import WakeCondition, WakeKind
from chatflow.core.graph import FlowNode
from chatflow.nodes.base import NodeInput, NodeSpec
from chatflow.utils.errors import ConfigurationError

DEFAULT_INPUT_VARIABLE = "last_user_input"
DEFAULT_BUTTON_VARIABLE = "last_button_id"
DEFAULT_ERROR_MESSAGE = "Sorry, that doesn't look right. Please try again."

VALIDATORS = {
    "email": re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$"),
    "phone": re.compile(r"^\+?[0-9\s\-().]{7,20}$"),
    "url": re.compile(r"^https?://[^\s/$.?#].[^\s]*$", re.IGNORECASE),
}

UNIT_SECONDS = {
    "seconds": 1,
    "minutes": 60,
    "hours": 3600,
    "days": 86400,
}


def is_valid_reply(validation: Optional[str], text: str) -> bool:
    """Check a reply against an input validation type (None accepts anything non-empty)."""
    if not text:
        return False
    if not validation:
        return True
    if validation == "number":
        try:
            float(text)
        except ValueError:
            return False
        return True
    return VALIDATORS[validation].match(text) is not None


def _timeout_deadline(step: NodeInput):
    """Deadline for reply/button waits; only set when a timeout edge is wired."""
    if "timeout" not in step.wired:
        return None
    seconds = step.config.get("timeout_seconds")
    if seconds is None:
        seconds = step.settings.default_input_timeout_seconds
    if not seconds or seconds <= 0:
        return None
    return step.now + timedelta(seconds=float(seconds))


def _timeout_edges(node: FlowNode) -> Set[str]:
    seconds = node.data.get("timeout_seconds")
    return {"timeout"} if seconds and seconds > 0 else set()


# ---------------------------------------------------------------------------
# input


def build_input(step: NodeInput) -> Effect:
    config = step.config
    resolver = step.resolver()
    outcome = step.resolution()

    if outcome == "received":
        text = (step.event.text or "").strip()
        if not is_valid_reply(config.get("validation"), text):
            error_text = config.get("error_message") or DEFAULT_ERROR_MESSAGE
            return SuspendUntil(
                wake=step.wake,
                notice=OutboundMessage(text=resolver.resolve(error_text)),
                detail={"invalid_reply": text},
            )
        patch: Dict[str, Any] = dict(step.event.payload)
        patch[config.get("variable_name") or DEFAULT_INPUT_VARIABLE] = text
        return Mutate(patch=patch, edge="received")

    if outcome == "timeout":
        return Mutate(edge="timeout")

    if step.resumed:
        return SuspendUntil(wake=step.wake)

    prompt = config.get("prompt") or config.get("text")
    return SuspendUntil(
        wake=WakeCondition(
            kind=WakeKind.REPLY,
            node_id=step.node.id,
            deadline=_timeout_deadline(step),
        ),
        notice=OutboundMessage(text=resolver.resolve(prompt)) if prompt else None,
    )


def _validate_input(node: FlowNode) -> None:
    validation = node.data.get("validation")
    if validation is not None and validation != "number" and validation not in VALIDATORS:
        raise ConfigurationError(
            f"unknown validation '{validation}' (expected email, phone, number or url)",
            node_id=node.id,
        )
    _validate_timeout(node)


# ---------------------------------------------------------------------------
# button


def buttons_for(node: FlowNode) -> List[Dict[str, str]]:
    """Normalize button config to ``{"id", "title"}`` dicts (id defaults to title)."""
    buttons = []
    for raw in node.data.get("buttons") or []:
        if isinstance(raw, str):
            raw = {"title": raw}
        title = str(raw.get("title") or raw.get("text") or raw.get("id") or "")
        buttons.append({"id": str(raw.get("id") or title), "title": title})
    return buttons


def build_button(step: NodeInput) -> Effect:
    config = step.config
    variable = config.get("variable_name") or DEFAULT_BUTTON_VARIABLE
    outcome = step.resolution()

    if outcome == "button":
        button_id = step.wake.match_button(step.event)
        patch: Dict[str, Any] = dict(step.event.payload)
        patch[variable] = button_id
        return Mutate(patch=patch, edge=button_id)

    if outcome == "timeout":
        return Mutate(edge="timeout")

    if step.resumed:
        return SuspendUntil(wake=step.wake)

    buttons = buttons_for(step.node)
    resolver = step.resolver()
    return SuspendUntil(
        wake=WakeCondition(
            kind=WakeKind.BUTTON,
            node_id=step.node.id,
            deadline=_timeout_deadline(step),
            expected=[b["id"] for b in buttons],
            titles={b["id"]: b["title"] for b in buttons},
        ),
        notice=OutboundMessage(
            kind="interactive",
            text=resolver.resolve(config.get("text") or ""),
            buttons=[{"id": b["id"], "title": resolver.resolve(b["title"])} for b in buttons],
        ),
    )


def _button_labels(node: FlowNode) -> Set[str]:
    return {b["id"] for b in buttons_for(node)}


def _validate_button(node: FlowNode) -> None:
    buttons = node.data.get("buttons")
    if not isinstance(buttons, list) or not buttons:
        raise ConfigurationError("'buttons' must be a non-empty list", node_id=node.id)
    ids = [b["id"] for b in buttons_for(node)]
    if "" in ids:
        raise ConfigurationError("every button needs an id or a title", node_id=node.id)
    if len(set(ids)) != len(ids):
        raise ConfigurationError("button ids must be unique", node_id=node.id)
    _validate_timeout(node)


def _validate_timeout(node: FlowNode) -> None:
    seconds = node.data.get("timeout_seconds")
    if seconds is not None and (not isinstance(seconds, (int, float)) or seconds < 0):
        raise ConfigurationError("'timeout_seconds' must be a non-negative number", node_id=node.id)


# ---------------------------------------------------------------------------
# delay


def delay_seconds(node: FlowNode) -> float:
    """Delay length from ``delay_seconds`` or ``duration`` + ``unit``."""
    data = node.data
    if data.get("delay_seconds") is not None:
        return float(data["delay_seconds"])
    unit = data.get("unit") or "seconds"
    return float(data.get("duration") or 0) * UNIT_SECONDS[unit]


def build_delay(step: NodeInput) -> Effect:
    outcome = step.resolution()
    if outcome == "timer":
        return Mutate()
    if step.resumed:
        return SuspendUntil(wake=step.wake)

    seconds = delay_seconds(step.node)
    if seconds <= 0:
        return Mutate()
    return SuspendUntil(
        wake=WakeCondition(
            kind=WakeKind.TIMER,
            node_id=step.node.id,
            deadline=step.now + timedelta(seconds=seconds),
        ),
        detail={"delay_seconds": seconds},
    )


def _validate_delay(node: FlowNode) -> None:
    data = node.data
    if data.get("delay_seconds") is None and data.get("duration") is None:
        raise ConfigurationError("delay needs 'duration' or 'delay_seconds'", node_id=node.id)
    unit = data.get("unit") or "seconds"
    if unit not in UNIT_SECONDS:
        raise ConfigurationError(
            f"unknown delay unit '{unit}' (expected {', '.join(UNIT_SECONDS)})",
            node_id=node.id,
        )
    try:
        seconds = delay_seconds(node)
    except (TypeError, ValueError):
        raise ConfigurationError("delay length must be a number", node_id=node.id)
    if seconds < 0:
        raise ConfigurationError("delay length must not be negative", node_id=node.id)


INPUT = NodeSpec(
    type="input",
    builder=build_input,
    edges=frozenset({"received", "timeout"}),
    primary_edges=frozenset({"received"}),
    validate_config=_validate_input,
    required_edges=_timeout_edges,
)

BUTTON = NodeSpec(
    type="button",
    builder=build_button,
    edges=frozenset({"timeout"}),
    primary_edges=frozenset(),
    dynamic_edges=_button_labels,
    dynamic_fallback=True,
    required=frozenset({"buttons"}),
    validate_config=_validate_button,
    required_edges=_timeout_edges,
)

DELAY = NodeSpec(
    type="delay",
    builder=build_delay,
    validate_config=_validate_delay,
)
