"""Trigger matching for inbound conversation events.

An inbound event first tries to resume a waiting execution of its
conversation (a reply to an input prompt must not start a new flow); only if
nothing resumes does it start the active flows whose trigger config matches.

Keyword triggers match the message text in one of three modes:

- ``word`` (default): the keyword appears as a whole word or phrase
- ``exact``: the whole message equals the keyword
- ``contains``: plain substring

Only the first matching keyword flow starts per inbound message.
"""

import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from chatflow.backends.base import ExecutionStore
from chatflow.core.definition import FlowDefinition, FlowStatus, TriggerConfig, TriggerType, utcnow
from chatflow.core.execution import ExecutionStatus, WakeEvent
from chatflow.scheduler import Scheduler
from chatflow.utils.errors import InvalidTransitionError
from chatflow.utils.variables import get_path

logger = logging.getLogger(__name__)

_MISSING = object()


@dataclass
class InboundEvent:
    """An event arriving from a channel or the API.

    Attributes:
        kind: "message", "button", "new_conversation", "manual" or "webhook"
        tenant_id: Owning tenant
        conversation_id: Conversation the event belongs to
        contact_id: Contact that caused the event
        text: Message text (message events)
        button_id: Selected button (button events)
        flow_id: Flow to start (manual events)
        payload: Raw payload (webhook body, message metadata)
        context: Extra initial context for started executions
    """

    kind: str
    tenant_id: str
    conversation_id: Optional[str] = None
    contact_id: Optional[str] = None
    text: Optional[str] = None
    button_id: Optional[str] = None
    flow_id: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    context: Dict[str, Any] = field(default_factory=dict)
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    received_at: datetime = field(default_factory=utcnow)

    def wake_event(self) -> Optional[WakeEvent]:
        """The wake event this inbound event delivers to waiting executions."""
        if self.kind == "message" and self.text is not None:
            return WakeEvent(
                kind="reply",
                text=self.text,
                event_id=self.event_id,
                occurred_at=self.received_at,
            )
        if self.kind == "button" and self.button_id is not None:
            return WakeEvent(
                kind="button",
                button_id=self.button_id,
                event_id=self.event_id,
                occurred_at=self.received_at,
            )
        return None


@dataclass
class TriggerOutcome:
    resumed: List[str] = field(default_factory=list)
    started: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)


def keyword_matches(config: TriggerConfig, text: Optional[str]) -> bool:
    """Check message text against a keyword trigger."""
    if not text:
        return False
    message = text.strip()
    if not config.case_sensitive:
        message = message.lower()

    for keyword in config.keywords:
        keyword = keyword.strip()
        if not keyword:
            continue
        if not config.case_sensitive:
            keyword = keyword.lower()

        if config.match_mode == "exact":
            if message == keyword:
                return True
        elif config.match_mode == "contains":
            if keyword in message:
                return True
        elif re.search(rf"(?<!\w){re.escape(keyword)}(?!\w)", message):
            return True
    return False


def webhook_matches(config: TriggerConfig, payload: Dict[str, Any]) -> bool:
    """Every configured condition path must equal the payload value."""
    for path, expected in config.conditions.items():
        if get_path(payload, path, _MISSING) != expected:
            return False
    return True


class TriggerMatcher:
    """Route inbound events to waiting executions or new ones.

    Example:
        >>> matcher = TriggerMatcher(store, scheduler)
        >>> outcome = await matcher.handle(
        ...     InboundEvent(kind="message", tenant_id="t1", conversation_id="c1", text="hi")
        ... )
        >>> outcome.started
        ['3f6c...']
    """

    def __init__(self, store: ExecutionStore, scheduler: Scheduler):
        self.store = store
        self.scheduler = scheduler

    async def match(self, event: InboundEvent) -> List[FlowDefinition]:
        """Active flows of the event's tenant whose trigger matches the event."""
        if event.kind == "manual":
            if event.flow_id is None:
                return []
            flow = await self.store.load_flow(event.flow_id)
            if flow is None or flow.tenant_id != event.tenant_id:
                return []
            return [flow] if flow.status == FlowStatus.ACTIVE else []

        flows = await self.store.list_flows(tenant_id=event.tenant_id, status=FlowStatus.ACTIVE)
        return [
            flow for flow in flows
            if flow.trigger_config is not None and self._matches(flow.trigger_config, event)
        ]

    def _matches(self, config: TriggerConfig, event: InboundEvent) -> bool:
        if config.type == TriggerType.KEYWORD:
            return event.kind == "message" and keyword_matches(config, event.text)
        if config.type == TriggerType.NEW_CONVERSATION:
            return event.kind == "new_conversation"
        if config.type == TriggerType.WEBHOOK:
            return event.kind == "webhook" and webhook_matches(config, event.payload)
        return False

    async def handle(self, event: InboundEvent) -> TriggerOutcome:
        """Resume a waiting execution, or start matching flows.

        Returns:
            Execution ids resumed/started and flow ids whose start was skipped
        """
        outcome = TriggerOutcome()

        wake = event.wake_event()
        if wake is not None and event.conversation_id is not None:
            resumed = await self._resume(event, wake)
            if resumed is not None:
                outcome.resumed.append(resumed)
                return outcome

        flows = await self.match(event)
        if event.kind == "message":
            flows = flows[:1]

        for flow in flows:
            try:
                execution_id = await self.scheduler.start_execution(
                    flow.id,
                    conversation_id=event.conversation_id,
                    contact_id=event.contact_id,
                    initial_context=self._initial_context(event),
                )
            except InvalidTransitionError:
                # Paused between listing and starting.
                execution_id = None
            if execution_id is None:
                outcome.skipped.append(flow.id)
            else:
                outcome.started.append(execution_id)

        logger.info(
            "Inbound event handled",
            extra={
                "event_kind": event.kind,
                "conversation_id": event.conversation_id,
                "started": len(outcome.started),
                "skipped": len(outcome.skipped),
            },
        )
        return outcome

    async def _resume(self, event: InboundEvent, wake: WakeEvent) -> Optional[str]:
        """Deliver to the most recently suspended execution that accepts the event."""
        waiting = await self.store.list_executions(
            conversation_id=event.conversation_id,
            statuses=[ExecutionStatus.WAITING],
        )
        waiting.sort(key=lambda e: e.updated_at, reverse=True)
        for execution in waiting:
            if execution.tenant_id != event.tenant_id:
                continue
            if await self.scheduler.resume_execution(execution.id, wake):
                return execution.id
        return None

    def _initial_context(self, event: InboundEvent) -> Dict[str, Any]:
        context = dict(event.context)
        context["trigger"] = {
            "kind": event.kind,
            "text": event.text,
            "button_id": event.button_id,
            "payload": event.payload,
            "event_id": event.event_id,
        }
        return context
