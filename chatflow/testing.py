"""In-memory capabilities and a controllable clock.

Used by the test suite and by ``simulate_flow`` to run flows without touching
a messaging provider, CRM or the network. Every double records its calls;
failures can be scripted by queueing exceptions.
"""

import asyncio
from collections import deque
from datetime import datetime, timedelta, timezone
from typing import Any, Deque, Dict, List, Optional, Tuple, Union

from chatflow.capabilities import Capabilities, HttpResponse
from chatflow.core.effects import HttpCall, OutboundMessage

Scripted = Union[HttpResponse, Exception]


class FakeClock:
    """Clock whose time only moves when told to.

    ``sleep`` advances the clock instead of waiting, so a sweeper loop driven
    by it runs as fast as the event loop allows.
    """

    def __init__(self, now: Optional[datetime] = None):
        self._now = now or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._now

    def advance(self, seconds: float) -> datetime:
        self._now = self._now + timedelta(seconds=seconds)
        return self._now

    def set(self, now: datetime) -> None:
        self._now = now

    async def sleep(self, seconds: float) -> None:
        self.advance(seconds)
        await asyncio.sleep(0)


class RecordingMessaging:
    """MessagingCapability that records outbound messages."""

    def __init__(self):
        self.sent: List[Tuple[Optional[str], OutboundMessage]] = []
        self.failures: Deque[Exception] = deque()

    def fail_next(self, *errors: Exception) -> None:
        """Raise these errors, in order, from the next sends."""
        self.failures.extend(errors)

    async def send_message(self, conversation_id: Optional[str], message: OutboundMessage) -> Dict[str, Any]:
        if self.failures:
            raise self.failures.popleft()
        self.sent.append((conversation_id, message))
        return {"message_id": f"msg-{len(self.sent)}"}

    @property
    def texts(self) -> List[Optional[str]]:
        return [message.text for _, message in self.sent]


class RecordingHttp:
    """HttpCapability answering from a script.

    Each request pops the next scripted item: an HttpResponse is returned, an
    exception is raised. Once the script is empty ``default`` is returned.
    """

    def __init__(self, default: Optional[HttpResponse] = None):
        self.calls: List[HttpCall] = []
        self.script: Deque[Scripted] = deque()
        self.default = default or HttpResponse(status_code=200, body={})

    def respond(self, *items: Scripted) -> None:
        self.script.extend(items)

    async def request(self, call: HttpCall) -> HttpResponse:
        self.calls.append(call)
        if not self.script:
            return self.default
        item = self.script.popleft()
        if isinstance(item, Exception):
            raise item
        return item


class RecordingConversations:
    def __init__(self):
        self.assignments: List[Dict[str, Optional[str]]] = []
        self.failures: Deque[Exception] = deque()

    async def assign(
        self,
        conversation_id: Optional[str],
        agent_id: Optional[str],
        team_id: Optional[str],
    ) -> None:
        if self.failures:
            raise self.failures.popleft()
        self.assignments.append(
            {"conversation_id": conversation_id, "agent_id": agent_id, "team_id": team_id}
        )


class RecordingContacts:
    def __init__(self):
        self.updates: List[Dict[str, Any]] = []
        self.tags: Dict[Optional[str], List[str]] = {}
        self.fields: Dict[Optional[str], Dict[str, Any]] = {}
        self.failures: Deque[Exception] = deque()

    async def update_tags(self, contact_id: Optional[str], action: str, tags: List[str]) -> None:
        if self.failures:
            raise self.failures.popleft()
        self.updates.append({"contact_id": contact_id, "action": action, "tags": list(tags)})
        current = self.tags.setdefault(contact_id, [])
        if action == "remove":
            self.tags[contact_id] = [t for t in current if t not in tags]
        else:
            current.extend(t for t in tags if t not in current)

    async def update_fields(self, contact_id: Optional[str], fields: Dict[str, Any]) -> None:
        if self.failures:
            raise self.failures.popleft()
        self.updates.append({"contact_id": contact_id, "fields": dict(fields)})
        self.fields.setdefault(contact_id, {}).update(fields)


def recording_capabilities(http: Optional[RecordingHttp] = None) -> Capabilities:
    """A Capabilities bundle made of recording doubles."""
    return Capabilities(
        messaging=RecordingMessaging(),
        http=http or RecordingHttp(),
        conversations=RecordingConversations(),
        contacts=RecordingContacts(),
    )
