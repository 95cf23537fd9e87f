"""Durable record of one flow run.

An Execution is exclusively written by the scheduler while it holds the claim
and is otherwise read-only (analytics, replay). Serialization follows the
``to_dict``/``from_dict`` contract: a reloaded execution compares equal to the
one that was saved.
"""

import copy
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from chatflow.utils.errors import InvalidTransitionError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _dt(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    WAITING = "waiting"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        return self in (ExecutionStatus.RUNNING, ExecutionStatus.WAITING)


TERMINAL_STATUSES = frozenset(
    {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED}
)
CLAIMABLE_STATUSES = frozenset({ExecutionStatus.PENDING, ExecutionStatus.WAITING})


class PathOutcome(str, Enum):
    ADVANCED = "advanced"
    SUSPENDED = "suspended"
    RESUMED = "resumed"
    TIMED_OUT = "timed_out"
    COMPLETED = "completed"
    TRANSIENT_FAILURE = "transient_failure"
    FAILED = "failed"
    CANCELLED = "cancelled"


class WakeKind(str, Enum):
    REPLY = "reply"
    BUTTON = "button"
    TIMER = "timer"
    RETRY = "retry"


@dataclass
class WakeEvent:
    """An event delivered to a waiting execution.

    Attributes:
        kind: "reply", "button" or "timer"
        text: Reply text (reply events)
        button_id: Selected button (button events)
        payload: Extra data merged into the context on resume
        event_id: Caller supplied id, useful for de-duplication in logs
        occurred_at: When the event happened
    """

    kind: str
    text: Optional[str] = None
    button_id: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    occurred_at: datetime = field(default_factory=utcnow)

    @classmethod
    def reply(cls, text: str, **kwargs: Any) -> "WakeEvent":
        return cls(kind="reply", text=text, **kwargs)

    @classmethod
    def button(cls, button_id: str, **kwargs: Any) -> "WakeEvent":
        return cls(kind="button", button_id=button_id, **kwargs)

    @classmethod
    def timer(cls, occurred_at: Optional[datetime] = None) -> "WakeEvent":
        return cls(kind="timer", occurred_at=occurred_at or utcnow())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "text": self.text,
            "button_id": self.button_id,
            "payload": self.payload,
            "event_id": self.event_id,
            "occurred_at": _iso(self.occurred_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WakeEvent":
        return cls(
            kind=data["kind"],
            text=data.get("text"),
            button_id=data.get("button_id"),
            payload=data.get("payload") or {},
            event_id=data.get("event_id") or str(uuid.uuid4()),
            occurred_at=_dt(data.get("occurred_at")) or utcnow(),
        )


@dataclass
class WakeCondition:
    """The predicate or deadline that ends a waiting suspension.

    Attributes:
        kind: What the execution waits for
        node_id: Node that registered the wait
        deadline: Timer fire time, or the timeout of a reply/button wait
        expected: Accepted button ids (button waits)
        titles: Button id -> title, so typed replies can select a button
    """

    kind: WakeKind
    node_id: str
    deadline: Optional[datetime] = None
    expected: List[str] = field(default_factory=list)
    titles: Dict[str, str] = field(default_factory=dict)

    def is_due(self, now: datetime) -> bool:
        return self.deadline is not None and now >= self.deadline

    def accepts(self, event: WakeEvent, now: datetime) -> Optional[str]:
        """Decide whether an event ends this wait.

        Returns:
            How the wait resolves ("received", "button", "timeout", "timer",
            "retry"), or None if the event does not satisfy it
        """
        if event.kind == "timer":
            if not self.is_due(now):
                return None
            if self.kind in (WakeKind.REPLY, WakeKind.BUTTON):
                return "timeout"
            return self.kind.value

        if self.kind == WakeKind.REPLY and event.kind == "reply":
            return "received"

        if self.kind == WakeKind.BUTTON:
            if self.match_button(event) is not None:
                return "button"

        return None

    def match_button(self, event: WakeEvent) -> Optional[str]:
        """Resolve a button or typed reply to one of the expected button ids."""
        if event.kind == "button" and event.button_id in self.expected:
            return event.button_id
        if event.kind == "reply" and event.text:
            typed = event.text.strip().lower()
            for button_id in self.expected:
                title = self.titles.get(button_id, "")
                if typed == button_id.lower() or (title and typed == title.strip().lower()):
                    return button_id
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "node_id": self.node_id,
            "deadline": _iso(self.deadline),
            "expected": list(self.expected),
            "titles": dict(self.titles),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WakeCondition":
        return cls(
            kind=WakeKind(data["kind"]),
            node_id=data["node_id"],
            deadline=_dt(data.get("deadline")),
            expected=list(data.get("expected") or []),
            titles=dict(data.get("titles") or {}),
        )


@dataclass
class PathEntry:
    """One step in the audit trail. Never mutated after it is appended."""

    node_id: str
    node_type: str
    entered_at: datetime
    exited_at: datetime
    outcome: PathOutcome
    edge: Optional[str] = None
    attempt: int = 1
    error: Optional[str] = None
    warnings: List[Dict[str, Any]] = field(default_factory=list)
    detail: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "node_id": self.node_id,
            "node_type": self.node_type,
            "entered_at": _iso(self.entered_at),
            "exited_at": _iso(self.exited_at),
            "outcome": self.outcome.value,
            "edge": self.edge,
            "attempt": self.attempt,
            "error": self.error,
            "warnings": self.warnings,
            "detail": self.detail,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PathEntry":
        return cls(
            node_id=data["node_id"],
            node_type=data["node_type"],
            entered_at=_dt(data["entered_at"]),
            exited_at=_dt(data["exited_at"]),
            outcome=PathOutcome(data["outcome"]),
            edge=data.get("edge"),
            attempt=data.get("attempt", 1),
            error=data.get("error"),
            warnings=list(data.get("warnings") or []),
            detail=dict(data.get("detail") or {}),
        )


@dataclass
class Execution:
    """One run of a flow version for a conversation/contact.

    Attributes:
        id: Execution identifier
        flow_id: Exact flow version this run is pinned to
        lineage_id: Flow lineage, for the one-active-run-per-conversation rule
        tenant_id: Owning tenant
        conversation_id: Conversation driven by the run
        contact_id: Contact, if the run is contact-scoped
        status: Position in the pending/running/waiting/terminal state machine
        current_node_id: Node awaiting a step; None while pending and once terminal
        entry_node_id: Node the first claim starts from
        context: Accumulated key/value environment (append/overwrite only)
        execution_path: Append-only audit trail
        error_message: User-visible failure reason (terminal only)
        completed_at: Terminal transition time
        version: Optimistic concurrency token, bumped on every write
        claimed_by: Worker holding the running claim
        claimed_at: When the claim was taken
        wake: Registered wake condition while waiting
        pending_event: Wake event to be consumed by the next step
        attempts: Transient-failure attempts on the current node
        queued_behind: Execution this queued run waits for
    """

    id: str
    flow_id: str
    lineage_id: str
    tenant_id: str
    conversation_id: Optional[str]
    contact_id: Optional[str] = None
    status: ExecutionStatus = ExecutionStatus.PENDING
    current_node_id: Optional[str] = None
    entry_node_id: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)
    execution_path: List[PathEntry] = field(default_factory=list)
    error_message: Optional[str] = None
    completed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    version: int = 0
    claimed_by: Optional[str] = None
    claimed_at: Optional[datetime] = None
    wake: Optional[WakeCondition] = None
    pending_event: Optional[WakeEvent] = None
    attempts: int = 0
    queued_behind: Optional[str] = None

    @classmethod
    def create(
        cls,
        flow_id: str,
        lineage_id: str,
        tenant_id: str,
        conversation_id: Optional[str],
        contact_id: Optional[str],
        entry_node_id: str,
        initial_context: Optional[Dict[str, Any]] = None,
        queued_behind: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> "Execution":
        """Create a new pending execution with an auto-generated id."""
        now = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            flow_id=flow_id,
            lineage_id=lineage_id,
            tenant_id=tenant_id,
            conversation_id=conversation_id,
            contact_id=contact_id,
            status=ExecutionStatus.PENDING,
            entry_node_id=entry_node_id,
            context=copy.deepcopy(initial_context) if initial_context else {},
            created_at=now,
            updated_at=now,
            queued_behind=queued_behind,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def merge_context(self, patch: Dict[str, Any]) -> None:
        """Overwrite/append keys; keys are never removed mid-run."""
        for key, value in patch.items():
            self.context[key] = copy.deepcopy(value)

    def append_path(self, entry: PathEntry) -> None:
        self.execution_path.append(entry)

    def mark_claimed(
        self, worker_id: str, now: datetime, pending_event: Optional[WakeEvent] = None
    ) -> None:
        """Apply a claim: running, owned by ``worker_id``, positioned on a node.

        A pending run has no current node yet; the first claim places it on
        the entry node.
        """
        if self.status == ExecutionStatus.PENDING and self.current_node_id is None:
            self.current_node_id = self.entry_node_id
        self.status = ExecutionStatus.RUNNING
        self.claimed_by = worker_id
        self.claimed_at = now
        if pending_event is not None:
            self.pending_event = pending_event

    def check_invariants(self) -> None:
        """Raise InvalidTransitionError if status and node/timestamps disagree."""
        if self.status.is_active and self.current_node_id is None:
            raise InvalidTransitionError(
                f"Execution {self.id} is {self.status.value} without a current node"
            )
        if self.status == ExecutionStatus.PENDING:
            if self.current_node_id is not None:
                raise InvalidTransitionError(
                    f"Execution {self.id} is pending but already at node {self.current_node_id}"
                )
            return
        if self.status.is_terminal:
            if self.current_node_id is not None:
                raise InvalidTransitionError(
                    f"Execution {self.id} is {self.status.value} but still points at "
                    f"node {self.current_node_id}"
                )
            if self.completed_at is None:
                raise InvalidTransitionError(
                    f"Execution {self.id} is {self.status.value} without completed_at"
                )
        if self.status == ExecutionStatus.WAITING and self.wake is None:
            raise InvalidTransitionError(f"Execution {self.id} is waiting without a wake condition")
        if not self.execution_path:
            raise InvalidTransitionError(f"Execution {self.id} is {self.status.value} without a path entry")

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a JSON-safe dictionary for storage."""
        return {
            "id": self.id,
            "flow_id": self.flow_id,
            "lineage_id": self.lineage_id,
            "tenant_id": self.tenant_id,
            "conversation_id": self.conversation_id,
            "contact_id": self.contact_id,
            "status": self.status.value,
            "current_node_id": self.current_node_id,
            "entry_node_id": self.entry_node_id,
            "context": self.context,
            "execution_path": [entry.to_dict() for entry in self.execution_path],
            "error_message": self.error_message,
            "completed_at": _iso(self.completed_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "version": self.version,
            "claimed_by": self.claimed_by,
            "claimed_at": _iso(self.claimed_at),
            "wake": self.wake.to_dict() if self.wake else None,
            "pending_event": self.pending_event.to_dict() if self.pending_event else None,
            "attempts": self.attempts,
            "queued_behind": self.queued_behind,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Execution":
        """Deserialize from dictionary."""
        return cls(
            id=data["id"],
            flow_id=data["flow_id"],
            lineage_id=data["lineage_id"],
            tenant_id=data["tenant_id"],
            conversation_id=data.get("conversation_id"),
            contact_id=data.get("contact_id"),
            status=ExecutionStatus(data["status"]),
            current_node_id=data.get("current_node_id"),
            entry_node_id=data.get("entry_node_id"),
            context=data.get("context") or {},
            execution_path=[PathEntry.from_dict(e) for e in data.get("execution_path") or []],
            error_message=data.get("error_message"),
            completed_at=_dt(data.get("completed_at")),
            created_at=_dt(data.get("created_at")) or utcnow(),
            updated_at=_dt(data.get("updated_at")) or utcnow(),
            version=data.get("version", 0),
            claimed_by=data.get("claimed_by"),
            claimed_at=_dt(data.get("claimed_at")),
            wake=WakeCondition.from_dict(data["wake"]) if data.get("wake") else None,
            pending_event=WakeEvent.from_dict(data["pending_event"]) if data.get("pending_event") else None,
            attempts=data.get("attempts", 0),
            queued_behind=data.get("queued_behind"),
        )

    def copy(self) -> "Execution":
        """Deep copy, used by backends to avoid sharing mutable state."""
        return Execution.from_dict(copy.deepcopy(self.to_dict()))
