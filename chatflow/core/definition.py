"""Versioned flow definitions and their trigger configuration."""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from chatflow.core.graph import FlowGraph


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FlowStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    ARCHIVED = "archived"


class ReentryPolicy(str, Enum):
    """What a new trigger does when the conversation already runs this flow.

    - SKIP: drop the trigger
    - QUEUE: create a pending run that starts after the active one finishes
    - RESTART: cancel the active run and start over
    """

    SKIP = "skip"
    QUEUE = "queue"
    RESTART = "restart"


class TriggerType(str, Enum):
    KEYWORD = "keyword"
    NEW_CONVERSATION = "new_conversation"
    MANUAL = "manual"
    WEBHOOK = "webhook"


class TriggerConfig(BaseModel):
    """Structured predicate describing which inbound events start a flow.

    Attributes:
        type: Trigger family
        keywords: Keywords for KEYWORD triggers
        match_mode: "word" (word boundary, default), "exact" or "contains"
        case_sensitive: Keyword comparison case sensitivity
        conditions: Payload equality map for WEBHOOK triggers
    """

    type: TriggerType = TriggerType.MANUAL
    keywords: List[str] = Field(default_factory=list)
    match_mode: str = "word"
    case_sensitive: bool = False
    conditions: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        populate_by_name = True

    @classmethod
    def parse(cls, raw: Optional[Dict[str, Any]]) -> Optional["TriggerConfig"]:
        """Build from stored JSON; ``welcome`` is accepted for new-conversation triggers."""
        if raw is None:
            return None
        data = dict(raw)
        if data.get("type") == "welcome":
            data["type"] = TriggerType.NEW_CONVERSATION.value
        return cls(**data)


class FlowDefinition(BaseModel):
    """One immutable version of a flow.

    A new version is a new row linked to its predecessor via
    ``parent_flow_id``; all versions share ``lineage_id`` (the id of version 1).
    At most one version per lineage is ACTIVE.

    The counters are eventually-consistent analytics, written by the scheduler
    on terminal transitions and never read for control decisions.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    tenant_id: str
    name: str
    description: Optional[str] = None
    graph: FlowGraph
    trigger_config: Optional[TriggerConfig] = None
    status: FlowStatus = FlowStatus.DRAFT
    version: int = 1
    parent_flow_id: Optional[str] = None
    lineage_id: Optional[str] = None
    reentry_policy: ReentryPolicy = ReentryPolicy.SKIP
    execution_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    class Config:
        populate_by_name = True

    def model_post_init(self, __context: Any) -> None:
        if self.lineage_id is None:
            self.lineage_id = self.id

    @property
    def accepts_new_executions(self) -> bool:
        return self.status == FlowStatus.ACTIVE

    @property
    def success_rate(self) -> float:
        if self.execution_count <= 0:
            return 0.0
        return self.success_count / self.execution_count * 100

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for storage (JSON-safe)."""
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FlowDefinition":
        data = dict(data)
        if isinstance(data.get("trigger_config"), dict):
            data["trigger_config"] = TriggerConfig.parse(data["trigger_config"])
        return cls.model_validate(data)
