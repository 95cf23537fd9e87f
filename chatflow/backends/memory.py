"""In-memory backend for testing and development.

All operations run under one asyncio.Lock, which makes every compare-and-set
atomic within the event loop. State is lost when the process terminates.
"""

import asyncio
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set

from chatflow.backends.base import ACTIVE_STATUSES
from chatflow.core.definition import FlowDefinition, FlowStatus, utcnow
from chatflow.core.execution import Execution, ExecutionStatus, WakeEvent
from chatflow.utils.errors import ClaimLostError, FlowNotFoundError


class MemoryBackend:
    """In-memory flow and execution storage.

    Useful for:
    - Testing
    - Development
    - Dry runs (``simulate_flow``)
    """

    def __init__(self):
        """Initialize memory backend with empty storage."""
        self._flows: Dict[str, FlowDefinition] = {}
        self._executions: Dict[str, Execution] = {}
        self._cancel_requests: Set[str] = set()
        self._lock = asyncio.Lock()

    # -- flows -------------------------------------------------------------

    async def save_flow(self, flow: FlowDefinition) -> None:
        async with self._lock:
            stored = flow.model_copy(deep=True)
            existing = self._flows.get(flow.id)
            if existing is not None:
                stored.execution_count = existing.execution_count
                stored.success_count = existing.success_count
                stored.failure_count = existing.failure_count
            self._flows[flow.id] = stored

    async def load_flow(self, flow_id: str) -> Optional[FlowDefinition]:
        async with self._lock:
            flow = self._flows.get(flow_id)
            return flow.model_copy(deep=True) if flow is not None else None

    async def list_flows(
        self,
        tenant_id: Optional[str] = None,
        status: Optional[FlowStatus] = None,
        lineage_id: Optional[str] = None,
    ) -> List[FlowDefinition]:
        async with self._lock:
            flows = [
                flow.model_copy(deep=True)
                for flow in self._flows.values()
                if (tenant_id is None or flow.tenant_id == tenant_id)
                and (status is None or flow.status == status)
                and (lineage_id is None or flow.lineage_id == lineage_id)
            ]
        return sorted(flows, key=lambda f: (f.created_at, f.version))

    async def increment_flow_counters(
        self,
        flow_id: str,
        executions: int = 0,
        successes: int = 0,
        failures: int = 0,
    ) -> None:
        async with self._lock:
            flow = self._flows.get(flow_id)
            if flow is None:
                raise FlowNotFoundError(flow_id)
            flow.execution_count += executions
            flow.success_count += successes
            flow.failure_count += failures
            flow.updated_at = utcnow()

    # -- executions --------------------------------------------------------

    def _active(self, lineage_id: str, conversation_id: Optional[str]) -> List[Execution]:
        return [
            e for e in self._executions.values()
            if e.lineage_id == lineage_id
            and e.conversation_id == conversation_id
            and e.status in ACTIVE_STATUSES
        ]

    async def insert_execution(self, execution: Execution, exclusive: bool = True) -> bool:
        async with self._lock:
            if execution.id in self._executions:
                return False
            if exclusive and self._active(execution.lineage_id, execution.conversation_id):
                return False
            self._executions[execution.id] = execution.copy()
            return True

    async def load_execution(self, execution_id: str) -> Optional[Execution]:
        async with self._lock:
            execution = self._executions.get(execution_id)
            return execution.copy() if execution is not None else None

    async def save_execution(self, execution: Execution, expected_version: int) -> Execution:
        async with self._lock:
            stored = self._executions.get(execution.id)
            if stored is None or stored.version != expected_version:
                raise ClaimLostError(execution.id, expected_version)
            execution.version = expected_version + 1
            execution.updated_at = utcnow()
            self._executions[execution.id] = execution.copy()
            return execution

    async def claim(
        self,
        execution_id: str,
        expected_version: int,
        worker_id: str,
        now: datetime,
        from_statuses: Iterable[ExecutionStatus],
        pending_event: Optional[WakeEvent] = None,
    ) -> Optional[Execution]:
        async with self._lock:
            stored = self._executions.get(execution_id)
            if (
                stored is None
                or stored.version != expected_version
                or stored.status not in set(from_statuses)
            ):
                return None
            stored.mark_claimed(worker_id, now, pending_event)
            stored.version += 1
            stored.updated_at = utcnow()
            return stored.copy()

    async def find_active(self, lineage_id: str, conversation_id: Optional[str]) -> List[Execution]:
        async with self._lock:
            found = [e.copy() for e in self._active(lineage_id, conversation_id)]
        return sorted(found, key=lambda e: e.created_at)

    async def list_executions(
        self,
        conversation_id: Optional[str] = None,
        statuses: Optional[Iterable[ExecutionStatus]] = None,
        flow_id: Optional[str] = None,
    ) -> List[Execution]:
        wanted = set(statuses) if statuses is not None else None
        async with self._lock:
            found = [
                e.copy() for e in self._executions.values()
                if (conversation_id is None or e.conversation_id == conversation_id)
                and (wanted is None or e.status in wanted)
                and (flow_id is None or e.flow_id == flow_id)
            ]
        return sorted(found, key=lambda e: e.created_at)

    async def due_wakes(self, now: datetime) -> List[Execution]:
        async with self._lock:
            found = [
                e.copy() for e in self._executions.values()
                if e.status == ExecutionStatus.WAITING
                and e.wake is not None
                and e.wake.is_due(now)
            ]
        return sorted(found, key=lambda e: e.wake.deadline)

    async def stale_claims(self, before: datetime) -> List[Execution]:
        async with self._lock:
            return [
                e.copy() for e in self._executions.values()
                if e.status == ExecutionStatus.RUNNING
                and e.claimed_at is not None
                and e.claimed_at < before
            ]

    async def list_pending(self) -> List[Execution]:
        return await self.list_executions(statuses=[ExecutionStatus.PENDING])

    async def request_cancel(self, execution_id: str) -> None:
        async with self._lock:
            self._cancel_requests.add(execution_id)

    async def cancel_requested(self, execution_id: str) -> bool:
        async with self._lock:
            return execution_id in self._cancel_requests

    def clear_all(self) -> None:
        """Clear all stored state.

        Useful for testing and cleanup.
        """
        self._flows.clear()
        self._executions.clear()
        self._cancel_requests.clear()

    def __repr__(self) -> str:
        return f"MemoryBackend(flows={len(self._flows)}, executions={len(self._executions)})"
