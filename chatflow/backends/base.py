"""Base protocol for flow and execution persistence backends.

Every write to an execution is a compare-and-set on its ``version``: the
backend only applies it when the stored version still equals the version the
writer read, then bumps it. This single rule gives the scheduler its
guarantees:

- at most one worker holds the running claim of an execution
- a wake event is delivered at most once
- a conversation runs at most one active execution per flow lineage
  (``insert_execution(exclusive=True)``)

The cancel-request flag is the one field written outside the version check,
so a cancel never fights with the claim holder.
"""

from datetime import datetime
from typing import Iterable, List, Optional, Protocol, runtime_checkable

from chatflow.core.definition import FlowDefinition, FlowStatus
from chatflow.core.execution import Execution, ExecutionStatus, WakeEvent

ACTIVE_STATUSES = (ExecutionStatus.PENDING, ExecutionStatus.RUNNING, ExecutionStatus.WAITING)


@runtime_checkable
class ExecutionStore(Protocol):
    """Protocol for flow/execution storage backends."""

    async def save_flow(self, flow: FlowDefinition) -> None:
        """Insert or replace a flow definition (counters are left untouched on update)."""
        ...

    async def load_flow(self, flow_id: str) -> Optional[FlowDefinition]:
        """Load a flow definition, or None if not found."""
        ...

    async def list_flows(
        self,
        tenant_id: Optional[str] = None,
        status: Optional[FlowStatus] = None,
        lineage_id: Optional[str] = None,
    ) -> List[FlowDefinition]:
        """List flows, oldest first, filtered by tenant, status and lineage."""
        ...

    async def increment_flow_counters(
        self,
        flow_id: str,
        executions: int = 0,
        successes: int = 0,
        failures: int = 0,
    ) -> None:
        """Atomically add to a flow's analytics counters."""
        ...

    async def insert_execution(self, execution: Execution, exclusive: bool = True) -> bool:
        """Insert a new execution.

        Args:
            execution: Execution to insert
            exclusive: Refuse the insert if the conversation already has an
                active (pending/running/waiting) execution of the same lineage

        Returns:
            True if inserted, False if refused
        """
        ...

    async def load_execution(self, execution_id: str) -> Optional[Execution]:
        """Load an execution, or None if not found."""
        ...

    async def save_execution(self, execution: Execution, expected_version: int) -> Execution:
        """Persist an execution if the stored version equals ``expected_version``.

        The stored (and returned) execution carries ``expected_version + 1``.

        Raises:
            ClaimLostError: If the stored version moved
        """
        ...

    async def claim(
        self,
        execution_id: str,
        expected_version: int,
        worker_id: str,
        now: datetime,
        from_statuses: Iterable[ExecutionStatus],
        pending_event: Optional[WakeEvent] = None,
    ) -> Optional[Execution]:
        """Atomically move an execution to ``running`` under ``worker_id``.

        Succeeds only if the stored version equals ``expected_version`` and the
        status is one of ``from_statuses``. ``pending_event`` is stored in the
        same write. Claiming a pending run places it on its entry node.

        Returns:
            The claimed execution, or None if another writer got there first
        """
        ...

    async def find_active(self, lineage_id: str, conversation_id: Optional[str]) -> List[Execution]:
        """Active executions of a lineage for a conversation, oldest first."""
        ...

    async def list_executions(
        self,
        conversation_id: Optional[str] = None,
        statuses: Optional[Iterable[ExecutionStatus]] = None,
        flow_id: Optional[str] = None,
    ) -> List[Execution]:
        """List executions, oldest first."""
        ...

    async def due_wakes(self, now: datetime) -> List[Execution]:
        """Waiting executions whose wake deadline is at or before ``now``."""
        ...

    async def stale_claims(self, before: datetime) -> List[Execution]:
        """Running executions claimed before ``before``."""
        ...

    async def list_pending(self) -> List[Execution]:
        """Pending executions, oldest first."""
        ...

    async def request_cancel(self, execution_id: str) -> None:
        """Flag an execution for cancellation without touching its version."""
        ...

    async def cancel_requested(self, execution_id: str) -> bool:
        """Whether a cancel was requested for an execution."""
        ...
