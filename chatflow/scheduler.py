"""Scheduler: owns execution lifecycle, claims, retries and timers.

The scheduler is the only writer of execution status. It drives executions
through the state machine

    pending -> running -> (waiting -> running)* -> completed | failed | cancelled

holding a versioned claim while running. Every step result is persisted
before the next step starts, so a process restart resumes from the last
persisted node (the sweep re-claims runs whose lease expired).

Transient failures are retried by parking the execution in ``waiting`` with a
``retry`` wake at ``now + backoff``; no worker is held while waiting.

Example:
    >>> scheduler = Scheduler(MemoryBackend(), StepExecutor(capabilities=caps))
    >>> execution_id = await scheduler.start_execution(flow.id, conversation_id="c1")
    >>> await scheduler.resume_execution(execution_id, WakeEvent.reply("42"))
    True
"""

import asyncio
import logging
import uuid
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from chatflow.backends.base import ExecutionStore
from chatflow.core.definition import FlowDefinition, ReentryPolicy
from chatflow.core.events import EventEmitter, EventType, ExecutionEvent
from chatflow.core.execution import (
    Execution,
    ExecutionStatus,
    PathEntry,
    PathOutcome,
    WakeCondition,
    WakeEvent,
    WakeKind,
)
from chatflow.executor import Advanced, Completed, Failed, StepExecutor, Suspended
from chatflow.utils.clock import Clock, SystemClock
from chatflow.utils.config import EngineSettings
from chatflow.utils.errors import (
    ClaimLostError,
    ExecutionNotFoundError,
    FlowNotFoundError,
    InvalidTransitionError,
)

logger = logging.getLogger(__name__)


class Scheduler:
    """Drives executions and owns their persistence.

    Without ``start()`` every dispatch runs inline in the caller's task, which
    is what tests and dry runs use. After ``start()`` work is handed to a pool
    of worker tasks and a periodic sweeper fires timers.
    """

    def __init__(
        self,
        store: ExecutionStore,
        executor: Optional[StepExecutor] = None,
        settings: Optional[EngineSettings] = None,
        clock: Optional[Clock] = None,
        events: Optional[EventEmitter] = None,
        worker_id: Optional[str] = None,
        flow_cache_size: int = 256,
    ):
        """Initialize scheduler.

        Args:
            store: Flow/execution persistence backend
            executor: Step executor (its clock and settings are reused if not given)
            settings: Engine settings
            clock: Time source
            events: Event emitter for lifecycle events
            worker_id: Identity recorded on claims
            flow_cache_size: Flow versions kept in memory, least recently used evicted first
        """
        self.store = store
        self.settings = settings or (executor.settings if executor else EngineSettings())
        self.clock = clock or (executor.clock if executor else SystemClock())
        self.executor = executor or StepExecutor(settings=self.settings, clock=self.clock)
        self.events = events or EventEmitter()
        self.worker_id = worker_id or f"worker-{uuid.uuid4().hex[:8]}"
        self._flows: "OrderedDict[str, FlowDefinition]" = OrderedDict()
        self._flow_cache_size = flow_cache_size
        self._queue: Optional[asyncio.Queue] = None
        self._tasks: List[asyncio.Task] = []

    # -- public operations -------------------------------------------------

    async def start_execution(
        self,
        flow_id: str,
        conversation_id: Optional[str] = None,
        contact_id: Optional[str] = None,
        initial_context: Optional[Dict[str, Any]] = None,
        dispatch: bool = True,
    ) -> Optional[str]:
        """Create a pending execution of an active flow and dispatch it.

        The flow's re-entry policy decides what happens when the conversation
        already has an active execution of the same flow lineage:

        - skip: nothing is created, returns None
        - queue: a pending execution is created behind the active one
        - restart: the active execution is cancelled (deferred if it is
          running) and the new one starts once it is gone

        Args:
            flow_id: Flow version to run
            conversation_id: Conversation the run belongs to
            contact_id: Contact the run belongs to
            initial_context: Seed context (trigger payload, contact fields)
            dispatch: Drive the execution right away

        Returns:
            The new execution id, or None if the start was skipped

        Raises:
            FlowNotFoundError: If the flow does not exist
            InvalidTransitionError: If the flow is not active
        """
        flow = await self.store.load_flow(flow_id)
        if flow is None:
            raise FlowNotFoundError(flow_id)
        if not flow.accepts_new_executions:
            raise InvalidTransitionError(
                f"Flow {flow_id} is {flow.status.value}; only active flows start executions"
            )

        execution = Execution.create(
            flow_id=flow.id,
            lineage_id=flow.lineage_id,
            tenant_id=flow.tenant_id,
            conversation_id=conversation_id,
            contact_id=contact_id,
            entry_node_id=flow.graph.resolve_entry(),
            initial_context=initial_context,
            now=self.clock.now(),
        )

        exclusive = conversation_id is not None
        inserted = await self.store.insert_execution(execution, exclusive=exclusive)
        if not inserted:
            inserted = await self._apply_reentry(flow, execution)
            if not inserted:
                return None

        logger.info(
            "Execution created",
            extra={
                "execution_id": execution.id,
                "flow_id": flow.id,
                "conversation_id": conversation_id,
                "queued_behind": execution.queued_behind,
            },
        )
        await self._emit(EventType.EXECUTION_START, execution)

        if dispatch and execution.queued_behind is None:
            await self.dispatch(execution.id)
        return execution.id

    async def resume_execution(self, execution_id: str, event: WakeEvent) -> bool:
        """Deliver a wake event to a waiting execution.

        A no-op (returns False) unless the execution is waiting and the event
        satisfies its wake condition. Delivery is an atomic claim, so of two
        concurrent resumes at most one succeeds.

        Raises:
            ExecutionNotFoundError: If the execution does not exist
        """
        execution = await self.get_execution(execution_id)
        return await self._resume(execution, event, self.clock.now())

    async def cancel_execution(self, execution_id: str) -> bool:
        """Cancel an execution.

        Pending and waiting executions are cancelled immediately. A running
        execution is flagged and cancelled at its next suspension point; if it
        reaches a terminal node first, that terminal status stands.

        Returns:
            False if the execution was already terminal

        Raises:
            ExecutionNotFoundError: If the execution does not exist
        """
        execution = await self.get_execution(execution_id)
        if execution.is_terminal:
            return False

        if execution.status in (ExecutionStatus.PENDING, ExecutionStatus.WAITING):
            try:
                await self._finish(execution, ExecutionStatus.CANCELLED)
                return True
            except ClaimLostError:
                # Claimed between load and save; fall through to a deferred cancel.
                pass

        await self.store.request_cancel(execution_id)
        logger.info("Cancel requested", extra={"execution_id": execution_id})
        return True

    async def get_execution(self, execution_id: str) -> Execution:
        """Load an execution.

        Raises:
            ExecutionNotFoundError: If the execution does not exist
        """
        execution = await self.store.load_execution(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(execution_id)
        return execution

    async def list_executions(
        self,
        conversation_id: Optional[str] = None,
        statuses: Optional[Iterable[ExecutionStatus]] = None,
    ) -> List[Execution]:
        """Executions of a conversation, oldest first."""
        return await self.store.list_executions(conversation_id=conversation_id, statuses=statuses)

    async def replay(self, execution_id: str) -> Dict[str, Any]:
        """Step-by-step view of an execution for debugging.

        Returns:
            Execution summary with one entry per path step, joined with the
            node labels of the flow version it ran
        """
        execution = await self.get_execution(execution_id)
        flow = await self.store.load_flow(execution.flow_id)

        steps = []
        for index, entry in enumerate(execution.execution_path):
            node = flow.graph.get_node(entry.node_id) if flow else None
            steps.append({
                "index": index,
                "node_id": entry.node_id,
                "node_type": entry.node_type,
                "label": node.display_name if node else entry.node_id,
                "outcome": entry.outcome.value,
                "edge": entry.edge,
                "attempt": entry.attempt,
                "error": entry.error,
                "warnings": entry.warnings,
                "detail": entry.detail,
                "entered_at": entry.entered_at.isoformat(),
                "exited_at": entry.exited_at.isoformat(),
                "duration_ms": int((entry.exited_at - entry.entered_at).total_seconds() * 1000),
            })

        return {
            "execution_id": execution.id,
            "flow_id": execution.flow_id,
            "flow_name": flow.name if flow else None,
            "flow_version": flow.version if flow else None,
            "status": execution.status.value,
            "current_node_id": execution.current_node_id,
            "context": execution.context,
            "error_message": execution.error_message,
            "created_at": execution.created_at.isoformat(),
            "completed_at": execution.completed_at.isoformat() if execution.completed_at else None,
            "steps": steps,
        }

    async def dispatch(self, execution_id: str) -> None:
        """Drive a pending execution: on a worker if the pool runs, else inline."""
        if self._queue is not None:
            self._queue.put_nowait(execution_id)
        else:
            await self.drive(execution_id)

    async def drive(self, execution_id: str) -> Optional[Execution]:
        """Claim a pending execution and step it until it suspends or ends.

        Returns:
            The execution as last persisted, or None if another worker holds it
        """
        execution = await self.get_execution(execution_id)
        if execution.status != ExecutionStatus.PENDING:
            return execution

        if await self._blocked(execution):
            return execution

        claimed = await self.store.claim(
            execution.id,
            execution.version,
            self.worker_id,
            self.clock.now(),
            from_statuses=[ExecutionStatus.PENDING],
        )
        if claimed is None:
            logger.info("Claim conflict", extra={"execution_id": execution_id})
            return None
        claimed.queued_behind = None
        return await self._run(claimed)

    async def sweep(self, now: Optional[datetime] = None) -> int:
        """Fire due timers, recover abandoned claims and dispatch orphaned runs.

        Args:
            now: Sweep time (defaults to the clock)

        Returns:
            Number of executions acted on
        """
        now = now or self.clock.now()
        acted = 0

        for execution in await self.store.due_wakes(now):
            if await self._resume(execution, WakeEvent.timer(now), now):
                acted += 1

        lease_expiry = now - timedelta(seconds=self.settings.claim_lease_seconds)
        for execution in await self.store.stale_claims(lease_expiry):
            logger.warning(
                "Recovering abandoned claim",
                extra={"execution_id": execution.id, "claimed_by": execution.claimed_by},
            )
            claimed = await self.store.claim(
                execution.id,
                execution.version,
                self.worker_id,
                now,
                from_statuses=[ExecutionStatus.RUNNING],
            )
            if claimed is None:
                continue
            await self._hand_off(claimed)
            acted += 1

        for execution in await self.store.list_pending():
            if await self._blocked(execution):
                continue
            await self.dispatch(execution.id)
            acted += 1

        return acted

    # -- worker pool -------------------------------------------------------

    async def start(self, workers: Optional[int] = None) -> None:
        """Start worker tasks and the periodic sweeper."""
        if self._queue is not None:
            return
        self._queue = asyncio.Queue()
        count = workers or self.settings.worker_count
        for index in range(count):
            self._tasks.append(asyncio.create_task(self._worker(index)))
        self._tasks.append(asyncio.create_task(self._sweeper()))
        logger.info("Scheduler started", extra={"workers": count, "worker_id": self.worker_id})

    async def stop(self) -> None:
        """Cancel worker tasks; claims they held are recovered by a later sweep."""
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        self._queue = None
        logger.info("Scheduler stopped", extra={"worker_id": self.worker_id})

    async def join(self) -> None:
        """Wait until every queued item has been processed."""
        if self._queue is not None:
            await self._queue.join()

    async def _worker(self, index: int) -> None:
        while True:
            item = await self._queue.get()
            try:
                if isinstance(item, Execution):
                    await self._run(item)
                else:
                    await self.drive(item)
            except Exception:
                logger.exception(
                    "Worker failed to process execution",
                    extra={
                        "worker": index,
                        "execution_id": item.id if isinstance(item, Execution) else item,
                    },
                )
            finally:
                self._queue.task_done()

    async def _sweeper(self) -> None:
        while True:
            try:
                await self.sweep()
            except Exception:
                logger.exception("Sweep failed", extra={"worker_id": self.worker_id})
            await self.clock.sleep(self.settings.sweep_interval_seconds)

    # -- internals ---------------------------------------------------------

    async def _apply_reentry(self, flow: FlowDefinition, execution: Execution) -> bool:
        """Handle a refused exclusive insert according to the flow's re-entry policy."""
        active = await self.store.find_active(flow.lineage_id, execution.conversation_id)
        policy = flow.reentry_policy

        if policy == ReentryPolicy.SKIP or not active:
            logger.info(
                "Trigger skipped; conversation already runs this flow",
                extra={"flow_id": flow.id, "conversation_id": execution.conversation_id},
            )
            return False

        if policy == ReentryPolicy.RESTART:
            for current in active:
                await self.cancel_execution(current.id)
            if await self.store.insert_execution(execution, exclusive=True):
                return True
            active = await self.store.find_active(flow.lineage_id, execution.conversation_id)
            if not active:
                return False

        execution.queued_behind = active[-1].id
        return await self.store.insert_execution(execution, exclusive=False)

    async def _resume(self, execution: Execution, event: WakeEvent, now: datetime) -> bool:
        if execution.status != ExecutionStatus.WAITING or execution.wake is None:
            return False
        if execution.wake.accepts(event, now) is None:
            return False

        claimed = await self.store.claim(
            execution.id,
            execution.version,
            self.worker_id,
            now,
            from_statuses=[ExecutionStatus.WAITING],
            pending_event=event,
        )
        if claimed is None:
            logger.info("Resume lost claim race", extra={"execution_id": execution.id})
            return False

        if claimed.wake.kind == WakeKind.RETRY:
            await self._emit(EventType.EXECUTION_RETRY, claimed, node_id=claimed.current_node_id)
        else:
            await self._emit(
                EventType.EXECUTION_RESUMED,
                claimed,
                node_id=claimed.current_node_id,
                metadata={"event": event.kind},
            )

        await self._hand_off(claimed)
        return True

    async def _hand_off(self, claimed: Execution) -> None:
        if self._queue is not None:
            self._queue.put_nowait(claimed)
        else:
            await self._run(claimed)

    async def _blocked(self, execution: Execution) -> bool:
        """True while a pending run must wait for its turn in the conversation."""
        if execution.queued_behind is not None:
            blocker = await self.store.load_execution(execution.queued_behind)
            if blocker is not None and not blocker.is_terminal:
                return True
        if execution.conversation_id is None:
            return False
        active = await self.store.find_active(execution.lineage_id, execution.conversation_id)
        return any(other.id != execution.id and other.status.is_active for other in active)

    async def _load_flow(self, flow_id: str) -> Optional[FlowDefinition]:
        # Graphs of runnable versions never change; counters are not read here.
        if flow_id in self._flows:
            self._flows.move_to_end(flow_id)
            return self._flows[flow_id]

        flow = await self.store.load_flow(flow_id)
        if flow is None:
            return None
        self._flows[flow_id] = flow
        while len(self._flows) > self._flow_cache_size:
            self._flows.popitem(last=False)
        return flow

    async def _run(self, execution: Execution) -> Optional[Execution]:
        """Step a claimed execution until it suspends, ends or loses its claim."""
        flow = await self._load_flow(execution.flow_id)
        if flow is None:
            return await self._finish(
                execution, ExecutionStatus.FAILED, error=str(FlowNotFoundError(execution.flow_id))
            )

        try:
            for _ in range(self.settings.max_steps_per_claim):
                node_id = execution.current_node_id
                node = flow.graph.get_node(node_id) if node_id else None
                node_type = node.type if node else None
                await self._emit(EventType.NODE_START, execution, node_id=node_id, node_type=node_type)

                result = await self.executor.step(execution, flow)

                if isinstance(result, Failed):
                    await self._emit(
                        EventType.NODE_ERROR, execution,
                        node_id=node_id, node_type=node_type, error=result.error,
                    )
                    return await self._failed(execution, result, node_id)

                await self._emit(EventType.NODE_COMPLETE, execution, node_id=node_id, node_type=node_type)

                if isinstance(result, Advanced):
                    execution.attempts = 0
                    await self._persist(execution)
                    continue

                if isinstance(result, Suspended):
                    execution.attempts = 0
                    return await self._park(execution)

                if isinstance(result, Completed):
                    return await self._finish(execution, ExecutionStatus.COMPLETED)

            return await self._finish(
                execution,
                ExecutionStatus.FAILED,
                error=f"Exceeded {self.settings.max_steps_per_claim} steps without suspending",
            )
        except ClaimLostError:
            logger.warning(
                "Claim lost while driving execution",
                extra={"execution_id": execution.id, "worker_id": self.worker_id},
            )
            return None

    async def _failed(self, execution: Execution, result: Failed, node_id: Optional[str]) -> Execution:
        if result.retryable:
            execution.attempts += 1
            if execution.attempts < self.settings.max_attempts:
                delay = self.settings.retry_delay(execution.attempts)
                execution.wake = WakeCondition(
                    kind=WakeKind.RETRY,
                    node_id=node_id,
                    deadline=self.clock.now() + timedelta(seconds=delay),
                )
                logger.warning(
                    "Transient failure, retry scheduled",
                    extra={
                        "execution_id": execution.id,
                        "node_id": node_id,
                        "attempt": execution.attempts,
                        "retry_in_seconds": delay,
                    },
                )
                return await self._park(execution)
            error = f"{result.error} (gave up after {execution.attempts} attempts)"
        else:
            error = result.error
        return await self._finish(execution, ExecutionStatus.FAILED, error=error)

    async def _park(self, execution: Execution) -> Execution:
        """Release the claim at a suspension point, applying a pending cancel."""
        if await self.store.cancel_requested(execution.id):
            return await self._finish(execution, ExecutionStatus.CANCELLED)

        execution.status = ExecutionStatus.WAITING
        execution.claimed_by = None
        execution.claimed_at = None
        await self._persist(execution)
        await self._emit(
            EventType.EXECUTION_WAITING,
            execution,
            node_id=execution.current_node_id,
            metadata={"wake": execution.wake.to_dict()},
        )
        return execution

    async def _finish(
        self,
        execution: Execution,
        status: ExecutionStatus,
        error: Optional[str] = None,
    ) -> Execution:
        """Persist a terminal transition, update counters and promote queued runs."""
        now = self.clock.now()
        if not execution.execution_path:
            # Ended before its first step
            node_id = execution.current_node_id or execution.entry_node_id
            flow = await self._load_flow(execution.flow_id)
            node = flow.graph.get_node(node_id) if flow and node_id else None
            outcome = PathOutcome.CANCELLED if status == ExecutionStatus.CANCELLED else PathOutcome.FAILED
            execution.append_path(
                PathEntry(
                    node_id=node_id or "",
                    node_type=node.type if node else "unknown",
                    entered_at=now,
                    exited_at=now,
                    outcome=outcome,
                    error=error,
                )
            )

        execution.status = status
        execution.current_node_id = None
        execution.completed_at = now
        execution.error_message = error
        execution.wake = None
        execution.pending_event = None
        execution.claimed_by = None
        execution.claimed_at = None
        await self._persist(execution)

        try:
            await self.store.increment_flow_counters(
                execution.flow_id,
                executions=1,
                successes=1 if status == ExecutionStatus.COMPLETED else 0,
                failures=1 if status == ExecutionStatus.FAILED else 0,
            )
        except FlowNotFoundError:
            logger.warning(
                "Flow missing, counters not updated",
                extra={"execution_id": execution.id, "flow_id": execution.flow_id},
            )

        log = logger.warning if status == ExecutionStatus.FAILED else logger.info
        log(
            "Execution finished",
            extra={
                "execution_id": execution.id,
                "flow_id": execution.flow_id,
                "status": status.value,
                "error": error,
                "steps": len(execution.execution_path),
            },
        )

        event_type = {
            ExecutionStatus.COMPLETED: EventType.EXECUTION_COMPLETE,
            ExecutionStatus.FAILED: EventType.EXECUTION_FAILED,
            ExecutionStatus.CANCELLED: EventType.EXECUTION_CANCELLED,
        }[status]
        await self._emit(event_type, execution, error=error)

        await self._promote_queued(execution)
        return execution

    async def _promote_queued(self, finished: Execution) -> None:
        queued = [
            e for e in await self.store.list_executions(
                conversation_id=finished.conversation_id,
                statuses=[ExecutionStatus.PENDING],
            )
            if e.queued_behind == finished.id
        ]
        for execution in queued:
            if finished.queued_behind is not None:
                # Cancelled while still queued; followers inherit its place
                execution.queued_behind = finished.queued_behind
                try:
                    await self._persist(execution)
                except ClaimLostError:
                    continue
            await self.dispatch(execution.id)

    async def _persist(self, execution: Execution) -> Execution:
        execution.check_invariants()
        return await self.store.save_execution(execution, execution.version)

    async def _emit(
        self,
        event_type: EventType,
        execution: Execution,
        node_id: Optional[str] = None,
        node_type: Optional[str] = None,
        error: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        await self.events.emit(
            ExecutionEvent(
                type=event_type,
                execution_id=execution.id,
                flow_id=execution.flow_id,
                node_id=node_id,
                node_type=node_type,
                error=error,
                timestamp=self.clock.now(),
                metadata=metadata or {},
            )
        )
