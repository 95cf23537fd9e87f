"""Step executor: advances one execution by exactly one node.

The executor asks the NodeRegistry for the current node's effect, performs it
through the capabilities and reports the outcome as a StepResult. It mutates
the in-memory execution it was given (context, path, current node, wake) but
never persists and never decides about retries: that is the scheduler's job.

Contract of ``step()``:
- performs at most one node's effect
- appends exactly one PathEntry, failed attempts included
- wraps every external call in ``asyncio.wait_for`` with the configured timeout
- never raises; every problem comes back as ``Failed``
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Dict, List, Optional, Tuple, Union

from chatflow.capabilities import Capabilities, HttpResponse
from chatflow.core.definition import FlowDefinition
from chatflow.core.effects import (
    AssignConversation,
    Branch,
    CallExternal,
    HttpCall,
    Mutate,
    OutboundMessage,
    Send,
    SuspendUntil,
    Terminate,
    UpdateContactFields,
    UpdateContactTags,
)
from chatflow.core.execution import Execution, PathEntry, PathOutcome, WakeCondition, WakeKind
from chatflow.core.graph import FlowNode
from chatflow.nodes.base import NodeSpec
from chatflow.nodes.registry import NodeRegistry, default_registry
from chatflow.utils.clock import Clock, SystemClock
from chatflow.utils.config import EngineSettings
from chatflow.utils.errors import (
    ChatflowError,
    ConditionEvaluationWarning,
    ExternalCallError,
    GraphCorruption,
    TransientExternalFailure,
)
from chatflow.utils.variables import extract_jsonpath

logger = logging.getLogger(__name__)

TRANSIENT = "transient"
EXTERNAL = "external"
GRAPH_CORRUPTION = "graph_corruption"
NODE_ERROR = "node_error"


@dataclass(frozen=True)
class Advanced:
    node_id: str


@dataclass(frozen=True)
class Suspended:
    wake: WakeCondition


@dataclass(frozen=True)
class Completed:
    outcome: str = "completed"


@dataclass(frozen=True)
class Failed:
    """A step that could not complete.

    Attributes:
        error: Human readable reason
        retryable: Transient failure the scheduler may retry
        kind: "transient", "external", "graph_corruption" or "node_error"
    """

    error: str
    retryable: bool = False
    kind: str = EXTERNAL


StepResult = Union[Advanced, Suspended, Completed, Failed]


@dataclass
class _Step:
    """Bookkeeping for the step in progress."""

    execution: Execution
    flow: FlowDefinition
    node: FlowNode
    spec: NodeSpec
    entered_at: datetime
    attempt: int
    resuming: bool
    warnings: List[Dict[str, Any]] = field(default_factory=list)


class StepExecutor:
    """Performs one node step of an execution.

    Example:
        >>> executor = StepExecutor(capabilities=caps)
        >>> result = await executor.step(execution, flow)
        >>> isinstance(result, Advanced)
        True
    """

    def __init__(
        self,
        registry: Optional[NodeRegistry] = None,
        capabilities: Optional[Capabilities] = None,
        settings: Optional[EngineSettings] = None,
        clock: Optional[Clock] = None,
    ):
        """Initialize executor.

        Args:
            registry: Node registry (built-in node types by default)
            capabilities: External capabilities used by effects
            settings: Engine settings (timeouts)
            clock: Time source
        """
        self.registry = registry or default_registry()
        self.capabilities = capabilities
        self.settings = settings or EngineSettings()
        self.clock = clock or SystemClock()

    async def step(self, execution: Execution, flow: FlowDefinition) -> StepResult:
        """Advance ``execution`` by one node of ``flow``.

        Args:
            execution: Execution at ``current_node_id``; mutated in place
            flow: The flow version the execution is pinned to

        Returns:
            Advanced, Suspended, Completed or Failed
        """
        entered_at = self.clock.now()
        node_id = execution.current_node_id
        node = flow.graph.get_node(node_id) if node_id else None
        if node is None:
            return self._corrupt(
                execution, node_id or "<none>", "unknown", entered_at,
                f"Node '{node_id}' does not exist in flow {flow.id} v{flow.version}",
            )

        try:
            spec = self.registry.get(node.type, node_id=node.id)
        except ChatflowError as e:
            return self._corrupt(execution, node.id, node.type, entered_at, str(e))

        wake = execution.wake
        step = _Step(
            execution=execution,
            flow=flow,
            node=node,
            spec=spec,
            entered_at=entered_at,
            attempt=execution.attempts + 1,
            resuming=(
                execution.pending_event is not None
                and wake is not None
                and wake.kind != WakeKind.RETRY
                and wake.node_id == node.id
            ),
        )

        try:
            effect = self.registry.dispatch(
                node,
                execution,
                entered_at,
                settings=self.settings,
                wired=flow.graph.wired_labels(node.id),
            )
        except Exception as e:
            logger.exception(
                "Node builder failed",
                extra={"execution_id": execution.id, "node_id": node.id, "node_type": node.type},
            )
            return self._fail(step, f"Node '{node.id}' ({node.type}) failed: {e}", NODE_ERROR)
        finally:
            execution.pending_event = None
            execution.wake = None

        if isinstance(effect, Send):
            return await self._send(step, effect.message)
        if isinstance(effect, CallExternal):
            return await self._call_external(step, effect)
        if isinstance(effect, Branch):
            step.warnings = [w.to_dict() for w in effect.warnings]
            self._log_warnings(step, effect.warnings)
            return self._advance(step, effect.label, detail={"label": effect.label}, accept_default=True)
        if isinstance(effect, SuspendUntil):
            return await self._suspend(step, effect)
        if isinstance(effect, Mutate):
            execution.merge_context(effect.patch)
            if effect.edge == "timeout":
                outcome = PathOutcome.TIMED_OUT
            elif step.resuming:
                outcome = PathOutcome.RESUMED
            else:
                outcome = PathOutcome.ADVANCED
            return self._advance(step, effect.edge, outcome=outcome, detail={"updated": sorted(effect.patch)})
        if isinstance(effect, Terminate):
            self._record(step, PathOutcome.COMPLETED, detail={"outcome": effect.outcome})
            return Completed(outcome=effect.outcome)

        return self._fail(step, f"Node '{node.id}' produced an unknown effect {effect!r}", NODE_ERROR)

    # -- effects -----------------------------------------------------------

    async def _send(self, step: _Step, message: OutboundMessage) -> StepResult:
        detail = {"message": message.to_dict()}
        try:
            await self._guard(
                self.capabilities.messaging.send_message(step.execution.conversation_id, message),
                self.settings.external_timeout_seconds,
            )
        except TransientExternalFailure as e:
            return self._transient(step, e, detail)
        except Exception as e:
            return self._rejected(step, e, ("error",), detail)
        return self._advance(step, "next", detail=detail)

    async def _call_external(self, step: _Step, effect: CallExternal) -> StepResult:
        request = effect.request
        detail: Dict[str, Any] = {"request": request.to_dict()}
        try:
            if isinstance(request, HttpCall):
                response = await self._guard(
                    self.capabilities.http.request(request),
                    request.timeout_seconds or self.settings.external_timeout_seconds,
                )
                return self._http_response(step, request, response, detail)
            if isinstance(request, AssignConversation):
                await self._guard(
                    self.capabilities.conversations.assign(
                        step.execution.conversation_id, request.agent_id, request.team_id
                    ),
                    self.settings.external_timeout_seconds,
                )
            elif isinstance(request, UpdateContactTags):
                await self._guard(
                    self.capabilities.contacts.update_tags(
                        step.execution.contact_id, request.action, list(request.tags)
                    ),
                    self.settings.external_timeout_seconds,
                )
            elif isinstance(request, UpdateContactFields):
                await self._guard(
                    self.capabilities.contacts.update_fields(step.execution.contact_id, dict(request.fields)),
                    self.settings.external_timeout_seconds,
                )
            else:
                return self._fail(step, f"Unsupported external request {request!r}", NODE_ERROR, detail)
        except TransientExternalFailure as e:
            return self._transient(step, e, detail)
        except Exception as e:
            return self._rejected(step, e, ("error",), detail)
        return self._advance(step, "next", detail=detail)

    def _http_response(
        self,
        step: _Step,
        call: HttpCall,
        response: HttpResponse,
        detail: Dict[str, Any],
    ) -> StepResult:
        detail["status_code"] = response.status_code

        if response.status_code >= 500:
            return self._transient(
                step,
                TransientExternalFailure(f"HTTP {call.method} {call.url} returned {response.status_code}"),
                detail,
            )

        patch: Dict[str, Any] = {}
        if call.response_variable:
            patch[call.response_variable] = response.body

        if not response.ok:
            step.execution.merge_context(patch)
            error = ExternalCallError(
                f"HTTP {call.method} {call.url} returned {response.status_code}",
                status_code=response.status_code,
                response=response.body,
            )
            return self._rejected(step, error, ("failure", "error"), detail)

        try:
            for key, expression in call.response_mapping.items():
                patch[key] = extract_jsonpath(response.body, expression)
        except ChatflowError as e:
            return self._fail(step, str(e), NODE_ERROR, detail)

        step.execution.merge_context(patch)
        detail["updated"] = sorted(patch)
        return self._advance(step, "success", detail=detail)

    async def _suspend(self, step: _Step, effect: SuspendUntil) -> StepResult:
        detail: Dict[str, Any] = dict(effect.detail)
        detail["wake"] = effect.wake.to_dict()
        if effect.notice is not None:
            detail["message"] = effect.notice.to_dict()
            try:
                await self._guard(
                    self.capabilities.messaging.send_message(
                        step.execution.conversation_id, effect.notice
                    ),
                    self.settings.external_timeout_seconds,
                )
            except TransientExternalFailure as e:
                return self._transient(step, e, detail)
            except Exception as e:
                return self._rejected(step, e, (), detail)

        step.execution.wake = effect.wake
        self._record(step, PathOutcome.SUSPENDED, detail=detail)
        return Suspended(wake=effect.wake)

    # -- helpers -----------------------------------------------------------

    async def _guard(self, awaitable: Awaitable[Any], timeout: float) -> Any:
        """Await an external call with a timeout; timeouts become transient failures."""
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except asyncio.TimeoutError as e:
            raise TransientExternalFailure(f"External call timed out after {timeout} seconds") from e

    def _find_edge(self, step: _Step, labels: Tuple[str, ...], accept_default: bool = False):
        for label in labels:
            edge = step.flow.graph.resolve_edge(
                step.node.id,
                label,
                accept_unlabelled=step.spec.falls_back(label),
                accept_default=accept_default,
            )
            if edge is not None:
                return edge
        return None

    def _resolve(self, step: _Step, labels: Tuple[str, ...], accept_default: bool = False):
        """Like _find_edge, but a missing edge or target is GraphCorruption."""
        edge = self._find_edge(step, labels, accept_default)
        if edge is None:
            raise GraphCorruption(
                f"Node '{step.node.id}' has no '{labels[0]}' edge", node_id=step.node.id
            )
        if not step.flow.graph.has_node(edge.target):
            raise GraphCorruption(
                f"Edge from '{step.node.id}' points at missing node '{edge.target}'",
                node_id=step.node.id,
            )
        return edge

    def _advance(
        self,
        step: _Step,
        label: str,
        outcome: PathOutcome = PathOutcome.ADVANCED,
        detail: Optional[Dict[str, Any]] = None,
        accept_default: bool = False,
        fallbacks: Tuple[str, ...] = (),
        error: Optional[str] = None,
    ) -> StepResult:
        try:
            edge = self._resolve(step, (label, *fallbacks), accept_default)
        except GraphCorruption as e:
            logger.error(
                "Graph corruption",
                extra={"execution_id": step.execution.id, "node_id": step.node.id, "edge": label},
            )
            self._record(step, PathOutcome.FAILED, detail=detail, error=str(e))
            return Failed(error=str(e), retryable=False, kind=GRAPH_CORRUPTION)

        self._record(step, outcome, edge=edge.label, detail=detail, error=error)
        step.execution.current_node_id = edge.target
        return Advanced(node_id=edge.target)

    def _rejected(
        self,
        step: _Step,
        error: Exception,
        labels: Tuple[str, ...],
        detail: Dict[str, Any],
    ) -> StepResult:
        """Non-retryable external failure: follow an error branch if one is wired."""
        logger.warning(
            "External call rejected",
            extra={"execution_id": step.execution.id, "node_id": step.node.id, "error": str(error)},
        )
        if labels and self._find_edge(step, labels) is not None:
            return self._advance(
                step, labels[0], fallbacks=labels[1:], detail=detail, error=str(error)
            )
        return self._fail(step, str(error), EXTERNAL, detail)

    def _transient(self, step: _Step, error: Exception, detail: Dict[str, Any]) -> StepResult:
        logger.warning(
            "Transient failure",
            extra={
                "execution_id": step.execution.id,
                "node_id": step.node.id,
                "attempt": step.attempt,
                "error": str(error),
            },
        )
        self._record(step, PathOutcome.TRANSIENT_FAILURE, detail=detail, error=str(error))
        return Failed(error=str(error), retryable=True, kind=TRANSIENT)

    def _fail(
        self,
        step: _Step,
        message: str,
        kind: str,
        detail: Optional[Dict[str, Any]] = None,
    ) -> StepResult:
        self._record(step, PathOutcome.FAILED, detail=detail, error=message)
        return Failed(error=message, retryable=False, kind=kind)

    def _corrupt(
        self,
        execution: Execution,
        node_id: str,
        node_type: str,
        entered_at: datetime,
        message: str,
    ) -> StepResult:
        logger.error("Graph corruption", extra={"execution_id": execution.id, "node_id": node_id})
        execution.pending_event = None
        execution.append_path(
            PathEntry(
                node_id=node_id,
                node_type=node_type,
                entered_at=entered_at,
                exited_at=self.clock.now(),
                outcome=PathOutcome.FAILED,
                attempt=execution.attempts + 1,
                error=message,
            )
        )
        return Failed(error=message, retryable=False, kind=GRAPH_CORRUPTION)

    def _record(
        self,
        step: _Step,
        outcome: PathOutcome,
        edge: Optional[str] = None,
        detail: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        step.execution.append_path(
            PathEntry(
                node_id=step.node.id,
                node_type=step.node.type,
                entered_at=step.entered_at,
                exited_at=self.clock.now(),
                outcome=outcome,
                edge=edge,
                attempt=step.attempt,
                error=error,
                warnings=step.warnings,
                detail=detail or {},
            )
        )

    def _log_warnings(self, step: _Step, warnings: List[ConditionEvaluationWarning]) -> None:
        for warning in warnings:
            logger.warning(
                "Condition evaluation warning",
                extra={
                    "execution_id": step.execution.id,
                    "node_id": step.node.id,
                    "warning": warning.message,
                    "path": warning.path,
                },
            )
