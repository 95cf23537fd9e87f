"""Dry-run a flow without side effects.

``simulate_flow`` runs a flow through the real scheduler and step executor,
but against an in-memory store, recording capabilities and a fake clock:

- input and button waits are answered from ``test_data`` (keyed by the
  node's variable name), then from ``replies`` in order, then with a
  placeholder
- delays, timeouts and retries fire immediately by moving the clock to the
  wake deadline and sweeping
- HTTP calls answer from ``http_responses`` (default: 200 with an empty body)

Example:
    >>> result = await simulate_flow(flow, test_data={"age": "21"})
    >>> result.success, result.execution_path
    (True, ['start', 'ask_age', 'ask_age', 'check', 'adult', 'end'])
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from chatflow.backends.memory import MemoryBackend
from chatflow.capabilities import HttpResponse
from chatflow.core.definition import FlowDefinition, FlowStatus
from chatflow.core.events import EventEmitter, ExecutionEvent
from chatflow.core.execution import ExecutionStatus, WakeEvent, WakeKind
from chatflow.core.graph import FlowGraph
from chatflow.executor import StepExecutor
from chatflow.nodes.registry import NodeRegistry, default_registry
from chatflow.nodes.waits import DEFAULT_BUTTON_VARIABLE, DEFAULT_INPUT_VARIABLE
from chatflow.scheduler import Scheduler
from chatflow.testing import FakeClock, RecordingHttp, recording_capabilities
from chatflow.utils.config import EngineSettings

logger = logging.getLogger(__name__)

PLACEHOLDER_INPUT = "test-input"

Reply = Union[str, Dict[str, Any]]


@dataclass
class SimulationResult:
    """Outcome of a dry run.

    Attributes:
        success: The run completed
        status: Final execution status ("waiting" if it stalled)
        execution_path: Node ids in path order
        logs: One entry per path step (see ``Scheduler.replay``)
        messages: Outbound messages that would have been sent
        http_calls: HTTP calls that would have been made
        final_context: Context when the run stopped
        events: Lifecycle events emitted during the run
        error: Failure reason, if any
    """

    success: bool
    status: str
    execution_path: List[str] = field(default_factory=list)
    logs: List[Dict[str, Any]] = field(default_factory=list)
    messages: List[Dict[str, Any]] = field(default_factory=list)
    http_calls: List[Dict[str, Any]] = field(default_factory=list)
    final_context: Dict[str, Any] = field(default_factory=dict)
    events: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "status": self.status,
            "executionPath": self.execution_path,
            "logs": self.logs,
            "messages": self.messages,
            "httpCalls": self.http_calls,
            "finalContext": self.final_context,
            "error": self.error,
        }


def _as_flow(flow: Union[FlowDefinition, FlowGraph, Dict[str, Any]]) -> FlowDefinition:
    if isinstance(flow, FlowDefinition):
        simulated = flow.model_copy(deep=True)
    else:
        graph = flow if isinstance(flow, FlowGraph) else FlowGraph.model_validate(flow)
        simulated = FlowDefinition(tenant_id="simulation", name="simulation", graph=graph)
    simulated.status = FlowStatus.ACTIVE
    simulated.execution_count = simulated.success_count = simulated.failure_count = 0
    return simulated


async def simulate_flow(
    flow: Union[FlowDefinition, FlowGraph, Dict[str, Any]],
    test_data: Optional[Dict[str, Any]] = None,
    replies: Optional[Iterable[Reply]] = None,
    initial_context: Optional[Dict[str, Any]] = None,
    http_responses: Optional[Iterable[Union[HttpResponse, Exception]]] = None,
    registry: Optional[NodeRegistry] = None,
    settings: Optional[EngineSettings] = None,
    max_rounds: int = 100,
) -> SimulationResult:
    """Run a flow to completion against test doubles.

    Args:
        flow: Flow definition or bare graph
        test_data: Seed context; also answers waits by variable name
        replies: Answers for waits without test data, in order. A string is a
            typed reply, ``{"button_id": ...}`` a button press
        initial_context: Extra seed context
        http_responses: Scripted HTTP responses/exceptions
        registry: Node registry (built-in node types by default)
        settings: Engine settings
        max_rounds: Upper bound on wait resolutions before giving up

    Returns:
        SimulationResult

    Raises:
        ConfigurationError: If the graph does not validate
    """
    registry = registry or default_registry()
    settings = settings or EngineSettings()
    test_data = dict(test_data or {})
    pending_replies = deque(replies or [])

    definition = _as_flow(flow)
    definition.graph.validate(registry)

    store = MemoryBackend()
    await store.save_flow(definition)

    clock = FakeClock()
    capabilities = recording_capabilities(RecordingHttp())
    if http_responses:
        capabilities.http.respond(*http_responses)

    events: List[ExecutionEvent] = []

    async def record(event: ExecutionEvent) -> None:
        events.append(event)

    emitter = EventEmitter()
    emitter.on(record)

    executor = StepExecutor(registry=registry, capabilities=capabilities, settings=settings, clock=clock)
    scheduler = Scheduler(store, executor, settings=settings, clock=clock, events=emitter, worker_id="simulation")

    context = dict(test_data)
    context.update(initial_context or {})
    execution_id = await scheduler.start_execution(
        definition.id,
        conversation_id="simulation",
        contact_id="simulation",
        initial_context=context,
    )

    stalled: Optional[str] = None
    for _ in range(max_rounds):
        execution = await scheduler.get_execution(execution_id)
        if execution.is_terminal:
            break
        if execution.status != ExecutionStatus.WAITING or execution.wake is None:
            stalled = f"Execution stopped in status {execution.status.value}"
            break

        wake = execution.wake
        if wake.kind in (WakeKind.TIMER, WakeKind.RETRY):
            if wake.deadline is not None and wake.deadline > clock.now():
                clock.set(wake.deadline)
            await scheduler.sweep()
            continue

        node = definition.graph.get_node(wake.node_id)
        event, scripted = _answer(node.data if node else {}, wake.kind, wake.expected, test_data, pending_replies)
        accepted = await scheduler.resume_execution(execution_id, event)
        if accepted and not scripted:
            # A fixed answer that re-prompts would be given again forever
            accepted = not _reprompted(await scheduler.get_execution(execution_id), wake.node_id)
        if not accepted:
            logger.info(
                "Simulated reply not accepted",
                extra={"execution_id": execution_id, "node_id": wake.node_id},
            )
            if wake.deadline is None:
                stalled = f"Reply not accepted by node '{wake.node_id}'"
                break
            clock.set(wake.deadline)
            await scheduler.sweep()
    else:
        stalled = f"Gave up after {max_rounds} wait resolutions"

    replay = await scheduler.replay(execution_id)
    final = await scheduler.get_execution(execution_id)

    return SimulationResult(
        success=final.status == ExecutionStatus.COMPLETED,
        status=final.status.value,
        execution_path=[step["node_id"] for step in replay["steps"]],
        logs=replay["steps"],
        messages=[message.to_dict() for _, message in capabilities.messaging.sent],
        http_calls=[
            {"method": call.method, "url": call.url, "params": call.params, "body": call.body}
            for call in capabilities.http.calls
        ],
        final_context=final.context,
        events=[event.to_dict() for event in events],
        error=final.error_message or stalled,
    )


def _answer(
    config: Dict[str, Any],
    kind: WakeKind,
    expected: List[str],
    test_data: Dict[str, Any],
    replies: deque,
) -> Tuple[WakeEvent, bool]:
    """Pick the answer for a wait; the flag is True when it came from ``replies``."""
    if kind == WakeKind.BUTTON:
        variable = config.get("variable_name") or DEFAULT_BUTTON_VARIABLE
        if variable in test_data:
            return WakeEvent.button(str(test_data[variable])), False
        if replies:
            return _reply_event(replies.popleft()), True
        return WakeEvent.button(expected[0] if expected else ""), False

    variable = config.get("variable_name") or DEFAULT_INPUT_VARIABLE
    if variable in test_data:
        return WakeEvent.reply(str(test_data[variable])), False
    if replies:
        return _reply_event(replies.popleft()), True
    return WakeEvent.reply(PLACEHOLDER_INPUT), False


def _reprompted(execution, node_id: str) -> bool:
    if execution.status != ExecutionStatus.WAITING or execution.current_node_id != node_id:
        return False
    last = execution.execution_path[-1] if execution.execution_path else None
    return last is not None and "invalid_reply" in last.detail


def _reply_event(reply: Reply) -> WakeEvent:
    if isinstance(reply, dict):
        if reply.get("button_id") is not None:
            return WakeEvent.button(str(reply["button_id"]))
        return WakeEvent.reply(str(reply.get("text", "")))
    return WakeEvent.reply(str(reply))
