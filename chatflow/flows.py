"""Flow definition lifecycle: drafts, activation, versioning and analytics.

A flow version is immutable once it leaves ``draft``. Changing an active flow
means creating a new version (a new row sharing the lineage), editing that
draft and activating it; activation pauses whichever version of the lineage
was active before, so executions already running keep the version they
started with while new triggers pick up the new one.
"""

import logging
from typing import Any, Dict, List, Optional, Union

from chatflow.backends.base import ACTIVE_STATUSES, ExecutionStore
from chatflow.core.definition import (
    FlowDefinition,
    FlowStatus,
    ReentryPolicy,
    TriggerConfig,
    TriggerType,
    utcnow,
)
from chatflow.core.graph import FlowGraph
from chatflow.nodes.registry import NodeRegistry, default_registry
from chatflow.utils.errors import ConfigurationError, FlowNotFoundError, InvalidTransitionError

logger = logging.getLogger(__name__)

MATCH_MODES = ("word", "exact", "contains")

GraphInput = Union[FlowGraph, Dict[str, Any]]
TriggerInput = Union[TriggerConfig, Dict[str, Any], None]


def _graph(graph: GraphInput) -> FlowGraph:
    if isinstance(graph, FlowGraph):
        return graph.model_copy(deep=True)
    return FlowGraph.model_validate(graph)


def _trigger(trigger_config: TriggerInput) -> Optional[TriggerConfig]:
    if trigger_config is None or isinstance(trigger_config, TriggerConfig):
        return trigger_config
    return TriggerConfig.parse(trigger_config)


def validate_trigger(config: Optional[TriggerConfig]) -> None:
    """Check a trigger config is usable.

    Raises:
        ConfigurationError: If the config cannot match anything
    """
    if config is None:
        return
    if config.type == TriggerType.KEYWORD:
        if not [k for k in config.keywords if k.strip()]:
            raise ConfigurationError("Keyword trigger needs at least one keyword")
        if config.match_mode not in MATCH_MODES:
            raise ConfigurationError(
                f"Unknown keyword match mode '{config.match_mode}'. "
                f"Expected one of: {', '.join(MATCH_MODES)}"
            )
    elif config.type == TriggerType.WEBHOOK and not isinstance(config.conditions, dict):
        raise ConfigurationError("Webhook trigger conditions must be a mapping")


class FlowDefinitionStore:
    """Create, version and activate flows on top of an ExecutionStore.

    Example:
        >>> flows = FlowDefinitionStore(MemoryBackend())
        >>> flow = await flows.create("tenant-1", "Welcome", graph, {"type": "welcome"})
        >>> await flows.activate(flow.id)
    """

    def __init__(self, store: ExecutionStore, registry: Optional[NodeRegistry] = None):
        self.store = store
        self.registry = registry or default_registry()

    async def create(
        self,
        tenant_id: str,
        name: str,
        graph: GraphInput,
        trigger_config: TriggerInput = None,
        description: Optional[str] = None,
        reentry_policy: ReentryPolicy = ReentryPolicy.SKIP,
    ) -> FlowDefinition:
        """Create a draft flow (version 1 of a new lineage).

        Args:
            tenant_id: Owning tenant
            name: Display name
            graph: Flow graph (model or JSON dict)
            trigger_config: Trigger (model or JSON dict)
            description: Optional description
            reentry_policy: What a repeated trigger does while a run is active

        Returns:
            The stored draft
        """
        trigger = _trigger(trigger_config)
        validate_trigger(trigger)
        flow = FlowDefinition(
            tenant_id=tenant_id,
            name=name,
            description=description,
            graph=_graph(graph),
            trigger_config=trigger,
            reentry_policy=ReentryPolicy(reentry_policy),
        )
        await self.store.save_flow(flow)
        logger.info(
            "Flow created",
            extra={"flow_id": flow.id, "tenant_id": tenant_id, "flow_name": name},
        )
        return flow

    async def get(self, flow_id: str) -> FlowDefinition:
        """Load a flow version.

        Raises:
            FlowNotFoundError: If the flow does not exist
        """
        flow = await self.store.load_flow(flow_id)
        if flow is None:
            raise FlowNotFoundError(flow_id)
        return flow

    async def update_draft(
        self,
        flow_id: str,
        name: Optional[str] = None,
        description: Optional[str] = None,
        graph: Optional[GraphInput] = None,
        trigger_config: TriggerInput = None,
        reentry_policy: Optional[ReentryPolicy] = None,
    ) -> FlowDefinition:
        """Edit a draft in place.

        Raises:
            InvalidTransitionError: If the flow is not a draft
        """
        flow = await self.get(flow_id)
        if flow.status != FlowStatus.DRAFT:
            raise InvalidTransitionError(
                f"Flow {flow_id} is {flow.status.value}; create a new version to change it"
            )

        if name is not None:
            flow.name = name
        if description is not None:
            flow.description = description
        if graph is not None:
            flow.graph = _graph(graph)
        if trigger_config is not None:
            flow.trigger_config = _trigger(trigger_config)
            validate_trigger(flow.trigger_config)
        if reentry_policy is not None:
            flow.reentry_policy = ReentryPolicy(reentry_policy)
        flow.updated_at = utcnow()

        await self.store.save_flow(flow)
        return flow

    async def activate(self, flow_id: str) -> FlowDefinition:
        """Validate a flow and make it the active version of its lineage.

        Raises:
            ConfigurationError: If the graph or trigger is invalid
            InvalidTransitionError: If the flow is archived
        """
        flow = await self.get(flow_id)
        if flow.status == FlowStatus.ARCHIVED:
            raise InvalidTransitionError(f"Flow {flow_id} is archived")
        if flow.status == FlowStatus.ACTIVE:
            return flow

        flow.graph.validate(self.registry)
        validate_trigger(flow.trigger_config)

        for other in await self.store.list_flows(lineage_id=flow.lineage_id, status=FlowStatus.ACTIVE):
            if other.id == flow.id:
                continue
            other.status = FlowStatus.PAUSED
            other.updated_at = utcnow()
            await self.store.save_flow(other)
            logger.info(
                "Flow version superseded",
                extra={"flow_id": other.id, "version": other.version, "superseded_by": flow.id},
            )

        flow.status = FlowStatus.ACTIVE
        flow.updated_at = utcnow()
        await self.store.save_flow(flow)
        logger.info(
            "Flow activated",
            extra={"flow_id": flow.id, "lineage_id": flow.lineage_id, "version": flow.version},
        )
        return flow

    async def pause(self, flow_id: str) -> FlowDefinition:
        """Stop new executions; running ones continue.

        Raises:
            InvalidTransitionError: If the flow is not active
        """
        flow = await self.get(flow_id)
        if flow.status != FlowStatus.ACTIVE:
            raise InvalidTransitionError(f"Flow {flow_id} is {flow.status.value}, not active")
        return await self._set_status(flow, FlowStatus.PAUSED)

    async def archive(self, flow_id: str) -> FlowDefinition:
        flow = await self.get(flow_id)
        if flow.status == FlowStatus.ARCHIVED:
            return flow
        return await self._set_status(flow, FlowStatus.ARCHIVED)

    async def new_version(
        self,
        flow_id: str,
        graph: Optional[GraphInput] = None,
        trigger_config: TriggerInput = None,
    ) -> FlowDefinition:
        """Create a draft successor of a flow version.

        The draft copies the base version unless a graph or trigger is given,
        and numbers itself after the highest version of the lineage.
        """
        base = await self.get(flow_id)
        siblings = await self.store.list_flows(lineage_id=base.lineage_id)
        latest = max([f.version for f in siblings] + [base.version])

        trigger = _trigger(trigger_config) if trigger_config is not None else base.trigger_config
        validate_trigger(trigger)

        flow = FlowDefinition(
            tenant_id=base.tenant_id,
            name=base.name,
            description=base.description,
            graph=_graph(graph) if graph is not None else base.graph.model_copy(deep=True),
            trigger_config=trigger.model_copy(deep=True) if trigger is not None else None,
            version=latest + 1,
            parent_flow_id=base.id,
            lineage_id=base.lineage_id,
            reentry_policy=base.reentry_policy,
        )
        await self.store.save_flow(flow)
        logger.info(
            "Flow version created",
            extra={"flow_id": flow.id, "parent_flow_id": base.id, "version": flow.version},
        )
        return flow

    async def list_active(self, tenant_id: str) -> List[FlowDefinition]:
        return await self.store.list_flows(tenant_id=tenant_id, status=FlowStatus.ACTIVE)

    async def list_versions(self, lineage_id: str) -> List[FlowDefinition]:
        """All versions of a lineage, oldest first."""
        flows = await self.store.list_flows(lineage_id=lineage_id)
        return sorted(flows, key=lambda f: f.version)

    async def analytics(self, flow_id: str) -> Dict[str, Any]:
        """Execution counters of a flow version.

        Counters are eventually consistent; ``active_count`` is read live.
        """
        flow = await self.get(flow_id)
        active = await self.store.list_executions(flow_id=flow_id, statuses=ACTIVE_STATUSES)
        return {
            "flow_id": flow.id,
            "name": flow.name,
            "version": flow.version,
            "status": flow.status.value,
            "execution_count": flow.execution_count,
            "success_count": flow.success_count,
            "failure_count": flow.failure_count,
            "cancelled_count": max(0, flow.execution_count - flow.success_count - flow.failure_count),
            "active_count": len(active),
            "success_rate": round(flow.success_rate, 2),
        }

    async def _set_status(self, flow: FlowDefinition, status: FlowStatus) -> FlowDefinition:
        previous = flow.status
        flow.status = status
        flow.updated_at = utcnow()
        await self.store.save_flow(flow)
        logger.info(
            "Flow status changed",
            extra={"flow_id": flow.id, "from": previous.value, "to": status.value},
        )
        return flow
