"""Tests for flow definition lifecycle and versioning."""

import pytest

from chatflow import ExecutionStatus, FlowStatus, ReentryPolicy, TriggerType, WakeEvent
from chatflow.utils.errors import (
    ConfigurationError,
    FlowNotFoundError,
    GraphValidationError,
    InvalidTransitionError,
)


class TestCreate:
    @pytest.mark.asyncio
    async def test_create_draft(self, flows, delay_graph):
        flow = await flows.create(
            "tenant-1", "Welcome", delay_graph, {"type": "welcome"}, description="Greets new chats"
        )

        assert flow.status == FlowStatus.DRAFT
        assert flow.version == 1
        assert flow.lineage_id == flow.id
        assert flow.parent_flow_id is None
        assert flow.trigger_config.type == TriggerType.NEW_CONVERSATION
        assert (await flows.get(flow.id)).description == "Greets new chats"

    @pytest.mark.asyncio
    async def test_create_from_json(self, flows):
        graph = {
            "nodes": [
                {"id": "start", "type": "start"},
                {"id": "end", "type": "end"},
            ],
            "edges": [{"source": "start", "target": "end"}],
        }

        flow = await flows.create("tenant-1", "Minimal", graph)

        assert flow.graph.resolve_entry() == "start"

    @pytest.mark.asyncio
    async def test_keyword_trigger_needs_keywords(self, flows, delay_graph):
        with pytest.raises(ConfigurationError, match="at least one keyword"):
            await flows.create("tenant-1", "Broken", delay_graph, {"type": "keyword", "keywords": [" "]})

    @pytest.mark.asyncio
    async def test_unknown_match_mode(self, flows, delay_graph):
        with pytest.raises(ConfigurationError, match="match mode"):
            await flows.create(
                "tenant-1", "Broken", delay_graph,
                {"type": "keyword", "keywords": ["hi"], "match_mode": "fuzzy"},
            )

    @pytest.mark.asyncio
    async def test_get_missing(self, flows):
        with pytest.raises(FlowNotFoundError):
            await flows.get("nope")


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_activate_validates_graph(self, flows, make_graph):
        broken = make_graph([("start", "start", {}), ("hello", "message", {"text": "Hi"})], [("start", "hello")])
        flow = await flows.create("tenant-1", "Broken", broken)

        with pytest.raises(GraphValidationError):
            await flows.activate(flow.id)
        assert (await flows.get(flow.id)).status == FlowStatus.DRAFT

    @pytest.mark.asyncio
    async def test_activate_pause_archive(self, flows, delay_graph):
        flow = await flows.create("tenant-1", "Welcome", delay_graph)

        assert (await flows.activate(flow.id)).status == FlowStatus.ACTIVE
        assert (await flows.activate(flow.id)).status == FlowStatus.ACTIVE
        assert [f.id for f in await flows.list_active("tenant-1")] == [flow.id]

        assert (await flows.pause(flow.id)).status == FlowStatus.PAUSED
        assert await flows.list_active("tenant-1") == []
        with pytest.raises(InvalidTransitionError):
            await flows.pause(flow.id)

        assert (await flows.activate(flow.id)).status == FlowStatus.ACTIVE
        assert (await flows.archive(flow.id)).status == FlowStatus.ARCHIVED
        with pytest.raises(InvalidTransitionError):
            await flows.activate(flow.id)

    @pytest.mark.asyncio
    async def test_only_drafts_are_editable(self, flows, delay_graph, age_graph):
        flow = await flows.create("tenant-1", "Welcome", delay_graph)

        edited = await flows.update_draft(
            flow.id, name="Hello", graph=age_graph, reentry_policy=ReentryPolicy.QUEUE
        )
        assert edited.name == "Hello"
        assert edited.graph.has_node("ask_age")
        assert edited.reentry_policy == ReentryPolicy.QUEUE

        await flows.activate(flow.id)
        with pytest.raises(InvalidTransitionError, match="new version"):
            await flows.update_draft(flow.id, name="Again")


class TestVersioning:
    @pytest.mark.asyncio
    async def test_new_version_copies_and_links(self, flows, delay_graph):
        v1 = await flows.create(
            "tenant-1", "Welcome", delay_graph, {"type": "keyword", "keywords": ["hi"]},
            reentry_policy=ReentryPolicy.RESTART,
        )
        await flows.activate(v1.id)

        v2 = await flows.new_version(v1.id)

        assert v2.id != v1.id
        assert v2.version == 2
        assert v2.parent_flow_id == v1.id
        assert v2.lineage_id == v1.lineage_id
        assert v2.status == FlowStatus.DRAFT
        assert v2.reentry_policy == ReentryPolicy.RESTART
        assert v2.trigger_config.keywords == ["hi"]
        assert v2.graph == v1.graph

    @pytest.mark.asyncio
    async def test_versions_number_after_latest(self, flows, delay_graph):
        v1 = await flows.create("tenant-1", "Welcome", delay_graph)
        await flows.new_version(v1.id)

        v3 = await flows.new_version(v1.id)

        assert v3.version == 3
        assert [f.version for f in await flows.list_versions(v1.lineage_id)] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_activating_new_version_pauses_old(self, flows, delay_graph, age_graph):
        v1 = await flows.create("tenant-1", "Welcome", delay_graph)
        await flows.activate(v1.id)
        v2 = await flows.new_version(v1.id, graph=age_graph)

        await flows.activate(v2.id)

        assert (await flows.get(v1.id)).status == FlowStatus.PAUSED
        assert (await flows.get(v2.id)).status == FlowStatus.ACTIVE
        assert [f.id for f in await flows.list_active("tenant-1")] == [v2.id]

    @pytest.mark.asyncio
    async def test_running_executions_keep_their_version(self, flows, scheduler, delay_graph, age_graph, clock):
        v1 = await flows.create("tenant-1", "Welcome", delay_graph)
        await flows.activate(v1.id)
        old_run = await scheduler.start_execution(v1.id, conversation_id="conv-1")

        v2 = await flows.new_version(v1.id, graph=age_graph)
        await flows.activate(v2.id)
        new_run = await scheduler.start_execution(v2.id, conversation_id="conv-2")

        clock.advance(10)
        await scheduler.sweep()

        old = await scheduler.get_execution(old_run)
        assert old.flow_id == v1.id
        assert old.status == ExecutionStatus.COMPLETED
        new = await scheduler.get_execution(new_run)
        assert new.flow_id == v2.id
        assert new.current_node_id == "ask_age"

    @pytest.mark.asyncio
    async def test_new_version_keeps_conversation_exclusive(self, flows, scheduler, delay_graph):
        v1 = await flows.create("tenant-1", "Welcome", delay_graph)
        await flows.activate(v1.id)
        await scheduler.start_execution(v1.id, conversation_id="conv-1")

        v2 = await flows.new_version(v1.id)
        await flows.activate(v2.id)

        assert await scheduler.start_execution(v2.id, conversation_id="conv-1") is None


class TestAnalytics:
    @pytest.mark.asyncio
    async def test_counters(self, flows, scheduler, activate_flow, age_graph):
        flow = await activate_flow(age_graph)

        done = await scheduler.start_execution(flow.id, conversation_id="conv-1")
        await scheduler.resume_execution(done, WakeEvent.reply("40"))
        cancelled = await scheduler.start_execution(flow.id, conversation_id="conv-2")
        await scheduler.cancel_execution(cancelled)
        await scheduler.start_execution(flow.id, conversation_id="conv-3")

        stats = await flows.analytics(flow.id)

        assert stats["execution_count"] == 2
        assert stats["success_count"] == 1
        assert stats["failure_count"] == 0
        assert stats["cancelled_count"] == 1
        assert stats["active_count"] == 1
        assert stats["success_rate"] == 50.0
        assert stats["status"] == "active"

    @pytest.mark.asyncio
    async def test_no_executions(self, flows, activate_flow, delay_graph):
        flow = await activate_flow(delay_graph)

        stats = await flows.analytics(flow.id)

        assert stats["execution_count"] == 0
        assert stats["success_rate"] == 0.0
