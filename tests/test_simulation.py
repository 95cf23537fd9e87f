"""Tests for dry-run simulation."""

import pytest

from chatflow import simulate_flow
from chatflow.capabilities import HttpResponse
from chatflow.utils.config import EngineSettings
from chatflow.utils.errors import GraphValidationError, TransientExternalFailure


@pytest.fixture
def menu_graph(make_graph):
    return make_graph(
        [
            ("start", "start", {}),
            ("menu", "button", {"text": "Need help?", "buttons": [{"id": "yes", "title": "Yes"}, {"id": "no", "title": "No"}]}),
            ("helping", "message", {"text": "On it"}),
            ("bye", "message", {"text": "Bye"}),
            ("end", "end", {}),
        ],
        [
            ("start", "menu"),
            ("menu", "helping", "yes"),
            ("menu", "bye", "no"),
            ("helping", "end"),
            ("bye", "end"),
        ],
    )


class TestWaits:
    @pytest.mark.asyncio
    async def test_test_data_answers_input(self, age_graph):
        """Test that a wait is answered from test data by variable name."""
        result = await simulate_flow(age_graph, test_data={"age": "21"})

        assert result.success
        assert result.status == "completed"
        assert result.execution_path == ["start", "ask_age", "ask_age", "check", "adult", "end"]
        assert [m["text"] for m in result.messages] == ["How old are you?", "Welcome, adult"]
        assert result.final_context["age"] == "21"
        assert result.error is None

    @pytest.mark.asyncio
    async def test_replies_are_used_in_order(self, age_graph):
        result = await simulate_flow(age_graph, replies=["abc", "12"])

        assert result.success
        assert result.execution_path[-2:] == ["minor", "end"]
        texts = [m["text"] for m in result.messages]
        assert texts == ["How old are you?", "Please send a number", "Sorry, adults only"]

    @pytest.mark.asyncio
    async def test_button_reply(self, menu_graph):
        result = await simulate_flow(menu_graph, replies=[{"button_id": "no"}])

        assert result.success
        assert "bye" in result.execution_path
        assert result.final_context["last_button_id"] == "no"

    @pytest.mark.asyncio
    async def test_button_placeholder_picks_first_button(self, menu_graph):
        result = await simulate_flow(menu_graph)

        assert result.success
        assert "helping" in result.execution_path

    @pytest.mark.asyncio
    async def test_rejected_placeholder_stalls(self, age_graph):
        result = await simulate_flow(age_graph)

        assert not result.success
        assert result.status == "waiting"
        assert result.error == "Reply not accepted by node 'ask_age'"

    @pytest.mark.asyncio
    async def test_rejected_placeholder_takes_timeout_edge(self, make_graph):
        graph = make_graph(
            [
                ("start", "start", {}),
                ("ask", "input", {"prompt": "Email?", "validation": "email", "timeout_seconds": 60}),
                ("late", "message", {"text": "Too late"}),
                ("end", "end", {}),
            ],
            [("start", "ask"), ("ask", "end", "received"), ("ask", "late", "timeout"), ("late", "end")],
        )

        result = await simulate_flow(graph)

        assert result.success
        assert result.messages[-1]["text"] == "Too late"

    @pytest.mark.asyncio
    async def test_delay_fires_immediately(self, delay_graph):
        result = await simulate_flow(delay_graph, initial_context={"name": "Ana"})

        assert result.success
        assert result.execution_path[:2] == ["start", "greet"]
        assert result.execution_path[-1] == "end"
        assert result.messages[0]["text"] == "Hello Ana"


class TestHttp:
    @pytest.mark.asyncio
    async def test_scripted_response(self, api_graph):
        result = await simulate_flow(
            api_graph,
            http_responses=[HttpResponse(status_code=200, body={"data": {"tier": "gold"}})],
        )

        assert result.success
        assert result.final_context["tier"] == "gold"
        assert result.http_calls[0]["method"] == "GET"
        assert result.http_calls[0]["url"] == "https://crm.example.com/contacts/simulation"

    @pytest.mark.asyncio
    async def test_retries_then_gives_up(self, api_graph):
        result = await simulate_flow(
            api_graph,
            http_responses=[TransientExternalFailure("timed out")] * 3,
            settings=EngineSettings(max_attempts=3),
        )

        assert not result.success
        assert result.status == "failed"
        assert result.error == "timed out (gave up after 3 attempts)"
        assert len(result.http_calls) == 3


class TestResult:
    @pytest.mark.asyncio
    async def test_accepts_plain_json(self):
        graph = {
            "nodes": [
                {"id": "start", "type": "start"},
                {"id": "hello", "type": "message", "data": {"text": "Hi"}},
                {"id": "end", "type": "end"},
            ],
            "edges": [{"source": "start", "target": "hello"}, {"source": "hello", "target": "end"}],
        }

        result = await simulate_flow(graph)

        assert result.execution_path == ["start", "hello", "end"]
        assert result.events[0]["type"] == "execution.start"
        assert result.events[-1]["type"] == "execution.complete"

    @pytest.mark.asyncio
    async def test_to_dict_uses_camel_case(self, delay_graph):
        result = await simulate_flow(delay_graph)

        data = result.to_dict()

        assert set(data) == {
            "success", "status", "executionPath", "logs", "messages", "httpCalls", "finalContext", "error",
        }
        assert data["logs"][0]["node_id"] == "start"

    @pytest.mark.asyncio
    async def test_invalid_graph_is_rejected(self, make_graph):
        graph = make_graph([("start", "start", {}), ("hello", "message", {"text": "Hi"})], [("start", "hello")])

        with pytest.raises(GraphValidationError):
            await simulate_flow(graph)

    @pytest.mark.asyncio
    async def test_flow_definition_is_not_touched(self, flows, age_graph):
        flow = await flows.create("tenant-1", "Age", age_graph)

        result = await simulate_flow(flow, test_data={"age": "30"})

        assert result.success
        assert (await flows.get(flow.id)).status.value == "draft"
        assert flow.execution_count == 0
