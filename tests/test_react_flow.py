"""Tests for the React Flow parser."""

import pytest

from chatflow.parsers import ReactFlowParser, parse_react_flow
from chatflow.utils.errors import GraphValidationError


@pytest.fixture
def builder_json():
    """A flow as saved by the visual builder."""
    return {
        "nodes": [
            {"id": "t1", "type": "trigger", "position": {"x": 0, "y": 0}, "data": {"label": "Start"}},
            {
                "id": "ask",
                "type": "userInput",
                "position": {"x": 0, "y": 100},
                "selected": True,
                "data": {
                    "label": "Ask email",
                    "message": "What is your email?",
                    "variableName": "email",
                    "validationType": "email",
                    "errorMessage": "That is not an email",
                    "timeout": 300,
                },
            },
            {
                "id": "crm",
                "type": "apiRequest",
                "data": {
                    "apiUrl": "https://crm.example.com/lookup",
                    "method": "POST",
                    "body": {"emailAddress": "{{email}}"},
                    "headers": {"X-Api-Key": "{{crm_key}}"},
                    "responseVariable": "crm",
                    "responseMapping": {"customerTier": "$.tier"},
                },
            },
            {
                "id": "check",
                "type": "conditionNode",
                "data": {
                    "conditions": [
                        {"id": "vip", "logic": "AND", "rules": [
                            {"field": "customerTier", "operator": "equals", "value": "gold"},
                        ]},
                    ],
                },
            },
            {
                "id": "menu",
                "type": "interactiveButtons",
                "data": {"text": "Talk to sales?", "buttons": [{"id": "yes", "title": "Yes"}, {"id": "no", "title": "No"}]},
            },
            {"id": "assign", "type": "assignConversation", "data": {"teamId": "sales"}},
            {"id": "nudge", "type": "sendMessage", "data": {"text": "Still there?"}},
            {"id": "pause", "type": "delayNode", "data": {"duration": 1, "unit": "hours"}},
            {"id": "tag", "type": "tagManagement", "data": {"action": "add", "tags": ["lead"]}},
            {"id": "done", "type": "endNode", "data": {}},
        ],
        "edges": [
            {"id": "e1", "source": "t1", "target": "ask", "sourceHandle": "source"},
            {"id": "e2", "source": "ask", "target": "crm", "sourceHandle": "received"},
            {"id": "e3", "source": "ask", "target": "nudge", "sourceHandle": "timeout"},
            {"id": "e4", "source": "nudge", "target": "done"},
            {"id": "e5", "source": "crm", "target": "check", "sourceHandle": "success"},
            {"id": "e6", "source": "check", "target": "menu", "sourceHandle": "vip"},
            {"id": "e7", "source": "check", "target": "tag", "sourceHandle": "default"},
            {"id": "e8", "source": "menu", "target": "assign", "sourceHandle": "yes"},
            {"id": "e9", "source": "menu", "target": "pause", "sourceHandle": "no"},
            {"id": "e10", "source": "assign", "target": "done", "sourceHandle": "output"},
            {"id": "e11", "source": "pause", "target": "tag"},
            {"id": "e12", "source": "tag", "target": "done"},
        ],
        "viewport": {"x": 0, "y": 0, "zoom": 1},
    }


def test_parse_builder_flow(builder_json):
    """Test that a builder document becomes a valid engine graph."""
    graph = ReactFlowParser().parse(builder_json)

    assert graph.resolve_entry() == "t1"
    types = {node.id: node.type for node in graph.nodes}
    assert types == {
        "t1": "start",
        "ask": "input",
        "crm": "api",
        "check": "condition",
        "menu": "button",
        "assign": "assignment",
        "nudge": "message",
        "pause": "delay",
        "tag": "tag",
        "done": "end",
    }


def test_config_keys_are_normalized(builder_json):
    graph = parse_react_flow(builder_json)

    ask = graph.get_node("ask")
    assert ask.label == "Ask email"
    assert ask.data == {
        "text": "What is your email?",
        "variable_name": "email",
        "validation": "email",
        "error_message": "That is not an email",
        "timeout_seconds": 300,
    }

    crm = graph.get_node("crm")
    assert crm.data["url"] == "https://crm.example.com/lookup"
    assert crm.data["response_variable"] == "crm"
    # User data keeps its casing
    assert crm.data["body"] == {"emailAddress": "{{email}}"}
    assert crm.data["headers"] == {"X-Api-Key": "{{crm_key}}"}
    assert crm.data["response_mapping"] == {"customerTier": "$.tier"}

    assert graph.get_node("assign").data == {"team_id": "sales"}
    assert graph.get_node("check").data["conditions"][0]["rules"][0]["field"] == "customerTier"


def test_builder_handles_mean_next(builder_json):
    graph = parse_react_flow(builder_json)

    handles = {edge.id: edge.source_handle for edge in graph.edges}
    assert handles["e1"] is None
    assert handles["e10"] is None
    assert handles["e2"] == "received"


def test_explicit_key_wins_over_alias():
    parser = ReactFlowParser(validate=False)

    graph = parser.parse({
        "nodes": [{"id": "m", "type": "messageNode", "data": {"message": "old", "text": "new"}}],
    })

    assert graph.get_node("m").data == {"text": "new"}


def test_unknown_types_pass_through():
    graph = ReactFlowParser(validate=False).parse({"nodes": [{"id": "x", "type": "carrierPigeon"}]})

    assert graph.get_node("x").type == "carrierPigeon"
    assert graph.entry_node_id is None


def test_invalid_document():
    with pytest.raises(GraphValidationError, match="Invalid React Flow JSON"):
        ReactFlowParser().parse({"edges": []})


def test_invalid_graph_is_rejected(builder_json):
    builder_json["edges"] = [e for e in builder_json["edges"] if e["id"] != "e3"]

    with pytest.raises(GraphValidationError):
        ReactFlowParser().parse(builder_json)


@pytest.mark.asyncio
async def test_parsed_flow_runs(builder_json, activate_flow, scheduler, capabilities):
    graph = parse_react_flow(builder_json)
    flow = await activate_flow(graph)

    execution_id = await scheduler.start_execution(flow.id, conversation_id="conv-1")

    assert capabilities.messaging.texts == ["What is your email?"]
    execution = await scheduler.get_execution(execution_id)
    assert execution.wake.deadline is not None


def test_update_contact_node():
    graph = ReactFlowParser(validate=False).parse({
        "nodes": [
            {
                "id": "save",
                "type": "updateContact",
                "data": {"label": "Save email", "fields": {"email": "{{email}}", "leadSource": "whatsapp"}},
            },
        ],
    })

    save = graph.get_node("save")
    assert save.type == "update_contact"
    assert save.label == "Save email"
    # Contact field names are user data
    assert save.data == {"fields": {"email": "{{email}}", "leadSource": "whatsapp"}}


@pytest.mark.parametrize(
    "action_type,action_data,node_type,data",
    [
        ("updateContact", {"firstName": "{{name}}"}, "update_contact", {"fields": {"firstName": "{{name}}"}}),
        ("addTag", {"tag": "vip"}, "tag", {"action": "add", "tags": ["vip"]}),
        ("assignAgent", {"agentId": "agent-7"}, "assignment", {"agent_id": "agent-7"}),
    ],
)
def test_action_node_becomes_concrete_node(action_type, action_data, node_type, data):
    graph = ReactFlowParser(validate=False).parse({
        "nodes": [{"id": "act", "type": "action", "data": {"actionType": action_type, "actionData": action_data}}],
    })

    node = graph.get_node("act")
    assert node.type == node_type
    assert node.data == data


def test_unknown_action_type_is_rejected():
    document = {
        "nodes": [
            {"id": "t1", "type": "trigger"},
            {"id": "act", "type": "action", "data": {"actionType": "sendFax", "actionData": {}}},
            {"id": "done", "type": "endNode"},
        ],
        "edges": [{"source": "t1", "target": "act"}, {"source": "act", "target": "done"}],
    }

    with pytest.raises(GraphValidationError):
        ReactFlowParser().parse(document)


@pytest.mark.asyncio
async def test_parsed_update_contact_runs(activate_flow, scheduler, capabilities):
    graph = parse_react_flow({
        "nodes": [
            {"id": "t1", "type": "trigger"},
            {"id": "save", "type": "updateContact", "data": {"fields": {"firstName": "{{name}}", "score": "{{score}}"}}},
            {"id": "done", "type": "endNode"},
        ],
        "edges": [{"source": "t1", "target": "save"}, {"source": "save", "target": "done"}],
    })
    flow = await activate_flow(graph)

    await scheduler.start_execution(
        flow.id, conversation_id="conv-1", contact_id="contact-1", initial_context={"name": "Ana", "score": 7}
    )

    assert capabilities.contacts.fields == {"contact-1": {"firstName": "Ana", "score": 7}}
