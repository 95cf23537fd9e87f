"""Tests for node builders."""

from datetime import timedelta

import pytest

from chatflow.core.effects import (
    AssignConversation,
    Branch,
    CallExternal,
    HttpCall,
    Mutate,
    Send,
    SuspendUntil,
    Terminate,
    UpdateContactFields,
    UpdateContactTags,
)
from chatflow.core.execution import Execution, WakeCondition, WakeEvent, WakeKind
from chatflow.core.graph import FlowNode
from chatflow.nodes.base import NodeSpec
from chatflow.nodes.waits import is_valid_reply
from chatflow.utils.errors import ConfigurationError


@pytest.fixture
def execution(clock):
    return Execution.create(
        flow_id="flow-1",
        lineage_id="lineage-1",
        tenant_id="tenant-1",
        conversation_id="conv-1",
        contact_id="contact-1",
        entry_node_id="start",
        initial_context={"name": "Ana", "order": {"id": 7, "total": 19.5}},
        now=clock.now(),
    )


@pytest.fixture
def run(registry, execution, clock, settings):
    """Dispatch a node config against the execution fixture."""

    def _run(node_type, data, wired=frozenset({"next"}), node_id="node"):
        node = FlowNode(id=node_id, type=node_type, data=data)
        return registry.dispatch(node, execution, clock.now(), settings=settings, wired=frozenset(wired))

    return _run


class TestStartAndEnd:
    def test_start_seeds_defaults_without_overwriting(self, run):
        effect = run("start", {"variables": {"name": "Guest", "lang": "en"}})

        assert effect == Mutate(patch={"lang": "en"})

    def test_end_terminates(self, run):
        assert run("end", {}) == Terminate(outcome="completed")


class TestMessaging:
    def test_message_resolves_variables(self, run):
        effect = run("message", {"text": "Hi {{name}}, order #{{order.id}} is ready"})

        assert isinstance(effect, Send)
        assert effect.message.kind == "text"
        assert effect.message.text == "Hi Ana, order #7 is ready"

    def test_missing_variable_left_in_place(self, run):
        effect = run("message", {"text": "Hi {{nickname}}"})

        assert effect.message.text == "Hi {{nickname}}"

    def test_builtin_variables(self, run, execution):
        effect = run("message", {"text": "{{$conversation_id}}/{{$contact_id}}/{{$execution.id}}"})

        assert effect.message.text == f"conv-1/contact-1/{execution.id}"

    def test_template_keeps_raw_types(self, run):
        effect = run("template", {
            "template_name": "order_ready",
            "language": "pt_BR",
            "variables": {"total": "{{order.total}}", "greeting": "Hi {{name}}"},
        })

        assert effect.message.kind == "template"
        assert effect.message.template_name == "order_ready"
        assert effect.message.language == "pt_BR"
        assert effect.message.variables == {"total": 19.5, "greeting": "Hi Ana"}


class TestCondition:
    def test_rules_branch_true(self, run):
        effect = run("condition", {"rules": [{"field": "order.total", "operator": "gt", "value": 10}]})

        assert effect == Branch(label="true", warnings=[])

    def test_missing_field_branches_false_with_warning(self, run):
        effect = run("condition", {"expression": {"op": "eq", "left": {"var": "plan"}, "right": "pro"}})

        assert effect.label == "false"
        assert effect.warnings[0].path == "plan"

    def test_conditions_list_picks_case(self, run):
        effect = run("condition", {
            "conditions": [
                {"id": "big", "rules": [{"field": "order.total", "operator": "gt", "value": 100}]},
                {"id": "small", "rules": [{"field": "order.total", "operator": "gt", "value": 0}]},
            ]
        })

        assert effect.label == "small"


class TestInput:
    def test_first_step_prompts_and_waits(self, run, clock):
        effect = run("input", {"prompt": "Hi {{name}}, your email?", "timeout_seconds": 60},
                     wired={"received"})

        assert isinstance(effect, SuspendUntil)
        assert effect.wake.kind == WakeKind.REPLY
        assert effect.wake.node_id == "node"
        assert effect.wake.deadline is None  # no timeout edge wired
        assert effect.notice.text == "Hi Ana, your email?"

    def test_timeout_deadline_when_edge_wired(self, run, clock):
        effect = run("input", {"prompt": "Email?", "timeout_seconds": 60}, wired={"received", "timeout"})

        assert effect.wake.deadline == clock.now() + timedelta(seconds=60)

    def test_valid_reply_is_stored(self, run, execution):
        execution.wake = WakeCondition(kind=WakeKind.REPLY, node_id="node")
        execution.pending_event = WakeEvent.reply("  ana@example.com ")

        effect = run("input", {"variable_name": "email", "validation": "email"})

        assert effect == Mutate(patch={"email": "ana@example.com"}, edge="received")

    def test_invalid_reply_reprompts(self, run, execution):
        execution.wake = WakeCondition(kind=WakeKind.REPLY, node_id="node")
        execution.pending_event = WakeEvent.reply("not-an-email")

        effect = run("input", {"variable_name": "email", "validation": "email", "error_message": "Bad email"})

        assert isinstance(effect, SuspendUntil)
        assert effect.wake is execution.wake
        assert effect.notice.text == "Bad email"
        assert effect.detail == {"invalid_reply": "not-an-email"}

    def test_reply_defaults_to_last_user_input(self, run, execution):
        execution.wake = WakeCondition(kind=WakeKind.REPLY, node_id="node")
        execution.pending_event = WakeEvent.reply("hello")

        effect = run("input", {})

        assert effect.patch == {"last_user_input": "hello"}

    def test_timeout(self, run, execution, clock):
        execution.wake = WakeCondition(kind=WakeKind.REPLY, node_id="node", deadline=clock.now())
        execution.pending_event = WakeEvent.timer(clock.now())

        assert run("input", {"timeout_seconds": 5}) == Mutate(edge="timeout")

    @pytest.mark.parametrize(
        "validation,text,expected",
        [
            (None, "anything", True),
            (None, "", False),
            ("number", "42.5", True),
            ("number", "forty", False),
            ("phone", "+351 912 345 678", True),
            ("phone", "call me", False),
            ("url", "https://example.com/a", True),
            ("email", "a@b", False),
        ],
    )
    def test_validation(self, validation, text, expected):
        assert is_valid_reply(validation, text) is expected


class TestButton:
    CONFIG = {
        "text": "Pick one",
        "buttons": [{"id": "yes", "title": "Yes"}, {"id": "no", "title": "No"}, "Maybe"],
    }

    def test_first_step_sends_buttons(self, run):
        effect = run("button", self.CONFIG)

        assert effect.wake.kind == WakeKind.BUTTON
        assert effect.wake.expected == ["yes", "no", "Maybe"]
        assert effect.notice.kind == "interactive"
        assert effect.notice.buttons[2] == {"id": "Maybe", "title": "Maybe"}

    def test_button_press_follows_button_edge(self, run, execution):
        execution.wake = WakeCondition(kind=WakeKind.BUTTON, node_id="node", expected=["yes", "no"])
        execution.pending_event = WakeEvent.button("no")

        effect = run("button", self.CONFIG)

        assert effect == Mutate(patch={"last_button_id": "no"}, edge="no")

    def test_typed_title_selects_button(self, run, execution):
        execution.wake = WakeCondition(
            kind=WakeKind.BUTTON, node_id="node", expected=["yes", "no"], titles={"yes": "Yes"}
        )
        execution.pending_event = WakeEvent.reply(" yes ")

        assert run("button", self.CONFIG).edge == "yes"


class TestDelay:
    def test_delay_from_duration_and_unit(self, run, clock):
        effect = run("delay", {"duration": 2, "unit": "minutes"})

        assert effect.wake.kind == WakeKind.TIMER
        assert effect.wake.deadline == clock.now() + timedelta(minutes=2)
        assert effect.detail == {"delay_seconds": 120.0}

    def test_zero_delay_advances(self, run):
        assert run("delay", {"delay_seconds": 0}) == Mutate()

    def test_timer_resumes(self, run, execution, clock):
        execution.wake = WakeCondition(kind=WakeKind.TIMER, node_id="node", deadline=clock.now())
        execution.pending_event = WakeEvent.timer(clock.now())

        assert run("delay", {"delay_seconds": 10}) == Mutate()


class TestHttp:
    def test_api_request_is_resolved(self, run):
        effect = run("api", {
            "url": "https://shop.example.com/orders/{{order.id}}",
            "method": "post",
            "headers": {"X-Contact": "{{$contact_id}}"},
            "query_params": {"expand": "items"},
            "body": {"total": "{{order.total}}", "note": "for {{name}}"},
            "response_mapping": {"status": "$.status"},
        })

        assert isinstance(effect, CallExternal)
        call = effect.request
        assert isinstance(call, HttpCall)
        assert call.method == "POST"
        assert call.url == "https://shop.example.com/orders/7"
        assert call.headers == {"X-Contact": "contact-1"}
        assert call.params == {"expand": "items"}
        assert call.body == {"total": 19.5, "note": "for Ana"}
        assert call.response_mapping == {"status": "$.status"}

    def test_webhook_default_body(self, run, execution):
        effect = run("webhook", {"url": "https://hooks.example.com/flow"})

        assert effect.request.method == "POST"
        assert effect.request.body["execution_id"] == execution.id
        assert effect.request.body["context"]["name"] == "Ana"


class TestActions:
    def test_assignment(self, run):
        effect = run("assignment", {"team_id": "support"})

        assert effect == CallExternal(AssignConversation(agent_id=None, team_id="support"))

    def test_tags(self, run):
        effect = run("tag", {"action": "remove", "tags": ["lead", "{{name}}"]})

        assert effect == CallExternal(UpdateContactTags(action="remove", tags=["lead", "Ana"]))

    def test_update_contact_resolves_fields(self, run):
        fields = {"first_name": "{{name}}", "last_order": "{{order}}", "note": "Order {{order.id}}"}

        effect = run("update_contact", {"fields": fields})

        assert effect == CallExternal(
            UpdateContactFields(
                fields={"first_name": "Ana", "last_order": {"id": 7, "total": 19.5}, "note": "Order 7"}
            )
        )

    @pytest.mark.parametrize("fields", [None, {}, ["email"]])
    def test_update_contact_needs_fields(self, registry, fields):
        node = FlowNode(id="save", type="update_contact", data={"fields": fields} if fields is not None else {})

        with pytest.raises(ConfigurationError):
            registry.validate_node(node)


class TestRegistry:
    def test_builtin_types(self, registry):
        assert registry.list_types() == [
            "api", "assignment", "button", "condition", "delay", "end",
            "input", "message", "start", "tag", "template", "update_contact", "webhook",
        ]

    def test_register_custom_type(self, registry, make_graph):
        registry.register(NodeSpec(type="noop", builder=lambda step: Mutate()))
        graph = make_graph(
            [("start", "start", {}), ("skip", "noop", {}), ("end", "end", {})],
            [("start", "skip"), ("skip", "end")],
        )

        graph.validate(registry)
        assert registry.has("noop")

    def test_builder_cannot_mutate_context(self, registry, execution, clock):
        def greedy(step):
            step.context["stolen"] = True
            return Mutate()

        registry.register(NodeSpec(type="greedy", builder=greedy))
        registry.dispatch(FlowNode(id="g", type="greedy"), execution, clock.now())

        assert "stolen" not in execution.context

    def test_retry_wake_not_passed_to_builder(self, run, execution, clock):
        execution.wake = WakeCondition(kind=WakeKind.RETRY, node_id="node", deadline=clock.now())
        execution.pending_event = WakeEvent.timer(clock.now())

        effect = run("input", {"prompt": "Again?"})

        assert isinstance(effect, SuspendUntil)
        assert effect.notice.text == "Again?"
