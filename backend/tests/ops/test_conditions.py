"""
Kindred Ops - Condition DSL Tests
=================================
"""

import pytest

from kindred_ops.core.models import AgentEvent
from kindred_ops.core.ops.actions import parse_action, render_template
from kindred_ops.core.ops.conditions import evaluate, event_fields, matches, parse_condition
from kindred_ops.core.ops.errors import TriggerEvaluationError


def make_event(event_type: str = "step_completed", agent_id: str = "steve", **data) -> AgentEvent:
    return AgentEvent(event_type=event_type, agent_id=agent_id, event_data=data)


DEPLOY_DONE = {
    "op": "all",
    "conditions": [
        {"op": "eq", "field": "type", "value": "step_completed"},
        {"op": "eq", "field": "step_kind", "value": "deploy"},
    ],
}


class TestConditions:
    """Tests for parsing and evaluating conditions."""

    def test_eq(self):
        condition = {"op": "eq", "field": "type", "value": "comment_created"}

        assert matches(condition, make_event("comment_created")) is True
        assert matches(condition, make_event("market_expired")) is False

    def test_in(self):
        condition = {"op": "in", "field": "agent_id", "values": ["steve", "patrick"]}

        assert matches(condition, make_event(agent_id="patrick")) is True
        assert matches(condition, make_event(agent_id="buffett")) is False

    def test_all_requires_every_branch(self):
        assert matches(DEPLOY_DONE, make_event(step_kind="deploy")) is True
        assert matches(DEPLOY_DONE, make_event(step_kind="build")) is False
        assert matches(DEPLOY_DONE, make_event("step_failed", step_kind="deploy")) is False

    def test_any_and_not(self):
        condition = {
            "op": "any",
            "conditions": [
                {"op": "eq", "field": "type", "value": "market_expired"},
                {"op": "not", "condition": {"op": "eq", "field": "agent_id", "value": "steve"}},
            ],
        }

        assert matches(condition, make_event("market_expired")) is True
        assert matches(condition, make_event(agent_id="patrick")) is True
        assert matches(condition, make_event(agent_id="steve")) is False

    @pytest.mark.parametrize("raw", [
        None,
        "event.type == 'x'",
        {"op": "regex", "field": "type", "value": ".*"},
        {"op": "eq", "field": "event_data", "value": "x"},
        {"op": "eq", "field": "type"},
        {"op": "all", "conditions": []},
        {"op": "eq", "field": "type", "value": "x", "extra": 1},
    ])
    def test_malformed_condition_raises(self, raw):
        with pytest.raises(TriggerEvaluationError):
            parse_condition(raw)

    def test_parsed_condition_is_reusable(self):
        parsed = parse_condition(DEPLOY_DONE)

        assert parse_condition(parsed) is parsed
        assert evaluate(parsed, {"type": "step_completed", "step_kind": "deploy"}) is True

    def test_event_fields_ignore_non_string_step_kind(self):
        fields = event_fields(make_event(step_kind=["deploy"]))

        assert fields == {"type": "step_completed", "step_kind": None, "agent_id": "steve"}


class TestActions:
    """Tests for proposal action templates."""

    def test_render_known_placeholders(self):
        title = render_template("Create market for comment {comment_id}", {"comment_id": "c-42"})

        assert title == "Create market for comment c-42"

    def test_unknown_placeholders_left_alone(self):
        assert render_template("Settle {market_id}", {}) == "Settle {market_id}"

    def test_parse_action_defaults(self):
        action = parse_action({"create_proposal": {"title": "Audit", "step_kinds": ["audit"]}})

        assert action.create_proposal.auto_approve is True
        assert action.create_proposal.description is None

    @pytest.mark.parametrize("raw", [
        {},
        {"create_proposal": {"title": "Audit"}},
        {"create_proposal": {"title": "Audit", "step_kinds": []}},
        {"delete_everything": {}},
    ])
    def test_malformed_action_raises(self, raw):
        with pytest.raises(TriggerEvaluationError):
            parse_action(raw)
