# backend/tests/unit/test_flow_models.py

import json
from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from leadflow.models.events import InboundMessageEvent, NewLeadEvent, ScheduleTickEvent, parse_event
from leadflow.models.execution import Execution, ceil_to_millisecond
from leadflow.models.flow import Flow, FlowNode, KeywordTriggerConfig


class TestFlow:

    def test_legacy_keyword_flow(self):
        flow = Flow.model_validate({
            "_id": "f1", "company_id": "c1", "is_active": True, "trigger_keywords": [" Oi ", "PROMO", ""],
        })
        assert flow.trigger_type == "keyword"
        assert isinstance(flow.trigger_config, KeywordTriggerConfig)
        assert flow.trigger_config.keywords == ["oi", "promo"]

    def test_comma_separated_keywords(self):
        flow = Flow.model_validate({
            "_id": "f1", "company_id": "c1", "trigger_type": "keyword", "trigger_config": {"keywords": "oi, olá"},
        })
        assert flow.trigger_config.keywords == ["oi", "olá"]

    def test_invalid_cron_is_rejected(self):
        with pytest.raises(ValidationError, match="Invalid schedule"):
            Flow.model_validate({
                "_id": "f1", "company_id": "c1", "trigger_type": "schedule", "trigger_config": {"cron": "every day"},
            })

    def test_unknown_trigger_type_is_rejected(self):
        with pytest.raises(ValidationError):
            Flow.model_validate({"_id": "f1", "company_id": "c1", "trigger_type": "birthday"})


class TestFlowNode:

    def test_config_is_tagged_from_node_type(self):
        node = FlowNode.model_validate({
            "_id": "n1", "flow_id": "f1", "node_type": "delay", "config": {"delay_value": 3, "delay_unit": "days"},
        })
        assert node.config.seconds == 3 * 86400

    def test_delay_without_values_is_zero(self):
        node = FlowNode.model_validate({"_id": "n1", "flow_id": "f1", "node_type": "delay", "config": {}})
        assert node.config.seconds == 0

    def test_action_requires_target(self):
        with pytest.raises(ValidationError, match="require an action_value"):
            FlowNode.model_validate({"_id": "n1", "flow_id": "f1", "node_type": "action", "config": {"action_type": "add_tag"}})
        with pytest.raises(ValidationError, match="require a url"):
            FlowNode.model_validate({"_id": "n1", "flow_id": "f1", "node_type": "action", "config": {"action_type": "webhook"}})

    def test_negative_delay_is_rejected(self):
        with pytest.raises(ValidationError):
            FlowNode.model_validate({"_id": "n1", "flow_id": "f1", "node_type": "delay", "config": {"delay_seconds": -5}})

    def test_randomizer_needs_positive_weight(self):
        with pytest.raises(ValidationError, match="positive total weight"):
            FlowNode.model_validate({
                "_id": "n1", "flow_id": "f1", "node_type": "condition",
                "config": {"is_randomizer": True, "branches": [{"handle": "a", "weight": 0}]},
            })


class TestEvents:

    def test_parse_event_from_json(self):
        event = parse_event(json.dumps({"event_type": "new_lead", "company_id": "c1", "lead_id": "l1"}))
        assert isinstance(event, NewLeadEvent)

    def test_parse_event_from_dict(self):
        event = parse_event({"event_type": "inbound_message", "company_id": "c1", "contact_id": "k1", "button_index": 2})
        assert isinstance(event, InboundMessageEvent)
        assert event.message_text == ""

    def test_round_trip_keeps_schedule_time(self):
        tick = ScheduleTickEvent(now=datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc))
        assert parse_event(tick.model_dump_json()) == tick

    def test_unknown_event_type(self):
        with pytest.raises(ValidationError):
            parse_event({"event_type": "birthday", "company_id": "c1"})

    def test_negative_button_index(self):
        with pytest.raises(ValidationError):
            parse_event({"event_type": "continue_execution", "company_id": "c1", "execution_id": "e1",
                         "expected_node_id": "q", "button_index": -1})

    def test_continue_execution_needs_the_node_it_answers(self):
        with pytest.raises(ValidationError, match="expected_node_id"):
            parse_event({"event_type": "continue_execution", "company_id": "c1", "execution_id": "e1", "reply_text": "1"})


class TestExecution:

    def test_document_carries_active_flag(self):
        execution = Execution(company_id="c1", flow_id="f1", contact_id="k1", current_node_id="s")
        document = execution.to_document()
        assert document["_id"] == execution.id
        assert document["is_active"] is True
        assert document["status"] == "running"

    def test_naive_datetimes_are_utc(self):
        execution = Execution.model_validate({
            "_id": "e1", "company_id": "c1", "flow_id": "f1", "contact_id": "k1", "current_node_id": "s",
            "next_action_at": datetime(2026, 3, 2, 9, 0),
        })
        assert execution.next_action_at.tzinfo == timezone.utc

    def test_deadlines_round_up_to_milliseconds(self):
        value = datetime(2026, 3, 2, 9, 0, 0, 1500, tzinfo=timezone.utc)
        assert ceil_to_millisecond(value).microsecond == 2000
        exact = datetime(2026, 3, 2, 9, 0, 0, 2000, tzinfo=timezone.utc)
        assert ceil_to_millisecond(exact) == exact
