"""Tests for matching flow triggers against clinic events."""

import pytest

from clinicflow.core.triggers import evaluate_trigger_condition, matches_trigger, module_for_context
from clinicflow.models.core import FlowDefinition


def flow_with_trigger(trigger_type, **trigger_config):
    return FlowDefinition.model_validate({
        "name": f"{trigger_type} flow",
        "trigger_type": trigger_type,
        "trigger_config": trigger_config,
        "nodes": [{"id": "start", "type": "trigger"}],
    })


class TestModuleForContext:
    def test_whatsapp_conversations_map_to_whatsapp(self):
        assert module_for_context("whatsapp_conversation") == "whatsapp"

    def test_other_context_types_are_their_own_module(self):
        assert module_for_context("appointments") == "appointments"
        assert module_for_context("patient") == "patient"


class TestMatchesTrigger:
    """Test cases for each trigger type."""

    def test_event_trigger(self):
        flow = flow_with_trigger("event", events=["user", "system"])

        assert matches_trigger(flow, "user") is True
        assert matches_trigger(flow, "webhook") is False

    def test_event_trigger_defaults_to_system_caller(self):
        assert matches_trigger(flow_with_trigger("event", events=["system"]), None) is True
        assert matches_trigger(flow_with_trigger("event"), "system") is False

    def test_condition_trigger(self):
        flow = flow_with_trigger("condition", condition='{{appointment.status}} == "missed"')

        assert matches_trigger(flow, "system", {"appointment": {"status": "missed"}}) is True
        assert matches_trigger(flow, "system", {"appointment": {"status": "booked"}}) is False
        assert matches_trigger(flow, "system", {}) is False

    def test_condition_trigger_without_condition_matches(self):
        assert matches_trigger(flow_with_trigger("condition"), "user", {}) is True

    @pytest.mark.parametrize("trigger_type,caller", [
        ("webhook", "webhook"),
        ("api_call", "api"),
        ("database_change", "system"),
        ("user_action", "user"),
    ])
    def test_caller_triggers(self, trigger_type, caller):
        flow = flow_with_trigger(trigger_type)

        assert matches_trigger(flow, caller) is True
        assert matches_trigger(flow, "schedule") is False
        assert matches_trigger(flow, None) is False

    def test_ai_detection_trigger(self):
        flow = flow_with_trigger("ai_detection", patterns=["Chest Pain", "bleeding"])

        assert matches_trigger(flow, "webhook", {"message": "I have chest pain since today"}) is True
        assert matches_trigger(flow, "webhook", {"notes": ["minor BLEEDING"]}) is True
        assert matches_trigger(flow, "webhook", {"message": "Can I move my appointment?"}) is False
        assert matches_trigger(flow_with_trigger("ai_detection"), "webhook", {"message": "x"}) is False

    def test_manual_and_unknown_triggers_always_match(self):
        assert matches_trigger(flow_with_trigger("manual"), None) is True
        assert matches_trigger(flow_with_trigger("schedule"), "user", {"a": 1}) is True


class TestTriggerConditions:
    """Test cases for trigger condition comparisons."""

    def test_equality_compares_json_text(self):
        data = {"status": "missed", "count": 3, "urgent": True}

        assert evaluate_trigger_condition('{{status}} == "missed"', data) is True
        assert evaluate_trigger_condition("{{status}} == missed", data) is False
        assert evaluate_trigger_condition("{{count}} == 3", data) is True
        assert evaluate_trigger_condition("{{urgent}} == true", data) is True

    def test_inequality(self):
        assert evaluate_trigger_condition('{{status}} != "booked"', {"status": "missed"}) is True
        assert evaluate_trigger_condition('{{status}} != "missed"', {"status": "missed"}) is False

    def test_numeric_comparisons(self):
        data = {"patient": {"age": 70}}

        assert evaluate_trigger_condition("{{patient.age}} > 65", data) is True
        assert evaluate_trigger_condition("{{patient.age}} < 65", data) is False
        assert evaluate_trigger_condition("{{patient.name}} > 1", {"patient": {"name": "Ana"}}) is False

    def test_missing_path_is_false(self):
        assert evaluate_trigger_condition("{{patient.age}} > 65", {"patient": {}}) is False
        assert evaluate_trigger_condition("{{anything}}", {}) is False

    def test_without_operator_resolved_text_decides(self):
        assert evaluate_trigger_condition("{{flag}}", {"flag": False}) is True
        assert evaluate_trigger_condition("", {}) is False
