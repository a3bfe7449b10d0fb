"""Tests for the node executors and the collaborators they call."""

import pytest
from sqlalchemy import text

from clinicflow.core.exceptions import DataStoreError, NodeExecutionError
from clinicflow.models.core import FlowContext, NodeDefinition
from clinicflow.nodes import (
    execute_ai_analysis,
    execute_api_call,
    execute_condition,
    execute_database_query,
    execute_database_update,
    execute_delay,
    execute_notification,
    execute_transform,
    execute_trigger,
    execute_webhook,
)
from clinicflow.nodes.ai import DEFAULT_PROMPT
from clinicflow.storage.database import get_database_engine


def make_node(node_type, config=None, node_id="node"):
    return NodeDefinition.model_validate({"id": node_id, "type": node_type, "config": config or {}})


def make_context(**overrides):
    data = {
        "execution_id": "exec-1",
        "flow_id": "flow-1",
        "context_type": "appointment",
        "input_data": {"patient": "Ana", "id": "a-2"},
        "node_results": {"lookup": {"success": True, "data": [{"id": "a-1", "status": "no_show"}]}},
    }
    data.update(overrides)
    return FlowContext(**data)


@pytest.fixture
def appointments(temp_db):
    """A clinic table the data nodes can read and write."""
    with get_database_engine().begin() as connection:
        connection.execute(text(
            "CREATE TABLE appointments ("
            "id VARCHAR PRIMARY KEY, patient_name VARCHAR, status VARCHAR, follow_up_status VARCHAR)"
        ))
        connection.execute(text(
            "INSERT INTO appointments (id, patient_name, status) VALUES "
            "('a-1', 'Ana', 'no_show'), ('a-2', 'Bo', 'booked'), ('a-3', 'Cy', 'no_show')"
        ))
    return "appointments"


class TestBasicNodes:
    """Test cases for nodes that only read the context."""

    def test_trigger_passes_input_through(self, services):
        result = execute_trigger(make_node("trigger"), make_context(), services)
        assert result == {"success": True, "data": {"patient": "Ana", "id": "a-2"}}

    def test_condition_reads_node_results(self, services):
        node = make_node("condition", {"condition": "{{lookup.data.0.status}}"})
        result = execute_condition(node, make_context(), services)

        assert result["success"] is True
        assert result["result"] is True
        assert result["data"] == {"condition": "{{lookup.data.0.status}}", "result": True}

    def test_condition_false_for_unresolved_path(self, services):
        node = make_node("condition", {"condition": "{{lookup.data.5.status}}"})
        assert execute_condition(node, make_context(), services)["result"] is False

    def test_empty_condition_is_false(self, services):
        assert execute_condition(make_node("condition"), make_context(), services)["result"] is False

    def test_delay_uses_injected_sleep(self, services):
        slept = []
        services.sleep = slept.append

        result = execute_delay(make_node("delay", {"delay": 1500}), make_context(), services)

        assert result == {"success": True, "delayed": 1500}
        assert slept == [1.5]

    def test_delay_default(self, services):
        slept = []
        services.sleep = slept.append
        execute_delay(make_node("delay"), make_context(), services)
        assert slept == [1.0]

    def test_transform_builds_object(self, services):
        node = make_node("transform", {"transform": {
            "name": "{{input.patient}}",
            "status": "{{lookup.data.0.status}}",
            "context": "{{context.type}}",
            "fixed": 3,
        }})

        result = execute_transform(node, make_context(), services)

        assert result == {
            "success": True,
            "data": {"name": "Ana", "status": "no_show", "context": "appointment", "fixed": 3},
        }

    def test_notification_reports_sent(self, services):
        node = make_node("notification", {"type": "sms", "recipient": "{{input.patient}}", "message": "Hi"})
        assert execute_notification(node, make_context(), services) == {"success": True, "sent": True}


class TestHttpNodes:
    """Test cases for api_call and webhook nodes."""

    def test_api_call_resolves_templates(self, services, http_client):
        http_client.responses.append({"status": 200, "ok": True, "data": {"balance": 10}})
        node = make_node("api_call", {
            "url": "https://billing.example.com/patients/{{input.id}}",
            "method": "post",
            "headers": {"X-Patient": "{{input.patient}}"},
            "body": {"status": "{{lookup.data.0.status}}"},
        })

        result = execute_api_call(node, make_context(), services)

        assert result == {"success": True, "data": {"balance": 10}, "status": 200}
        assert http_client.requests == [{
            "method": "POST",
            "url": "https://billing.example.com/patients/a-2",
            "headers": {"X-Patient": "Ana"},
            "json": {"status": "no_show"},
        }]

    def test_api_call_non_2xx_is_unsuccessful_result(self, services, http_client):
        http_client.responses.append({"status": 404, "ok": False, "data": {"detail": "missing"}})
        node = make_node("api_call", {"url": "https://billing.example.com/x"})

        result = execute_api_call(node, make_context(), services)

        assert result == {"success": False, "data": {"detail": "missing"}, "status": 404}
        assert http_client.requests[0]["method"] == "GET"
        assert http_client.requests[0]["json"] is None

    def test_webhook_default_body(self, services, http_client):
        node = make_node("webhook", {"url": "https://hooks.example.com/{{context.type}}"})

        result = execute_webhook(node, make_context(), services)

        assert result == {"success": True, "status": 200}
        request = http_client.requests[0]
        assert request["method"] == "POST"
        assert request["url"] == "https://hooks.example.com/appointment"
        assert request["json"] == {
            "patient": "Ana",
            "id": "a-2",
            "lookup": {"success": True, "data": [{"id": "a-1", "status": "no_show"}]},
        }

    def test_webhook_configured_body(self, services, http_client):
        node = make_node("webhook", {"url": "https://hooks.example.com", "body": {"who": "{{input.patient}}"}})
        execute_webhook(node, make_context(), services)
        assert http_client.requests[0]["json"] == {"who": "Ana"}


class TestAINode:
    """Test cases for the ai_analysis node."""

    def test_node_prompt_wins(self, services, text_generator):
        node = make_node("ai_analysis", {"prompt": "Summarize {{input.patient}}", "model": "small"})

        result = execute_ai_analysis(node, make_context(ai_prompt="flow prompt"), services)

        assert result == {"success": True, "result": "Looks fine", "model": "small"}
        assert text_generator.calls[0]["prompt"] == "Summarize Ana"
        assert text_generator.calls[0]["message"] == '{"patient": "Ana", "id": "a-2"}'

    def test_flow_prompt_and_model_fallback(self, services, text_generator):
        execute_ai_analysis(make_node("ai_analysis"), make_context(ai_prompt="Flow prompt", ai_model="big"), services)
        assert text_generator.calls[0]["prompt"] == "Flow prompt"
        assert text_generator.calls[0]["model"] == "big"

    def test_default_prompt(self, services, text_generator):
        result = execute_ai_analysis(make_node("ai_analysis"), make_context(), services)
        assert text_generator.calls[0]["prompt"] == DEFAULT_PROMPT
        assert result["model"] == "fake-model"


class TestDataNodes:
    """Test cases for database_query and database_update against a real table."""

    def test_query_with_filters(self, services, appointments):
        node = make_node("database_query", {"table": appointments, "filters": {"status": "no_show"}})

        result = execute_database_query(node, make_context(), services)

        assert result["success"] is True
        assert sorted(row["id"] for row in result["data"]) == ["a-1", "a-3"]

    def test_query_filter_templates_and_limit(self, services, appointments):
        node = make_node("database_query", {
            "table": appointments,
            "filters": {"status": "{{lookup.data.0.status}}"},
            "limit": 1,
        })
        assert len(execute_database_query(node, make_context(), services)["data"]) == 1

    def test_query_use_context(self, services, appointments):
        node = make_node("database_query", {"table": appointments, "use_context": True})

        result = execute_database_query(node, make_context(context_id="a-2"), services)

        assert result["data"] == [
            {"id": "a-2", "patient_name": "Bo", "status": "booked", "follow_up_status": None}
        ]

    def test_query_unknown_column(self, services, appointments):
        node = make_node("database_query", {"table": appointments, "filters": {"nope": 1}})
        with pytest.raises(DataStoreError):
            execute_database_query(node, make_context(), services)

    def test_query_unknown_table(self, services):
        node = make_node("database_query", {"table": "no_such_table"})
        with pytest.raises(DataStoreError) as exc_info:
            execute_database_query(node, make_context(), services)
        assert "does not exist" in str(exc_info.value)

    def test_update_context_record(self, services, appointments):
        node = make_node("database_update", {
            "table": appointments,
            "updates": {"follow_up_status": "sent by {{input.patient}}"},
        })

        result = execute_database_update(node, make_context(context_id="a-1"), services)

        assert result["success"] is True
        assert result["data"]["id"] == "a-1"
        assert result["data"]["follow_up_status"] == "sent by Ana"

    def test_update_target_precedence(self, services, appointments):
        """Configured id is used before input.id when there is no context record."""
        node = make_node("database_update", {"table": appointments, "id": "a-3", "updates": {"status": "seen"}})
        assert execute_database_update(node, make_context(), services)["data"]["id"] == "a-3"

        node = make_node("database_update", {"table": appointments, "updates": {"status": "seen"}})
        assert execute_database_update(node, make_context(), services)["data"]["id"] == "a-2"

    def test_update_requires_target(self, services, appointments):
        node = make_node("database_update", {"table": appointments, "updates": {"status": "seen"}})
        with pytest.raises(NodeExecutionError) as exc_info:
            execute_database_update(node, make_context(input_data={}), services)
        assert str(exc_info.value) == "Update target ID is required"

    def test_update_missing_row(self, services, appointments):
        node = make_node("database_update", {"table": appointments, "updates": {"status": "seen"}})
        with pytest.raises(DataStoreError):
            execute_database_update(node, make_context(context_id="zzz"), services)
