"""Tests for the flow manager, execution tracker, node registry and execution engine."""

import pytest

from clinicflow.core.exceptions import (
    ConfigurationError,
    ExecutionEngineError,
    ExecutionNotFoundError,
    ExecutionTrackingError,
    FlowNotFoundError,
    FlowValidationError,
    HttpCallError,
)
from clinicflow.core.execution_engine import ExecutionEngine
from clinicflow.core.flow_manager import parse_flow_definition
from clinicflow.core.node_registry import NodeExecutorRegistry
from clinicflow.models.core import (
    ExecutionStatusEnum,
    FlowDefinition,
    FlowLogLevel,
    FlowUpdate,
    NodeType,
)
from clinicflow.nodes import DEFAULT_EXECUTORS


def transform(node_id, **fields):
    return {"id": node_id, "type": "transform", "config": {"transform": fields}}


def linear_flow(**overrides):
    """Trigger -> two transforms, connected in a line."""
    data = {
        "name": "Linear flow",
        "nodes": [
            {"id": "A", "type": "trigger", "label": "Start"},
            transform("B", greeting="Hello {{input.name}}"),
            transform("C", echo="{{B.data.greeting}}"),
        ],
        "edges": [
            {"source": "A", "target": "B"},
            {"source": "B", "target": "C"},
        ],
    }
    data.update(overrides)
    return FlowDefinition.model_validate(data)


def run(engine, flow, context_type="patient", context_id=None, input_data=None):
    execution_id, _ = engine.execute_flow(flow.id, context_type, context_id, input_data)
    return engine.wait_for_completion(execution_id, timeout=10)


class TestFlowManager:
    """Test cases for FlowManager."""

    def test_create_and_get_flow(self, flow_manager):
        """Test storing a flow and reading it back."""
        flow = flow_manager.create_flow(linear_flow(tags=["intake"]))

        assert flow.id
        assert flow.created_at is not None

        loaded = flow_manager.get_flow(flow.id)
        assert loaded.name == "Linear flow"
        assert [node.id for node in loaded.nodes] == ["A", "B", "C"]
        assert loaded.nodes[1].config.transform == {"greeting": "Hello {{input.name}}"}
        assert loaded.tags == ["intake"]

    def test_get_missing_flow(self, flow_manager):
        """Test that unknown IDs raise FlowNotFoundError."""
        with pytest.raises(FlowNotFoundError):
            flow_manager.get_flow("does-not-exist")

    def test_load_active_flow_rejects_inactive(self, flow_manager):
        """Test that inactive flows cannot be loaded for execution."""
        flow = flow_manager.create_flow(linear_flow(is_active=False))

        with pytest.raises(FlowNotFoundError) as exc_info:
            flow_manager.load_active_flow(flow.id)
        assert "not found or inactive" in str(exc_info.value)

        # still readable for editing
        assert flow_manager.get_flow(flow.id).is_active is False

    def test_list_flows_filters_and_order(self, flow_manager):
        """Test listing by module and tag, highest priority first."""
        low = flow_manager.create_flow(linear_flow(name="Low", module="billing", priority=1))
        high = flow_manager.create_flow(linear_flow(name="High", module="billing", priority=9, tags=["vip"]))
        flow_manager.create_flow(linear_flow(name="Other", module="appointments"))

        billing = flow_manager.list_flows(module="billing")
        assert [flow.id for flow in billing] == [high.id, low.id]

        tagged = flow_manager.list_flows(tag="vip")
        assert [flow.id for flow in tagged] == [high.id]

        assert len(flow_manager.list_flows()) == 3

    def test_list_flows_by_active_state(self, flow_manager):
        flow_manager.create_flow(linear_flow(name="On"))
        flow_manager.create_flow(linear_flow(name="Off", is_active=False))

        assert [flow.name for flow in flow_manager.list_flows(is_active=True)] == ["On"]
        assert [flow.name for flow in flow_manager.list_flows(is_active=False)] == ["Off"]

    def test_update_flow(self, flow_manager):
        """Test that a partial update keeps untouched fields."""
        flow = flow_manager.create_flow(linear_flow(description="first"))

        updated = flow_manager.update_flow(flow.id, FlowUpdate(name="Renamed", is_active=False))

        assert updated.name == "Renamed"
        assert updated.is_active is False
        assert updated.description == "first"
        assert len(updated.nodes) == 3

    def test_update_flow_revalidates(self, flow_manager):
        """Test that an update producing an invalid flow is rejected."""
        flow = flow_manager.create_flow(linear_flow())

        with pytest.raises(FlowValidationError):
            flow_manager.update_flow(flow.id, FlowUpdate(edges=[{"source": "A", "target": "Z"}]))

        assert len(flow_manager.get_flow(flow.id).edges) == 2

    def test_update_missing_flow(self, flow_manager):
        with pytest.raises(FlowNotFoundError):
            flow_manager.update_flow("nope", FlowUpdate(name="x"))

    def test_delete_flow(self, flow_manager):
        flow = flow_manager.create_flow(linear_flow())

        assert flow_manager.delete_flow(flow.id) is True
        assert flow_manager.delete_flow(flow.id) is False
        with pytest.raises(FlowNotFoundError):
            flow_manager.get_flow(flow.id)

    def test_validate_flow_warnings(self, flow_manager):
        """Test that graph-shape problems are warnings, not errors."""
        definition = FlowDefinition.model_validate({
            "name": "Shapes",
            "nodes": [
                {"id": "A", "type": "trigger"},
                {"id": "B", "type": "trigger"},
                {"id": "C", "type": "trigger"},
            ],
            "edges": [
                {"source": "B", "target": "C"},
                {"source": "C", "target": "B"},
            ],
        })

        result = flow_manager.validate_flow(definition)

        assert result.is_valid is True
        assert any("Unreachable nodes detected: B, C" in warning for warning in result.warnings)
        assert any("cycles" in warning for warning in result.warnings)

    def test_validate_payload_errors(self, flow_manager):
        """Test that invalid payloads are reported without raising."""
        result = flow_manager.validate_payload({
            "name": "Broken",
            "nodes": [{"id": "A", "type": "trigger"}, {"id": "A", "type": "delay"}],
        })

        assert result.is_valid is False
        assert any("unique" in error for error in result.errors)

    def test_parse_flow_definition_rejects_bad_node_config(self):
        with pytest.raises(FlowValidationError) as exc_info:
            parse_flow_definition({
                "name": "Bad query",
                "nodes": [{"id": "q", "type": "database_query", "config": {"table": ""}}],
            })
        assert "Table name is required" in str(exc_info.value)
        assert exc_info.value.validation_errors


class TestExecutionTracker:
    """Test cases for ExecutionTracker."""

    def test_execution_lifecycle(self, flow_manager, tracker):
        """Test create -> progress -> complete."""
        flow = flow_manager.create_flow(linear_flow())

        execution_id = tracker.create_execution(flow.id, "patient", "p-1", {"name": "Ana"}, triggered_by="u-1")
        status = tracker.get_execution(execution_id)
        assert status.status == ExecutionStatusEnum.RUNNING
        assert status.input_data == {"name": "Ana"}
        assert status.triggered_by_type == "api"

        tracker.record_progress(execution_id, "A", {"A": {"success": True}})
        status = tracker.get_execution(execution_id)
        assert status.current_node_id == "A"
        assert status.node_results == {"A": {"success": True}}

        tracker.complete_execution(execution_id, {"A": {"success": True}, "B": {"success": True}})
        status = tracker.get_execution(execution_id)
        assert status.status == ExecutionStatusEnum.COMPLETED
        assert status.output_data == {"A": {"success": True}, "B": {"success": True}}
        assert status.completed_at is not None
        assert status.duration_ms is not None and status.duration_ms >= 0

    def test_fail_execution(self, flow_manager, tracker):
        flow = flow_manager.create_flow(linear_flow())
        execution_id = tracker.create_execution(flow.id, "patient")

        tracker.fail_execution(execution_id, "boom", "Traceback ...")

        status = tracker.get_execution(execution_id)
        assert status.status == ExecutionStatusEnum.FAILED
        assert status.error_message == "boom"
        assert status.error_stack == "Traceback ..."
        assert status.output_data is None

    def test_logs_are_returned_in_order(self, flow_manager, tracker):
        flow = flow_manager.create_flow(linear_flow())
        execution_id = tracker.create_execution(flow.id, "patient")

        tracker.append_log(execution_id, "A", FlowLogLevel.INFO, "first")
        tracker.append_log(execution_id, "B", "warning", "second", {"k": 1})
        tracker.append_log(execution_id, None, FlowLogLevel.ERROR, "third")

        logs = tracker.get_logs(execution_id)
        assert [entry.message for entry in logs] == ["first", "second", "third"]
        assert logs[1].level == FlowLogLevel.WARNING
        assert logs[1].data == {"k": 1}
        assert logs[2].node_id is None

    def test_unknown_execution(self, tracker):
        with pytest.raises(ExecutionNotFoundError) as exc_info:
            tracker.get_execution("missing")
        assert exc_info.value.context["execution_id"] == "missing"
        assert isinstance(exc_info.value, ExecutionTrackingError)
        with pytest.raises(ExecutionNotFoundError):
            tracker.get_logs("missing")

    def test_list_executions(self, flow_manager, tracker):
        flow = flow_manager.create_flow(linear_flow())
        ids = [tracker.create_execution(flow.id, "patient") for _ in range(3)]

        executions = tracker.list_executions(flow.id)
        assert {execution.execution_id for execution in executions} == set(ids)
        assert len(tracker.list_executions(flow.id, limit=2)) == 2
        assert tracker.list_executions("other") == []


class TestNodeExecutorRegistry:
    """Test cases for NodeExecutorRegistry."""

    def test_every_node_type_has_an_executor(self):
        registry = NodeExecutorRegistry()
        assert set(registry.registered_types()) == {node_type.value for node_type in NodeType}
        assert set(DEFAULT_EXECUTORS) == set(NodeType)

    def test_override_executor(self):
        def custom(node, context, services):
            return {"success": True, "custom": True}

        registry = NodeExecutorRegistry({NodeType.TRANSFORM: custom})
        assert registry.get(NodeType.TRANSFORM) is custom
        assert registry.get("delay") is DEFAULT_EXECUTORS[NodeType.DELAY]

    def test_register_refuses_silent_replacement(self):
        registry = NodeExecutorRegistry()
        with pytest.raises(ConfigurationError):
            registry.register(NodeType.DELAY, lambda node, context, services: {})

    def test_register_requires_callable(self):
        registry = NodeExecutorRegistry()
        with pytest.raises(ConfigurationError):
            registry.register(NodeType.DELAY, "not callable", replace=True)


class TestExecutionEngine:
    """Test cases for ExecutionEngine."""

    def test_linear_flow_executes_every_node(self, flow_manager, execution_engine):
        """Test A -> B -> C completes with three results."""
        flow = flow_manager.create_flow(linear_flow())

        status = run(execution_engine, flow, input_data={"name": "Ana"})

        assert status.status == ExecutionStatusEnum.COMPLETED
        assert set(status.node_results) == {"A", "B", "C"}
        assert status.node_results["A"] == {"success": True, "data": {"name": "Ana"}}
        assert status.node_results["C"]["data"] == {"echo": "Hello Ana"}
        assert status.output_data == status.node_results
        assert status.current_node_id == "C"

    def test_logs_record_each_node(self, flow_manager, tracker, execution_engine):
        flow = flow_manager.create_flow(linear_flow())

        status = run(execution_engine, flow)
        logs = tracker.get_logs(status.execution_id)

        node_logs = [entry for entry in logs if entry.message.startswith("Executing node")]
        assert [entry.node_id for entry in node_logs] == ["A", "B", "C"]
        assert node_logs[0].message == "Executing node: Start"
        assert node_logs[1].data == {"type": "transform"}
        assert logs[-1].message == "Flow execution completed"

    def test_execute_flow_returns_before_completion(self, flow_manager, execution_engine):
        flow = flow_manager.create_flow(linear_flow())

        execution_id, returned_flow = execution_engine.execute_flow(flow.id, "patient", "p-9")

        assert returned_flow.id == flow.id
        assert execution_engine.wait_for_completion(execution_id, timeout=10).context_id == "p-9"

    def test_condition_branching(self, flow_manager, execution_engine):
        """Test that the first matching edge in declaration order is followed."""
        flow = flow_manager.create_flow(FlowDefinition.model_validate({
            "name": "Branching",
            "nodes": [
                {"id": "check", "type": "condition", "config": {"condition": "{{input.urgent}}"}},
                transform("urgent", route="urgent"),
                transform("routine", route="routine"),
            ],
            "edges": [
                {"source": "check", "target": "urgent", "condition": "{{result}}"},
                {"source": "check", "target": "routine"},
            ],
        }))

        urgent = run(execution_engine, flow, input_data={"urgent": True})
        assert set(urgent.node_results) == {"check", "urgent"}
        assert urgent.node_results["check"]["result"] is True

        routine = run(execution_engine, flow, input_data={"urgent": "false"})
        assert set(routine.node_results) == {"check", "routine"}

        missing = run(execution_engine, flow, input_data={})
        assert set(missing.node_results) == {"check", "routine"}

    def test_no_matching_edge_ends_the_walk(self, flow_manager, execution_engine):
        flow = flow_manager.create_flow(FlowDefinition.model_validate({
            "name": "Dead end",
            "nodes": [{"id": "A", "type": "trigger"}, transform("B", x="1")],
            "edges": [{"source": "A", "target": "B", "condition": "{{input.go}}"}],
        }))

        status = run(execution_engine, flow)

        assert status.status == ExecutionStatusEnum.COMPLETED
        assert set(status.node_results) == {"A"}

    def test_node_failure_fails_execution(self, flow_manager, tracker, services, execution_engine):
        """Test that a failing node stops the walk and records its error."""
        services.http_client.responses.append(HttpCallError("GET https://ehr.invalid failed: timeout"))
        flow = flow_manager.create_flow(FlowDefinition.model_validate({
            "name": "Failing",
            "nodes": [
                {"id": "A", "type": "trigger"},
                {"id": "fetch", "type": "api_call", "config": {"url": "https://ehr.invalid"}},
                transform("C", x="1"),
            ],
            "edges": [{"source": "A", "target": "fetch"}, {"source": "fetch", "target": "C"}],
        }))

        status = run(execution_engine, flow)

        assert status.status == ExecutionStatusEnum.FAILED
        assert status.error_message == "GET https://ehr.invalid failed: timeout"
        assert status.error_stack
        assert status.node_results["fetch"] == {
            "success": False,
            "error": "GET https://ehr.invalid failed: timeout",
        }
        assert "C" not in status.node_results

        logs = tracker.get_logs(status.execution_id)
        assert logs[-1].level == FlowLogLevel.ERROR
        assert logs[-1].message == "Flow execution failed: GET https://ehr.invalid failed: timeout"
        assert any(entry.node_id == "fetch" and entry.level == FlowLogLevel.ERROR for entry in logs)

    def test_continue_on_error_follows_unconditional_edge(self, flow_manager, services, execution_engine):
        services.http_client.responses.append(HttpCallError("POST https://hooks.invalid failed: refused"))
        flow = flow_manager.create_flow(FlowDefinition.model_validate({
            "name": "Resilient",
            "nodes": [
                {"id": "A", "type": "trigger"},
                {
                    "id": "hook",
                    "type": "webhook",
                    "config": {"url": "https://hooks.invalid"},
                    "continueOnError": True,
                },
                transform("on_success", x="ok"),
                transform("after", x="done"),
            ],
            "edges": [
                {"source": "A", "target": "hook"},
                {"source": "hook", "target": "on_success", "condition": "{{success}}"},
                {"source": "hook", "target": "after"},
            ],
        }))

        status = run(execution_engine, flow)

        assert status.status == ExecutionStatusEnum.COMPLETED
        assert status.node_results["hook"]["success"] is False
        assert "refused" in status.node_results["hook"]["error"]
        assert "after" in status.node_results
        assert "on_success" not in status.node_results

    def test_continue_on_error_inside_config(self, flow_manager, execution_engine):
        flow = flow_manager.create_flow(FlowDefinition.model_validate({
            "name": "Config flag",
            "nodes": [
                {
                    "id": "update",
                    "type": "database_update",
                    "config": {"table": "appointments", "updates": {"x": 1}, "continueOnError": True},
                },
                transform("after", x="done"),
            ],
            "edges": [{"source": "update", "target": "after"}],
        }))

        status = run(execution_engine, flow)

        assert status.status == ExecutionStatusEnum.COMPLETED
        assert status.node_results["update"]["error"] == "Update target ID is required"
        assert "after" in status.node_results

    def test_without_edges_only_first_node_runs(self, flow_manager, execution_engine):
        flow = flow_manager.create_flow(FlowDefinition.model_validate({
            "name": "No edges",
            "nodes": [transform("first", x="1"), transform("second", x="2")],
        }))

        status = run(execution_engine, flow)

        assert status.status == ExecutionStatusEnum.COMPLETED
        assert set(status.node_results) == {"first"}

    def test_start_node_fallback_and_visit_limit(self, flow_manager, tracker, execution_engine):
        """Test a flow where every node has an incoming edge."""
        flow = flow_manager.create_flow(FlowDefinition.model_validate({
            "name": "Loop",
            "nodes": [transform("A", x="a"), transform("B", x="b")],
            "edges": [{"source": "A", "target": "B"}, {"source": "B", "target": "A"}],
        }))

        status = run(execution_engine, flow)

        assert status.status == ExecutionStatusEnum.FAILED
        assert "exceeded the limit of 5 visits" in status.error_message

        logs = tracker.get_logs(status.execution_id)
        assert logs[0].level == FlowLogLevel.WARNING
        assert logs[0].message == "No start node found; falling back to first node: transform"
        assert logs[0].node_id == "A"

    def test_inactive_flow_is_not_executed(self, flow_manager, tracker, execution_engine):
        flow = flow_manager.create_flow(linear_flow(is_active=False))

        with pytest.raises(FlowNotFoundError):
            execution_engine.execute_flow(flow.id, "patient")
        assert tracker.list_executions(flow.id) == []

    def test_custom_executor_and_non_dict_result(self, flow_manager, tracker, services):
        """Test that executors returning plain values are wrapped."""
        registry = NodeExecutorRegistry({NodeType.TRANSFORM: lambda node, context, services: 42})
        engine = ExecutionEngine(flow_manager, tracker, registry=registry, services=services)
        try:
            flow = flow_manager.create_flow(linear_flow())
            status = run(engine, flow)
        finally:
            engine.shutdown()

        assert status.node_results["B"] == {"success": True, "data": 42}

    def test_queue_status(self, execution_engine):
        status = execution_engine.get_execution_queue_status()
        assert status == {"active_executions": 0, "max_concurrent_executions": 2, "available_slots": 2}

    def test_execute_after_shutdown_fails_the_execution(self, flow_manager, tracker, execution_engine):
        """Test that an execution the pool refuses is not left running."""
        flow = flow_manager.create_flow(linear_flow())
        execution_engine.shutdown()

        with pytest.raises(ExecutionEngineError) as exc_info:
            execution_engine.execute_flow(flow.id, "patient")

        executions = tracker.list_executions(flow.id)
        assert len(executions) == 1
        assert executions[0].execution_id == exc_info.value.context["execution_id"]
        assert executions[0].status == ExecutionStatusEnum.FAILED
        assert "could not be scheduled" in executions[0].error_message
        assert execution_engine.get_active_executions() == []


class TestContextDispatch:
    """Test cases for running the flows that match an event."""

    def test_find_matching_flows(self, flow_manager):
        urgent = flow_manager.create_flow(linear_flow(
            name="Urgent", module="whatsapp", priority=5,
            trigger_type="ai_detection", trigger_config={"patterns": ["pain"]}
        ))
        manual = flow_manager.create_flow(linear_flow(name="Manual", module="whatsapp"))
        flow_manager.create_flow(linear_flow(name="Inactive", module="whatsapp", is_active=False))
        flow_manager.create_flow(linear_flow(name="Other module", module="appointments"))
        flow_manager.create_flow(linear_flow(name="Webhook", module="whatsapp", trigger_type="webhook"))

        matching = flow_manager.find_matching_flows(
            "whatsapp_conversation", "user", {"message": "tooth pain"}
        )

        assert [flow.id for flow in matching] == [urgent.id, manual.id]
        assert flow_manager.find_matching_flows("billing") == []

    def test_execute_flows_for_context(self, flow_manager, tracker, execution_engine):
        """Test that every matching flow is started with the event's context."""
        first = flow_manager.create_flow(linear_flow(module="appointments", priority=2))
        second = flow_manager.create_flow(linear_flow(
            module="appointments",
            trigger_type="condition",
            trigger_config={"condition": '{{name}} == "Ana"'}
        ))
        flow_manager.create_flow(linear_flow(module="appointments", trigger_type="user_action"))

        execution_ids = execution_engine.execute_flows_for_context(
            "appointments", "apt-1", {"name": "Ana"}, triggered_by="scheduler", triggered_by_type="system"
        )

        assert len(execution_ids) == 2
        statuses = [execution_engine.wait_for_completion(execution_id, timeout=10) for execution_id in execution_ids]
        assert [status.flow_id for status in statuses] == [first.id, second.id]
        for status in statuses:
            assert status.status == ExecutionStatusEnum.COMPLETED
            assert status.context_type == "appointments"
            assert status.context_id == "apt-1"
            assert status.triggered_by == "scheduler"
            assert status.node_results["C"]["data"] == {"echo": "Hello Ana"}

    def test_no_matching_flows(self, flow_manager, execution_engine):
        flow_manager.create_flow(linear_flow(module="appointments", trigger_type="webhook"))

        assert execution_engine.execute_flows_for_context("appointments", triggered_by_type="user") == []

    def test_flows_that_cannot_start_are_skipped(self, flow_manager, tracker, execution_engine):
        flow = flow_manager.create_flow(linear_flow(module="appointments"))
        execution_engine.shutdown()

        assert execution_engine.execute_flows_for_context("appointments") == []
        assert tracker.list_executions(flow.id)[0].status == ExecutionStatusEnum.FAILED
