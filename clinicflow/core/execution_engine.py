"""Execution Engine: walks flow graphs in the background."""

import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any, Dict, List, Optional, Tuple

from ..models.core import (
    EdgeDefinition,
    ExecutionStatus,
    Flow,
    FlowContext,
    FlowLogLevel,
    NodeDefinition,
)
from ..nodes.base import NodeServices
from .exceptions import ExecutionEngineError, FlowEngineError, NodeExecutionError, format_exception_stack
from .execution_tracker import ExecutionTracker
from .flow_manager import FlowManager
from .logging import clear_logging_context, get_logger, set_logging_context
from .node_registry import NodeExecutorRegistry
from .templates import evaluate_condition

logger = get_logger(__name__)


class ExecutionEngine:
    """Engine for executing flows one node at a time, following edge conditions."""

    def __init__(
        self,
        flow_manager: FlowManager,
        tracker: ExecutionTracker,
        registry: Optional[NodeExecutorRegistry] = None,
        services: Optional[NodeServices] = None,
        max_concurrent_executions: int = 10,
        max_node_visits: int = 1000
    ):
        """Initialize the execution engine.

        Args:
            flow_manager: Loads flow definitions
            tracker: Persists execution status, progress and logs
            registry: Node type -> executor dispatch table
            services: Collaborators handed to node executors
            max_concurrent_executions: Size of the background worker pool
            max_node_visits: How often one node may run within one execution
        """
        self.flow_manager = flow_manager
        self.tracker = tracker
        self.registry = registry or NodeExecutorRegistry()
        self.services = services or NodeServices()
        self.max_node_visits = max_node_visits

        self._executor = ThreadPoolExecutor(
            max_workers=max_concurrent_executions,
            thread_name_prefix="flow-exec"
        )
        self._max_concurrent_executions = max_concurrent_executions
        self._active_executions: Dict[str, Future] = {}
        self._lock = threading.RLock()

        logger.info(f"ExecutionEngine initialized with max_concurrent_executions={max_concurrent_executions}")

    def execute_flow(
        self,
        flow_id: str,
        context_type: str,
        context_id: Optional[str] = None,
        input_data: Optional[Dict[str, Any]] = None,
        triggered_by: Optional[str] = None,
        triggered_by_type: str = "api"
    ) -> Tuple[str, Flow]:
        """
        Start an execution of an active flow and return immediately.

        Args:
            flow_id: ID of the flow to execute
            context_type: Kind of record the execution is about
            context_id: ID of that record
            input_data: Input the walk starts with
            triggered_by: Who or what started the execution
            triggered_by_type: Category of the trigger

        Returns:
            The new execution ID and the flow being executed

        Raises:
            FlowNotFoundError: If the flow is missing or inactive
            StorageError: If the execution record cannot be created
            ExecutionEngineError: If the worker pool no longer accepts executions;
                the execution is recorded as failed
        """
        flow = self.flow_manager.load_active_flow(flow_id)
        input_data = input_data or {}

        execution_id = self.tracker.create_execution(
            flow_id=flow.id,
            context_type=context_type,
            context_id=context_id,
            input_data=input_data,
            triggered_by=triggered_by,
            triggered_by_type=triggered_by_type
        )

        context = FlowContext(
            execution_id=execution_id,
            flow_id=flow.id,
            context_type=context_type,
            context_id=context_id,
            input_data=input_data,
            ai_prompt=flow.ai_prompt,
            ai_model=flow.ai_model
        )

        try:
            with self._lock:
                future = self._executor.submit(self._run_execution, flow, context)
                self._active_executions[execution_id] = future
        except RuntimeError as e:
            # raised once the pool has been shut down
            message = f"Execution could not be scheduled: {str(e)}"
            logger.error(f"Execution {execution_id} of flow {flow.id}: {message}")
            self.tracker.fail_execution(execution_id, message, format_exception_stack(e))
            raise ExecutionEngineError(message, execution_id=execution_id, flow_id=flow.id) from e

        future.add_done_callback(lambda _: self._cleanup_execution(execution_id))

        logger.info(f"Started execution {execution_id} of flow '{flow.name}' ({flow.id})")
        return execution_id, flow

    def execute_flows_for_context(
        self,
        context_type: str,
        context_id: Optional[str] = None,
        input_data: Optional[Dict[str, Any]] = None,
        triggered_by: Optional[str] = None,
        triggered_by_type: Optional[str] = None
    ) -> List[str]:
        """
        Start every active flow whose trigger matches an event in a clinic module.

        A flow that cannot be started is logged and skipped.

        Args:
            context_type: Kind of record the event is about; selects the module
            context_id: ID of that record
            input_data: Data the event carries
            triggered_by: Who or what reported the event
            triggered_by_type: Kind of caller, matched against the flows' triggers

        Returns:
            IDs of the started executions, in flow priority order

        Raises:
            StorageError: If the flows cannot be listed
        """
        flows = self.flow_manager.find_matching_flows(context_type, triggered_by_type, input_data)

        execution_ids: List[str] = []
        for flow in flows:
            try:
                execution_id, _ = self.execute_flow(
                    flow_id=flow.id,
                    context_type=context_type,
                    context_id=context_id,
                    input_data=input_data,
                    triggered_by=triggered_by,
                    triggered_by_type=triggered_by_type or "api"
                )
            except FlowEngineError as e:
                logger.error(f"Could not start flow {flow.id} for {context_type} {context_id}: {e.message}")
                continue
            execution_ids.append(execution_id)

        logger.info(f"Started {len(execution_ids)} of {len(flows)} matching flows for {context_type}")
        return execution_ids

    def _run_execution(self, flow: Flow, context: FlowContext) -> None:
        """Walk the flow and record the outcome (runs in a worker thread)."""
        execution_id = context.execution_id
        set_logging_context(execution_id=execution_id, flow_id=flow.id)
        try:
            final_context = self._walk(flow, context)
            self.tracker.complete_execution(execution_id, final_context.node_results)
            self.tracker.append_log(
                execution_id, None, FlowLogLevel.INFO,
                "Flow execution completed",
                {"nodes_executed": len(final_context.node_results)}
            )
            logger.info(f"Execution {execution_id} of flow {flow.id} completed")

        except Exception as e:
            message = str(e)
            stack = format_exception_stack(e)
            logger.error(f"Execution {execution_id} of flow {flow.id} failed: {message}")
            try:
                self.tracker.fail_execution(execution_id, message, stack)
                self.tracker.append_log(
                    execution_id, None, FlowLogLevel.ERROR,
                    f"Flow execution failed: {message}",
                    {"error": message, "stack": stack}
                )
            except Exception as tracking_error:
                logger.error(
                    f"Failed to record failure of execution {execution_id}: {str(tracking_error)}",
                    exc_info=True
                )
        finally:
            clear_logging_context()

    def _walk(self, flow: Flow, context: FlowContext) -> FlowContext:
        """
        Execute nodes from the start node until no outgoing edge matches.

        Returns:
            The context holding every node result

        Raises:
            NodeExecutionError: If a node fails and does not continue on error
            ExecutionEngineError: If a node exceeds the visit limit
        """
        execution_id = context.execution_id
        node, fell_back = flow.find_start_node()
        if fell_back:
            self.tracker.append_log(
                execution_id, node.id, FlowLogLevel.WARNING,
                f"No start node found; falling back to first node: {node.display_name}"
            )

        visits: Dict[str, int] = {}
        while node is not None:
            visits[node.id] = visits.get(node.id, 0) + 1
            if visits[node.id] > self.max_node_visits:
                raise ExecutionEngineError(
                    f"Node {node.id} exceeded the limit of {self.max_node_visits} visits",
                    execution_id=execution_id,
                    flow_id=flow.id
                )

            self.tracker.append_log(
                execution_id, node.id, FlowLogLevel.INFO,
                f"Executing node: {node.display_name}",
                {"type": node.type.value}
            )
            logger.debug(f"Executing node {node.id} ({node.type.value})")

            try:
                result = self._execute_node(node, context)
            except Exception as e:
                message = str(e)
                context = context.with_result(node.id, {"success": False, "error": message})
                self.tracker.record_progress(execution_id, node.id, context.node_results)
                self.tracker.append_log(
                    execution_id, node.id, FlowLogLevel.ERROR,
                    f"Node {node.display_name} failed: {message}",
                    {"error": message, "stack": format_exception_stack(e)}
                )

                if node.continues_on_error:
                    logger.warning(f"Node {node.id} failed, continuing: {message}")
                    node = self._next_unconditional(flow, node)
                    continue

                if isinstance(e, NodeExecutionError):
                    raise
                raise NodeExecutionError(
                    message,
                    node_id=node.id,
                    execution_id=execution_id,
                    node_type=node.type.value
                ) from e

            context = context.with_result(node.id, result)
            self.tracker.record_progress(execution_id, node.id, context.node_results)
            node = self._next_node(flow, node, context, result)

        return context

    def _execute_node(self, node: NodeDefinition, context: FlowContext) -> Dict[str, Any]:
        executor = self.registry.get(node.type)
        result = executor(node, context, self.services)
        if not isinstance(result, dict):
            result = {"success": True, "data": result}
        return result

    def _next_node(
        self,
        flow: Flow,
        node: NodeDefinition,
        context: FlowContext,
        result: Dict[str, Any]
    ) -> Optional[NodeDefinition]:
        """Target of the first outgoing edge whose condition holds, in declaration order."""
        scope = context.template_scope(current=result)
        for edge in flow.outgoing_edges(node.id):
            if self._edge_matches(edge, scope):
                return flow.get_node(edge.target)
        return None

    @staticmethod
    def _edge_matches(edge: EdgeDefinition, scope: Dict[str, Any]) -> bool:
        if edge.condition is None:
            return True
        return evaluate_condition(edge.condition, scope)

    @staticmethod
    def _next_unconditional(flow: Flow, node: NodeDefinition) -> Optional[NodeDefinition]:
        for edge in flow.outgoing_edges(node.id):
            if edge.condition is None:
                return flow.get_node(edge.target)
        return None

    def wait_for_completion(self, execution_id: str, timeout: Optional[float] = None) -> ExecutionStatus:
        """
        Block until a background execution finishes, then return its status.

        Raises:
            ExecutionEngineError: If the execution is still running after ``timeout``
        """
        with self._lock:
            future = self._active_executions.get(execution_id)
        if future is not None:
            done, _ = wait([future], timeout=timeout)
            if not done:
                raise ExecutionEngineError(
                    f"Execution {execution_id} did not finish within {timeout} seconds",
                    execution_id=execution_id
                )
        return self.tracker.get_execution(execution_id)

    def _cleanup_execution(self, execution_id: str) -> None:
        with self._lock:
            self._active_executions.pop(execution_id, None)
        logger.debug(f"Cleaned up execution resources for {execution_id}")

    def get_active_executions(self) -> List[str]:
        with self._lock:
            return list(self._active_executions.keys())

    def get_execution_queue_status(self) -> Dict[str, Any]:
        """Worker pool usage, reported by the detailed health check."""
        active = len(self.get_active_executions())
        return {
            "active_executions": active,
            "max_concurrent_executions": self._max_concurrent_executions,
            "available_slots": max(0, self._max_concurrent_executions - active)
        }

    def shutdown(self, wait_for_running: bool = True) -> None:
        """Stop accepting executions and wait for running ones."""
        self._executor.shutdown(wait=wait_for_running)
        logger.info("ExecutionEngine shutdown completed")
