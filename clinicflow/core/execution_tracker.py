"""Execution tracking: execution rows, progress and the per-execution log stream."""

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional
from sqlalchemy.exc import SQLAlchemyError

from ..models.core import ExecutionStatus, ExecutionStatusEnum, FlowLogLevel, LogEntry
from ..storage.database import get_db
from ..storage.models import FlowExecutionModel, FlowLogModel
from .error_recovery import RetryConfig, with_retry
from .exceptions import ExecutionNotFoundError, StorageError, TransientError
from .logging import get_logger

logger = get_logger(__name__)

_STORAGE_RETRY = RetryConfig(max_attempts=3, retryable_exceptions=[StorageError, TransientError])


class ExecutionTracker:
    """Persists the lifecycle of flow executions.

    Every write opens its own session so that the tracker can be shared
    between the request thread and the background workers.
    """

    @with_retry(_STORAGE_RETRY)
    def create_execution(
        self,
        flow_id: str,
        context_type: str,
        context_id: Optional[str] = None,
        input_data: Optional[Dict[str, Any]] = None,
        triggered_by: Optional[str] = None,
        triggered_by_type: str = "api"
    ) -> str:
        """
        Create an execution row in the ``running`` state.

        Args:
            flow_id: ID of the flow being executed
            context_type: Kind of record the execution is about
            context_id: ID of that record
            input_data: Input the walk starts with
            triggered_by: Who or what started the execution
            triggered_by_type: Category of the trigger

        Returns:
            str: The new execution ID

        Raises:
            StorageError: If the row cannot be written
        """
        execution_id = str(uuid.uuid4())
        db = next(get_db())
        try:
            execution = FlowExecutionModel(
                id=execution_id,
                flow_id=flow_id,
                status=ExecutionStatusEnum.RUNNING.value,
                context_type=context_type,
                context_id=context_id,
                input_data=input_data or {},
                node_results={},
                triggered_by=triggered_by,
                triggered_by_type=triggered_by_type or "api",
                started_at=datetime.utcnow()
            )
            db.add(execution)
            db.commit()

            logger.info(f"Created execution {execution_id} for flow {flow_id}")
            return execution_id

        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError(
                f"Failed to create execution: {str(e)}",
                operation="create_execution",
                table="flow_executions"
            )
        finally:
            db.close()

    @with_retry(_STORAGE_RETRY)
    def append_log(
        self,
        execution_id: str,
        node_id: Optional[str],
        level: FlowLogLevel,
        message: str,
        data: Optional[Dict[str, Any]] = None
    ) -> None:
        """Append an entry to the execution's log stream."""
        level = FlowLogLevel(level)
        db = next(get_db())
        try:
            db.add(FlowLogModel(
                execution_id=execution_id,
                node_id=node_id,
                log_level=level.value,
                message=message,
                data=data,
                created_at=datetime.utcnow()
            ))
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError(
                f"Failed to append execution log: {str(e)}",
                operation="append_log",
                table="flow_logs"
            )
        finally:
            db.close()

    @with_retry(_STORAGE_RETRY)
    def record_progress(self, execution_id: str, current_node_id: str, node_results: Dict[str, Any]) -> None:
        """Store the last executed node and the results gathered so far."""
        db = next(get_db())
        try:
            execution = self._get_model(db, execution_id)
            execution.current_node_id = current_node_id
            execution.node_results = dict(node_results)
            db.commit()
            logger.debug(f"Recorded progress for execution {execution_id} at node {current_node_id}")
        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError(
                f"Failed to record progress: {str(e)}",
                operation="record_progress",
                table="flow_executions"
            )
        finally:
            db.close()

    @with_retry(_STORAGE_RETRY)
    def complete_execution(self, execution_id: str, output_data: Dict[str, Any]) -> None:
        """Mark an execution completed, storing its final results."""
        db = next(get_db())
        try:
            execution = self._get_model(db, execution_id)
            completed_at = datetime.utcnow()
            execution.status = ExecutionStatusEnum.COMPLETED.value
            execution.output_data = dict(output_data)
            execution.node_results = dict(output_data)
            execution.completed_at = completed_at
            execution.duration_ms = self._duration_ms(execution.started_at, completed_at)
            db.commit()

            logger.info(f"Execution {execution_id} completed in {execution.duration_ms}ms")
        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError(
                f"Failed to complete execution: {str(e)}",
                operation="complete_execution",
                table="flow_executions"
            )
        finally:
            db.close()

    @with_retry(_STORAGE_RETRY)
    def fail_execution(
        self,
        execution_id: str,
        error_message: str,
        error_stack: Optional[str] = None,
        node_results: Optional[Dict[str, Any]] = None
    ) -> None:
        """Mark an execution failed with the captured error."""
        db = next(get_db())
        try:
            execution = self._get_model(db, execution_id)
            completed_at = datetime.utcnow()
            execution.status = ExecutionStatusEnum.FAILED.value
            execution.error_message = error_message
            execution.error_stack = error_stack
            if node_results is not None:
                execution.node_results = dict(node_results)
            execution.completed_at = completed_at
            execution.duration_ms = self._duration_ms(execution.started_at, completed_at)
            db.commit()

            logger.warning(f"Execution {execution_id} failed: {error_message}")
        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError(
                f"Failed to mark execution failed: {str(e)}",
                operation="fail_execution",
                table="flow_executions"
            )
        finally:
            db.close()

    def get_execution(self, execution_id: str) -> ExecutionStatus:
        """
        Get the current status of an execution.

        Raises:
            ExecutionNotFoundError: If the execution does not exist
            StorageError: If storage operation fails
        """
        db = next(get_db())
        try:
            return self._to_status(self._get_model(db, execution_id))
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to retrieve execution: {str(e)}",
                operation="get_execution",
                table="flow_executions"
            )
        finally:
            db.close()

    def get_logs(self, execution_id: str) -> List[LogEntry]:
        """Return the log stream of an execution in insertion order."""
        db = next(get_db())
        try:
            self._get_model(db, execution_id)
            rows = (
                db.query(FlowLogModel)
                .filter(FlowLogModel.execution_id == execution_id)
                .order_by(FlowLogModel.id.asc())
                .all()
            )
            return [
                LogEntry(
                    id=row.id,
                    execution_id=row.execution_id,
                    node_id=row.node_id,
                    level=row.log_level,
                    message=row.message,
                    data=row.data,
                    created_at=row.created_at
                )
                for row in rows
            ]
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to retrieve execution logs: {str(e)}",
                operation="get_logs",
                table="flow_logs"
            )
        finally:
            db.close()

    def list_executions(self, flow_id: str, limit: Optional[int] = None) -> List[ExecutionStatus]:
        """List executions of a flow, newest first."""
        db = next(get_db())
        try:
            query = (
                db.query(FlowExecutionModel)
                .filter(FlowExecutionModel.flow_id == flow_id)
                .order_by(FlowExecutionModel.started_at.desc())
            )
            if limit:
                query = query.limit(limit)
            return [self._to_status(row) for row in query.all()]
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to list executions: {str(e)}",
                operation="list_executions",
                table="flow_executions"
            )
        finally:
            db.close()

    @staticmethod
    def _get_model(db, execution_id: str) -> FlowExecutionModel:
        execution = db.query(FlowExecutionModel).filter(FlowExecutionModel.id == execution_id).first()
        if not execution:
            raise ExecutionNotFoundError(
                f"Execution {execution_id} not found",
                execution_id=execution_id
            )
        return execution

    @staticmethod
    def _duration_ms(started_at: Optional[datetime], completed_at: datetime) -> Optional[int]:
        if started_at is None:
            return None
        return int((completed_at - started_at).total_seconds() * 1000)

    @staticmethod
    def _to_status(execution: FlowExecutionModel) -> ExecutionStatus:
        return ExecutionStatus(
            execution_id=execution.id,
            flow_id=execution.flow_id,
            status=execution.status,
            context_type=execution.context_type,
            context_id=execution.context_id,
            input_data=execution.input_data or {},
            current_node_id=execution.current_node_id,
            node_results=execution.node_results or {},
            output_data=execution.output_data,
            triggered_by=execution.triggered_by,
            triggered_by_type=execution.triggered_by_type or "api",
            started_at=execution.started_at,
            completed_at=execution.completed_at,
            duration_ms=execution.duration_ms,
            error_message=execution.error_message,
            error_stack=execution.error_stack
        )
