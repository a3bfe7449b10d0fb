"""FastAPI REST endpoints for flows and their executions."""

from typing import Any, Dict, Optional
from fastapi import APIRouter, Body, HTTPException, Depends, Query, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..core.flow_manager import FlowManager, parse_flow_definition
from ..core.execution_engine import ExecutionEngine
from ..core.execution_tracker import ExecutionTracker
from ..core.exceptions import FlowEngineError, FlowNotFoundError, create_error_response
from ..core.middleware import status_code_for_error
from ..models.core import FlowUpdate
from ..core.logging import get_logger

logger = get_logger(__name__)

# Create router
router = APIRouter(prefix="/api/flows", tags=["flows"])

# Global instances (initialized by the application factory)
_flow_manager: Optional[FlowManager] = None
_execution_engine: Optional[ExecutionEngine] = None
_execution_tracker: Optional[ExecutionTracker] = None


def init_dependencies(
    flow_manager: FlowManager,
    execution_engine: ExecutionEngine,
    execution_tracker: ExecutionTracker
):
    """Initialize the global dependencies."""
    global _flow_manager, _execution_engine, _execution_tracker
    _flow_manager = flow_manager
    _execution_engine = execution_engine
    _execution_tracker = execution_tracker


def get_flow_manager() -> FlowManager:
    """Dependency to get flow manager."""
    if _flow_manager is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Flow manager not initialized"
        )
    return _flow_manager


def get_execution_engine() -> ExecutionEngine:
    """Dependency to get execution engine."""
    if _execution_engine is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Execution engine not initialized"
        )
    return _execution_engine


def get_execution_tracker() -> ExecutionTracker:
    """Dependency to get execution tracker."""
    if _execution_tracker is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Execution tracker not initialized"
        )
    return _execution_tracker


# Request models
class ExecuteFlowRequest(BaseModel):
    """Request model for starting a flow execution.

    ``flow_id`` and ``context_type`` are checked by the endpoint so that
    their absence is reported with the flow error envelope.
    """
    flow_id: Optional[str] = Field(None, description="ID of the flow to execute")
    context_type: Optional[str] = Field(None, description="Kind of record the execution is about")
    context_id: Optional[str] = Field(None, description="ID of that record")
    input_data: Optional[Dict[str, Any]] = Field(None, description="Input the walk starts with")
    triggered_by: Optional[str] = Field(None, description="Who or what started the execution")
    triggered_by_type: Optional[str] = Field(None, description="Category of the trigger")


class ExecuteForContextRequest(BaseModel):
    """Request model for running the flows that react to an event."""
    context_type: Optional[str] = Field(None, description="Kind of record the event is about")
    context_id: Optional[str] = Field(None, description="ID of that record")
    input_data: Optional[Dict[str, Any]] = Field(None, description="Data the event carries")
    triggered_by: Optional[str] = Field(None, description="Who or what reported the event")
    triggered_by_type: Optional[str] = Field(None, description="Kind of caller, e.g. user, system, webhook")


# Response helpers

def success_response(data: Any, status_code: int = status.HTTP_200_OK, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": True, "data": jsonable_encoder(data), **jsonable_encoder(extra)}
    )


def failure_response(message: str, status_code: int) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})


def error_response(error: Exception, action: str) -> JSONResponse:
    """Envelope an exception raised while handling a request."""
    if isinstance(error, FlowEngineError):
        status_code = status_code_for_error(error)
        if status_code >= 500:
            logger.error(f"Flow engine error while {action}: {error.message}")
        else:
            logger.warning(f"Flow engine error while {action}: {error.message}")
        return JSONResponse(status_code=status_code, content=create_error_response(error))

    logger.error(f"Unexpected error while {action}: {str(error)}", exc_info=True)
    return failure_response(str(error) or "Internal server error", status.HTTP_500_INTERNAL_SERVER_ERROR)


# Execution endpoints

@router.post(
    "/execute",
    summary="Execute a flow",
    description="Start an execution of an active flow in the background and return its ID"
)
async def execute_flow(
    request: ExecuteFlowRequest,
    execution_engine: ExecutionEngine = Depends(get_execution_engine)
) -> JSONResponse:
    """
    Start a flow execution.

    The response only reports that the execution started; its progress is
    polled through the execution endpoints.
    """
    if not request.flow_id or not request.context_type:
        return failure_response("flow_id and context_type are required", status.HTTP_400_BAD_REQUEST)

    try:
        execution_id, flow = execution_engine.execute_flow(
            flow_id=request.flow_id,
            context_type=request.context_type,
            context_id=request.context_id,
            input_data=request.input_data or {},
            triggered_by=request.triggered_by,
            triggered_by_type=request.triggered_by_type or "api"
        )
    except FlowNotFoundError:
        logger.warning(f"Flow not found or inactive: {request.flow_id}")
        return failure_response("Flow not found or inactive", status.HTTP_404_NOT_FOUND)
    except Exception as e:
        return error_response(e, "starting flow execution")

    return success_response({
        "execution_id": execution_id,
        "flow_id": flow.id,
        "flow_name": flow.name,
        "status": "running"
    })


@router.post(
    "/execute-for-context",
    summary="Execute the flows matching an event",
    description="Start every active flow of the context's module whose trigger matches the event"
)
async def execute_flows_for_context(
    request: ExecuteForContextRequest,
    execution_engine: ExecutionEngine = Depends(get_execution_engine)
) -> JSONResponse:
    if not request.context_type:
        return failure_response("context_type is required", status.HTTP_400_BAD_REQUEST)

    try:
        execution_ids = execution_engine.execute_flows_for_context(
            context_type=request.context_type,
            context_id=request.context_id,
            input_data=request.input_data or {},
            triggered_by=request.triggered_by,
            triggered_by_type=request.triggered_by_type
        )
    except Exception as e:
        return error_response(e, "executing flows for context")

    return success_response({"execution_ids": execution_ids, "count": len(execution_ids)})


@router.get("/executions/{execution_id}", summary="Get execution status")
async def get_execution_status(
    execution_id: str,
    tracker: ExecutionTracker = Depends(get_execution_tracker)
) -> JSONResponse:
    try:
        return success_response(tracker.get_execution(execution_id))
    except Exception as e:
        return error_response(e, "retrieving execution status")


@router.get("/executions/{execution_id}/logs", summary="Get execution logs")
async def get_execution_logs(
    execution_id: str,
    tracker: ExecutionTracker = Depends(get_execution_tracker)
) -> JSONResponse:
    """Return the log stream of an execution in the order it was written."""
    try:
        return success_response(tracker.get_logs(execution_id))
    except Exception as e:
        return error_response(e, "retrieving execution logs")


# Flow management endpoints

@router.get("", summary="List flows")
async def list_flows(
    module: Optional[str] = Query(None, description="Filter by clinic module"),
    category: Optional[str] = Query(None, description="Filter by category"),
    is_active: Optional[bool] = Query(None, description="Filter by active flag"),
    tag: Optional[str] = Query(None, description="Only flows carrying this tag"),
    flow_manager: FlowManager = Depends(get_flow_manager)
) -> JSONResponse:
    """List flows, highest priority first."""
    try:
        flows = flow_manager.list_flows(module=module, category=category, is_active=is_active, tag=tag)
        return success_response(flows)
    except Exception as e:
        return error_response(e, "listing flows")


@router.post("", summary="Create a flow", status_code=status.HTTP_201_CREATED)
async def create_flow(
    payload: Dict[str, Any] = Body(...),
    flow_manager: FlowManager = Depends(get_flow_manager)
) -> JSONResponse:
    """
    Create a flow from its JSON definition.

    Validation warnings do not block creation and are returned next to the
    stored flow.
    """
    try:
        definition = parse_flow_definition(payload)
        warnings = flow_manager.validate_flow(definition).warnings
        flow = flow_manager.create_flow(definition)
        return success_response(flow, status_code=status.HTTP_201_CREATED, warnings=warnings)
    except Exception as e:
        return error_response(e, "creating flow")


@router.post("/validate", summary="Validate a flow definition")
async def validate_flow(
    payload: Dict[str, Any] = Body(...),
    flow_manager: FlowManager = Depends(get_flow_manager)
) -> JSONResponse:
    """Validate a flow definition without storing it."""
    try:
        return success_response(flow_manager.validate_payload(payload))
    except Exception as e:
        return error_response(e, "validating flow")


@router.get("/{flow_id}", summary="Get a flow")
async def get_flow(
    flow_id: str,
    flow_manager: FlowManager = Depends(get_flow_manager)
) -> JSONResponse:
    try:
        return success_response(flow_manager.get_flow(flow_id))
    except Exception as e:
        return error_response(e, "retrieving flow")


@router.put("/{flow_id}", summary="Update a flow")
async def update_flow(
    flow_id: str,
    update: FlowUpdate,
    flow_manager: FlowManager = Depends(get_flow_manager)
) -> JSONResponse:
    """Apply a partial update; fields left out of the body are kept."""
    try:
        return success_response(flow_manager.update_flow(flow_id, update))
    except Exception as e:
        return error_response(e, "updating flow")


@router.delete("/{flow_id}", summary="Delete a flow")
async def delete_flow(
    flow_id: str,
    flow_manager: FlowManager = Depends(get_flow_manager)
) -> JSONResponse:
    try:
        if not flow_manager.delete_flow(flow_id):
            return failure_response(f"Flow with ID '{flow_id}' not found", status.HTTP_404_NOT_FOUND)
        return success_response({"flow_id": flow_id, "deleted": True})
    except Exception as e:
        return error_response(e, "deleting flow")


@router.get("/{flow_id}/executions", summary="List executions of a flow")
async def list_flow_executions(
    flow_id: str,
    limit: Optional[int] = Query(None, ge=1, le=500, description="Maximum number of executions"),
    flow_manager: FlowManager = Depends(get_flow_manager),
    tracker: ExecutionTracker = Depends(get_execution_tracker)
) -> JSONResponse:
    """List executions of a flow, newest first."""
    try:
        flow_manager.get_flow(flow_id)
        return success_response(tracker.list_executions(flow_id, limit=limit))
    except Exception as e:
        return error_response(e, "listing flow executions")
