"""Executors for the database_query and database_update nodes."""

from typing import Any, Dict

from ..core.exceptions import NodeExecutionError
from ..core.templates import resolve_value
from ..models.core import FlowContext, NodeDefinition
from .base import NodeServices


def execute_database_query(node: NodeDefinition, context: FlowContext, services: NodeServices) -> Dict[str, Any]:
    """
    Read rows from a table.

    Filter values may be templates; filters that are None are ignored.
    With ``use_context`` the rows are further restricted to the record the
    execution is about.
    """
    config = node.config
    filters = resolve_value(config.filters, context.template_scope())
    if config.use_context and context.context_id:
        filters["id"] = context.context_id

    rows = services.data_store.query(config.table, filters, limit=config.limit)
    return {"success": True, "data": rows or []}


def execute_database_update(node: NodeDefinition, context: FlowContext, services: NodeServices) -> Dict[str, Any]:
    """
    Update one row and return it.

    The row is the execution's context record, else the configured ``id``,
    else ``input.id``.
    """
    config = node.config
    updates = resolve_value(config.updates, context.template_scope())

    record_id = context.context_id or config.record_id or context.input_data.get("id")
    if not record_id:
        raise NodeExecutionError(
            "Update target ID is required",
            node_id=node.id,
            execution_id=context.execution_id,
            node_type=node.type.value
        )

    row = services.data_store.update(config.table, record_id, updates)
    return {"success": True, "data": row}
