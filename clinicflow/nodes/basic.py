"""Executors that only work on the accumulated context."""

from typing import Any, Dict

from ..core.logging import get_logger
from ..core.templates import evaluate_condition, resolve_value
from ..models.core import FlowContext, NodeDefinition
from .base import NodeServices

logger = get_logger(__name__)


def execute_trigger(node: NodeDefinition, context: FlowContext, services: NodeServices) -> Dict[str, Any]:
    """Pass the execution input through."""
    return {"success": True, "data": context.input_data}


def execute_condition(node: NodeDefinition, context: FlowContext, services: NodeServices) -> Dict[str, Any]:
    """Resolve the condition template and report it as a boolean."""
    condition = node.config.condition
    result = evaluate_condition(condition, context.template_scope())
    logger.debug(f"Condition '{condition}' on node {node.id} evaluated to {result}")
    return {"success": True, "result": result, "data": {"condition": condition, "result": result}}


def execute_delay(node: NodeDefinition, context: FlowContext, services: NodeServices) -> Dict[str, Any]:
    delay_ms = node.config.delay
    services.sleep(delay_ms / 1000.0)
    return {"success": True, "delayed": delay_ms}


def execute_transform(node: NodeDefinition, context: FlowContext, services: NodeServices) -> Dict[str, Any]:
    """Build a new object whose fields are resolved templates."""
    scope = context.template_scope()
    data = {key: resolve_value(value, scope) for key, value in node.config.transform.items()}
    return {"success": True, "data": data}


def execute_notification(node: NodeDefinition, context: FlowContext, services: NodeServices) -> Dict[str, Any]:
    """
    Resolve the notification text and log it.

    No message is delivered; channels are wired up by the clinic platform.
    """
    config = node.config
    scope = context.template_scope()
    subject = resolve_value(config.subject, scope)
    message = resolve_value(config.message, scope)
    recipient = resolve_value(config.recipient, scope)

    logger.info(
        f"Notification [{config.channel}] to {recipient}: {subject}",
        extra={"extra_fields": {"execution_id": context.execution_id, "message": message}}
    )
    return {"success": True, "sent": True}
