"""Executors that call out over HTTP."""

from typing import Any, Dict

from ..core.templates import resolve_value
from ..models.core import FlowContext, NodeDefinition
from .base import NodeServices


def execute_api_call(node: NodeDefinition, context: FlowContext, services: NodeServices) -> Dict[str, Any]:
    """Call an API and return its JSON body; a non-2xx status is an unsuccessful result, not an error."""
    config = node.config
    scope = context.template_scope()
    url = resolve_value(config.url, scope)
    headers = resolve_value(config.headers, scope)
    body = resolve_value(config.body, scope) if config.body is not None else None

    response = services.http_client.request(config.method, url, headers=headers, json_body=body)
    return {"success": response["ok"], "data": response["data"], "status": response["status"]}


def execute_webhook(node: NodeDefinition, context: FlowContext, services: NodeServices) -> Dict[str, Any]:
    """Post to a webhook; without a configured body, send the input merged with all node results."""
    config = node.config
    scope = context.template_scope()
    url = resolve_value(config.url, scope)
    if config.body is not None:
        body = resolve_value(config.body, scope)
    else:
        body = {**context.input_data, **context.node_results}

    response = services.http_client.request(config.method, url, json_body=body)
    return {"success": response["ok"], "status": response["status"]}
