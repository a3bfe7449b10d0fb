"""Executor for the ai_analysis node."""

import json
from typing import Any, Dict

from ..core.templates import resolve_value
from ..models.core import FlowContext, NodeDefinition
from .base import NodeServices

DEFAULT_PROMPT = "Analyze the following data"


def execute_ai_analysis(node: NodeDefinition, context: FlowContext, services: NodeServices) -> Dict[str, Any]:
    """
    Ask the text generator to analyse the execution input.

    The prompt comes from the node, else the flow's ``ai_prompt``, else a
    generic instruction. The input is sent serialized as JSON.
    """
    config = node.config
    prompt = config.prompt or context.ai_prompt or DEFAULT_PROMPT
    prompt = resolve_value(prompt, context.template_scope())
    model = config.model or context.ai_model

    if isinstance(context.input_data, str):
        message = context.input_data
    else:
        message = json.dumps(context.input_data, default=str)

    response = services.text_generator.generate(prompt, message, model=model)
    return {"success": True, "result": response["text"], "model": response["model"]}
