"""Trigger matching: which active flows react to an event in a clinic module."""

import json
from typing import Any, Dict, Optional

from ..models.core import FlowDefinition
from .templates import substitute

# Context types whose flows live under a differently named module
CONTEXT_MODULES = {
    "whatsapp_conversation": "whatsapp",
}

# Trigger types that fire for exactly one kind of caller
_CALLER_TRIGGERS = {
    "webhook": "webhook",
    "api_call": "api",
    "database_change": "system",
    "user_action": "user",
}

_COMPARISONS = ("==", "!=", ">", "<")


def module_for_context(context_type: str) -> str:
    return CONTEXT_MODULES.get(context_type, context_type)


def _render_json(value: Any) -> str:
    return json.dumps(value, default=str, ensure_ascii=False, separators=(",", ":"))


def _to_number(text: str) -> float:
    return float(text.strip())


def evaluate_trigger_condition(condition: str, data: Dict[str, Any]) -> bool:
    """
    Evaluate a trigger condition such as ``{{appointment.status}} == "missed"``.

    Placeholders are replaced with the JSON form of the value they point at,
    so string values compare together with their quotes. A placeholder that
    does not resolve makes the condition false. The first operator found out
    of ``==``, ``!=``, ``>`` and ``<`` is applied to the text on either side;
    without one the condition holds when the substituted text is not empty.
    """
    resolved, missing = substitute(condition, data, render=_render_json)
    if missing:
        return False

    for operator in _COMPARISONS:
        if operator not in resolved:
            continue
        left, right = resolved.split(operator)[:2]
        if operator == "==":
            return left.strip() == right.strip()
        if operator == "!=":
            return left.strip() != right.strip()
        try:
            if operator == ">":
                return _to_number(left) > _to_number(right)
            return _to_number(left) < _to_number(right)
        except ValueError:
            return False

    return bool(resolved)


def matches_trigger(
    flow: FlowDefinition,
    triggered_by_type: Optional[str] = None,
    input_data: Optional[Dict[str, Any]] = None
) -> bool:
    """
    Check whether a flow's trigger accepts an event.

    Args:
        flow: Flow whose ``trigger_type`` and ``trigger_config`` are checked
        triggered_by_type: Kind of caller reporting the event
        input_data: Data the event carries

    Returns:
        True if the flow should run for the event. Trigger types without a
        rule, ``manual`` among them, always match.
    """
    trigger_config = flow.trigger_config or {}
    input_data = input_data or {}
    trigger_type = flow.trigger_type

    if trigger_type == "event":
        return (triggered_by_type or "system") in (trigger_config.get("events") or [])

    if trigger_type == "condition":
        condition = trigger_config.get("condition") or ""
        if not condition:
            return True
        return evaluate_trigger_condition(condition, input_data)

    if trigger_type in _CALLER_TRIGGERS:
        return triggered_by_type == _CALLER_TRIGGERS[trigger_type]

    if trigger_type == "ai_detection":
        text = _render_json(input_data).lower()
        return any(str(pattern).lower() in text for pattern in trigger_config.get("patterns") or [])

    return True
