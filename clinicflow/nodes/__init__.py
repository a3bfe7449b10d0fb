"""Node executors, one per node type."""

from typing import Dict

from ..models.core import NodeType
from .ai import execute_ai_analysis
from .base import NodeExecutor, NodeServices
from .basic import (
    execute_condition,
    execute_delay,
    execute_notification,
    execute_transform,
    execute_trigger,
)
from .data import execute_database_query, execute_database_update
from .http import execute_api_call, execute_webhook

DEFAULT_EXECUTORS: Dict[NodeType, NodeExecutor] = {
    NodeType.TRIGGER: execute_trigger,
    NodeType.CONDITION: execute_condition,
    NodeType.AI_ANALYSIS: execute_ai_analysis,
    NodeType.DATABASE_QUERY: execute_database_query,
    NodeType.DATABASE_UPDATE: execute_database_update,
    NodeType.API_CALL: execute_api_call,
    NodeType.NOTIFICATION: execute_notification,
    NodeType.DELAY: execute_delay,
    NodeType.TRANSFORM: execute_transform,
    NodeType.WEBHOOK: execute_webhook,
}

__all__ = [
    "DEFAULT_EXECUTORS",
    "NodeExecutor",
    "NodeServices",
    "execute_ai_analysis",
    "execute_api_call",
    "execute_condition",
    "execute_database_query",
    "execute_database_update",
    "execute_delay",
    "execute_notification",
    "execute_transform",
    "execute_trigger",
    "execute_webhook",
]
