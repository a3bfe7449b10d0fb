"""Shared types for node executors."""

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict

from ..models.core import FlowContext, NodeDefinition

# (node, context, services) -> result object
NodeExecutor = Callable[[NodeDefinition, FlowContext, "NodeServices"], Dict[str, Any]]


@dataclass
class NodeServices:
    """Collaborators available to node executors.

    Any of them may be replaced by a fake in tests.
    """
    data_store: Any = None
    http_client: Any = None
    text_generator: Any = None
    sleep: Callable[[float], None] = field(default=time.sleep)
