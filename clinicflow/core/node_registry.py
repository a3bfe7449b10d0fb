"""Registry mapping node types to their executors."""

from typing import Dict, Optional

from ..models.core import NodeType
from ..nodes.base import NodeExecutor
from .exceptions import ConfigurationError
from .logging import get_logger

logger = get_logger(__name__)


class NodeExecutorRegistry:
    """Dispatch table from ``NodeType`` to executor callables.

    The table is exhaustive: construction fails if any node type is left
    without an executor.
    """

    def __init__(self, executors: Optional[Dict[NodeType, NodeExecutor]] = None):
        """Initialize the registry.

        Args:
            executors: Overrides for individual node types, merged over the
                built-in executors.

        Raises:
            ConfigurationError: If an executor is not callable or a node type has none
        """
        from ..nodes import DEFAULT_EXECUTORS

        self._executors: Dict[NodeType, NodeExecutor] = dict(DEFAULT_EXECUTORS)
        for node_type, executor in (executors or {}).items():
            self.register(node_type, executor, replace=True)

        missing = [node_type.value for node_type in NodeType if node_type not in self._executors]
        if missing:
            raise ConfigurationError(f"No executor registered for node types: {', '.join(missing)}")

    def register(self, node_type: NodeType, executor: NodeExecutor, replace: bool = False) -> None:
        """Register an executor for a node type.

        Raises:
            ConfigurationError: If the executor is not callable, or one is
                already registered and ``replace`` is False
        """
        node_type = NodeType(node_type)
        if not callable(executor):
            raise ConfigurationError(f"Executor for '{node_type.value}' must be callable")
        if node_type in self._executors and not replace:
            raise ConfigurationError(f"An executor for '{node_type.value}' is already registered")

        self._executors[node_type] = executor
        logger.debug(f"Registered executor for node type '{node_type.value}'")

    def get(self, node_type: NodeType) -> NodeExecutor:
        return self._executors[NodeType(node_type)]

    def registered_types(self) -> Dict[str, str]:
        """Node type -> qualified name of its executor."""
        return {
            node_type.value: f"{executor.__module__}.{getattr(executor, '__name__', repr(executor))}"
            for node_type, executor in self._executors.items()
        }
