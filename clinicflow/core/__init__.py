"""Core flow engine components."""

from .exceptions import (
    FlowEngineError,
    FlowValidationError,
    FlowNotFoundError,
    NodeExecutionError,
    ExecutionTrackingError,
    ExecutionNotFoundError,
    ExecutionEngineError,
    StorageError,
    TransientError,
    ConfigurationError,
    IntegrationError,
    DataStoreError,
    HttpCallError,
    TextGenerationError,
)
from .logging import setup_logging, get_logger
from .flow_manager import FlowManager
from .execution_tracker import ExecutionTracker
from .node_registry import NodeExecutorRegistry
from .execution_engine import ExecutionEngine

__all__ = [
    "FlowEngineError",
    "FlowValidationError",
    "FlowNotFoundError",
    "NodeExecutionError",
    "ExecutionTrackingError",
    "ExecutionNotFoundError",
    "ExecutionEngineError",
    "StorageError",
    "TransientError",
    "ConfigurationError",
    "IntegrationError",
    "DataStoreError",
    "HttpCallError",
    "TextGenerationError",
    "setup_logging",
    "get_logger",
    "FlowManager",
    "ExecutionTracker",
    "NodeExecutorRegistry",
    "ExecutionEngine",
]
