"""Data models for the flow engine."""

from .core import (
    ExecutionStatusEnum,
    FlowLogLevel,
    NodeType,
    NodeConfig,
    NODE_CONFIG_MODELS,
    NodeDefinition,
    EdgeDefinition,
    FlowDefinition,
    Flow,
    FlowUpdate,
    FlowContext,
    ExecutionStatus,
    LogEntry,
    ValidationResult,
)

__all__ = [
    "ExecutionStatusEnum",
    "FlowLogLevel",
    "NodeType",
    "NodeConfig",
    "NODE_CONFIG_MODELS",
    "NodeDefinition",
    "EdgeDefinition",
    "FlowDefinition",
    "Flow",
    "FlowUpdate",
    "FlowContext",
    "ExecutionStatus",
    "LogEntry",
    "ValidationResult",
]
