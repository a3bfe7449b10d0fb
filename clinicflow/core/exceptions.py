"""Custom exceptions for the flow engine with detailed error information."""

import traceback
from datetime import datetime
from typing import Optional, Dict, Any, List
from enum import Enum


class ErrorSeverity(Enum):
    """Error severity levels for categorizing exceptions."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Categories of errors for better classification."""
    VALIDATION = "validation"
    EXECUTION = "execution"
    STORAGE = "storage"
    NETWORK = "network"
    CONFIGURATION = "configuration"
    INTEGRATION = "integration"


class FlowEngineError(Exception):
    """Base exception for all flow engine errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        category: ErrorCategory = ErrorCategory.EXECUTION,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = False,
        retry_after: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.severity = severity
        self.category = category
        self.details = details or {}
        self.recoverable = recoverable
        self.retry_after = retry_after
        self.context = context or {}
        self.timestamp = datetime.utcnow()

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging and API responses."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "details": self.details,
            "recoverable": self.recoverable,
            "retry_after": self.retry_after,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "exception_type": self.__class__.__name__
        }

    def add_context(self, **kwargs):
        """Add additional context to the exception."""
        self.context.update(kwargs)
        return self

    def add_details(self, **kwargs):
        """Add additional details to the exception."""
        self.details.update(kwargs)
        return self


class FlowValidationError(FlowEngineError):
    """Raised when a flow definition is structurally invalid."""

    def __init__(
        self,
        message: str,
        validation_errors: Optional[List[str]] = None,
        flow_name: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.VALIDATION,
            **kwargs
        )
        self.validation_errors = validation_errors or []
        if flow_name:
            self.add_context(flow_name=flow_name)
        if validation_errors:
            self.add_details(validation_errors=validation_errors)


class FlowNotFoundError(FlowEngineError):
    """Raised when a flow does not exist or is not active."""

    def __init__(self, message: str, flow_id: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.LOW,
            category=ErrorCategory.VALIDATION,
            **kwargs
        )
        if flow_id:
            self.add_context(flow_id=flow_id)


class NodeExecutionError(FlowEngineError):
    """Raised when a node fails while a flow is being walked."""

    def __init__(
        self,
        message: str,
        node_id: Optional[str] = None,
        execution_id: Optional[str] = None,
        node_type: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.EXECUTION,
            **kwargs
        )
        if node_id:
            self.add_context(node_id=node_id)
        if execution_id:
            self.add_context(execution_id=execution_id)
        if node_type:
            self.add_context(node_type=node_type)


class ExecutionTrackingError(FlowEngineError):
    """Raised when an execution record cannot be read or written."""

    def __init__(
        self,
        message: str,
        execution_id: Optional[str] = None,
        operation: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.STORAGE,
            **kwargs
        )
        if execution_id:
            self.add_context(execution_id=execution_id)
        if operation:
            self.add_context(operation=operation)


class ExecutionNotFoundError(ExecutionTrackingError):
    """Raised when no execution has the requested ID."""

    def __init__(self, message: str, execution_id: Optional[str] = None, **kwargs):
        super().__init__(message, execution_id=execution_id, **kwargs)
        self.severity = ErrorSeverity.LOW
        self.category = ErrorCategory.VALIDATION


class ExecutionEngineError(FlowEngineError):
    """Raised when execution engine operations fail."""

    def __init__(
        self,
        message: str,
        execution_id: Optional[str] = None,
        flow_id: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.EXECUTION,
            **kwargs
        )
        if execution_id:
            self.add_context(execution_id=execution_id)
        if flow_id:
            self.add_context(flow_id=flow_id)


class StorageError(FlowEngineError):
    """Raised when storage operations fail."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        table: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.STORAGE,
            recoverable=True,
            retry_after=3,
            **kwargs
        )
        if operation:
            self.add_context(operation=operation)
        if table:
            self.add_context(table=table)


class TransientError(FlowEngineError):
    """Raised for transient errors that should be retried."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            recoverable=True,
            retry_after=5,
            **kwargs
        )


class ConfigurationError(FlowEngineError):
    """Raised when configuration is invalid or missing."""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.CONFIGURATION,
            **kwargs
        )
        if config_key:
            self.add_context(config_key=config_key)


class IntegrationError(FlowEngineError):
    """Base class for failures of the collaborators nodes call into."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.MEDIUM)
        kwargs.setdefault("category", ErrorCategory.INTEGRATION)
        super().__init__(message, **kwargs)


class DataStoreError(IntegrationError):
    """Raised when a generic table query or update fails."""

    def __init__(self, message: str, table: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        if table:
            self.add_context(table=table)


class HttpCallError(IntegrationError):
    """Raised when an outbound HTTP call cannot be completed."""

    def __init__(
        self,
        message: str,
        url: Optional[str] = None,
        method: Optional[str] = None,
        **kwargs
    ):
        kwargs.setdefault("category", ErrorCategory.NETWORK)
        super().__init__(message, **kwargs)
        if url:
            self.add_context(url=url)
        if method:
            self.add_context(method=method)


class TextGenerationError(IntegrationError):
    """Raised when the text-generation provider fails."""

    def __init__(self, message: str, model: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        if model:
            self.add_context(model=model)


def create_error_response(error: FlowEngineError) -> Dict[str, Any]:
    """Create the standard failure envelope from a FlowEngineError."""
    return {
        "success": False,
        "error": error.message,
        "error_code": error.error_code,
        "details": {
            **error.details,
            "severity": error.severity.value,
            "category": error.category.value,
            "recoverable": error.recoverable,
            "retry_after": error.retry_after,
            "timestamp": error.timestamp.isoformat()
        },
        "context": error.context
    }


def format_exception_stack(error: BaseException) -> str:
    """Render the traceback of an exception for storage alongside its message."""
    return "".join(traceback.format_exception(type(error), error, error.__traceback__))
