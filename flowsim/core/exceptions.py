"""Exceptions raised by the workflow simulator.

Each error carries a severity and a category (set per class), free-form
``details`` for the client and ``context`` naming what the error is about
(node id, expression, url and so on).
"""

from datetime import datetime, timezone
from typing import Optional, Dict, Any, List
from enum import Enum


class ErrorSeverity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    VALIDATION = "validation"
    EXECUTION = "execution"
    EXPRESSION = "expression"
    NETWORK = "network"
    CONFIGURATION = "configuration"


class WorkflowEngineError(Exception):
    """Base class for every simulator error."""

    severity = ErrorSeverity.MEDIUM
    category = ErrorCategory.EXECUTION

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None,
        **context_fields
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or type(self).__name__
        self.details = dict(details or {})
        # keyword shortcuts such as node_id= or url= land in the context, None values are dropped
        self.context = dict(context or {})
        self.context.update({key: value for key, value in context_fields.items() if value is not None})
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        """Flatten the error for structured log records."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "details": self.details,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
        }

    def add_context(self, **kwargs) -> "WorkflowEngineError":
        self.context.update(kwargs)
        return self


class GraphValidationError(WorkflowEngineError):
    """A caller asked for a valid graph and validation reported errors."""

    category = ErrorCategory.VALIDATION

    def __init__(self, message: str, validation_errors: Optional[List[str]] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.validation_errors = list(validation_errors or [])
        if self.validation_errors:
            self.details["validation_errors"] = self.validation_errors


class NodeExecutionError(WorkflowEngineError):
    """A node handler failed.

    The simulator turns it into a failed trace entry. ``output`` is what the
    node produced before failing and ``details["input"]`` what it was given.
    """

    severity = ErrorSeverity.HIGH

    def __init__(self, message: str, node_id: Optional[str] = None,
                 output: Optional[Dict[str, Any]] = None, **kwargs):
        super().__init__(message, node_id=node_id, **kwargs)
        self.output = output or {}


class ExpressionError(WorkflowEngineError):
    """A condition expression could not be parsed or evaluated."""

    severity = ErrorSeverity.LOW
    category = ErrorCategory.EXPRESSION

    def __init__(self, message: str, expression: Optional[str] = None, **kwargs):
        super().__init__(message, expression=expression, **kwargs)


class HandlerRegistryError(WorkflowEngineError):
    """Bad registration or lookup in the node handler registry."""

    category = ErrorCategory.CONFIGURATION

    def __init__(self, message: str, node_type: Optional[str] = None, **kwargs):
        super().__init__(message, node_type=node_type, **kwargs)


class HttpCallError(WorkflowEngineError):
    """An outbound API call could not be completed."""

    category = ErrorCategory.NETWORK

    def __init__(self, message: str, url: Optional[str] = None, **kwargs):
        super().__init__(message, url=url, **kwargs)


class ConfigurationError(WorkflowEngineError):
    """Settings are missing or hold an unsupported value."""

    severity = ErrorSeverity.HIGH
    category = ErrorCategory.CONFIGURATION

    def __init__(self, message: str, config_key: Optional[str] = None, **kwargs):
        super().__init__(message, config_key=config_key, **kwargs)


def create_error_response(error: WorkflowEngineError) -> Dict[str, Any]:
    """Body returned to API clients for an engine error."""
    details = dict(error.details)
    details.update(
        severity=error.severity.value,
        category=error.category.value,
        timestamp=error.timestamp.isoformat(),
    )
    return {
        "error": error.error_code,
        "message": error.message,
        "details": details,
        "context": error.context,
    }
