"""Core workflow simulator components."""

from .exceptions import (
    WorkflowEngineError,
    GraphValidationError,
    NodeExecutionError,
    ExpressionError,
    HandlerRegistryError,
    HttpCallError,
    ConfigurationError,
)
from .logging import setup_logging, get_logger
from .graph import WorkflowGraph
from .handler_registry import HandlerResult, HandlerRuntime, NodeHandlerRegistry, get_default_registry
from .simulator import WorkflowSimulator, simulate
from .validator import WorkflowValidator, validate_workflow

__all__ = [
    "WorkflowEngineError",
    "GraphValidationError",
    "NodeExecutionError",
    "ExpressionError",
    "HandlerRegistryError",
    "HttpCallError",
    "ConfigurationError",
    "setup_logging",
    "get_logger",
    "WorkflowGraph",
    "HandlerResult",
    "HandlerRuntime",
    "NodeHandlerRegistry",
    "get_default_registry",
    "WorkflowSimulator",
    "simulate",
    "WorkflowValidator",
    "validate_workflow",
]
