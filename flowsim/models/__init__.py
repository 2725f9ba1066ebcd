"""Data models for the workflow simulator."""

from .core import (
    NodeType,
    NodeStatus,
    TraceStatus,
    ValidationSeverity,
    ValidationCategory,
    Node,
    Edge,
    TraceEntry,
    ValidationError,
    ValidationSummary,
    ValidationResult,
    SimulationResult,
)
from .configs import (
    ResolutionMode,
    NodeConfig,
    CONFIG_MODELS,
    parse_node_config,
)

__all__ = [
    "NodeType",
    "NodeStatus",
    "TraceStatus",
    "ValidationSeverity",
    "ValidationCategory",
    "Node",
    "Edge",
    "TraceEntry",
    "ValidationError",
    "ValidationSummary",
    "ValidationResult",
    "SimulationResult",
    "ResolutionMode",
    "NodeConfig",
    "CONFIG_MODELS",
    "parse_node_config",
]
