"""Registry mapping node types to the handlers that simulate them."""

import inspect
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .exceptions import HandlerRegistryError
from .logging import get_logger
from ..models.core import NodeType

logger = get_logger(__name__)


@dataclass
class HandlerResult:
    """What one node dispatch produced.

    ``output`` is stored under ``steps`` and fed downstream, ``trace_output``
    is the logged output stored under ``nodes`` and shown in the trace.
    ``selected_handles`` of ``None`` means the node does not branch.
    """
    success: bool
    output: Any = None
    trace_input: Any = None
    trace_output: Any = None
    error: Optional[str] = None
    selected_handles: Optional[List[str]] = None

    def __post_init__(self):
        if self.trace_output is None:
            self.trace_output = self.output

    def logged_output(self) -> Any:
        """Trace output with the error message attached on failure."""
        if self.error and isinstance(self.trace_output, dict):
            return {**self.trace_output, "error": self.error}
        if self.error:
            return {"error": self.error}
        return self.trace_output


@dataclass
class HandlerRuntime:
    """Services a handler may use while simulating a node."""
    http_client: Any
    default_http_timeout_ms: int = 30000
    extras: Dict[str, Any] = field(default_factory=dict)


# handler(node, config, ctx, runtime) -> HandlerResult
NodeHandler = Callable[..., HandlerResult]


class NodeHandlerRegistry:
    """In-memory registry of node handlers keyed by node type."""

    def __init__(self):
        self._handlers: Dict[NodeType, NodeHandler] = {}
        self._descriptions: Dict[NodeType, str] = {}

    def register(self, node_type: NodeType, handler: NodeHandler, description: str = "",
                 replace: bool = False) -> None:
        """Register the handler for a node type.

        Args:
            node_type: Node type the handler simulates
            handler: Callable taking ``(node, config, ctx, runtime)``
            description: Optional human readable description
            replace: Allow overriding an existing registration

        Raises:
            HandlerRegistryError: If the handler is invalid or already registered
        """
        try:
            node_type = NodeType(node_type)
        except ValueError:
            raise HandlerRegistryError(f"Unknown node type '{node_type}'", node_type=str(node_type))

        if not callable(handler):
            raise HandlerRegistryError(f"Handler for '{node_type.value}' must be callable", node_type=node_type.value)

        try:
            sig = inspect.signature(handler)
            if len(sig.parameters) < 4:
                logger.warning(f"Handler for '{node_type.value}' takes fewer than 4 parameters")
        except (ValueError, TypeError) as e:
            raise HandlerRegistryError(
                f"Cannot inspect handler signature for '{node_type.value}': {e}",
                node_type=node_type.value
            )

        if node_type in self._handlers and not replace:
            raise HandlerRegistryError(f"Handler for '{node_type.value}' is already registered", node_type=node_type.value)

        self._handlers[node_type] = handler
        self._descriptions[node_type] = description.strip() if description else (handler.__doc__ or "").strip().split("\n")[0]
        logger.debug(f"Registered handler for '{node_type.value}': {handler.__module__}.{handler.__name__}")

    def get(self, node_type: NodeType) -> NodeHandler:
        """Return the handler for a node type.

        Raises:
            HandlerRegistryError: If no handler is registered for the type
        """
        handler = self._handlers.get(node_type)
        if handler is None:
            value = getattr(node_type, "value", node_type)
            raise HandlerRegistryError(f"No handler registered for node type '{value}'", node_type=str(value))
        return handler

    def exists(self, node_type: NodeType) -> bool:
        return node_type in self._handlers

    def list_handlers(self) -> Dict[str, str]:
        """Map each registered node type to its description."""
        return {node_type.value: self._descriptions.get(node_type, "") for node_type in self._handlers}

    def unregister(self, node_type: NodeType) -> bool:
        """Remove a registration; returns False when none existed."""
        if node_type not in self._handlers:
            return False
        del self._handlers[node_type]
        self._descriptions.pop(node_type, None)
        logger.info(f"Unregistered handler for '{node_type.value}'")
        return True

    def clear(self) -> None:
        self._handlers.clear()
        self._descriptions.clear()


_default_registry: Optional[NodeHandlerRegistry] = None


def get_default_registry() -> NodeHandlerRegistry:
    """Process-wide registry populated with the built-in handlers."""
    global _default_registry
    if _default_registry is None:
        from ..handlers import register_default_handlers

        registry = NodeHandlerRegistry()
        register_default_handlers(registry)
        _default_registry = registry
    return _default_registry
