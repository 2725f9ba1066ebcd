"""Layered variable context and ``{{path}}`` template substitution.

A context holds the initial payload, per-node outputs (``steps`` for the raw
output fed downstream, ``nodes`` for the logged output used by references),
optional loop bindings and static system values. Contexts are never mutated:
every ``with_*`` call returns a new context sharing nothing mutable with its
parent.
"""

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from ..models.configs import ResolutionMode

CONTEXT_ROOTS = ("payload", "steps", "nodes", "loop", "system")

# {{ path }} or ${{ path }}
PLACEHOLDER_PATTERN = re.compile(r"\$?\{\{\s*([^{}]+?)\s*\}\}")


class _Undefined:
    """Marker for a path that does not resolve."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self):
        return False

    def __repr__(self):
        return "UNDEFINED"


UNDEFINED = _Undefined()


@dataclass(frozen=True)
class VariableContext:
    """Variable scope visible to one node dispatch."""
    payload: Any = field(default_factory=dict)
    steps: Mapping[str, Any] = field(default_factory=dict)
    nodes: Mapping[str, Any] = field(default_factory=dict)
    loop: Optional[Mapping[str, Any]] = None
    system: Mapping[str, Any] = field(default_factory=dict)

    def with_node_output(self, node_id: str, output: Any, logged_output: Any) -> "VariableContext":
        """Return a child context that records one node's outputs."""
        return VariableContext(
            payload=self.payload,
            steps={**self.steps, node_id: output},
            nodes={**self.nodes, node_id: logged_output},
            loop=self.loop,
            system=self.system,
        )

    def with_loop(self, item: Any, index: int) -> "VariableContext":
        """Return a child context bound to one loop iteration."""
        return VariableContext(
            payload=self.payload,
            steps=dict(self.steps),
            nodes=dict(self.nodes),
            loop={"item": item, "index": index},
            system=self.system,
        )

    def as_dict(self) -> Dict[str, Any]:
        """Root mapping that paths are resolved against."""
        root = {
            "payload": self.payload,
            "steps": self.steps,
            "nodes": self.nodes,
            "system": self.system,
        }
        if self.loop is not None:
            root["loop"] = self.loop
        return root


def strip_placeholder(value: Any) -> Any:
    """Remove a ``{{ }}`` (or ``${{ }}``) wrapper around a whole string."""
    if not isinstance(value, str):
        return value
    match = PLACEHOLDER_PATTERN.fullmatch(value.strip())
    return match.group(1).strip() if match else value.strip()


def walk_path(current: Any, parts: List[str]) -> Any:
    """Walk ``parts`` field by field, returning UNDEFINED on the first miss."""
    for part in parts:
        if isinstance(current, Mapping):
            if part not in current:
                return UNDEFINED
            current = current[part]
        elif isinstance(current, (list, tuple)) and part.lstrip("-").isdigit():
            index = int(part)
            if not -len(current) <= index < len(current):
                return UNDEFINED
            current = current[index]
        elif isinstance(current, str) and part == "length":
            current = len(current)
        elif isinstance(current, (list, tuple)) and part == "length":
            current = len(current)
        else:
            return UNDEFINED
    return current


def resolve(ctx: VariableContext, path: str, mode: ResolutionMode = ResolutionMode.CONTEXT) -> Any:
    """Resolve a dotted path against the context.

    Returns UNDEFINED as soon as an intermediate value is missing or cannot be
    indexed. The bare path ``payload`` returns the whole payload.
    """
    if not isinstance(path, str):
        return UNDEFINED
    clean_path = strip_placeholder(path)
    if not clean_path:
        return UNDEFINED
    if clean_path == "payload":
        return ctx.payload

    parts = [part.strip() for part in clean_path.split(".")]
    if mode == ResolutionMode.NODE and parts[0] in ctx.nodes and parts[0] not in CONTEXT_ROOTS:
        return walk_path(ctx.nodes[parts[0]], parts[1:])
    return walk_path(ctx.as_dict(), parts)


def to_display_string(value: Any) -> str:
    """Render a resolved value the way the editor displays it inline."""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list, tuple)) or isinstance(value, Mapping):
        return json.dumps(value, ensure_ascii=False, separators=(",", ":"), default=str)
    return str(value)


def substitute(ctx: VariableContext, template: Any, mode: ResolutionMode = ResolutionMode.CONTEXT) -> Any:
    """Replace every ``{{path}}`` in ``template`` with its resolved value.

    Unresolvable placeholders are left untouched. Non-string input is
    returned unchanged.
    """
    if not isinstance(template, str):
        return template

    def replace(match):
        value = resolve(ctx, match.group(1), mode)
        if value is UNDEFINED:
            return match.group(0)
        return to_display_string(value)

    return PLACEHOLDER_PATTERN.sub(replace, template)


def deep_substitute(ctx: VariableContext, value: Any, mode: ResolutionMode = ResolutionMode.CONTEXT) -> Any:
    """Apply ``substitute`` to every string leaf of a nested structure."""
    if isinstance(value, str):
        return substitute(ctx, value, mode)
    if isinstance(value, Mapping):
        return {key: deep_substitute(ctx, item, mode) for key, item in value.items()}
    if isinstance(value, list):
        return [deep_substitute(ctx, item, mode) for item in value]
    if isinstance(value, tuple):
        return tuple(deep_substitute(ctx, item, mode) for item in value)
    return value


def find_references(text: str) -> List[str]:
    """List the paths of every placeholder in ``text``, in order of appearance."""
    if not isinstance(text, str):
        return []
    return [match.group(1).strip() for match in PLACEHOLDER_PATTERN.finditer(text)]


def build_system_values(workflow_id: str, run_id: str, timestamp: str) -> Dict[str, Any]:
    """Static values exposed under the ``system`` root."""
    return {
        "workflow_id": workflow_id,
        "run_id": run_id,
        "timestamp": timestamp,
    }
