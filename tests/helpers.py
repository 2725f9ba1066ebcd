"""Builders for editor-shaped nodes and edges used across the test suites."""

from typing import Any, Dict, Optional


def node(node_id: str, node_type: str, config: Optional[Dict[str, Any]] = None,
         label: Optional[str] = None, parent: Optional[str] = None) -> Dict[str, Any]:
    """Build a node in the shape the editor exports."""
    data = {
        "id": node_id,
        "type": node_type,
        "data": {"label": label if label is not None else node_id, "config": config or {}},
    }
    if parent:
        data["parentNode"] = parent
    return data


def edge(source: str, target: str, handle: Optional[str] = None) -> Dict[str, Any]:
    """Build an edge, optionally leaving from a named source handle."""
    data = {"id": f"e-{source}-{target}-{handle or 'out'}", "source": source, "target": target}
    if handle:
        data["sourceHandle"] = handle
    return data
