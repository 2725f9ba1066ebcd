"""Read-only queries over a workflow's nodes and edges."""

from typing import Dict, Iterable, List, Optional, Set

from ..models.core import Edge, Node, NodeType


class WorkflowGraph:
    """Read-only view over the node and edge lists handed in by the editor.

    Lookups for unknown ids return ``None`` or an empty list; callers decide
    what a dangling reference means.
    """

    def __init__(self, nodes: Iterable[Node], edges: Iterable[Edge]):
        self.nodes: List[Node] = list(nodes)
        self.edges: List[Edge] = list(edges)
        # first occurrence wins when ids are duplicated
        self._by_id: Dict[str, Node] = {}
        for node in self.nodes:
            self._by_id.setdefault(node.id, node)

    def node_by_id(self, node_id: str) -> Optional[Node]:
        """Return the node with the given id, if any."""
        return self._by_id.get(node_id)

    def has_node(self, node_id: str) -> bool:
        return node_id in self._by_id

    def outgoing_edges(self, node_id: str) -> List[Edge]:
        """Edges whose source is ``node_id``, in declaration order."""
        return [edge for edge in self.edges if edge.source == node_id]

    def incoming_edges(self, node_id: str) -> List[Edge]:
        """Edges whose target is ``node_id``, in declaration order."""
        return [edge for edge in self.edges if edge.target == node_id]

    def children_of(self, container_id: str) -> List[Node]:
        """Nodes whose ``parent_id`` is ``container_id``."""
        return [node for node in self.nodes if node.parent_id == container_id]

    def nodes_of_type(self, node_type: NodeType) -> List[Node]:
        return [node for node in self.nodes if node.type == node_type]

    def start_node(self) -> Optional[Node]:
        """The first Start node, or ``None`` when there is none."""
        starts = self.nodes_of_type(NodeType.START)
        return starts[0] if starts else None

    def adjacency(self) -> Dict[str, List[str]]:
        """Build an adjacency list keyed by every node id and every edge source."""
        graph: Dict[str, List[str]] = {node.id: [] for node in self.nodes}
        for edge in self.edges:
            graph.setdefault(edge.source, []).append(edge.target)
        return graph

    def reachable_from(self, entry_point: str, include_children: bool = True) -> Set[str]:
        """Find all node ids reachable from ``entry_point``.

        With ``include_children`` a container also reaches the nodes it owns.
        """
        reachable = {entry_point}
        edge_map = self.adjacency()
        if include_children:
            for node in self.nodes:
                if node.parent_id:
                    edge_map.setdefault(node.parent_id, []).append(node.id)

        queue = [entry_point]
        while queue:
            current = queue.pop(0)
            for neighbor in edge_map.get(current, []):
                if neighbor not in reachable:
                    reachable.add(neighbor)
                    queue.append(neighbor)

        return reachable

    def body_order(self, container_id: str) -> List[Node]:
        """Order a container's children along the edges between them.

        Children with no incoming intra-body edge come first; ties keep
        declaration order. Children caught in a cycle are appended last in
        declaration order.
        """
        children = self.children_of(container_id)
        child_ids = {child.id for child in children}
        indegree = {child.id: 0 for child in children}
        successors: Dict[str, List[str]] = {child.id: [] for child in children}
        for edge in self.edges:
            if edge.source in child_ids and edge.target in child_ids:
                indegree[edge.target] += 1
                successors[edge.source].append(edge.target)

        ordered: List[Node] = []
        ready = [child for child in children if indegree[child.id] == 0]
        seen: Set[str] = set()
        while ready:
            current = ready.pop(0)
            if current.id in seen:
                continue
            seen.add(current.id)
            ordered.append(current)
            for target_id in successors[current.id]:
                indegree[target_id] -= 1
                if indegree[target_id] == 0:
                    ready.append(self._by_id[target_id])

        ordered.extend(child for child in children if child.id not in seen)
        return ordered
