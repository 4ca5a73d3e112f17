"""Graph data structures and the mutable node store executors write through."""
import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

logger = logging.getLogger(__name__)

NodeListener = Callable[[str, dict[str, Any]], None]


@dataclass
class Edge:
    id: str
    source: str
    target: str
    source_handle: str | None = None
    target_handle: str | None = None
    created_at: float | None = None  # stable fan-in order; None sorts first
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def sort_key(self) -> tuple[float, str]:
        return (self.created_at or 0, self.id)


@dataclass
class Node:
    id: str
    type: str
    data: dict[str, Any] = field(default_factory=dict)
    position: dict[str, float] = field(default_factory=dict)


@dataclass
class Graph:
    nodes: dict[str, Node] = field(default_factory=dict)
    edges: list[Edge] = field(default_factory=list)

    def get_incoming_edges(self, node_id: str) -> list[Edge]:
        return sorted(
            (e for e in self.edges if e.target == node_id),
            key=lambda e: e.sort_key,
        )

    def get_outgoing_edges(self, node_id: str) -> list[Edge]:
        return [e for e in self.edges if e.source == node_id]

    def get_predecessors(self, node_id: str) -> set[str]:
        return {e.source for e in self.edges if e.target == node_id}

    def get_successors(self, node_id: str) -> set[str]:
        return {e.target for e in self.edges if e.source == node_id}


class GraphStore:
    """Owns the live graph. Node data is only changed through update_node_data.

    Readers get snapshots: get_node and get_nodes return copies so an
    executor holding one never observes later writes.
    """

    def __init__(self, graph: Graph | None = None):
        self._graph = graph or Graph()
        self._listeners: list[NodeListener] = []

    @property
    def graph(self) -> Graph:
        return self._graph

    def subscribe(self, listener: NodeListener) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def add_node(self, node_id: str, node_type: str, data: dict[str, Any] | None = None) -> Node:
        from ..nodes.registry import NodeRegistry

        executor_cls = NodeRegistry.lookup(node_type)
        merged = executor_cls.default_data() if executor_cls else {}
        merged.update(data or {})
        node = Node(id=node_id, type=node_type, data=merged)
        self._graph.nodes[node_id] = node
        return node

    def remove_node(self, node_id: str) -> None:
        self._graph.nodes.pop(node_id, None)
        self._graph.edges = [
            e for e in self._graph.edges if e.source != node_id and e.target != node_id
        ]

    def add_edge(self, edge: Edge) -> Edge:
        self._graph.edges.append(edge)
        return edge

    def get_node(self, node_id: str) -> Node | None:
        node = self._graph.nodes.get(node_id)
        return copy.deepcopy(node) if node is not None else None

    def get_nodes(self) -> list[Node]:
        return [copy.deepcopy(n) for n in self._graph.nodes.values()]

    def get_edges(self) -> list[Edge]:
        return list(self._graph.edges)

    def update_node_data(self, node_id: str, patch: dict[str, Any]) -> None:
        node = self._graph.nodes.get(node_id)
        if node is None:
            logger.debug("Dropping update for removed node %s", node_id)
            return
        node.data.update(patch)
        for listener in list(self._listeners):
            listener(node_id, patch)
