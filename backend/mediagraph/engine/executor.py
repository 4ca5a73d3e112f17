"""Execution order: topological sort and dependency levels."""
from collections import deque

from .graph import Graph


def topological_sort(graph: Graph) -> list[str]:
    """Kahn's algorithm returning node IDs in execution order."""
    in_degree: dict[str, int] = {nid: 0 for nid in graph.nodes}
    # one entry per edge, not per unique successor
    adj: dict[str, list[str]] = {nid: [] for nid in graph.nodes}
    for edge in graph.edges:
        if edge.source not in adj or edge.target not in in_degree:
            continue
        in_degree[edge.target] += 1
        adj[edge.source].append(edge.target)

    queue = deque(nid for nid, deg in in_degree.items() if deg == 0)
    order: list[str] = []
    while queue:
        node_id = queue.popleft()
        order.append(node_id)
        for succ in adj[node_id]:
            in_degree[succ] -= 1
            if in_degree[succ] == 0:
                queue.append(succ)

    if len(order) != len(graph.nodes):
        raise RuntimeError("Graph contains a cycle")
    return order


def group_by_level(graph: Graph) -> list[list[str]]:
    """Group nodes into levels; every node's inputs sit in earlier levels.

    Nodes within one level are independent and may run concurrently.
    """
    order = topological_sort(graph)
    level: dict[str, int] = {}
    for node_id in order:
        preds = [p for p in graph.get_predecessors(node_id) if p in graph.nodes]
        level[node_id] = 1 + max((level[p] for p in preds), default=-1)

    levels: list[list[str]] = [[] for _ in range(max(level.values(), default=-1) + 1)]
    for node_id in order:
        levels[level[node_id]].append(node_id)
    return levels
