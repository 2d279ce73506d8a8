"""Dependency ordering for workflow definitions.

Nodes are ordered with Kahn's algorithm over ``depends_on`` edges and then
grouped into levels: every node in a level depends only on nodes of
earlier levels, so a level may run concurrently. Within a level, and
whenever several nodes become ready together, definition order wins.

A definition with a cycle or a dangling dependency is rejected before any
node runs.
"""

from __future__ import annotations

from collections import deque

from pyconveyor.models import NonRetryableError, WorkflowDefinition


class DefinitionError(NonRetryableError):
    """The definition cannot be executed as written."""

    pass


class CycleError(DefinitionError):
    """The definition's dependency graph contains a cycle."""

    def __init__(self, definition_id: str, nodes: list[str]):
        super().__init__(
            f"Definition {definition_id} has a dependency cycle involving: {', '.join(nodes)}"
        )
        self.nodes = nodes


def build_graph(definition: WorkflowDefinition) -> dict[str, list[str]]:
    """
    Map each node id to its dependencies, in definition order.

    Raises:
        DefinitionError: On duplicate node ids, unknown or self dependencies
    """
    graph: dict[str, list[str]] = {}
    for node in definition.nodes:
        if node.id in graph:
            raise DefinitionError(f"Definition {definition.id}: duplicate node id {node.id!r}")
        graph[node.id] = list(node.depends_on)

    for node_id, deps in graph.items():
        for dep in deps:
            if dep == node_id:
                raise DefinitionError(
                    f"Definition {definition.id}: node {node_id!r} depends on itself"
                )
            if dep not in graph:
                raise DefinitionError(
                    f"Definition {definition.id}: node {node_id!r} depends on unknown node {dep!r}"
                )
    return graph


def topological_order(definition: WorkflowDefinition) -> list[str]:
    """Topological sort of the definition using Kahn's algorithm.

    Returns:
        Node ids in execution order

    Raises:
        CycleError: If the graph has a cycle

    Algorithm (Kahn's):
    1. Queue nodes with no dependencies, in definition order
    2. Pop a node, then release dependents whose dependencies are all done
    3. Nodes never released are part of (or behind) a cycle
    """
    graph = build_graph(definition)
    in_degree = {node_id: len(set(deps)) for node_id, deps in graph.items()}
    dependents: dict[str, list[str]] = {node_id: [] for node_id in graph}
    for node_id, deps in graph.items():
        for dep in dict.fromkeys(deps):
            dependents[dep].append(node_id)

    queue = deque(node_id for node_id, degree in in_degree.items() if degree == 0)
    result: list[str] = []

    while queue:
        node_id = queue.popleft()
        result.append(node_id)
        for dependent in dependents[node_id]:
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                queue.append(dependent)

    if len(result) != len(graph):
        stuck = [node_id for node_id in graph if node_id not in set(result)]
        raise CycleError(definition.id, stuck)

    return result


def execution_levels(definition: WorkflowDefinition) -> list[list[str]]:
    """Group nodes by dependency depth for concurrent execution.

    Example:
        a, b (no deps); c depends on a; d on a and b; e on c and d
        Returns: [['a', 'b'], ['c', 'd'], ['e']]

    Raises:
        CycleError: If the graph has a cycle
    """
    order = topological_order(definition)
    graph = build_graph(definition)

    levels_map: dict[str, int] = {}
    for node_id in order:
        deps = graph[node_id]
        levels_map[node_id] = 1 + max(levels_map[dep] for dep in deps) if deps else 0

    max_level = max(levels_map.values(), default=-1)
    levels: list[list[str]] = [[] for _ in range(max_level + 1)]
    # Definition order within each level
    for node in definition.nodes:
        levels[levels_map[node.id]].append(node.id)
    return levels
