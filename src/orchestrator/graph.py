"""Graph module for resource orchestration.

Builds a dependency graph from Manifest.resources and computes the create
ordering (dependencies first) and transitive dependency sets.
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Iterable, Optional

from errors import CycleError, ValidationError
from manifest import Manifest, Resource

logger = logging.getLogger(__name__)


@dataclass
class GraphNode:
    """A node in the dependency graph.

    Wraps a Resource and adds graph structure for traversal.

    Attributes:
        resource: The underlying Resource definition
        dependencies: Nodes this node depends on
        dependents: Nodes that depend on this node
        index: Declaration position (stable tie-breaker)
    """
    resource: Resource
    dependencies: list['GraphNode'] = field(default_factory=list)
    dependents: list['GraphNode'] = field(default_factory=list)
    index: int = 0

    @property
    def id(self) -> str:
        return self.resource.id

    def __repr__(self) -> str:
        return f"GraphNode({self.id}, deps={[d.id for d in self.dependencies]})"


def topological_sort(dependencies: dict[str, set[str]], order: Optional[Iterable[str]] = None) -> list[str]:
    """Kahn's algorithm over an id -> dependency-ids mapping.

    Ties are broken by position in `order` (defaults to mapping order), so
    the result is stable for a given input.

    Raises:
        CycleError: If the dependencies contain a cycle
        ValidationError: If a dependency id is not a key of the mapping
    """
    ids = list(order) if order is not None else list(dependencies)
    position = {node_id: i for i, node_id in enumerate(ids)}

    remaining = {node_id: set(dependencies.get(node_id, ())) for node_id in ids}
    dependents: dict[str, list[str]] = {node_id: [] for node_id in ids}
    for node_id, deps in remaining.items():
        for dep in deps:
            if dep not in dependents:
                raise ValidationError(f"'{node_id}' depends on unknown '{dep}'")
            dependents[dep].append(node_id)

    ready = sorted((n for n, deps in remaining.items() if not deps), key=position.__getitem__)
    ordered: list[str] = []
    while ready:
        node_id = ready.pop(0)
        ordered.append(node_id)
        released = []
        for child in dependents[node_id]:
            remaining[child].discard(node_id)
            if not remaining[child]:
                released.append(child)
        if released:
            ready = sorted(ready + released, key=position.__getitem__)

    if len(ordered) != len(ids):
        blocked = {n: deps for n, deps in remaining.items() if deps}
        raise CycleError(_find_cycle(blocked, ids))
    return ordered


def _find_cycle(blocked: dict[str, set[str]], ids: list[str]) -> list[str]:
    """Return one cycle path among nodes left over by Kahn's algorithm."""
    start = next(n for n in ids if n in blocked)
    path: list[str] = []
    seen: dict[str, int] = {}
    current = start
    while current not in seen:
        seen[current] = len(path)
        path.append(current)
        # Every blocked node has at least one blocked dependency
        current = min((d for d in blocked[current] if d in blocked), key=ids.index)
    return path[seen[current]:] + [current]


class ResourceGraph:
    """Dependency graph built from a Manifest's resources.

    create_order() yields dependencies before dependents. Destroy ordering
    is computed by the planner from the dependencies recorded in state.
    """

    def __init__(self, manifest: Manifest):
        """Build dependency graph from manifest.

        Raises:
            ValidationError: If a dependency names an undeclared resource
            CycleError: If resources depend on each other circularly
        """
        self.manifest = manifest
        self._nodes: dict[str, GraphNode] = {}
        self._build_graph(manifest.resources)
        self._order = topological_sort(
            {node_id: {d.id for d in node.dependencies} for node_id, node in self._nodes.items()},
            order=self._nodes,
        )
        logger.debug(f"Built graph with {len(self._nodes)} resources")

    def _build_graph(self, resources: list[Resource]) -> None:
        """Build GraphNodes and wire dependency edges."""
        for i, resource in enumerate(resources):
            if resource.id in self._nodes:
                raise ValidationError(f"Duplicate resource: '{resource.id}'")
            self._nodes[resource.id] = GraphNode(resource=resource, index=i)

        for resource in resources:
            node = self._nodes[resource.id]
            for dep_id in sorted(resource.dependencies, key=lambda d: self._index_of(d, resource.id)):
                dep = self._nodes[dep_id]
                node.dependencies.append(dep)
                dep.dependents.append(node)

    def _index_of(self, dep_id: str, owner: str) -> int:
        if dep_id not in self._nodes:
            raise ValidationError(f"Resource '{owner}' references unknown resource '{dep_id}'")
        return self._nodes[dep_id].index

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, resource_id: str) -> bool:
        return resource_id in self._nodes

    def create_order(self) -> list[GraphNode]:
        """Return nodes in creation order (dependencies before dependents)."""
        return [self._nodes[node_id] for node_id in self._order]

    def dependencies_of(self, resource_id: str) -> set[str]:
        """All transitive dependencies of a resource."""
        return self._walk(resource_id, lambda n: n.dependencies)

    def _walk(self, resource_id: str, edges) -> set[str]:
        found: set[str] = set()
        queue: deque[GraphNode] = deque(edges(self._nodes[resource_id]))
        while queue:
            node = queue.popleft()
            if node.id in found:
                continue
            found.add(node.id)
            queue.extend(edges(node))
        return found
