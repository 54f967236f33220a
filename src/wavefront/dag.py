from __future__ import annotations

from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass, field

from wavefront.models import UnitDeclaration


@dataclass
class UnitNode:
    """A node in the dependency graph."""

    id: str
    dependencies: list[str] = field(default_factory=list)
    stub_eligible: bool = False
    priority: int = 0
    declaration: UnitDeclaration | None = None


@dataclass(frozen=True)
class Edge:
    """Consumer depends on provider. Stub edges may be served by a stub."""

    consumer: str
    provider: str
    stub_eligible: bool = False


class CycleError(Exception):
    """Raised when a dependency cycle is detected."""

    def __init__(self, cycle: list[str]) -> None:
        self.cycle = cycle
        super().__init__(f"Dependency cycle detected: {' -> '.join(cycle)}")


class Graph:
    def __init__(self) -> None:
        self._nodes: dict[str, UnitNode] = {}

    def add_node(
        self,
        unit_id: str,
        dependencies: list[str] | None = None,
        stub_eligible: bool = False,
        priority: int = 0,
        declaration: UnitDeclaration | None = None,
    ) -> None:
        """Add or update a node in the graph."""
        self._nodes[unit_id] = UnitNode(
            id=unit_id,
            dependencies=list(dict.fromkeys(dependencies or [])),
            stub_eligible=stub_eligible,
            priority=priority,
            declaration=declaration,
        )

    def get_node(self, unit_id: str) -> UnitNode | None:
        return self._nodes.get(unit_id)

    def __contains__(self, unit_id: object) -> bool:
        return unit_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    @property
    def nodes(self) -> list[UnitNode]:
        """All nodes sorted by id."""
        return sorted(self._nodes.values(), key=lambda n: n.id)

    @property
    def edges(self) -> list[Edge]:
        return [
            Edge(consumer=n.id, provider=dep, stub_eligible=n.stub_eligible)
            for n in self.nodes
            for dep in n.dependencies
            if dep in self._nodes
        ]

    def dependents(self, unit_id: str) -> list[str]:
        """Units that declare a dependency on this unit."""
        return sorted(n.id for n in self._nodes.values() if unit_id in n.dependencies)

    def hard_dependencies(self, unit_id: str) -> list[str]:
        """Dependencies that must be complete before the unit can build."""
        node = self._nodes.get(unit_id)
        if node is None or node.stub_eligible:
            return []
        return [d for d in node.dependencies if d in self._nodes]

    def is_blocked(self, unit_id: str, completed: set[str] | None = None) -> bool:
        """Check if a unit waits on an unfinished hard dependency."""
        resolved = completed or set()
        return any(d not in resolved for d in self.hard_dependencies(unit_id))

    def ready_units(self, completed: set[str] | None = None) -> list[UnitNode]:
        """Units not yet completed whose hard dependencies are all completed."""
        resolved = completed or set()
        return [
            n
            for n in self.nodes
            if n.id not in resolved and not self.is_blocked(n.id, resolved)
        ]

    def reachable(self, start: str, hard_only: bool = False) -> set[str]:
        """All units *start* depends on, directly or transitively."""
        seen: set[str] = set()
        stack = [start]
        while stack:
            current = stack.pop()
            if hard_only:
                deps = self.hard_dependencies(current)
            else:
                node = self._nodes.get(current)
                deps = [d for d in node.dependencies if d in self._nodes] if node else []
            for dep in deps:
                if dep not in seen:
                    seen.add(dep)
                    stack.append(dep)
        return seen

    def related(self, a: str, b: str, hard_only: bool = False) -> bool:
        """True if either unit depends on the other."""
        return b in self.reachable(a, hard_only) or a in self.reachable(b, hard_only)

    def topological_sort(self) -> list[str]:
        """Return unit ids in dependency order. Raises CycleError on cycles."""
        in_degree: dict[str, int] = {n: 0 for n in self._nodes}
        for node in self._nodes.values():
            for dep in node.dependencies:
                if dep in self._nodes:
                    in_degree[node.id] += 1

        queue: deque[str] = deque(sorted(n for n, d in in_degree.items() if d == 0))
        result: list[str] = []

        while queue:
            current = queue.popleft()
            result.append(current)
            for dependent in self.dependents(current):
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)

        if len(result) != len(self._nodes):
            cycles = self.find_cycles()
            raise CycleError(cycles[0] if cycles else [])

        return result

    def strongly_connected_components(self) -> list[list[str]]:
        """Tarjan's algorithm, iterative. Components are sorted internally."""
        index: dict[str, int] = {}
        low: dict[str, int] = {}
        on_stack: set[str] = set()
        stack: list[str] = []
        components: list[list[str]] = []
        counter = 0

        for root in sorted(self._nodes):
            if root in index:
                continue
            work: list[tuple[str, Iterable[str]]] = []
            index[root] = low[root] = counter
            counter += 1
            stack.append(root)
            on_stack.add(root)
            work.append((root, iter(self._successors(root))))
            while work:
                node, successors = work[-1]
                advanced = False
                for succ in successors:
                    if succ not in index:
                        index[succ] = low[succ] = counter
                        counter += 1
                        stack.append(succ)
                        on_stack.add(succ)
                        work.append((succ, iter(self._successors(succ))))
                        advanced = True
                        break
                    if succ in on_stack:
                        low[node] = min(low[node], index[succ])
                if advanced:
                    continue
                work.pop()
                if work:
                    parent = work[-1][0]
                    low[parent] = min(low[parent], low[node])
                if low[node] == index[node]:
                    component: list[str] = []
                    while True:
                        member = stack.pop()
                        on_stack.discard(member)
                        component.append(member)
                        if member == node:
                            break
                    components.append(sorted(component))

        return sorted(components)

    def find_cycles(self) -> list[list[str]]:
        """One closed path per cyclic component, e.g. ``["F", "G", "F"]``."""
        cycles: list[list[str]] = []
        for component in self.strongly_connected_components():
            start = component[0]
            if len(component) == 1 and start not in self._nodes[start].dependencies:
                continue
            cycles.append(self._cycle_through(start, set(component)))
        return cycles

    def _successors(self, unit_id: str) -> list[str]:
        return sorted(d for d in self._nodes[unit_id].dependencies if d in self._nodes)

    def _cycle_through(self, start: str, members: set[str]) -> list[str]:
        """Shortest path from start back to itself inside one component."""
        parents: dict[str, str] = {}
        queue: deque[str] = deque([start])
        visited = {start}
        while queue:
            current = queue.popleft()
            for succ in self._successors(current):
                if succ not in members:
                    continue
                if succ == start:
                    path = [current]
                    while path[-1] != start:
                        path.append(parents[path[-1]])
                    path.reverse()
                    return [*path, start]
                if succ not in visited:
                    visited.add(succ)
                    parents[succ] = current
                    queue.append(succ)
        return [start, start]

    def layers(self, completed: set[str] | None = None) -> list[list[str]]:
        """Group pending units into layers over hard edges.

        Layer N holds units whose hard dependencies are all completed or in
        layers < N. Raises CycleError if the hard edges contain a cycle.
        """
        resolved = set(completed or ())
        remaining = [n.id for n in self.nodes if n.id not in resolved]
        layers: list[list[str]] = []
        while remaining:
            layer = [u for u in remaining if not self.is_blocked(u, resolved)]
            if not layer:
                cycles = [c for c in self.find_cycles() if set(c) & set(remaining)]
                raise CycleError(cycles[0] if cycles else sorted(remaining))
            layers.append(layer)
            resolved.update(layer)
            remaining = [u for u in remaining if u not in resolved]
        return layers


def build_graph(units: Iterable[UnitDeclaration]) -> Graph:
    """Build the dependency graph from validated unit declarations."""
    graph = Graph()
    for unit in units:
        graph.add_node(
            unit.id,
            dependencies=unit.dependencies,
            stub_eligible=unit.stub_eligible,
            priority=unit.priority,
            declaration=unit,
        )
    return graph
