"""
DependencyGraph: Validated graph of units and their dependency edges.

This module is the single place where ordering is derived. It merges
explicit and reference-derived edges, rejects cycles with the full cycle
path, and layers nodes into ready-sets for concurrent execution.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from typing import (
    Any, Callable, Dict, FrozenSet, Hashable, Iterable, List, Mapping, Optional, Set, TypeVar,
)
import logging

from .errors import CyclicDependency, DanglingReference, DuplicateIdentifier
from .references import resolve_references
from .unit import Unit

logger = logging.getLogger(__name__)

N = TypeVar("N", bound=Hashable)


def find_cycle(
    nodes: Iterable[N],
    dependencies: Mapping[N, Iterable[N]],
    sort_key: Optional[Callable[[N], Any]] = None,
) -> Optional[List[N]]:
    """
    Find a dependency cycle using depth-first search.

    Nodes on the current DFS path are tracked on a recursion stack; reaching
    a node that is still on the stack closes a cycle.

    Returns:
        The cycle as a list whose first and last elements are equal, with
        each element depending on the next, or None if the graph is acyclic.
    """
    ordered = sorted(nodes, key=sort_key) if sort_key else list(nodes)
    visited: Set[N] = set()
    on_stack: Set[N] = set()

    for root in ordered:
        if root in visited:
            continue
        path: List[N] = [root]
        iterators = [iter(_sorted(dependencies.get(root, ()), sort_key))]
        visited.add(root)
        on_stack.add(root)

        while iterators:
            advanced = False
            for nxt in iterators[-1]:
                if nxt in on_stack:
                    start = path.index(nxt)
                    return path[start:] + [nxt]
                if nxt not in visited:
                    visited.add(nxt)
                    on_stack.add(nxt)
                    path.append(nxt)
                    iterators.append(iter(_sorted(dependencies.get(nxt, ()), sort_key)))
                    advanced = True
                    break
            if not advanced:
                iterators.pop()
                on_stack.discard(path.pop())

    return None


def layer_ready_sets(
    nodes: Iterable[N],
    dependencies: Mapping[N, Iterable[N]],
    sort_key: Optional[Callable[[N], Any]] = None,
) -> List[List[N]]:
    """
    Layer nodes into ready-sets.

    A node lands in the first set after all of its dependencies. Every node
    in a set can run concurrently with the others in it. Sets are sorted by
    sort_key for reproducible output.

    Raises:
        CyclicDependency: If the nodes cannot all be layered
    """
    pending = list(nodes)
    known = set(pending)
    deps = {node: set(dependencies.get(node, ())) & known for node in pending}
    done: Set[N] = set()
    levels: List[List[N]] = []

    while pending:
        ready = [node for node in pending if deps[node] <= done]
        if not ready:
            cycle = find_cycle(pending, deps, sort_key) or list(pending)
            raise CyclicDependency([str(node) for node in cycle])
        ready = _sorted(ready, sort_key)
        levels.append(ready)
        done.update(ready)
        pending = [node for node in pending if node not in done]

    return levels


def _sorted(items: Iterable[N], sort_key: Optional[Callable[[N], Any]]) -> List[N]:
    return sorted(items, key=sort_key) if sort_key else sorted(items)


@dataclass
class DependencyGraph:
    """
    An acyclic graph of units.

    Attributes:
        units: Units by identifier
        explicit: Declared depends_on edges, unit_id -> dependency ids
        implicit: Reference-derived edges, unit_id -> dependency ids
    """
    units: Dict[str, Unit]
    explicit: Dict[str, FrozenSet[str]] = field(default_factory=dict)
    implicit: Dict[str, FrozenSet[str]] = field(default_factory=dict)
    _dependencies: Dict[str, FrozenSet[str]] = field(default_factory=dict, repr=False)
    _dependents: Dict[str, FrozenSet[str]] = field(default_factory=dict, repr=False)

    def __post_init__(self):
        """Build the merged edge indexes."""
        reverse: Dict[str, Set[str]] = {unit_id: set() for unit_id in self.units}
        for unit_id in self.units:
            merged = self.explicit.get(unit_id, frozenset()) | self.implicit.get(unit_id, frozenset())
            self._dependencies[unit_id] = frozenset(merged)
            for dep in merged:
                reverse[dep].add(unit_id)
        self._dependents = {unit_id: frozenset(ids) for unit_id, ids in reverse.items()}

    def get(self, unit_id: str) -> Optional[Unit]:
        return self.units.get(unit_id)

    def dependencies(self, unit_id: str) -> FrozenSet[str]:
        """Direct dependencies: units that must be applied before this one."""
        return self._dependencies.get(unit_id, frozenset())

    def dependents(self, unit_id: str) -> FrozenSet[str]:
        """Direct dependents: units that depend on this one."""
        return self._dependents.get(unit_id, frozenset())

    def transitive_dependents(self, unit_id: str) -> FrozenSet[str]:
        seen: Set[str] = set()
        to_visit = list(self.dependents(unit_id))
        while to_visit:
            current = to_visit.pop()
            if current in seen:
                continue
            seen.add(current)
            to_visit.extend(self.dependents(current))
        return frozenset(seen)

    def edges(self) -> Set[tuple]:
        """All edges as (dependency, dependent) pairs."""
        return {
            (dep, unit_id)
            for unit_id, deps in self._dependencies.items()
            for dep in deps
        }

    def ready_sets(self) -> List[List[str]]:
        """Unit ids layered into ready-sets, ascending id within each set."""
        return layer_ready_sets(self.units, self._dependencies)

    def topological_order(self) -> List[str]:
        """Unit ids with every dependency before its dependents."""
        return [unit_id for level in self.ready_sets() for unit_id in level]

    def __contains__(self, unit_id: object) -> bool:
        return unit_id in self.units

    def __len__(self) -> int:
        return len(self.units)

    def __repr__(self) -> str:
        return f"DependencyGraph(units={len(self.units)}, edges={len(self.edges())})"


def build_graph(units: Iterable[Unit]) -> DependencyGraph:
    """
    Build and validate a dependency graph from units.

    Args:
        units: All units of the planning pass

    Returns:
        DependencyGraph: Validated acyclic graph

    Raises:
        DuplicateIdentifier: If two units share an identifier
        DanglingReference: If a reference or explicit dependency targets an
            unknown unit
        CyclicDependency: If the merged edges contain a cycle
    """
    by_id: Dict[str, Unit] = {}
    for unit in units:
        if unit.unit_id in by_id:
            raise DuplicateIdentifier(unit.unit_id)
        by_id[unit.unit_id] = unit

    explicit: Dict[str, FrozenSet[str]] = {}
    implicit: Dict[str, FrozenSet[str]] = {}
    for unit_id, unit in by_id.items():
        for dep in sorted(unit.depends_on):
            if dep not in by_id:
                raise DanglingReference(unit_id, dep, "depends_on")
        explicit[unit_id] = frozenset(unit.depends_on)
        implicit[unit_id] = resolve_references(unit, by_id)

    graph = DependencyGraph(units=by_id, explicit=explicit, implicit=implicit)

    cycle = find_cycle(graph.units, graph._dependencies)
    if cycle:
        # Report in dependency-flow order: each id is followed by one that depends on it
        cycle.reverse()
        logger.error(f"[GRAPH] Cycle detected: {' -> '.join(cycle)}")
        raise CyclicDependency(cycle)

    redundant = sum(
        len(explicit[unit_id] & implicit[unit_id]) for unit_id in by_id
    )
    logger.info(f"[GRAPH] Built graph with {len(graph)} units and {len(graph.edges())} edges")
    if redundant:
        logger.debug(f"[GRAPH] {redundant} explicit dependencies duplicate reference edges")
    return graph
