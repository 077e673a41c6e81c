# quickbuild/resolver.py
"""
resolver.py - dependency closure for quickbuild

Features:
- BuildFor classification (TARGET / HOST), totally ordered
- Layered breadth-first closure over activated normal/build edges
- Host propagation: build edges, proc-macro children and anything under a HOST entry
- Fail-fast on development edges when they are requested
- Explicit cycle detection over the walked edges
- recursive_build_time_deps(): the HOST-only subset
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, NamedTuple, Set, Tuple

from quickbuild.errors import CycleDetected, UnsupportedEdgeKind
from quickbuild.graph import DepKind, PackageGraph, PackageId
from quickbuild.logging import get_logger

logger = get_logger("resolver")

DEFAULT_KINDS: Tuple[DepKind, ...] = (DepKind.NORMAL, DepKind.BUILD)

# -----------------------
# Types
# -----------------------
class BuildFor(Enum):
    TARGET = 0
    HOST = 1

    def __lt__(self, other):
        if not isinstance(other, BuildFor):
            return NotImplemented
        return self.value < other.value

    def __str__(self) -> str:
        return self.name.lower()

    @classmethod
    def parse(cls, value: str) -> "BuildFor":
        return cls[value.upper()]

    def child(self, kind: DepKind, child_is_host_generator: bool) -> "BuildFor":
        if self is BuildFor.HOST:
            return BuildFor.HOST
        if kind is DepKind.BUILD:
            return BuildFor.HOST
        if child_is_host_generator:
            return BuildFor.HOST
        return BuildFor.TARGET


BuildClassification = BuildFor


class ClosureEntry(NamedTuple):
    package: PackageId
    build_for: BuildFor

    def __str__(self) -> str:
        return f"{self.package} ({self.build_for})"


DependencyClosure = FrozenSet[ClosureEntry]

# -----------------------
# Closure
# -----------------------
def _dev_check(graph: PackageGraph, pkg: PackageId):
    dev = graph.dependencies(pkg, DepKind.DEV)
    if dev:
        raise UnsupportedEdgeKind(
            f"{pkg} has development dependencies, which cannot be resolved into a build closure",
            {"package": str(pkg), "dev_dependencies": [str(d) for d in dev]},
        )


def closure(
    graph: PackageGraph,
    root: PackageId,
    initial: BuildFor = BuildFor.TARGET,
    kinds: Iterable[DepKind] = DEFAULT_KINDS,
) -> DependencyClosure:
    """
    All (package, build_for) entries needed to build `root` as `initial`, root included.

    Each round expands the newest layer, subtracts what is already known and
    stops once a round finds nothing new.
    """
    kinds = tuple(DepKind(k) for k in kinds)
    graph.node(root)
    edges: Dict[PackageId, Set[PackageId]] = {}
    found: Set[ClosureEntry] = {ClosureEntry(root, initial)}
    layer: Set[ClosureEntry] = {ClosureEntry(root, initial)}
    rounds = 0
    while layer:
        rounds += 1
        nxt: Set[ClosureEntry] = set()
        for entry in sorted(layer):
            pkg, build_for = entry
            if DepKind.DEV in kinds:
                _dev_check(graph, pkg)
            walked = edges.setdefault(pkg, set())
            for kind in (DepKind.NORMAL, DepKind.BUILD):
                if kind not in kinds:
                    continue
                for child in graph.dependencies(pkg, kind):
                    walked.add(child)
                    nxt.add(ClosureEntry(child, build_for.child(kind, graph.is_host_generator(child))))
        layer = nxt - found
        found |= layer
    _check_cycles(root, edges)
    logger.debug("closure of %s (%s): %d entries in %d rounds", root, initial, len(found), rounds)
    return frozenset(found)


def _check_cycles(root: PackageId, edges: Dict[PackageId, Set[PackageId]]):
    """Colouring DFS: 1 = on the current path, 2 = finished."""
    state: Dict[PackageId, int] = {}
    path: List[PackageId] = []

    # iterative so deep graphs do not hit the recursion limit
    stack: List[Tuple[PackageId, List[PackageId]]] = [(root, sorted(edges.get(root, ())))]
    state[root] = 1
    path.append(root)
    while stack:
        node, children = stack[-1]
        if not children:
            stack.pop()
            path.pop()
            state[node] = 2
            continue
        child = children.pop(0)
        s = state.get(child, 0)
        if s == 1:
            cycle = path[path.index(child):] + [child]
            raise CycleDetected([str(p) for p in cycle])
        if s == 2:
            continue
        state[child] = 1
        path.append(child)
        stack.append((child, sorted(edges.get(child, ()))))


def dependency_entries(graph: PackageGraph, entry: ClosureEntry) -> DependencyClosure:
    """Closure of `entry` without the entry itself."""
    return closure(graph, entry.package, entry.build_for) - {entry}


def recursive_build_time_deps(graph: PackageGraph, package: PackageId) -> Set[PackageId]:
    return {e.package for e in closure(graph, package, BuildFor.TARGET) if e.build_for is BuildFor.HOST}


def split_by_build_for(entries: Iterable[ClosureEntry]) -> Tuple[List[ClosureEntry], List[ClosureEntry]]:
    """(target entries, host entries), each sorted."""
    entries = list(entries)
    target = sorted(e for e in entries if e.build_for is BuildFor.TARGET)
    host = sorted(e for e in entries if e.build_for is BuildFor.HOST)
    return target, host


# -----------------------
# CLI / Demo usage
# -----------------------
if __name__ == "__main__":
    import argparse
    from quickbuild.graph import load_graph

    p = argparse.ArgumentParser()
    p.add_argument("graph", help="native JSON/YAML graph file")
    p.add_argument("package", help="NAME or NAME@VERSION")
    p.add_argument("--host", action="store_true")
    args = p.parse_args()
    g = load_graph(args.graph)
    name, _, version = args.package.partition("@")
    pid = g.find(name, version or None)
    for e in sorted(closure(g, pid, BuildFor.HOST if args.host else BuildFor.TARGET)):
        print(e)
