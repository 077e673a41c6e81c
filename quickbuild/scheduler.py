# quickbuild/scheduler.py
"""
scheduler.py - bottom-up build of a dependency closure from the cache

Features:
- One ScheduleNode per closure entry: PENDING -> READY -> BUILDING -> BUILT | FAILED
- Waves: every PENDING node whose dependencies are all BUILT becomes READY
- Empty wave with PENDING nodes left -> GraphInconsistency listing outstanding deps
- Root becoming READY ends the run; other READY entries are skipped when cached
- Optional thread pool per wave (entries of one wave are independent)
- Any build failure aborts the run
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from quickbuild.config import Config, get_config
from quickbuild.description import descriptor, fingerprint
from quickbuild.errors import BuildFailed, GraphInconsistency
from quickbuild.graph import PackageGraph, PackageId
from quickbuild.logging import get_logger
from quickbuild.repo import Repo
from quickbuild.resolver import BuildFor, ClosureEntry, DependencyClosure, closure

logger = get_logger("scheduler")


class PackageState(Enum):
    PENDING = "pending"
    READY = "ready"
    BUILDING = "building"
    BUILT = "built"
    FAILED = "failed"


class ScheduleNode:
    def __init__(self, entry: ClosureEntry, entries: DependencyClosure):
        self.entry = entry
        self.closure = entries
        self.deps = entries - {entry}
        self.state = PackageState.PENDING
        self.fingerprint: Optional[str] = None

    def outstanding(self, nodes: Dict[ClosureEntry, "ScheduleNode"]) -> List[ClosureEntry]:
        return sorted(d for d in self.deps if nodes[d].state is not PackageState.BUILT)

    def __repr__(self) -> str:
        return f"ScheduleNode({self.entry}, {self.state.value})"


@dataclass
class ScheduleReport:
    root: ClosureEntry
    waves: List[List[ClosureEntry]] = field(default_factory=list)
    built: List[str] = field(default_factory=list)
    cached: List[str] = field(default_factory=list)

    def to_dict(self):
        return {
            "root": str(self.root),
            "waves": [[str(e) for e in w] for w in self.waves],
            "built": list(self.built),
            "cached": list(self.cached),
        }


class Scheduler:
    def __init__(self, graph: PackageGraph, repo: Repo, builder, workers: int = 1):
        self.graph = graph
        self.repo = repo
        self.builder = builder
        self.workers = max(1, int(workers))

    @classmethod
    def from_config(cls, graph: PackageGraph, repo: Repo, builder, cfg: Optional[Config] = None) -> "Scheduler":
        return cls(graph, repo, builder, workers=(cfg or get_config()).get("scheduler.workers", 1))

    # -----------------------
    # Planning
    # -----------------------
    def _nodes(self, root: PackageId, initial: BuildFor) -> Dict[ClosureEntry, ScheduleNode]:
        return {e: ScheduleNode(e, closure(self.graph, e.package, e.build_for)) for e in closure(self.graph, root, initial)}

    def _next_wave(self, nodes: Dict[ClosureEntry, ScheduleNode]) -> List[ScheduleNode]:
        pending = [n for n in nodes.values() if n.state is PackageState.PENDING]
        ready = [n for n in pending if not n.outstanding(nodes)]
        if pending and not ready:
            stuck = {str(n.entry): [str(d) for d in n.outstanding(nodes)] for n in sorted(pending, key=lambda n: n.entry)}
            raise GraphInconsistency(
                f"no buildable packages left but {len(pending)} are still pending (cycle or inconsistent graph)",
                {"outstanding": stuck},
            )
        return sorted(ready, key=lambda n: n.entry)

    def plan(self, root: PackageId, initial: BuildFor = BuildFor.TARGET) -> List[List[ClosureEntry]]:
        """Waves assuming every build succeeds."""
        nodes = self._nodes(root, initial)
        waves: List[List[ClosureEntry]] = []
        while True:
            ready = self._next_wave(nodes)
            if not ready:
                return waves
            waves.append([n.entry for n in ready])
            for n in ready:
                n.state = PackageState.BUILT

    # -----------------------
    # Running
    # -----------------------
    def _build_one(self, node: ScheduleNode):
        node.state = PackageState.BUILDING
        self.builder.build(node.entry.package, node.entry.build_for, node.closure)
        node.state = PackageState.BUILT

    def _run_wave(self, todo: List[ScheduleNode]):
        if self.workers == 1 or len(todo) == 1:
            for node in todo:
                self._guarded(node, self._build_one)
            return
        with ThreadPoolExecutor(max_workers=self.workers) as pool:
            futures = {pool.submit(self._build_one, n): n for n in todo}
            for fut in as_completed(futures):
                node = futures[fut]
                self._guarded(node, lambda _n: fut.result())

    def _guarded(self, node: ScheduleNode, fn):
        try:
            fn(node)
        except BuildFailed:
            node.state = PackageState.FAILED
            raise
        except Exception as e:
            node.state = PackageState.FAILED
            raise BuildFailed(str(node.entry), "build", e) from e

    def build_missing_packages(self, root: PackageId, initial: BuildFor = BuildFor.TARGET) -> ScheduleReport:
        nodes = self._nodes(root, initial)
        root_entry = ClosureEntry(root, initial)
        report = ScheduleReport(root_entry)
        logger.info("scheduling %d entries for %s", len(nodes), root_entry)
        for wave_no in range(1, len(nodes) + 1):
            ready = self._next_wave(nodes)
            for n in ready:
                n.state = PackageState.READY
            report.waves.append([n.entry for n in ready])
            if nodes[root_entry].state is PackageState.READY:
                nodes[root_entry].state = PackageState.BUILT
                logger.info("all dependencies of %s are cached (%d built, %d reused)", root_entry, len(report.built), len(report.cached))
                return report

            todo: List[ScheduleNode] = []
            seen: Dict[str, ScheduleNode] = {}
            for n in ready:
                n.fingerprint = fingerprint(descriptor(n.closure, self.graph, n.entry.package))
                if n.fingerprint in seen or self.repo.has(n.fingerprint):
                    n.state = PackageState.BUILT
                    if n.fingerprint not in seen:
                        report.cached.append(n.fingerprint)
                    continue
                seen[n.fingerprint] = n
                todo.append(n)
            logger.info("wave %d: %d ready, %d to build", wave_no, len(ready), len(todo))
            self._run_wave(todo)
            report.built.extend(n.fingerprint for n in todo)
        # each wave moves at least one node, so the root is reached within len(nodes) waves
        raise GraphInconsistency(f"scheduling of {root_entry} did not finish", {"waves": len(report.waves)})


# -----------------------
# Module-level helper
# -----------------------
def build_missing_packages(graph: PackageGraph, repo: Repo, builder, root: PackageId, initial: BuildFor = BuildFor.TARGET, workers: int = 1) -> ScheduleReport:
    return Scheduler(graph, repo, builder, workers=workers).build_missing_packages(root, initial)
