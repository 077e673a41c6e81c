# quickbuild/graph.py
"""
graph.py - resolved package graph for quickbuild

Features:
- PackageId / DepKind / PackageNode value types
- PackageGraph: packages, typed dependency edges (normal/build/dev),
  optional edges gated on a parent feature, activated feature sets,
  proc-macro (host code generator) flags
- Loaders: native JSON/YAML graph format and `cargo metadata --format-version 1`
- Export back to the native format
"""

from __future__ import annotations

import json
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, NamedTuple, Optional, Tuple

import yaml

from quickbuild.errors import GraphInconsistency
from quickbuild.logging import get_logger
from quickbuild.toolchain import Toolchain

logger = get_logger("graph")

# -----------------------
# Value types
# -----------------------
class PackageId(NamedTuple):
    name: str
    version: str
    source: str = ""

    def __str__(self) -> str:
        return f"{self.name}@{self.version}"


class DepKind(str, Enum):
    NORMAL = "normal"
    BUILD = "build"
    DEV = "dev"

    @classmethod
    def parse(cls, value: Optional[str]) -> "DepKind":
        # cargo metadata encodes the normal kind as null
        if value is None or value == "":
            return cls.NORMAL
        try:
            return cls(value)
        except ValueError:
            raise GraphInconsistency(f"unknown dependency kind {value!r}", {"kind": value}) from None


class Edge(NamedTuple):
    child: PackageId
    kind: DepKind
    feature: Optional[str] = None  # parent feature that activates this optional edge


class PackageNode:
    def __init__(self, package_id: PackageId, features: Iterable[str] = (), proc_macro: bool = False):
        self.package_id = package_id
        self.features: Tuple[str, ...] = tuple(sorted(set(features)))
        self.proc_macro = bool(proc_macro)
        self.edges: List[Edge] = []

    def __repr__(self) -> str:
        return f"PackageNode({self.package_id}, features={list(self.features)}, proc_macro={self.proc_macro})"

# -----------------------
# Graph
# -----------------------
class PackageGraph:
    def __init__(self):
        self._nodes: Dict[PackageId, PackageNode] = {}

    def __contains__(self, package_id: PackageId) -> bool:
        return package_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def add_package(self, package_id: PackageId, features: Iterable[str] = (), proc_macro: bool = False) -> PackageNode:
        if package_id in self._nodes:
            raise GraphInconsistency(f"duplicate package {package_id}", {"package": str(package_id)})
        node = PackageNode(package_id, features, proc_macro)
        self._nodes[package_id] = node
        return node

    def add_dependency(self, parent: PackageId, child: PackageId, kind: DepKind = DepKind.NORMAL, feature: Optional[str] = None):
        for pid in (parent, child):
            if pid not in self._nodes:
                raise GraphInconsistency(f"edge references unknown package {pid}", {"package": str(pid)})
        self._nodes[parent].edges.append(Edge(child, DepKind(kind), feature))

    def node(self, package_id: PackageId) -> PackageNode:
        try:
            return self._nodes[package_id]
        except KeyError:
            raise GraphInconsistency(f"unknown package {package_id}", {"package": str(package_id)}) from None

    def packages(self) -> List[PackageId]:
        return sorted(self._nodes)

    def dependencies(self, package_id: PackageId, kind: DepKind) -> List[PackageId]:
        """Activated outgoing edges of one kind, sorted."""
        node = self.node(package_id)
        out = set()
        for edge in node.edges:
            if edge.kind != kind:
                continue
            if edge.feature is not None and edge.feature not in node.features:
                continue
            out.add(edge.child)
        return sorted(out)

    def has_feature(self, package_id: PackageId, name: str) -> bool:
        return name in self.node(package_id).features

    def features(self, package_id: PackageId) -> Tuple[str, ...]:
        return self.node(package_id).features

    def is_host_generator(self, package_id: PackageId) -> bool:
        return self.node(package_id).proc_macro

    def find(self, name: str, version: Optional[str] = None) -> PackageId:
        matches = [p for p in self._nodes if p.name == name and (version is None or p.version == version)]
        if not matches:
            raise GraphInconsistency(f"no package named {name}" + (f"@{version}" if version else ""), {"name": name, "version": version})
        if len(matches) > 1:
            raise GraphInconsistency(
                f"package name {name} is ambiguous, pass a version",
                {"name": name, "candidates": [str(m) for m in sorted(matches)]},
            )
        return matches[0]

    # -----------------------
    # Native format
    # -----------------------
    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PackageGraph":
        """
        Native format:
          packages:
            - name: foo
              version: 1.0.0
              source: registry+...   (optional)
              features: [std]        (optional, activated features)
              proc_macro: false      (optional)
              dependencies:
                - {name: bar, version: 2.0.0, kind: build, feature: extra}
        """
        g = cls()
        entries = data.get("packages")
        if not isinstance(entries, list):
            raise GraphInconsistency("graph document needs a 'packages' list")
        for p in entries:
            g.add_package(
                PackageId(str(p["name"]), str(p["version"]), str(p.get("source") or "")),
                p.get("features") or (),
                bool(p.get("proc_macro", False)),
            )
        for p in entries:
            parent = PackageId(str(p["name"]), str(p["version"]), str(p.get("source") or ""))
            for d in p.get("dependencies") or []:
                child = g.find(str(d["name"]), str(d["version"]) if d.get("version") is not None else None)
                g.add_dependency(parent, child, DepKind.parse(d.get("kind")), d.get("feature"))
        logger.debug("graph: loaded %d packages", len(g))
        return g

    def to_dict(self) -> Dict[str, Any]:
        packages = []
        for pid in self.packages():
            node = self._nodes[pid]
            entry: Dict[str, Any] = {"name": pid.name, "version": pid.version}
            if pid.source:
                entry["source"] = pid.source
            if node.features:
                entry["features"] = list(node.features)
            if node.proc_macro:
                entry["proc_macro"] = True
            deps = []
            for e in sorted(node.edges, key=lambda e: (e.child, e.kind.value, e.feature or "")):
                d: Dict[str, Any] = {"name": e.child.name, "version": e.child.version}
                if e.kind != DepKind.NORMAL:
                    d["kind"] = e.kind.value
                if e.feature:
                    d["feature"] = e.feature
                deps.append(d)
            if deps:
                entry["dependencies"] = deps
            packages.append(entry)
        return {"packages": packages}

    # -----------------------
    # cargo metadata
    # -----------------------
    @classmethod
    def from_cargo_metadata(cls, data: Dict[str, Any]) -> "PackageGraph":
        """Build from `cargo metadata --format-version 1` output (needs the `resolve` section)."""
        resolve = data.get("resolve")
        if not resolve or "nodes" not in resolve:
            raise GraphInconsistency("cargo metadata has no resolve section (run without --no-deps)")
        by_id: Dict[str, Dict[str, Any]] = {p["id"]: p for p in data.get("packages", [])}
        resolved_nodes = {n["id"]: n for n in resolve["nodes"]}
        ids: Dict[str, PackageId] = {}
        g = cls()
        for raw_id in sorted(resolved_nodes):
            meta = by_id.get(raw_id)
            if meta is None:
                raise GraphInconsistency(f"resolve node {raw_id} has no package entry", {"id": raw_id})
            source = meta.get("source") or ""
            pid = PackageId(meta["name"], meta["version"], source)
            proc_macro = any("proc-macro" in (t.get("kind") or []) for t in meta.get("targets", []))
            g.add_package(pid, resolved_nodes[raw_id].get("features") or (), proc_macro)
            ids[raw_id] = pid
        for raw_id, node in resolved_nodes.items():
            parent = ids[raw_id]
            for dep in node.get("deps", []):
                child = ids.get(dep["pkg"])
                if child is None:
                    raise GraphInconsistency(f"dependency {dep['pkg']} of {parent} is not resolved", {"id": dep["pkg"]})
                kinds = {DepKind.parse(k.get("kind")) for k in dep.get("dep_kinds") or [{"kind": None}]}
                for kind in sorted(kinds, key=lambda k: k.value):
                    g.add_dependency(parent, child, kind)
        logger.debug("graph: loaded %d packages from cargo metadata", len(g))
        return g


def load_graph(path: str) -> PackageGraph:
    """Load a native graph from a .json/.yaml/.yml file."""
    p = Path(path)
    txt = p.read_text(encoding="utf-8")
    if p.suffix.lower() in (".yaml", ".yml"):
        data = yaml.safe_load(txt)
    else:
        data = json.loads(txt)
    return PackageGraph.from_dict(data or {})


def load_cargo_metadata(path: str) -> PackageGraph:
    with open(path, "r", encoding="utf-8") as f:
        return PackageGraph.from_cargo_metadata(json.load(f))


def run_cargo_metadata(manifest_path: str, toolchain=None) -> PackageGraph:
    """Invoke `cargo metadata` for a manifest and load the resolved graph."""
    tc = toolchain or Toolchain.from_config()
    out = tc.metadata(manifest_path)
    return PackageGraph.from_cargo_metadata(json.loads(out))
