# quickbuild/description.py
"""
Canonical build descriptors and fingerprints.

A descriptor names every closure entry (name, exact version, activated
features) split into a target and a host section, sorted by (name, version).
The fingerprint is `{name}-{version}-{sha256 hex of the descriptor}`.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from typing import Callable, Iterable, Sequence, Tuple, Union

from quickbuild.graph import PackageGraph, PackageId
from quickbuild.resolver import ClosureEntry, closure, split_by_build_for

FeaturesOf = Callable[[PackageId], Iterable[str]]

_UNSAFE = re.compile(r"[^0-9A-Za-z]")


def _sort_key(line: Tuple[PackageId, Tuple[str, ...]]):
    pid = line[0]
    return (pid.name, pid.version, pid.source)


@dataclass(frozen=True)
class Descriptor:
    package: PackageId
    target: Tuple[Tuple[PackageId, Tuple[str, ...]], ...]
    host: Tuple[Tuple[PackageId, Tuple[str, ...]], ...]

    @classmethod
    def from_closure(cls, package: PackageId, entries: Iterable[ClosureEntry], features_of: FeaturesOf) -> "Descriptor":
        target, host = split_by_build_for(entries)

        def lines(section):
            found = {(e.package, tuple(sorted(set(features_of(e.package))))) for e in section}
            return tuple(sorted(found, key=_sort_key))

        return cls(package, lines(target), lines(host))

    @property
    def text(self) -> str:
        out = [f"# {self.package.name} {self.package.version}", "[target]"]
        out.extend(_line(pid, feats) for pid, feats in self.target)
        out.append("[host]")
        out.extend(_line(pid, feats) for pid, feats in self.host)
        return "\n".join(out) + "\n"

    def __str__(self) -> str:
        return self.text

    def manifest_deps(self) -> str:
        """Dependency sections for a cargo manifest pinned to exactly this closure."""
        return (
            "[dependencies]\n"
            + "".join(_manifest_line(pid, feats) for pid, feats in self.target)
            + "\n[build-dependencies]\n"
            + "".join(_manifest_line(pid, feats) for pid, feats in self.host)
        )


def _line(pid: PackageId, features: Sequence[str]) -> str:
    return f"{pid.name}@{pid.version}, [{', '.join(features)}]"


def _manifest_line(pid: PackageId, features: Sequence[str]) -> str:
    safe_version = _UNSAFE.sub("_", pid.version)
    feats = ", ".join(f'"{f}"' for f in features)
    return (
        f'{pid.name}_{safe_version} = {{ package = "{pid.name}", version = "={pid.version}", '
        f"features = [{feats}], default-features = false }}\n"
    )


def descriptor(entries: Iterable[ClosureEntry], features_of: Union[FeaturesOf, PackageGraph], root: PackageId) -> Descriptor:
    """`features_of` may be a callable or the graph itself."""
    if isinstance(features_of, PackageGraph):
        features_of = features_of.features
    return Descriptor.from_closure(root, entries, features_of)


def describe(graph: PackageGraph, entry: ClosureEntry) -> Descriptor:
    """Descriptor for building `entry`, computing its closure."""
    return descriptor(closure(graph, entry.package, entry.build_for), graph, entry.package)


def fingerprint(desc: Descriptor) -> str:
    digest = hashlib.sha256(desc.text.encode("utf-8")).hexdigest()
    return f"{desc.package.name}-{desc.package.version}-{digest}"


def fingerprint_of(graph: PackageGraph, entry: ClosureEntry) -> str:
    return fingerprint(describe(graph, entry))
