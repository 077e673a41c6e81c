import os
import re
from pathlib import Path

import pytest

from quickbuild import config
from quickbuild.errors import CompilerFailure
from quickbuild.graph import DepKind, PackageGraph, PackageId
from quickbuild.repo import Repo

LEAF = PackageId("leaf", "1.0.0")
MID = PackageId("mid", "0.2.0")
GEN = PackageId("gen", "0.1.0")
ROOT = PackageId("root", "0.0.1")

_DEP_LINE = re.compile(r'^\S+ = \{ package = "([^"]+)"', re.M)


def example_graph(reverse=False):
    """leaf; mid -> leaf; gen (proc-macro); root -> mid, root -[build]-> gen"""
    g = PackageGraph()
    pkgs = [(LEAF, ["std"], False), (MID, [], False), (GEN, [], True), (ROOT, [], False)]
    if reverse:
        pkgs.reverse()
    for pid, feats, pm in pkgs:
        g.add_package(pid, feats, proc_macro=pm)
    edges = [(MID, LEAF, DepKind.NORMAL), (ROOT, MID, DepKind.NORMAL), (ROOT, GEN, DepKind.BUILD)]
    if reverse:
        edges.reverse()
    for parent, child, kind in edges:
        g.add_dependency(parent, child, kind)
    return g


class FakeToolchain:
    """Stands in for cargo: writes target/debug/deps/lib<name>.rlib for each pinned dependency."""

    def __init__(self, fail_offline=False, fail_always=False, touch_existing=False, bookkeeping=False):
        self.fail_offline = fail_offline
        self.bookkeeping = bookkeeping
        self.fail_always = fail_always
        self.touch_existing = touch_existing
        self.compiles = []
        self.cleans = 0
        self.manifests = []

    def init_project(self, scratch_dir):
        (Path(scratch_dir) / "src").mkdir(parents=True, exist_ok=True)
        (Path(scratch_dir) / "Cargo.toml").write_text('[package]\nname = "quickbuild-scratchpad"\n\n')

    def compile(self, scratch_dir, offline=True):
        self.compiles.append(offline)
        if self.fail_always or (self.fail_offline and offline):
            raise CompilerFailure("build failed", 101, "error: could not compile", ["cargo", "build"])
        manifest = (Path(scratch_dir) / "Cargo.toml").read_text()
        self.manifests.append(manifest)
        deps = Path(scratch_dir) / "target" / "debug" / "deps"
        deps.mkdir(parents=True, exist_ok=True)
        tag = Path(scratch_dir) / "target" / "CACHEDIR.TAG"
        if self.bookkeeping and not tag.exists():
            tag.write_text("Signature: 8a477f597d28d172789f06886806bc55\n")
            # distinct per build, as two separate cargo runs would leave it
            stamp = 1_700_000_000_000_000_000 + len(self.compiles)
            os.utime(tag, ns=(stamp, stamp))
        for name in _DEP_LINE.findall(manifest):
            out = deps / f"lib{name}.rlib"
            if out.exists() and not self.touch_existing:
                continue
            existed = out.exists()
            out.write_text(f"compiled {name}\n" + ("rebuilt\n" if existed else ""))
            if existed:
                st = os.stat(out)
                os.utime(out, ns=(st.st_atime_ns, st.st_mtime_ns + 1_000_000_007))

    def clean(self, scratch_dir):
        self.cleans += 1


@pytest.fixture
def graph():
    return example_graph()


@pytest.fixture
def repo(tmp_path):
    return Repo(tmp_path / "cache")


@pytest.fixture
def toolchain():
    return FakeToolchain()


@pytest.fixture
def cache_env(tmp_path, monkeypatch):
    """Point the global config at a throwaway cache dir."""
    cache = tmp_path / "quick"
    monkeypatch.setenv("CARGO_QUICK_TARBALL_DIR", str(cache))
    monkeypatch.delenv("QUICKBUILD_CONFIG", raising=False)
    monkeypatch.chdir(tmp_path)
    config.load()
    yield cache
    monkeypatch.undo()
    config.load()
