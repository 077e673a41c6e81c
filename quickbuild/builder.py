# quickbuild/builder.py
"""
builder.py - build one closure entry and publish it to the cache

Steps:
  1. scratch project in a private temp dir                      (init)
  2. unpack every dependency archive, tracking timestamps        (untar)
  3. append the pinned dependency sections to the manifest
  4. compile offline, retry once online on failure, clean        (build)
  5. pack target/ minus unpacked dependency files, commit        (tar)
"""

from __future__ import annotations

import shutil
import tempfile
from pathlib import Path
from typing import Dict, Iterable, Optional, Tuple, Union

from quickbuild.archive import TimestampMap, pack_into, read_member, unpack
from quickbuild.config import Config, get_build_config
from quickbuild.description import descriptor, fingerprint, fingerprint_of
from quickbuild.errors import BuildFailed, CompilerFailure, QuickbuildError
from quickbuild.graph import PackageGraph, PackageId
from quickbuild.logging import get_logger
from quickbuild.repo import Repo
from quickbuild.resolver import BuildFor, ClosureEntry, closure as compute_closure, dependency_entries
from quickbuild.stats import Stats
from quickbuild.toolchain import SCRATCH_PACKAGE, Toolchain

logger = get_logger("builder")


class Builder:
    def __init__(
        self,
        graph: PackageGraph,
        repo: Repo,
        toolchain: Toolchain,
        scratch_root: Optional[Union[str, Path]] = None,
        keep_scratch: bool = False,
        offline: bool = True,
        exclude_unpacked: bool = True,
    ):
        self.graph = graph
        self.repo = repo
        self.toolchain = toolchain
        self.scratch_root = str(scratch_root) if scratch_root else None
        self.keep_scratch = keep_scratch
        self.offline = offline
        self.exclude_unpacked = exclude_unpacked

    @classmethod
    def from_config(cls, graph: PackageGraph, repo: Repo, cfg: Optional[Config] = None, toolchain: Optional[Toolchain] = None) -> "Builder":
        b = get_build_config(cfg)
        return cls(
            graph,
            repo,
            toolchain or Toolchain.from_config(cfg),
            scratch_root=b.get("scratch_dir"),
            keep_scratch=bool(b.get("keep_scratch", False)),
            offline=bool(b.get("offline", True)),
            exclude_unpacked=bool(b.get("exclude_unpacked", True)),
        )

    # -----------------------
    # Dependency archives
    # -----------------------
    def unpack_dependencies(self, entries: Iterable[ClosureEntry], dest: Path) -> Tuple[TimestampMap, Dict[str, str]]:
        """Unpack cached archives of `entries` into `dest`; returns (timestamps, path -> providing fingerprint)."""
        stamps: TimestampMap = {}
        origins: Dict[str, str] = {}
        for dep in sorted(entries):
            fp = fingerprint_of(self.graph, dep)
            logger.debug("unpacking %s", fp)
            with self.repo.read(fp) as fh:
                got = unpack(fh, dest)
            stamps.update(got)
            for path in got:
                origins[path] = fp
        return stamps, origins

    def install_dependencies(self, package: PackageId, dest_dir: Union[str, Path], classification: BuildFor = BuildFor.TARGET) -> TimestampMap:
        """Unpack the cached closure of `package` (excluding itself) into a project directory."""
        deps = dependency_entries(self.graph, ClosureEntry(package, classification))
        stamps, _ = self.unpack_dependencies(deps, Path(dest_dir))
        logger.info("unpacked %d archives (%d entries) into %s", len(deps), len(stamps), dest_dir)
        return stamps

    # -----------------------
    # Build
    # -----------------------
    def build(self, package: PackageId, classification: BuildFor = BuildFor.TARGET, closure=None) -> Dict[str, float]:
        """Build `package` as `classification`, commit its archive and return the phase durations."""
        entry = ClosureEntry(package, classification)
        entries = frozenset(closure) if closure is not None else compute_closure(self.graph, package, classification)
        desc = descriptor(entries, self.graph, package)
        fp = fingerprint(desc)
        stats = Stats()
        workdir = Path(tempfile.mkdtemp(prefix="quickbuild-", dir=self.scratch_root))
        scratch = workdir / SCRATCH_PACKAGE
        logger.info("building %s as %s -> %s", package, classification, fp)
        try:
            scratch.mkdir()
            self.toolchain.init_project(scratch)
            stats.init_done()

            stamps, origins = self.unpack_dependencies(entries - {entry}, scratch)
            stats.untar_done()

            with open(scratch / "Cargo.toml", "a", encoding="utf-8") as manifest:
                manifest.write(desc.manifest_deps())
            self._compile(scratch, package)
            self.toolchain.clean(scratch)
            stats.build_done()

            def lookup(path: str) -> Optional[bytes]:
                origin = origins.get(path)
                return read_member(self.repo.tarball_path(origin), path) if origin else None

            handle = self.repo.begin_write(fp)
            try:
                pack_into(handle, scratch, stamps if self.exclude_unpacked else {}, subdir="target", lookup=lookup)
                stats.tar_done()
                self.repo.commit(fp, stats)
            except BaseException:
                self.repo.abort(fp)
                raise
        except (QuickbuildError, OSError) as e:
            if isinstance(e, BuildFailed):
                raise
            phase = stats.current_phase or "commit"
            logger.error("build of %s failed during %s: %s", package, phase, e)
            raise BuildFailed(str(entry), phase, e) from e
        finally:
            if self.keep_scratch:
                logger.info("keeping scratch dir %s", workdir)
            else:
                shutil.rmtree(workdir, ignore_errors=True)
        return stats.computed()

    def _compile(self, scratch: Path, package: PackageId):
        try:
            self.toolchain.compile(scratch, offline=self.offline)
        except CompilerFailure as e:
            if not self.offline:
                raise
            logger.warning("offline build of %s failed (rc=%s), retrying once without --offline", package, e.rc)
            self.toolchain.compile(scratch, offline=False)
