# quickbuild/toolchain.py
"""
Compiler toolchain driver for quickbuild.

- init_project(): scratch cargo project (manifest + empty lib) or a configured init command
- compile(): `cargo build` with optional --offline, timeout, output streamed to the build log
- clean(): drop the scratch package's own outputs so only dependency artifacts get cached
- metadata(): `cargo metadata` JSON for graph loading
"""

from __future__ import annotations

import os
import subprocess
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from quickbuild.config import Config, get_build_config
from quickbuild.errors import CompilerFailure
from quickbuild.logging import get_logger, stream_build_output

logger = get_logger("toolchain")

SCRATCH_PACKAGE = "quickbuild-scratchpad"

SCRATCH_MANIFEST = f"""[package]
name = "{SCRATCH_PACKAGE}"
version = "0.1.0"
edition = "2021"

"""

# ---------------------
# small helpers
# ---------------------
def _run(cmd: List[str], cwd: Optional[str] = None, env: Optional[Dict[str, str]] = None, timeout: Optional[int] = None) -> Tuple[int, str, str]:
    """Run cmd returning (rc, stdout, stderr); rc 124 on timeout."""
    try:
        p = subprocess.Popen(cmd, cwd=cwd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, env=(env or os.environ), text=True)
    except OSError as e:
        return 127, "", str(e)
    try:
        out, err = p.communicate(timeout=timeout)
        return p.returncode, out or "", err or ""
    except subprocess.TimeoutExpired:
        p.kill()
        out, err = p.communicate()
        return 124, out or "", (err or "") + f"\ntimed out after {timeout}s"


class Toolchain:
    def __init__(
        self,
        compiler: Sequence[str] = ("cargo", "build", "--jobs=1"),
        offline_flag: Optional[str] = "--offline",
        clean: Optional[Sequence[str]] = ("cargo", "clean", "--offline", "--package", SCRATCH_PACKAGE),
        init: Optional[Sequence[str]] = None,
        metadata: Sequence[str] = ("cargo", "metadata", "--format-version", "1"),
        timeout: Optional[int] = 3600,
        env: Optional[Dict[str, str]] = None,
    ):
        self.compiler = list(compiler)
        self.offline_flag = offline_flag
        self.clean_cmd = list(clean) if clean else None
        self.init_cmd = list(init) if init else None
        self.metadata_cmd = list(metadata)
        self.timeout = timeout or None
        self.env = {str(k): str(v) for k, v in (env or {}).items()}

    @classmethod
    def from_config(cls, cfg: Optional[Config] = None) -> "Toolchain":
        b = get_build_config(cfg)
        return cls(
            compiler=b.get("compiler") or ("cargo", "build", "--jobs=1"),
            offline_flag=b.get("offline_flag"),
            clean=b.get("clean"),
            init=b.get("init"),
            metadata=b.get("metadata") or ("cargo", "metadata", "--format-version", "1"),
            timeout=b.get("timeout"),
            env=b.get("env"),
        )

    def _environ(self) -> Dict[str, str]:
        env = dict(os.environ)
        env.update(self.env)
        return env

    def _exec(self, cmd: List[str], cwd: Optional[Path], what: str) -> str:
        logger.info("%s: %s", what, " ".join(cmd))
        rc, out, err = _run(cmd, cwd=str(cwd) if cwd else None, env=self._environ(), timeout=self.timeout)
        for line in err.splitlines():
            stream_build_output("compiler", line)
        if rc != 0:
            raise CompilerFailure(f"{what} failed with exit code {rc}", rc, err, cmd)
        return out

    # ---------------------
    # Operations
    # ---------------------
    def init_project(self, scratch_dir: Path):
        scratch_dir = Path(scratch_dir)
        if self.init_cmd:
            self._exec(self.init_cmd + [str(scratch_dir)], None, "init")
            return
        (scratch_dir / "src").mkdir(parents=True, exist_ok=True)
        (scratch_dir / "Cargo.toml").write_text(SCRATCH_MANIFEST, encoding="utf-8")
        (scratch_dir / "src" / "lib.rs").write_text("", encoding="utf-8")

    def compile(self, scratch_dir: Path, offline: bool = True):
        cmd = list(self.compiler)
        if offline and self.offline_flag:
            cmd.append(self.offline_flag)
        out = self._exec(cmd, Path(scratch_dir), "build")
        for line in out.splitlines():
            stream_build_output("compiler", line)

    def clean(self, scratch_dir: Path):
        if self.clean_cmd:
            self._exec(self.clean_cmd, Path(scratch_dir), "clean")

    def metadata(self, manifest_path: str) -> str:
        return self._exec(self.metadata_cmd + ["--manifest-path", str(manifest_path)], None, "metadata")
