# quickbuild/errors.py
"""
Error hierarchy for quickbuild.

Every error carries a `to_dict()` so the CLI (and the JSONL transparency log)
can report failures in a machine-readable form.
"""

from __future__ import annotations

import time
from typing import Any, Dict, List, Optional


def _now_ts() -> int:
    return int(time.time())


class QuickbuildError(Exception):
    kind = "error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.ts = _now_ts()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.kind,
            "message": self.message,
            "details": self.details,
            "ts": self.ts,
        }


# -----------------------
# Graph
# -----------------------
class GraphInconsistency(QuickbuildError):
    """The package graph cannot be turned into a build plan."""
    kind = "graph_inconsistency"


class UnsupportedEdgeKind(GraphInconsistency):
    kind = "unsupported_edge_kind"


class CycleDetected(GraphInconsistency):
    kind = "cycle"

    def __init__(self, path: List[str]):
        super().__init__("dependency cycle: " + " -> ".join(path), {"path": list(path)})
        self.path = list(path)


# -----------------------
# Cache
# -----------------------
class CacheIOError(QuickbuildError):
    kind = "cache_io"

    def __init__(self, message: str, path: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        d = dict(details or {})
        if path is not None:
            d["path"] = str(path)
        super().__init__(message, d)
        self.path = path


class CacheNotFound(CacheIOError):
    kind = "cache_not_found"


# -----------------------
# Archives
# -----------------------
class ArchiveFormatError(QuickbuildError):
    kind = "archive_format"


class DeterminismAnomaly(QuickbuildError):
    """
    A file that came from a dependency archive was touched by the compiler.

    `anomalies` holds one dict per file:
      {"path", "recorded", "actual", "diff"}  where diff is a unified diff or "binary".
    """
    kind = "determinism_anomaly"

    def __init__(self, anomalies: List[Dict[str, Any]]):
        paths = [a.get("path") for a in anomalies]
        super().__init__(f"{len(anomalies)} file(s) changed after being unpacked: {paths}", {"anomalies": anomalies})
        self.anomalies = anomalies

    def __str__(self) -> str:
        lines = [self.message]
        for a in self.anomalies:
            lines.append(f"  {a.get('path')}: recorded {a.get('recorded')} now {a.get('actual')}")
            if a.get("diff"):
                lines.append(str(a["diff"]))
        return "\n".join(lines)


# -----------------------
# Compiler / run level
# -----------------------
class CompilerFailure(QuickbuildError):
    kind = "compiler_failure"

    def __init__(self, message: str, rc: int, stderr: str = "", cmd: Optional[List[str]] = None):
        tail = "\n".join(stderr.splitlines()[-40:])
        super().__init__(message, {"rc": rc, "stderr": tail, "cmd": list(cmd or [])})
        self.rc = rc
        self.stderr = tail
        self.cmd = list(cmd or [])


class BuildFailed(QuickbuildError):
    """Run-level wrapper naming the package being built and the phase that failed."""
    kind = "build_failed"

    def __init__(self, package: str, phase: str, cause: BaseException):
        super().__init__(f"building {package} failed during {phase}: {cause}", {"package": package, "phase": phase})
        self.package = package
        self.phase = phase
        self.cause = cause

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        if isinstance(self.cause, QuickbuildError):
            d["cause"] = self.cause.to_dict()
        else:
            d["cause"] = {"type": type(self.cause).__name__, "message": str(self.cause)}
        return d
