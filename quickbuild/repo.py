# quickbuild/repo.py
"""
repo.py - content-addressed archive cache

Layout (flat directory):
  {fingerprint}.tar             packed output tree
  {fingerprint}.stats.json      phase durations in float seconds
  *.temp                        in-flight writes, renamed into place on commit

Features:
- has/read/begin_write/commit/abort with temp + rename publishing
- per-fingerprint in-process write lock
- read_stats, entries, find_file (search archives for a member path)
"""

from __future__ import annotations

import json
import os
import threading
from pathlib import Path
from typing import IO, Any, Dict, List, Optional, Union

from quickbuild.archive import archive_members
from quickbuild.config import Config, get_cache_dir
from quickbuild.errors import CacheIOError, CacheNotFound
from quickbuild.logging import get_logger
from quickbuild.stats import Stats

logger = get_logger("repo")

TEMP_SUFFIX = ".temp"


class Repo:
    def __init__(self, tarball_dir: Union[str, Path]):
        self.tarball_dir = Path(tarball_dir).expanduser()
        try:
            self.tarball_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise CacheIOError(f"cannot create cache directory: {e}", str(self.tarball_dir)) from e
        self._lock = threading.Lock()
        self._writers: Dict[str, threading.Lock] = {}
        self._handles: Dict[str, IO[bytes]] = {}

    @classmethod
    def from_config(cls, cfg: Optional[Config] = None) -> "Repo":
        return cls(get_cache_dir(cfg))

    def __repr__(self) -> str:
        return f"Repo({str(self.tarball_dir)!r})"

    # -----------------------
    # Paths
    # -----------------------
    def tarball_path(self, fingerprint: str) -> Path:
        return self.tarball_dir / f"{fingerprint}.tar"

    def stats_path(self, fingerprint: str) -> Path:
        return self.tarball_dir / f"{fingerprint}.stats.json"

    def _temp(self, path: Path) -> Path:
        return path.with_name(path.name + TEMP_SUFFIX)

    # -----------------------
    # Read side
    # -----------------------
    def has(self, fingerprint: str) -> bool:
        return self.tarball_path(fingerprint).is_file()

    def read(self, fingerprint: str) -> IO[bytes]:
        path = self.tarball_path(fingerprint)
        try:
            return open(path, "rb")
        except FileNotFoundError:
            raise CacheNotFound(f"no cached archive for {fingerprint}", str(path)) from None
        except OSError as e:
            raise CacheIOError(f"cannot read archive: {e}", str(path)) from e

    def read_stats(self, fingerprint: str) -> Dict[str, float]:
        path = self.stats_path(fingerprint)
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError:
            raise CacheNotFound(f"no stats for {fingerprint}", str(path)) from None
        except (OSError, ValueError) as e:
            raise CacheIOError(f"cannot read stats: {e}", str(path)) from e

    def entries(self) -> List[str]:
        """Fingerprints of committed archives, sorted."""
        return sorted(p.name[: -len(".tar")] for p in self.tarball_dir.glob("*.tar") if p.is_file())

    def find_file(self, filename: str) -> List[str]:
        """Fingerprints whose archive contains `filename` (an archive-relative path)."""
        wanted = filename.strip("/")
        hits = []
        for fp in self.entries():
            if wanted in archive_members(self.tarball_path(fp)):
                hits.append(fp)
        return hits

    # -----------------------
    # Write side
    # -----------------------
    def _writer_lock(self, fingerprint: str) -> threading.Lock:
        with self._lock:
            return self._writers.setdefault(fingerprint, threading.Lock())

    def begin_write(self, fingerprint: str) -> IO[bytes]:
        """Open `{fingerprint}.tar.temp`; the fingerprint stays locked until commit() or abort()."""
        lock = self._writer_lock(fingerprint)
        lock.acquire()
        temp = self._temp(self.tarball_path(fingerprint))
        try:
            handle = open(temp, "wb")
        except OSError as e:
            lock.release()
            raise CacheIOError(f"cannot open temporary archive: {e}", str(temp)) from e
        self._handles[fingerprint] = handle
        return handle

    def _release(self, fingerprint: str):
        # a registered handle means this writer holds the fingerprint lock
        handle = self._handles.pop(fingerprint, None)
        if handle is None:
            return
        if not handle.closed:
            handle.close()
        self._writer_lock(fingerprint).release()

    def commit(self, fingerprint: str, stats: Union[Stats, Dict[str, Any]]):
        tarball = self.tarball_path(fingerprint)
        temp_tarball = self._temp(tarball)
        stats_path = self.stats_path(fingerprint)
        temp_stats = self._temp(stats_path)
        computed = stats.computed() if isinstance(stats, Stats) else dict(stats)
        try:
            handle = self._handles.get(fingerprint)
            if handle is not None and not handle.closed:
                handle.flush()
                os.fsync(handle.fileno())
                handle.close()
            with open(temp_stats, "w", encoding="utf-8") as f:
                json.dump(computed, f, indent=2, sort_keys=True)
            os.replace(temp_tarball, tarball)
            os.replace(temp_stats, stats_path)
        except OSError as e:
            raise CacheIOError(f"cannot commit {fingerprint}: {e}", str(tarball)) from e
        finally:
            self._release(fingerprint)
        logger.info("wrote %s", tarball)

    def abort(self, fingerprint: str):
        """Drop temporaries of a failed build."""
        handle = self._handles.get(fingerprint)
        if handle is not None and not handle.closed:
            handle.close()
        try:
            for path in (self._temp(self.tarball_path(fingerprint)), self._temp(self.stats_path(fingerprint))):
                if path.exists():
                    path.unlink()
        except OSError as e:
            raise CacheIOError(f"cannot clean up temporaries of {fingerprint}: {e}", str(self.tarball_dir)) from e
        finally:
            self._release(fingerprint)
        logger.debug("aborted write of %s", fingerprint)
