# quickbuild/archive.py
"""
archive.py - tar codec preserving nanosecond modification times

Features:
- pack/pack_into: sorted walk of an output tree into a PAX tar; every entry
  carries an extended `mtime` header formatted `{seconds}.{nanos:09d}`
- entries already provided by unpacked dependency archives (same path, same
  mtime) are skipped; changed ones are written and reported as determinism
  anomalies once the walk completes
- unpack: path validation (names and symlinks already on disk), mandatory PAX
  mtime (legacy sentinel excepted), anomaly check before overwriting,
  exact mtime restore, directories applied last deepest-first
- archive_members/read_member helpers for cache search and diagnostics
"""

from __future__ import annotations

import difflib
import io
import os
import tarfile
from pathlib import Path, PurePosixPath
from typing import IO, Any, Callable, Dict, List, NamedTuple, Optional, Tuple, Union

from quickbuild.errors import ArchiveFormatError, DeterminismAnomaly
from quickbuild.logging import get_logger

logger = get_logger("archive")

# deterministic low-resolution mtime stamped by tar-rs on fixture archives
LEGACY_MTIME = 1153704088
NANOS = 1_000_000_000

Source = Union[bytes, bytearray, IO[bytes], str, Path]
Lookup = Callable[[str], Optional[bytes]]

# -----------------------
# Timestamps
# -----------------------
class FileTime(NamedTuple):
    seconds: int
    nanos: int

    @classmethod
    def from_ns(cls, ns: int) -> "FileTime":
        sec, nanos = divmod(int(ns), NANOS)
        return cls(sec, nanos)

    @classmethod
    def of(cls, path: Union[str, Path]) -> "FileTime":
        return cls.from_ns(os.lstat(path).st_mtime_ns)

    @classmethod
    def parse(cls, value: str) -> "FileTime":
        """Parse a PAX decimal time (`123`, `123.5`, `123.000000001`, `-1.25`)."""
        s = value.strip()
        negative = s.startswith("-")
        if negative:
            s = s[1:]
        whole, _, frac = s.partition(".")
        if not whole.isdigit() or (frac and not frac.isdigit()):
            raise ArchiveFormatError(f"invalid PAX mtime {value!r}", {"mtime": value})
        ns = int(whole) * NANOS + int((frac + "0" * 9)[:9])
        return cls.from_ns(-ns if negative else ns)

    def to_ns(self) -> int:
        return self.seconds * NANOS + self.nanos

    def __str__(self) -> str:
        ns = self.to_ns()
        sec, nanos = divmod(abs(ns), NANOS)
        return f"{'-' if ns < 0 else ''}{sec}.{nanos:09d}"


TimestampMap = Dict[str, FileTime]

# -----------------------
# Helpers
# -----------------------
def _is_binary(data: bytes) -> bool:
    if b"\0" in data:
        return True
    try:
        data.decode("utf-8")
    except UnicodeDecodeError:
        return True
    return False


def _diff(path: str, old: Optional[bytes], new: bytes) -> str:
    if old is None:
        return "original content unavailable"
    if _is_binary(old) or _is_binary(new):
        return "binary"
    lines = difflib.unified_diff(
        old.decode("utf-8").splitlines(keepends=True),
        new.decode("utf-8").splitlines(keepends=True),
        fromfile=f"a/{path}",
        tofile=f"b/{path}",
    )
    return "".join(lines)


def _normalize(info: tarfile.TarInfo, ts: FileTime) -> tarfile.TarInfo:
    info.uid = info.gid = 0
    info.uname = info.gname = ""
    info.mtime = ts.seconds
    info.pax_headers = {"mtime": str(ts)}
    return info


def _open_source(source: Source) -> Tuple[IO[bytes], bool]:
    """Return (fileobj, owned)."""
    if isinstance(source, (bytes, bytearray)):
        return io.BytesIO(bytes(source)), True
    if isinstance(source, (str, Path)):
        return open(source, "rb"), True
    return source, False

# -----------------------
# Pack
# -----------------------
def pack_into(
    fileobj: IO[bytes],
    output_dir: Union[str, Path],
    exclude: Optional[TimestampMap] = None,
    subdir: Optional[str] = None,
    lookup: Optional[Lookup] = None,
) -> TimestampMap:
    """
    Write `output_dir/subdir` (or all of `output_dir`) into `fileobj` as a PAX tar.
    Archive names are relative to `output_dir`. Returns the timestamps written.
    """
    root = Path(output_dir)
    exclude = exclude or {}
    written: TimestampMap = {}
    anomalies: List[Dict[str, Any]] = []
    skipped = 0

    def add(tar: tarfile.TarFile, full: str, rel: str, kind: str):
        nonlocal skipped
        ts = FileTime.of(full)
        recorded = exclude.get(rel)
        if recorded is not None:
            if recorded == ts:
                skipped += 1
                return
            if kind == "file":
                with open(full, "rb") as fh:
                    current = fh.read()
                anomalies.append({
                    "path": rel,
                    "recorded": str(recorded),
                    "actual": str(ts),
                    "diff": _diff(rel, lookup(rel) if lookup else None, current),
                })
        info = _normalize(tar.gettarinfo(full, arcname=rel), ts)
        if info.isreg():
            with open(full, "rb") as fh:
                tar.addfile(info, fh)
        else:
            tar.addfile(info)
        written[rel] = ts

    start = root / subdir if subdir else root
    if not start.is_dir():
        raise ArchiveFormatError(f"nothing to pack: {start} is not a directory", {"path": str(start)})

    with tarfile.open(fileobj=fileobj, mode="w", format=tarfile.PAX_FORMAT) as tar:
        for dirpath, dirnames, filenames in os.walk(start):
            dirnames.sort()
            rel_dir = Path(dirpath).relative_to(root).as_posix()
            if rel_dir != ".":
                add(tar, dirpath, rel_dir, "dir")
            links = [d for d in dirnames if os.path.islink(os.path.join(dirpath, d))]
            for d in links:
                dirnames.remove(d)
            for name in sorted(filenames + links):
                full = os.path.join(dirpath, name)
                rel = name if rel_dir == "." else f"{rel_dir}/{name}"
                add(tar, full, rel, "link" if os.path.islink(full) else "file")

    logger.debug("pack %s: %d entries written, %d already cached", start, len(written), skipped)
    if anomalies:
        raise DeterminismAnomaly(anomalies)
    return written


def pack(
    output_dir: Union[str, Path],
    exclude: Optional[TimestampMap] = None,
    subdir: Optional[str] = None,
    lookup: Optional[Lookup] = None,
) -> bytes:
    buf = io.BytesIO()
    pack_into(buf, output_dir, exclude, subdir=subdir, lookup=lookup)
    return buf.getvalue()

# -----------------------
# Unpack
# -----------------------
def _member_time(member: tarfile.TarInfo) -> FileTime:
    raw = member.pax_headers.get("mtime")
    if raw is not None:
        return FileTime.parse(raw)
    if int(member.mtime) == LEGACY_MTIME:
        return FileTime(LEGACY_MTIME, 0)
    raise ArchiveFormatError(
        f"{member.name} has no high-resolution mtime header; refusing to trust archive",
        {"path": member.name, "mtime": member.mtime},
    )


def _safe_relpath(name: str) -> str:
    p = PurePosixPath(name)
    if p.is_absolute() or ".." in p.parts:
        raise ArchiveFormatError(f"unsafe path in archive: {name}", {"path": name})
    rel = p.as_posix()
    if rel in ("", "."):
        raise ArchiveFormatError(f"empty path in archive: {name!r}", {"path": name})
    return rel


def _check_inside(root: Path, path: Path, name: str):
    """Reject `path` when symlinks already on disk lead it out of `root`."""
    try:
        path.resolve().relative_to(root)
    except ValueError:
        raise ArchiveFormatError(f"{name} resolves outside the destination directory", {"path": name}) from None


def _set_time(path: Path, ts: FileTime, follow_symlinks: bool = True):
    ns = ts.to_ns()
    if not follow_symlinks and os.utime not in os.supports_follow_symlinks:
        return
    os.utime(path, ns=(ns, ns), follow_symlinks=follow_symlinks)


def unpack(source: Source, dest_dir: Union[str, Path]) -> TimestampMap:
    """
    Extract `source` under `dest_dir`, returning archive path -> mtime on disk for every entry.

    A regular file that already exists is kept when its mtime or its bytes match the
    member; anything else there is a determinism anomaly.
    """
    dest = Path(dest_dir)
    dest.mkdir(parents=True, exist_ok=True)
    root = dest.resolve()
    fileobj, owned = _open_source(source)
    stamps: TimestampMap = {}
    dirs: List[Tuple[Path, tarfile.TarInfo, FileTime]] = []
    try:
        with tarfile.open(fileobj=fileobj, mode="r:") as tar:
            for member in tar:
                rel = _safe_relpath(member.name)
                ts = _member_time(member)
                target = dest / rel
                if member.isdir():
                    _check_inside(root, target, rel)
                    target.mkdir(parents=True, exist_ok=True)
                    dirs.append((target, member, ts))
                elif member.isreg():
                    _check_inside(root, target.parent, rel)
                    if target.is_symlink():
                        raise ArchiveFormatError(f"refusing to write {rel} through a symlink", {"path": rel})
                    if target.is_file():
                        current = FileTime.of(target)
                        if current == ts:
                            stamps[rel] = ts
                            continue
                        on_disk = target.read_bytes()
                        data = tar.extractfile(member).read()
                        # toolchain bookkeeping (CACHEDIR.TAG, .cargo-lock) is rewritten by every fresh build
                        if on_disk == data:
                            stamps[rel] = current
                            continue
                        raise DeterminismAnomaly([{
                            "path": rel,
                            "recorded": str(ts),
                            "actual": str(current),
                            "diff": _diff(rel, on_disk, data),
                        }])
                    target.parent.mkdir(parents=True, exist_ok=True)
                    src = tar.extractfile(member)
                    with open(target, "wb") as out:
                        out.write(src.read())
                    os.chmod(target, member.mode & 0o7777)
                    _set_time(target, ts)
                elif member.issym():
                    _check_inside(root, target.parent, rel)
                    target.parent.mkdir(parents=True, exist_ok=True)
                    if target.is_symlink():
                        target.unlink()
                    os.symlink(member.linkname, target)
                    _set_time(target, ts, follow_symlinks=False)
                else:
                    raise ArchiveFormatError(
                        f"unsupported entry type for {member.name}",
                        {"path": member.name, "type": member.type.decode("ascii", "replace")},
                    )
                stamps[rel] = ts
    except tarfile.TarError as e:
        raise ArchiveFormatError(f"corrupt archive: {e}") from e
    finally:
        if owned:
            fileobj.close()

    # children first so parent mtimes and modes stick
    for target, member, ts in sorted(dirs, key=lambda d: len(d[0].parts), reverse=True):
        os.chmod(target, member.mode & 0o7777)
        _set_time(target, ts)
        stamps[_safe_relpath(member.name)] = ts
    logger.debug("unpack into %s: %d entries", dest, len(stamps))
    return stamps

# -----------------------
# Inspection
# -----------------------
def archive_members(source: Source) -> List[str]:
    fileobj, owned = _open_source(source)
    try:
        with tarfile.open(fileobj=fileobj, mode="r:") as tar:
            return [m.name.rstrip("/") for m in tar.getmembers()]
    except tarfile.TarError as e:
        raise ArchiveFormatError(f"corrupt archive: {e}") from e
    finally:
        if owned:
            fileobj.close()


def read_member(source: Source, name: str) -> Optional[bytes]:
    fileobj, owned = _open_source(source)
    try:
        with tarfile.open(fileobj=fileobj, mode="r:") as tar:
            for m in tar:
                if m.name.rstrip("/") == name and m.isreg():
                    return tar.extractfile(m).read()
        return None
    except tarfile.TarError as e:
        raise ArchiveFormatError(f"corrupt archive: {e}") from e
    finally:
        if owned:
            fileobj.close()
