# quickbuild/config.py
# -*- coding: utf-8 -*-
"""
quickbuild central configuration loader

Features:
- Read YAML/JSON config from multiple locations (explicit, env override, cwd, user)
- Merge with authoritative DEFAULTS, normalize/coerce types (human sizes to bytes)
- CARGO_QUICK_TARBALL_DIR environment override for the cache directory
- Validate structure and types, warn or error (fatal optional)
- Provide typed access via Config dataclass (get_config(), get_build_config(), get_cache_dir())
- Thread-safe load/reload with change callbacks
"""

from __future__ import annotations
import os
import json
import logging
import threading
from pathlib import Path
from copy import deepcopy
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

import yaml

# plain stdlib logger: quickbuild.logging reads this module at import time
logger = logging.getLogger("quickbuild.config")

CACHE_DIR_ENV = "CARGO_QUICK_TARBALL_DIR"
CONFIG_ENV = "QUICKBUILD_CONFIG"

# ----------------------------
# DEFAULT configuration (authoritative base)
# ----------------------------
DEFAULTS: Dict[str, Any] = {
    "logging": {
        "level": "INFO",
        "file": None,
        "color": True,
        "max_size": "10M",  # human readable
        "backups": 5,
        "module_levels": {},
        "console": {"enabled": True},
        "jsonl": {"enabled": False, "path": "~/.quickbuild/transparency.jsonl"},
    },
    "cache": {
        "dir": "~/tmp/quick",
    },
    "build": {
        "timeout": 3600,
        "compiler": ["cargo", "build", "--jobs=1"],
        "offline_flag": "--offline",
        "offline": True,
        "clean": ["cargo", "clean", "--offline", "--package", "quickbuild-scratchpad"],
        "init": None,  # external project-init command; None writes the manifest directly
        "metadata": ["cargo", "metadata", "--format-version", "1"],
        "env": {"CARGO_CACHE_RUSTC_INFO": "0"},
        "scratch_dir": None,  # None -> system temp dir
        "keep_scratch": False,
        "exclude_unpacked": True,
    },
    "scheduler": {
        "workers": 1,
    },
}

# ----------------------------
# Dataclass to hold config
# ----------------------------
@dataclass
class Config:
    raw: Dict[str, Any] = field(default_factory=dict)     # values loaded from file (if any)
    merged: Dict[str, Any] = field(default_factory=dict)  # merged with DEFAULTS
    path: Optional[str] = None

    def get(self, path: str, default: Any = None) -> Any:
        """Dot-separated getter for merged config."""
        parts = path.split(".") if path else []
        cur: Any = self.merged
        for p in parts:
            if isinstance(cur, dict) and p in cur:
                cur = cur[p]
            else:
                return default
        return cur

    def as_dict(self) -> Dict[str, Any]:
        return deepcopy(self.merged)

# ----------------------------
# Module state
# ----------------------------
_CONFIG: Optional[Config] = None
_CONFIG_LOCK = threading.RLock()
_WATCH_CALLBACKS: List[Callable[[Config], None]] = []

# ----------------------------
# Utilities
# ----------------------------
def _human_size_to_bytes(val: Union[str, int, None]) -> Optional[int]:
    if val is None:
        return None
    if isinstance(val, int):
        return val
    s = str(val).strip().upper()
    units = {"KB": 1024, "MB": 1024**2, "GB": 1024**3, "K": 1024, "M": 1024**2, "G": 1024**3}
    try:
        for suffix, mul in units.items():
            if s.endswith(suffix):
                num = float(s[: -len(suffix)].strip())
                return int(num * mul)
        return int(float(s))
    except ValueError:
        logger.warning("config: cannot parse human size '%s'", val)
        return None

def _expand_path(val: Optional[str]) -> Optional[str]:
    if val is None:
        return None
    return os.path.abspath(os.path.expanduser(os.path.expandvars(val)))

def _deep_merge(a: Dict[str, Any], b: Dict[str, Any]) -> Dict[str, Any]:
    res = deepcopy(a)
    for k, v in b.items():
        if k in res and isinstance(res[k], dict) and isinstance(v, dict):
            res[k] = _deep_merge(res[k], v)
        else:
            res[k] = deepcopy(v)
    return res

def _find_candidates(explicit: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> List[Path]:
    env = environ if environ is not None else os.environ
    candidates: List[Path] = []
    if explicit:
        candidates.append(Path(explicit))
    if env.get(CONFIG_ENV):
        candidates.append(Path(env[CONFIG_ENV]))
    candidates.extend([
        Path.cwd() / "quickbuild.yaml",
        Path.cwd() / "quickbuild.yml",
        Path.cwd() / "quickbuild.json",
        Path.home() / ".config" / "quickbuild" / "config.yaml",
    ])
    return candidates

def _load_file(path: Path) -> Dict[str, Any]:
    txt = path.read_text(encoding="utf-8")
    if path.suffix.lower() in (".yaml", ".yml"):
        data = yaml.safe_load(txt)
    else:
        data = json.loads(txt)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"config: {path} must contain a mapping, got {type(data).__name__}")
    return data

def _normalize_and_coerce(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Normalize path fields, convert human sizes and coerce basic types."""
    out = deepcopy(cfg)
    path_keys = [
        ("cache", "dir"),
        ("build", "scratch_dir"),
        ("logging", "file"),
    ]
    for section, key in path_keys:
        ref = out.get(section)
        if isinstance(ref, dict) and isinstance(ref.get(key), str) and ref[key]:
            ref[key] = _expand_path(ref[key])
    jsonl = out.get("logging", {}).get("jsonl")
    if isinstance(jsonl, dict) and isinstance(jsonl.get("path"), str):
        jsonl["path"] = _expand_path(jsonl["path"])

    # Convert human sizes
    if isinstance(out.get("logging"), dict) and "max_size" in out["logging"]:
        ms = _human_size_to_bytes(out["logging"]["max_size"])
        if ms is not None:
            out["logging"]["max_size_bytes"] = ms

    # Coerce numbers
    build = out.get("build")
    if isinstance(build, dict):
        try:
            build["timeout"] = int(build.get("timeout", 0))
        except (TypeError, ValueError):
            logger.debug("config: failed to coerce build fields", exc_info=True)
        for key in ("compiler", "clean", "init", "metadata"):
            if isinstance(build.get(key), str):
                build[key] = build[key].split()
    sched = out.get("scheduler")
    if isinstance(sched, dict):
        try:
            sched["workers"] = int(sched.get("workers", 1))
        except (TypeError, ValueError):
            logger.debug("config: failed to coerce scheduler fields", exc_info=True)
    return out

def _apply_env(cfg: Dict[str, Any], environ: Mapping[str, str]) -> Dict[str, Any]:
    tarball_dir = environ.get(CACHE_DIR_ENV)
    if tarball_dir:
        cfg.setdefault("cache", {})["dir"] = _expand_path(tarball_dir)
    return cfg

def _validate_structure(cfg: Dict[str, Any]) -> Tuple[bool, List[str]]:
    """Return (ok, issues_list). Non-fatal warnings unless called with fatal=True in load."""
    warnings: List[str] = []
    for k in cfg.keys():
        if k not in DEFAULTS:
            warnings.append(f"Unknown top-level config key: {k}")
    build = cfg.get("build", {})
    timeout = build.get("timeout")
    if not isinstance(timeout, int) or timeout < 0:
        warnings.append("build.timeout must be integer >= 0 (0 disables it)")
    for key in ("compiler", "clean"):
        cmd = build.get(key)
        if not isinstance(cmd, list) or not cmd:
            warnings.append(f"build.{key} must be a non-empty command list")
    if not isinstance(build.get("env", {}), dict):
        warnings.append("build.env must be a mapping")
    workers = cfg.get("scheduler", {}).get("workers")
    if not isinstance(workers, int) or workers < 1:
        warnings.append("scheduler.workers must be integer >= 1")
    cache_dir = cfg.get("cache", {}).get("dir")
    if not isinstance(cache_dir, str) or not cache_dir:
        warnings.append("cache.dir must be a non-empty string")
    return (len(warnings) == 0, warnings)

# ----------------------------
# Loading / reloading
# ----------------------------
def _find_path(explicit: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> Optional[Path]:
    for p in _find_candidates(explicit, environ):
        if p.exists():
            return p
    if explicit:
        raise FileNotFoundError(f"config file not found: {explicit}")
    return None

def load(explicit_path: Optional[str] = None, fatal: bool = False, environ: Optional[Mapping[str, str]] = None) -> Config:
    """
    Load and merge config. If fatal=True then structural validation failures raise.
    `environ` defaults to os.environ; tests pass a dict.
    Returns Config object.
    """
    global _CONFIG
    env = environ if environ is not None else os.environ
    with _CONFIG_LOCK:
        cfg_path = _find_path(explicit_path, env)
        raw: Dict[str, Any] = {}
        if cfg_path:
            raw = _load_file(cfg_path)
        merged = _deep_merge(DEFAULTS, raw)
        normalized = _apply_env(_normalize_and_coerce(merged), env)
        ok, issues = _validate_structure(normalized)
        if not ok:
            msg = f"config: validation issues: {issues}"
            if fatal:
                logger.error(msg)
                raise ValueError(msg)
            logger.warning(msg)
        cfg_obj = Config(raw=raw, merged=normalized, path=str(cfg_path) if cfg_path else None)
        _CONFIG = cfg_obj
        logger.debug("config: loaded merged config (from=%s)", cfg_obj.path or "<defaults>")
        return cfg_obj

def get_config() -> Config:
    global _CONFIG
    with _CONFIG_LOCK:
        if _CONFIG is None:
            _CONFIG = load()
        return _CONFIG

def reload(explicit_path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> Config:
    cfg = load(explicit_path, environ=environ)
    _notify_watchers(cfg)
    return cfg

# ----------------------------
# Change callbacks
# ----------------------------
def register_watch_callback(cb: Callable[[Config], None]) -> None:
    with _CONFIG_LOCK:
        if cb not in _WATCH_CALLBACKS:
            _WATCH_CALLBACKS.append(cb)

def unregister_watch_callback(cb: Callable[[Config], None]) -> None:
    with _CONFIG_LOCK:
        if cb in _WATCH_CALLBACKS:
            _WATCH_CALLBACKS.remove(cb)

def _notify_watchers(cfg: Config) -> None:
    with _CONFIG_LOCK:
        cbs = list(_WATCH_CALLBACKS)
    for cb in cbs:
        cb(cfg)

# ----------------------------
# Convenience helpers
# ----------------------------
def get_build_config(cfg: Optional[Config] = None) -> Dict[str, Any]:
    return deepcopy((cfg or get_config()).get("build", {}))

def get_cache_dir(cfg: Optional[Config] = None) -> str:
    return (cfg or get_config()).get("cache.dir")

def validate_config(cfg: Optional[Config] = None) -> Tuple[bool, List[str]]:
    return _validate_structure((cfg or get_config()).merged)

# ----------------------------
# CLI / Demo
# ----------------------------
if __name__ == "__main__":
    import argparse
    ap = argparse.ArgumentParser(prog="quickbuild-config")
    ap.add_argument("--config", help="explicit config file")
    ap.add_argument("--validate", action="store_true")
    args = ap.parse_args()
    c = load(args.config)
    if args.validate:
        ok, issues = validate_config(c)
        print("OK" if ok else "\n".join(issues))
    else:
        print(json.dumps(c.as_dict(), indent=2, ensure_ascii=False))
