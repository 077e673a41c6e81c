# quickbuild/logging.py
# -*- coding: utf-8 -*-
"""
quickbuild logging

Features:
 - Integration with quickbuild.config (reload via change callback)
 - Console color formatter
 - Rotating file handler
 - JSONL transparency log
 - Module-level configurable log levels (module_levels)
 - Compiler output streaming (stream_build_output)
 - Thread-safe reconfiguration and metrics
"""

from __future__ import annotations
import sys
import json
import time
import logging
import logging.handlers
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from quickbuild.config import get_config, register_watch_callback

_logger = logging.getLogger("quickbuild.logging")

# ----------------------
# Color formatter
# ----------------------
class ColorFormatter(logging.Formatter):
    COLORS = {
        logging.DEBUG: "\033[37m",    # light gray
        logging.INFO: "\033[36m",     # cyan
        logging.WARNING: "\033[33m",  # yellow
        logging.ERROR: "\033[31m",    # red
        logging.CRITICAL: "\033[41;37m", # white on red
    }
    RESET = "\033[0m"

    def __init__(self, fmt: Optional[str] = None, datefmt: Optional[str] = None, color: bool = True):
        super().__init__(fmt=fmt, datefmt=datefmt)
        self.color = color

    def format(self, record):
        msg = super().format(record)
        if self.color:
            color = self.COLORS.get(record.levelno, "")
            return f"{color}{msg}{self.RESET}"
        return msg

# ----------------------
# JSONL formatter for transparency log
# ----------------------
class JSONLineFormatter(logging.Formatter):
    def format(self, record):
        obj = {
            "timestamp": time.time(),
            "level": record.levelname,
            "module": getattr(record, "quickbuild_module", record.name),
            "message": record.getMessage(),
        }
        details = getattr(record, "details", None)
        if details:
            obj["details"] = details
        if record.exc_info:
            obj["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(obj, ensure_ascii=False, default=str)

# ----------------------
# Module-level filter for per-module levels
# ----------------------
class ModuleLevelFilter(logging.Filter):
    def __init__(self, module_levels: Dict[str, str]):
        super().__init__()
        self.module_levels = {m: getattr(logging, str(lvl).upper(), logging.INFO) for m, lvl in (module_levels or {}).items()}

    def filter(self, record):
        # records from plain child loggers (quickbuild.config) carry no module tag
        if not hasattr(record, "quickbuild_module"):
            record.quickbuild_module = record.name.rsplit(".", 1)[-1]
        mod = record.quickbuild_module
        if mod in self.module_levels:
            return record.levelno >= self.module_levels[mod]
        return True

# ----------------------
# QuickbuildLogger (singleton)
# ----------------------
class QuickbuildLogger:
    _instance = None
    _singleton_lock = threading.Lock()

    def __new__(cls):
        with cls._singleton_lock:
            if cls._instance is None:
                cls._instance = super().__new__(cls)
                cls._instance._inited = False
        return cls._instance

    def __init__(self):
        if self._inited:
            return
        self._lock = threading.RLock()

        self._root = logging.getLogger("quickbuild")
        self._root.setLevel(logging.DEBUG)  # handlers filter

        self._handlers: List[logging.Handler] = []
        self._module_filter = ModuleLevelFilter({})
        self._metrics: Dict[str, int] = {lvl: 0 for lvl in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")}
        self._jsonl_path: Optional[Path] = None

        self._apply_config(get_config().merged.get("logging", {}))
        register_watch_callback(lambda new_cfg: self._apply_config(new_cfg.merged.get("logging", {})))
        self._root.addFilter(self._count_levels_filter)
        self._inited = True

    # ----------------------
    # Internal helpers
    # ----------------------
    def _count_levels_filter(self, record):
        name = record.levelname
        if name in self._metrics:
            self._metrics[name] += 1
        return True

    def _add_handler(self, handler: logging.Handler):
        handler.addFilter(self._module_filter)
        self._root.addHandler(handler)
        self._handlers.append(handler)

    # ----------------------
    # Configuration (apply/reload)
    # ----------------------
    def _apply_config(self, cfg: Dict[str, Any]):
        with self._lock:
            for h in list(self._handlers):
                self._root.removeHandler(h)
                h.close()
            self._handlers.clear()

            self._module_filter = ModuleLevelFilter(cfg.get("module_levels", {}) or {})
            fmt = cfg.get("format") or "[%(asctime)s] [%(levelname)s] [%(quickbuild_module)s] %(message)s"
            datefmt = cfg.get("datefmt", "%H:%M:%S")

            # console handler
            console_cfg = cfg.get("console", {"enabled": True}) or {}
            if console_cfg.get("enabled", True):
                ch = logging.StreamHandler(sys.stderr)
                ch.setLevel(getattr(logging, str(cfg.get("level", "INFO")).upper(), logging.INFO))
                ch.setFormatter(ColorFormatter(fmt, datefmt=datefmt, color=bool(cfg.get("color", True)) and sys.stderr.isatty()))
                self._add_handler(ch)

            # rotating file handler
            if cfg.get("file"):
                file_path = Path(cfg["file"]).expanduser()
                file_path.parent.mkdir(parents=True, exist_ok=True)
                max_bytes = cfg.get("max_size_bytes")
                backups = int(cfg.get("backups", 5))
                fh = logging.handlers.RotatingFileHandler(str(file_path), maxBytes=max_bytes or 10 * 1024 * 1024, backupCount=backups, encoding="utf-8")
                fh.setLevel(getattr(logging, str(cfg.get("file_level", "DEBUG")).upper(), logging.DEBUG))
                fh.setFormatter(logging.Formatter("%(asctime)s %(levelname)s [%(quickbuild_module)s] %(message)s", datefmt=datefmt))
                self._add_handler(fh)

            # jsonl transparency log
            jsonl_cfg = cfg.get("jsonl", {}) or {}
            if jsonl_cfg.get("enabled"):
                path = Path(jsonl_cfg.get("path", "~/.quickbuild/transparency.jsonl")).expanduser()
                path.parent.mkdir(parents=True, exist_ok=True)
                self._jsonl_path = path
                jh = logging.FileHandler(str(path), encoding="utf-8")
                jh.setLevel(getattr(logging, str(jsonl_cfg.get("level", "INFO")).upper(), logging.INFO))
                jh.setFormatter(JSONLineFormatter())
                self._add_handler(jh)
            else:
                self._jsonl_path = None

            _logger.debug("logging: configuration applied")

    def reload_config(self):
        """Re-apply logging config from quickbuild.config."""
        self._apply_config(get_config().merged.get("logging", {}))

    # ----------------------
    # Public API
    # ----------------------
    def get_logger(self, module_name: str) -> logging.LoggerAdapter:
        """Return a LoggerAdapter that injects 'quickbuild_module' into records."""
        return logging.LoggerAdapter(self._root, {"quickbuild_module": module_name})

    def stream_build_output(self, module: str, line: str):
        """Log one line of compiler output under `module`."""
        self.get_logger(module).info(line.rstrip("\n"))

    def get_metrics(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._metrics)

# ----------------------
# Public factory
# ----------------------
_GLOBAL_LOGGER = QuickbuildLogger()

def get_logger(module: str) -> logging.LoggerAdapter:
    return _GLOBAL_LOGGER.get_logger(module)

def stream_build_output(module: str, line: str):
    return _GLOBAL_LOGGER.stream_build_output(module, line)

def reload_config():
    return _GLOBAL_LOGGER.reload_config()

def get_metrics():
    return _GLOBAL_LOGGER.get_metrics()
