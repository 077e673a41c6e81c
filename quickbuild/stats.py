# quickbuild/stats.py
"""Phase timing for one package build, persisted next to its archive."""

from __future__ import annotations

import time
from typing import Dict, Optional

PHASES = ("init", "untar", "build", "tar")


class Stats:
    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self.start = clock()
        self.marks: Dict[str, float] = {}

    def mark(self, phase: str):
        if phase not in PHASES:
            raise ValueError(f"unknown build phase {phase!r}")
        self.marks[phase] = self._clock()

    def init_done(self):
        self.mark("init")

    def untar_done(self):
        self.mark("untar")

    def build_done(self):
        self.mark("build")

    def tar_done(self):
        self.mark("tar")

    @property
    def current_phase(self) -> Optional[str]:
        """First phase without a mark, None once all are done."""
        for phase in PHASES:
            if phase not in self.marks:
                return phase
        return None

    def computed(self) -> Dict[str, float]:
        """{init,untar,build,tar}_duration in float seconds; every phase must be marked."""
        missing = [p for p in PHASES if p not in self.marks]
        if missing:
            raise ValueError(f"stats incomplete, missing phases: {missing}")
        out: Dict[str, float] = {}
        prev = self.start
        for phase in PHASES:
            out[f"{phase}_duration"] = max(0.0, self.marks[phase] - prev)
            prev = self.marks[phase]
        return out
