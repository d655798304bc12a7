"""Phase timing for rollup sweeps and import jobs."""
from __future__ import annotations
import time
from contextlib import contextmanager
from typing import Dict


class PipelineTimer:
    """Record wall-clock seconds per named phase.

    Repeated phases (e.g. one ``aggregate`` phase per site) accumulate.
    """

    def __init__(self):
        self.start_time = time.perf_counter()
        self.phases: Dict[str, float] = {}

    @contextmanager
    def phase(self, name: str):
        phase_start = time.perf_counter()
        try:
            yield
        finally:
            key = f"{name}_s"
            elapsed = time.perf_counter() - phase_start
            self.phases[key] = round(self.phases.get(key, 0.0) + elapsed, 3)

    def get_total_time(self) -> float:
        return round(time.perf_counter() - self.start_time, 3)

    def get_summary(self) -> Dict[str, float]:
        """Phase timings plus ``total_s``."""
        summary = self.phases.copy()
        summary['total_s'] = self.get_total_time()
        return summary

    def format_summary(self) -> str:
        return ", ".join(f"{k}={v}" for k, v in self.get_summary().items())
