"""Terminal progress reporting for batch clustering runs."""

import sys
import time
from typing import Optional


class ProgressRenderer:
    """Single-line progress bar with per-mask outcome counters."""

    def __init__(self, enable: bool = True, width: int = 40, stream=None):
        self.enable = enable
        self.width = width
        self.stream = stream or sys.stdout
        self.reset(0)

    def reset(self, total: int) -> None:
        self.total = max(total, 0)
        self.succeeded = 0
        self.failed = 0
        self.clusters = 0
        self.start = time.time()
        self._shown = ""

    def update(self, current: int, *, clusters: int = 0, failed: bool = False) -> None:
        """Record the outcome of one mask and redraw the bar."""
        if failed:
            self.failed += 1
        else:
            self.succeeded += 1
            self.clusters += clusters
        if self.enable and self.total > 0:
            self._draw(current)

    def eta(self, current: int) -> Optional[float]:
        """Seconds left at the average rate so far, None before any progress."""
        if current <= 0:
            return None
        return (time.time() - self.start) / current * (self.total - current)

    def format_line(self, current: int) -> str:
        done = min(self.width, self.width * current // self.total)
        parts = [
            f"[{'#' * done}{'-' * (self.width - done)}]",
            f"{current}/{self.total}",
            f"ok:{self.succeeded}",
            f"failed:{self.failed}",
            f"clusters:{self.clusters}",
            f"elapsed:{time.time() - self.start:.1f}s",
        ]
        remaining = self.eta(current)
        if remaining is not None and current < self.total:
            parts.append(f"ETA:{remaining:.1f}s")
        return " ".join(parts)

    def _draw(self, current: int) -> None:
        line = self.format_line(current)
        if line != self._shown:
            self.stream.write("\r" + line)
            self.stream.flush()
            self._shown = line
        if current >= self.total:
            self.stream.write("\n")
            self.stream.flush()
