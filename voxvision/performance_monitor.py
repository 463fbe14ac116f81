"""Named timers and log values written row by row to a CSV trace file."""

from __future__ import annotations

import os
import time
from typing import TextIO

__all__ = ["Timer", "PerformanceMonitor"]


class Timer:
    """Measures the wall-clock duration between ``start`` and ``stop``."""

    def __init__(self) -> None:
        self._started: float | None = None
        self._elapsed = 0.0

    def start(self) -> None:
        self._started = time.perf_counter()

    def stop(self) -> None:
        if self._started is None:
            raise RuntimeError("timer stopped before it was started")
        self._elapsed = time.perf_counter() - self._started
        self._started = None

    def reset(self) -> None:
        self._started = None
        self._elapsed = 0.0

    def get_time(self) -> float:
        """Seconds measured by the last start/stop pair."""
        return self._elapsed


class PerformanceMonitor:
    """Collects timers and log values and appends one CSV row per ``write_to_file``.

    Register timers and logs before ``open``: the header is written there.
    Columns are the timers in name order, then the logs in name order.
    """

    def __init__(self) -> None:
        self._timers: dict[str, Timer] = {}
        self._logs: dict[str, float] = {}
        self._file: TextIO | None = None
        self.trace_name = ""
        self.trace_dir = ""

    def __enter__(self) -> "PerformanceMonitor":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def open(self, trace_name: str, trace_dir: str) -> None:
        self.trace_name = trace_name
        self.trace_dir = trace_dir
        self._file = open(os.path.join(trace_dir, f"{trace_name}.csv"), "w", encoding="utf-8")
        self._trace_header()

    def close(self) -> None:
        if self._file is not None:
            self._file.flush()
            self._file.close()
            self._file = None

    def add_timer(self, name: str) -> None:
        self._timers.setdefault(name, Timer())

    def add_log(self, name: str) -> None:
        self._logs.setdefault(name, -1.0)

    def write_to_file(self) -> None:
        """Write the current values as a row, then reset timers and logs."""
        self._trace()
        for timer in self._timers.values():
            timer.reset()
        for name in self._logs:
            self._logs[name] = -1.0

    def _timer(self, name: str) -> Timer:
        try:
            return self._timers[name]
        except KeyError:
            raise KeyError(f"timer not registered: {name}") from None

    def start_timer(self, name: str) -> None:
        self._timer(name).start()

    def stop_timer(self, name: str) -> None:
        self._timer(name).stop()

    def get_time(self, name: str) -> float:
        return self._timer(name).get_time()

    def log(self, name: str, data: float) -> None:
        if name not in self._logs:
            raise KeyError(f"logger not registered: {name}")
        self._logs[name] = float(data)

    def _require_open(self) -> TextIO:
        if self._file is None:
            raise RuntimeError("performance monitor not correctly initialized")
        return self._file

    def _trace(self) -> None:
        out = self._require_open()
        values = [self._timers[n].get_time() for n in sorted(self._timers)]
        values += [self._logs[n] for n in sorted(self._logs)]
        out.write(",".join(f"{v:.15f}" for v in values) + "\n")

    def _trace_header(self) -> None:
        out = self._require_open()
        out.write(",".join(sorted(self._timers) + sorted(self._logs)) + "\n")