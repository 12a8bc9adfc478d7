from __future__ import annotations

import logging
import math
import threading
from typing import Callable


logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, str], None]


class ProgressReporter:
    """Caller-facing 0-100 progress that never moves backwards.

    Steps report into sub-ranges of the scale (see ``sub_range``); values
    below the highest percent already reported are raised to it, so
    service-side noise or a tier switch cannot make the bar regress.
    """

    def __init__(self, callback: ProgressCallback | None = None):
        self._callback = callback
        self._percent = 0
        self._stage = ""
        self._lock = threading.Lock()

    @property
    def percent(self) -> int:
        return self._percent

    @property
    def stage(self) -> str:
        return self._stage

    def report(self, percent: float, stage: str | None = None) -> None:
        value = int(math.floor(max(0.0, min(100.0, float(percent)))))
        with self._lock:
            next_percent = max(self._percent, value)
            next_stage = stage if stage is not None else self._stage
            if next_percent == self._percent and next_stage == self._stage:
                return
            self._percent = next_percent
            self._stage = next_stage

        if self._callback is None:
            return
        try:
            self._callback(next_percent, next_stage)
        except Exception as e:
            logger.warning(f"Progress callback raised: {e}")

    def sub_range(self, start: float, end: float) -> ProgressRange:
        return ProgressRange(self, start, end)


class ProgressRange:
    """A reserved [start, end] slice of the overall progress scale."""

    def __init__(self, reporter: ProgressReporter, start: float, end: float):
        if end < start:
            start, end = end, start
        self.reporter = reporter
        self.start = float(start)
        self.end = float(end)

    def report_fraction(self, fraction: float, stage: str | None = None) -> None:
        fraction = max(0.0, min(1.0, float(fraction)))
        self.reporter.report(self.start + (self.end - self.start) * fraction, stage)

    def report_percent(self, percent: float, stage: str | None = None) -> None:
        self.report_fraction(float(percent) / 100.0, stage)

    def begin(self, stage: str | None = None) -> None:
        self.report_fraction(0.0, stage)

    def complete(self, stage: str | None = None) -> None:
        self.report_fraction(1.0, stage)
