"""Synthetic progress for operations that report no progress of their own.

The curve moves quickly at first and slows down later, approaching but never
reaching 100. Only an explicit completion reports 100.
"""

from __future__ import annotations

import math


# (tick where the segment ends, percentage reached at that tick)
_LINEAR_SEGMENTS: tuple[tuple[int, float], ...] = (
    (10, 45.0),
    (30, 75.0),
    (90, 90.0),
)
_TAIL_CEILING = 99
_TAIL_DECAY_TICKS = 60.0


def estimate_progress(ticks: int) -> int:
    """Map an elapsed tick count to a percentage in [0, 99]."""
    if ticks <= 0:
        return 0

    start_tick, start_pct = 0, 0.0
    for end_tick, end_pct in _LINEAR_SEGMENTS:
        if ticks <= end_tick:
            slope = (end_pct - start_pct) / (end_tick - start_tick)
            return int(start_pct + slope * (ticks - start_tick))
        start_tick, start_pct = end_tick, end_pct

    remaining = _TAIL_CEILING - start_pct
    value = _TAIL_CEILING - remaining * math.exp(-(ticks - start_tick) / _TAIL_DECAY_TICKS)
    return min(_TAIL_CEILING, round(value))


class ProgressEstimator:
    """Tick-driven estimator that never moves backwards."""

    def __init__(self) -> None:
        self.ticks = 0
        self.percentage = 0
        self.completed = False

    def tick(self) -> int:
        if self.completed:
            return self.percentage
        self.ticks += 1
        self.percentage = max(self.percentage, estimate_progress(self.ticks))
        return self.percentage

    def complete(self) -> int:
        self.completed = True
        self.percentage = 100
        return self.percentage

    def reset(self) -> None:
        self.ticks = 0
        self.percentage = 0
        self.completed = False
