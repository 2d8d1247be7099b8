from __future__ import annotations

import time
from typing import Any, Callable

from src.utils.cancel import CancellationToken


class PollingScheduler:
    """Fixed-interval tick loop with cooperative cancellation.

    Contract: `tick` runs at most once per interval and ticks never overlap, so a
    worker that claims one job per tick processes at most one job per interval.
    A tick that overruns the interval is followed immediately by the next one
    (missed ticks are dropped, not replayed). Cancellation is observed only at
    tick boundaries; an in-flight tick is never interrupted.
    """

    def __init__(self, *, interval_s: float, cancel: CancellationToken) -> None:
        if interval_s <= 0:
            raise ValueError(f"interval_s must be > 0, got {interval_s}")
        self._interval_s = float(interval_s)
        self._cancel = cancel

    @property
    def interval_s(self) -> float:
        return self._interval_s

    def run(self, tick: Callable[[], Any], *, max_ticks: int | None = None) -> int:
        """Wait one interval, tick, repeat until cancelled. Returns the number of ticks run."""
        ticks = 0
        next_at = time.monotonic() + self._interval_s
        while max_ticks is None or ticks < max_ticks:
            if self._cancel.wait(max(0.0, next_at - time.monotonic())):
                break
            tick()
            ticks += 1
            next_at = max(next_at + self._interval_s, time.monotonic())
        return ticks
