"""Timing helpers for pipeline runs."""

import time
from typing import Optional


class TimingContext:
    """Record how long a block took under ``key`` in ``timings``.

    Repeated keys accumulate, so an action entered twice reports its total.

    Usage:
        timings = {}
        with TimingContext(timings, "serve"):
            await server.start()
    """

    def __init__(self, timings: dict[str, float], key: str) -> None:
        self.timings = timings
        self.key = key
        self._start: Optional[float] = None

    def __enter__(self) -> "TimingContext":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._start is not None:
            elapsed = time.perf_counter() - self._start
            self.timings[self.key] = round(self.timings.get(self.key, 0.0) + elapsed, 3)
        return None  # Don't suppress exceptions


def format_duration(seconds: float) -> str:
    """Short human-readable duration.

    Examples:
        0.412 -> "412ms"
        2.5 -> "2.5s"
        125.0 -> "2m 5s"
    """
    if seconds < 1:
        return f"{seconds * 1000:.0f}ms"
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, rest = divmod(seconds, 60)
    return f"{int(minutes)}m {rest:.0f}s"


def timing_summary(timings: dict[str, float], wall: Optional[float] = None) -> str:
    """One line, slowest first.

    Steps in a parallel group overlap, so their sum says little; pass
    ``wall`` to append the elapsed wall-clock time instead.

    Example output:
        images 1.2s | styles 412ms | fonts 3ms | wall 1.3s
    """
    if not timings:
        return "(no timing data)"

    ordered = sorted(timings.items(), key=lambda item: item[1], reverse=True)
    parts = [f"{name} {format_duration(duration)}" for name, duration in ordered]
    if wall is not None:
        parts.append(f"wall {format_duration(wall)}")
    return " | ".join(parts)
