"""Profiler: measure wall-clock time of device work."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable


@dataclass
class ProfileResult:
    """Average time per iteration and iteration count."""
    total_ms: float
    iterations: int


def profile(
    fn: Callable[[], object],
    warmup: int = 3,
    iterations: int = 10,
) -> ProfileResult:
    """Profile ``fn``.

    Runs warmup iterations then measures average execution time. ``fn`` must
    synchronize its devices itself, otherwise only enqueue time is measured.
    """
    # Warmup
    for _ in range(warmup):
        fn()

    # Measure
    start = time.perf_counter()
    for _ in range(iterations):
        fn()
    end = time.perf_counter()

    total_ms = (end - start) / iterations * 1000

    return ProfileResult(
        total_ms=total_ms,
        iterations=iterations,
    )
