"""Vector partitioning: splits [0, n) into per-device contiguous ranges.

A partition for D devices is a list of D + 1 non-decreasing offsets with
``part[0] == 0`` and ``part[D] == n``; device d owns ``[part[d], part[d+1])``.

Strategies are plain callables ``(n, devices) -> list[int]``. Each session
holds one PartitionScheme: the first strategy set wins for the lifetime of
the session, and the performance-weighted strategy is installed on first use
if none was set.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Sequence

from devvec_runtime.backend import Device

logger = logging.getLogger(__name__)

PartitionFunction = Callable[[int, Sequence[Device]], list[int]]

PARTITION_ALIGNMENT = 16
BENCHMARK_SIZE = 1024 * 1024


def align_up(n: int, m: int = PARTITION_ALIGNMENT) -> int:
    """Round ``n`` up to the next multiple of ``m``."""
    return n if n % m == 0 else n - n % m + m


def validate_partition(part: Sequence[int], n: int, device_count: int) -> None:
    if len(part) != device_count + 1:
        raise ValueError(f"Partition has {len(part)} boundaries, expected {device_count + 1}")
    if part[0] != 0 or part[-1] != n:
        raise ValueError(f"Partition must span [0, {n}), got {list(part)}")
    if any(b < a for a, b in zip(part, part[1:])):
        raise ValueError(f"Partition boundaries must be non-decreasing, got {list(part)}")


def partition_equally(n: int, devices: Sequence[Device]) -> list[int]:
    """Equal aligned chunks; only the last non-empty chunk may be shorter."""
    m = len(devices)
    part = [0] * (m + 1)
    if m > 1:
        chunk = align_up((n + m - 1) // m)
        for i in range(m):
            part[i + 1] = min(n, part[i] + chunk)
    else:
        part[-1] = n
    return part


def partition_by_weights(n: int, weights: Sequence[float], alignment: int = PARTITION_ALIGNMENT) -> list[int]:
    """Shares of ``n`` proportional to ``weights``, interior boundaries aligned."""
    total = float(sum(weights))
    if total <= 0:
        raise ValueError("Partition weights must sum to a positive value")
    part = [0]
    acc = 0.0
    for w in weights[:-1]:
        acc += w
        boundary = align_up(int(n * acc / total), alignment)
        part.append(min(n, max(part[-1], boundary)))
    part.append(n)
    return part


def device_vector_perf(device: Device, session) -> float:
    """Throughput weight of ``device``: 1 / seconds of ``a = b + c`` on 1M floats.

    The first run compiles the kernel and is discarded.
    """
    from devvec_runtime.profiler import profile
    from devvec_runtime.vector import LogicalVector

    a = LogicalVector([device], BENCHMARK_SIZE, session=session)
    b = LogicalVector([device], BENCHMARK_SIZE, session=session)
    c = LogicalVector([device], BENCHMARK_SIZE, session=session)

    def run():
        a.assign(b + c)
        device.synchronize()

    result = profile(run, warmup=1, iterations=1)
    return 1000.0 / max(result.total_ms, 1e-6)


class VectorPerfPartitioner:
    """Default strategy: weight each device by measured vector throughput.

    Weights are measured once per device and kept for the lifetime of the
    partitioner.
    """

    def __init__(self, session, measure: Callable[[Device, object], float] = device_vector_perf):
        self._session = session
        self._measure = measure
        self._weights: dict[Device, float] = {}
        self._lock = threading.Lock()

    def weight(self, device: Device) -> float:
        with self._lock:
            cached = self._weights.get(device)
        if cached is not None:
            return cached
        w = self._measure(device, self._session)
        logger.debug("Vector throughput weight of %s: %.3f", device.name, w)
        with self._lock:
            self._weights.setdefault(device, w)
        return w

    def __call__(self, n: int, devices: Sequence[Device]) -> list[int]:
        if len(devices) == 1:
            return [0, n]
        return partition_by_weights(n, [self.weight(d) for d in devices])


def partition_by_vector_perf(n: int, devices: Sequence[Device]) -> list[int]:
    """Performance-weighted partition using the default session's weights."""
    from devvec_runtime.session import default_session

    return default_session().perf_partitioner(n, devices)


class PartitionScheme:
    """Set-once holder of a session's partition strategy."""

    def __init__(self, default_factory: Callable[[], PartitionFunction]):
        self._default_factory = default_factory
        self._fn: PartitionFunction | None = None
        self._lock = threading.Lock()

    @property
    def is_set(self) -> bool:
        return self._fn is not None

    @property
    def function(self) -> PartitionFunction | None:
        return self._fn

    def set(self, fn: PartitionFunction) -> None:
        with self._lock:
            if self._fn is None:
                self._fn = fn
                return
        logger.warning("Partitioning function is already set and will be left as is.")

    def __call__(self, n: int, devices: Sequence[Device]) -> list[int]:
        with self._lock:
            if self._fn is None:
                self._fn = self._default_factory()
            fn = self._fn
        part = list(fn(n, devices))
        validate_partition(part, n, len(devices))
        logger.debug("Partitioned %d elements over %d device(s): %s", n, len(devices), part)
        return part
