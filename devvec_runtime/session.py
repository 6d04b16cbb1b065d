"""Compute session: configuration, partition scheme and kernel cache.

A Session owns every piece of process-lifetime state the runtime needs, so
independent sessions never share compiled kernels or partition strategies.
Vectors created without an explicit session use default_session().
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Sequence

from devvec_runtime.backend import Device
from devvec_runtime.kernel_cache import DEFAULT_MAX_WORKGROUP_SIZE, KernelCache
from devvec_runtime.partition import PartitionFunction, PartitionScheme, VectorPerfPartitioner
from devvec_runtime.scheduler import DEFAULT_GPU_WAVES_PER_UNIT, ExecutionScheduler


@dataclass(frozen=True)
class SessionConfig:
    """Tunables for kernel launch and partitioning."""
    max_workgroup_size: int = DEFAULT_MAX_WORKGROUP_SIZE
    gpu_waves_per_unit: int = DEFAULT_GPU_WAVES_PER_UNIT
    partition_strategy: PartitionFunction | None = None
    log_kernel_source: bool = True

    def __post_init__(self):
        if self.max_workgroup_size < 1 or self.max_workgroup_size & (self.max_workgroup_size - 1):
            raise ValueError(f"max_workgroup_size must be a power of two, got {self.max_workgroup_size}")
        if self.gpu_waves_per_unit < 1:
            raise ValueError(f"gpu_waves_per_unit must be positive, got {self.gpu_waves_per_unit}")


class Session:
    """Owns the kernel cache and partition scheme shared by its vectors."""

    def __init__(self, config: SessionConfig | None = None):
        self.config = config or SessionConfig()
        self.perf_partitioner = VectorPerfPartitioner(self)
        self.partition_scheme = PartitionScheme(lambda: self.perf_partitioner)
        if self.config.partition_strategy is not None:
            self.partition_scheme.set(self.config.partition_strategy)
        self.kernel_cache = KernelCache(
            max_workgroup_size=self.config.max_workgroup_size,
            log_source=self.config.log_kernel_source,
        )
        self.scheduler = ExecutionScheduler(gpu_waves_per_unit=self.config.gpu_waves_per_unit)

    def partition(self, n: int, devices: Sequence[Device]) -> list[int]:
        return self.partition_scheme(n, devices)


_default_session: Session | None = None
_default_lock = threading.Lock()


def default_session() -> Session:
    global _default_session
    with _default_lock:
        if _default_session is None:
            _default_session = Session()
        return _default_session


def set_partition_strategy(fn: PartitionFunction) -> None:
    """Install the default session's partition strategy (first call wins)."""
    default_session().partition_scheme.set(fn)
