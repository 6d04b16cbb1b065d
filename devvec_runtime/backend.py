"""Abstract device interfaces for the vector runtime.

A Device is one compute context plus one command queue plus its capability
info. Several Device objects may share a context (e.g. two streams on one
GPU); kernels are built once per context and shared between them.

All transfer and launch methods are non-blocking: they enqueue work on the
device queue and return a completion event for ``wait()``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum, auto
from typing import Any, Hashable, Sequence

import numpy as np

from devvec_compiler.kernel_program import KernelSource


class DeviceClass(Enum):
    CPU = auto()
    GPU = auto()


class MemFlags(Enum):
    READ_WRITE = auto()
    READ_ONLY = auto()
    WRITE_ONLY = auto()


class DeviceBuffer(ABC):
    """Device-resident 1-D buffer."""

    @property
    @abstractmethod
    def size(self) -> int:
        ...

    @property
    @abstractmethod
    def dtype(self) -> np.dtype:
        ...

    @property
    @abstractmethod
    def flags(self) -> MemFlags:
        ...

    @property
    @abstractmethod
    def native_handle(self) -> Any:
        """Backend-native buffer object (e.g. cupy.ndarray for CUDA)."""
        ...

    @property
    def size_bytes(self) -> int:
        return self.size * self.dtype.itemsize


class Device(ABC):
    """Abstract compute device: context + queue + capabilities."""

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @property
    @abstractmethod
    def context_key(self) -> Hashable:
        """Identity of the compute context; kernel cache key component."""
        ...

    @property
    @abstractmethod
    def device_class(self) -> DeviceClass:
        ...

    @property
    @abstractmethod
    def max_workgroup_size(self) -> int:
        ...

    @property
    @abstractmethod
    def compute_units(self) -> int:
        ...

    @property
    @abstractmethod
    def queue(self) -> Any:
        """Backend-native command queue."""
        ...

    @property
    def is_cpu(self) -> bool:
        return self.device_class is DeviceClass.CPU

    @abstractmethod
    def allocate(self, size: int, dtype: np.dtype, flags: MemFlags = MemFlags.READ_WRITE) -> DeviceBuffer:
        ...

    @abstractmethod
    def write_buffer(self, buffer: DeviceBuffer, offset: int, host: np.ndarray) -> Any:
        """Enqueue host -> device copy of ``host`` to ``buffer[offset:]``."""
        ...

    @abstractmethod
    def read_buffer(self, buffer: DeviceBuffer, offset: int, out: np.ndarray) -> Any:
        """Enqueue device -> host copy of ``buffer[offset:offset+len(out)]``."""
        ...

    @abstractmethod
    def copy_buffer(self, src: DeviceBuffer, dst: DeviceBuffer, count: int, src_offset: int = 0, dst_offset: int = 0) -> Any:
        """Enqueue a device-local copy of ``count`` elements from
        ``src[src_offset:]`` into ``dst[dst_offset:]``."""
        ...

    @abstractmethod
    def build_program(self, source: KernelSource) -> tuple[Any, Any]:
        """Compile ``source`` for this device's context.

        Returns:
            (program, kernel) handles.

        Raises:
            BuildError: with the compiler log on failure.
        """
        ...

    @abstractmethod
    def kernel_max_workgroup_size(self, kernel: Any) -> int:
        ...

    @abstractmethod
    def launch(self, kernel: Any, grid_size: int, workgroup_size: int, args: Sequence[Any]) -> Any:
        """Enqueue a 1-D launch of ``grid_size`` workgroups. Buffers in
        ``args`` are DeviceBuffer instances; scalars are numpy scalars."""
        ...

    @abstractmethod
    def wait(self, event: Any) -> None:
        ...

    @abstractmethod
    def synchronize(self) -> None:
        ...
