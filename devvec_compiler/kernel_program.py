"""Kernel data model: generated source and the per-context compiled record.

KernelSource is what the generator produces for one expression shape.
CompiledKernel is what the kernel cache keeps for one (context, shape) key
for the lifetime of its session.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import numpy as np


@dataclass(frozen=True)
class KernelParameter:
    """One kernel parameter after the implicit ``n`` and ``res``."""

    name: str
    kind: str  # "vector" or "scalar"
    dtype: np.dtype


@dataclass(frozen=True)
class KernelSource:
    """CUDA C source for NVRTC compilation."""

    kernel_name: str
    source_code: str
    shape: tuple
    result_dtype: np.dtype
    parameters: tuple[KernelParameter, ...] = ()


@dataclass
class CompiledKernel:
    """Built program + kernel handle + launch workgroup size for one context."""

    source: KernelSource
    program: Any
    kernel: Any
    workgroup_size: int
    built: bool = False

    @property
    def kernel_name(self) -> str:
        return self.source.kernel_name
