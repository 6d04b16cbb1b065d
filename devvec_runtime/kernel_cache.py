"""Kernel cache: one compiled kernel per (compute context, expression shape).

Entries are built on first use and kept for the lifetime of the owning
session; there is no eviction. get_or_build() is atomic per key, so threads
racing on the first use of a shape build it exactly once.
"""

from __future__ import annotations

import logging
import threading
from typing import Hashable, Sequence

import numpy as np

from devvec_compiler.codegen import generate_kernel
from devvec_compiler.expr import ExpressionNode, expression_shape
from devvec_compiler.kernel_program import CompiledKernel
from devvec_runtime.backend import Device

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKGROUP_SIZE = 1024


def select_workgroup_size(limits: Sequence[int], ceiling: int = DEFAULT_MAX_WORKGROUP_SIZE) -> int:
    """Largest power of two <= ``ceiling`` that fits every limit in ``limits``."""
    wgsize = ceiling
    for limit in limits:
        while wgsize > limit and wgsize > 1:
            wgsize //= 2
    return wgsize


def group_by_context(devices: Sequence[Device]) -> dict[Hashable, list[Device]]:
    """Devices grouped by context key, in first-seen order."""
    groups: dict[Hashable, list[Device]] = {}
    for device in devices:
        groups.setdefault(device.context_key, []).append(device)
    return groups


class KernelCache:
    """Per-session compiled kernel store."""

    def __init__(self, max_workgroup_size: int = DEFAULT_MAX_WORKGROUP_SIZE, log_source: bool = True):
        self._max_workgroup_size = max_workgroup_size
        self._log_source = log_source
        self._entries: dict[tuple, CompiledKernel] = {}
        self._key_locks: dict[tuple, threading.Lock] = {}
        self._registry_lock = threading.Lock()
        self.builds = 0
        self.hits = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: tuple) -> bool:
        return key in self._entries

    def keys(self) -> list[tuple]:
        return list(self._entries)

    def _key_lock(self, key: tuple) -> threading.Lock:
        with self._registry_lock:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = self._key_locks[key] = threading.Lock()
            return lock

    def get_or_build(self, devices: Sequence[Device], expr: ExpressionNode, result_dtype) -> CompiledKernel:
        """Compiled kernel for ``res = expr`` on the context shared by ``devices``.

        Args:
            devices: All devices of one compute context (non-empty).
            expr: Expression tree.
            result_dtype: Element type of the destination vector.

        Raises:
            BuildError: the generated source failed to compile.
        """
        key = (devices[0].context_key, expression_shape(expr, result_dtype))
        entry = self._entries.get(key)
        if entry is None:
            with self._key_lock(key):
                entry = self._entries.get(key)
                if entry is None:
                    entry = self._build(devices, expr, np.dtype(result_dtype))
                    self._entries[key] = entry
                    with self._registry_lock:
                        self.builds += 1
                    return entry
        with self._registry_lock:
            self.hits += 1
        return entry

    def kernels_for(self, devices: Sequence[Device], expr: ExpressionNode, result_dtype) -> dict[Hashable, CompiledKernel]:
        """Compiled kernel for every context among ``devices``, keyed by context."""
        return {
            context: self.get_or_build(group, expr, result_dtype)
            for context, group in group_by_context(devices).items()
        }

    def _build(self, devices: Sequence[Device], expr: ExpressionNode, result_dtype: np.dtype) -> CompiledKernel:
        source = generate_kernel(expr, result_dtype)
        if self._log_source:
            logger.debug("Kernel source for %s:\n%s", source.kernel_name, source.source_code)

        # Build failures report the log of the first device in the context.
        program, kernel = devices[0].build_program(source)

        limits = [
            min(device.max_workgroup_size, device.kernel_max_workgroup_size(kernel))
            for device in devices
        ]
        wgsize = select_workgroup_size(limits, self._max_workgroup_size)
        logger.debug(
            "Compiled %s for context %r (workgroup size %d)",
            source.kernel_name, devices[0].context_key, wgsize,
        )
        return CompiledKernel(
            source=source,
            program=program,
            kernel=kernel,
            workgroup_size=wgsize,
            built=True,
        )
