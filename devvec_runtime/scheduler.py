"""Execution scheduler: launches a compiled expression kernel on every device
that owns a non-empty slice of the destination vector.

Launches are enqueued without blocking; dispatch() returns as soon as every
device has been issued its kernel. Each launch event is stored in the
destination vector's per-device event slot.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Hashable

import numpy as np

from devvec_compiler.expr import ExpressionNode, VectorTerminal, collect_terminals
from devvec_compiler.kernel_program import CompiledKernel
from devvec_runtime.backend import Device
from devvec_runtime.partition import align_up

if TYPE_CHECKING:
    from devvec_runtime.vector import LogicalVector

DEFAULT_GPU_WAVES_PER_UNIT = 4


class ExecutionScheduler:
    """Per-device grid sizing, argument binding and enqueue."""

    def __init__(self, gpu_waves_per_unit: int = DEFAULT_GPU_WAVES_PER_UNIT):
        self._gpu_waves_per_unit = gpu_waves_per_unit

    def global_size(self, device: Device, partition_size: int, workgroup_size: int) -> int:
        """Total thread count for one device.

        CPU-like devices get one thread per element (rounded up to whole
        workgroups). GPU-like devices get a fixed number of workgroups per
        compute unit; the grid-stride loop covers the rest.
        """
        if device.is_cpu:
            return align_up(partition_size, workgroup_size)
        return device.compute_units * workgroup_size * self._gpu_waves_per_unit

    def bind_arguments(self, target: LogicalVector, device_index: int, terminals: list) -> list[Any]:
        """Arguments in kernel signature order: n, res, then one per terminal."""
        args: list[Any] = [
            np.uint64(target.partition_size(device_index)),
            target.buffer_handle(device_index),
        ]
        for term in terminals:
            if isinstance(term, VectorTerminal):
                args.append(term.vector.buffer_handle(device_index))
            else:
                args.append(term.dtype.type(term.value))
        return args

    def dispatch(
        self,
        target: LogicalVector,
        expr: ExpressionNode,
        kernels: dict[Hashable, CompiledKernel],
    ) -> None:
        terminals = collect_terminals(expr)
        events = target.events
        for d, device in enumerate(target.devices):
            psize = target.partition_size(d)
            if not psize:
                continue
            compiled = kernels[device.context_key]
            wgsize = compiled.workgroup_size
            g_size = self.global_size(device, psize, wgsize)
            args = self.bind_arguments(target, d, terminals)
            events[d] = device.launch(compiled.kernel, g_size // wgsize, wgsize, args)
