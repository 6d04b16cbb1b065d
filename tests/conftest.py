"""Shared fixtures: a numpy-backed Device that executes generated kernels.

NumpyDevice implements the full Device interface on host memory. Its
"compiler" reads the ``res[idx] = <expr>;`` line of the generated source and
evaluates that expression with numpy over the whole partition, so vector
tests exercise code generation, argument binding and dispatch without a GPU.
"""

from __future__ import annotations

import itertools
import re

import numpy as np
import pytest

from devvec_compiler.kernel_program import KernelSource
from devvec_runtime.backend import Device, DeviceBuffer, DeviceClass, MemFlags
from devvec_runtime.errors import BuildError
from devvec_runtime.partition import partition_equally
from devvec_runtime.session import Session, SessionConfig

_RESULT_LINE = re.compile(r"^\s*res\[idx\] = (.*);$", re.MULTILINE)
_PARAM = re.compile(r"prm_(\d+)(?:\[idx\])?")

_NUMPY_FUNCTIONS = {
    "sin": np.sin,
    "cos": np.cos,
    "tan": np.tan,
    "exp": np.exp,
    "log": np.log,
    "log10": np.log10,
    "sqrt": np.sqrt,
    "rsqrt": lambda x: 1 / np.sqrt(x),
    "fabs": np.fabs,
    "floor": np.floor,
    "ceil": np.ceil,
    "pow": np.power,
    "fmin": np.fmin,
    "fmax": np.fmax,
    "hypot": np.hypot,
    "atan2": np.arctan2,
}

_event_ids = itertools.count()


class NumpyEvent:
    def __init__(self, kind: str):
        self.kind = kind
        self.id = next(_event_ids)

    def __repr__(self) -> str:
        return f"NumpyEvent({self.kind}, {self.id})"


class NumpyBuffer(DeviceBuffer):
    def __init__(self, data: np.ndarray, flags: MemFlags):
        self.data = data
        self._flags = flags

    @property
    def size(self) -> int:
        return self.data.size

    @property
    def dtype(self) -> np.dtype:
        return self.data.dtype

    @property
    def flags(self) -> MemFlags:
        return self._flags

    @property
    def native_handle(self):
        return self.data


class NumpyKernel:
    """Compiled stand-in: the result expression rewritten for numpy."""

    def __init__(self, source: KernelSource, max_threads: int):
        self.source = source
        self.max_threads = max_threads
        match = _RESULT_LINE.search(source.source_code)
        assert match is not None, source.source_code
        self.expression = _PARAM.sub(r"A[\1]", match.group(1))


class NumpyDevice(Device):
    """Host-memory Device double.

    Args:
        name: Device name.
        context: Context key; devices with equal keys share kernels.
        device_class: CPU or GPU launch sizing.
        max_workgroup_size: Device workgroup limit.
        kernel_max_threads: Per-kernel workgroup limit reported after a build.
        compute_units: Compute unit count.
        build_error: When set, every build fails with this compiler log.
        launch_error: When set, every launch raises this exception.
        user_functions: numpy implementations of user device functions.
    """

    def __init__(
        self,
        name="numpy0",
        context=None,
        device_class=DeviceClass.GPU,
        max_workgroup_size=1024,
        kernel_max_threads=1024,
        compute_units=4,
        build_error=None,
        user_functions=None,
        launch_error=None,
    ):
        self._name = name
        self._context = context if context is not None else ("numpy", name)
        self._device_class = device_class
        self._max_workgroup_size = max_workgroup_size
        self.kernel_max_threads = kernel_max_threads
        self._compute_units = compute_units
        self.build_error = build_error
        self.launch_error = launch_error
        self.user_functions = dict(user_functions or {})
        self.builds = 0
        self.launches = []
        self.waits = 0
        self.syncs = 0
        self.allocations = []
        self.copies = []

    def __repr__(self) -> str:
        return f"NumpyDevice({self._name!r})"

    @property
    def name(self):
        return self._name

    @property
    def context_key(self):
        return self._context

    @property
    def device_class(self):
        return self._device_class

    @property
    def max_workgroup_size(self):
        return self._max_workgroup_size

    @property
    def compute_units(self):
        return self._compute_units

    @property
    def queue(self):
        return ("queue", self._name)

    def allocate(self, size, dtype, flags=MemFlags.READ_WRITE):
        self.allocations.append(size)
        return NumpyBuffer(np.zeros(size, dtype=dtype), flags)

    def write_buffer(self, buffer, offset, host):
        buffer.data[offset:offset + host.size] = host
        return NumpyEvent("write")

    def read_buffer(self, buffer, offset, out):
        out[...] = buffer.data[offset:offset + out.size]
        return NumpyEvent("read")

    def copy_buffer(self, src, dst, count, src_offset=0, dst_offset=0):
        self.copies.append((src_offset, dst_offset, count))
        dst.data[dst_offset:dst_offset + count] = src.data[src_offset:src_offset + count]
        return NumpyEvent("copy")

    def build_program(self, source):
        self.builds += 1
        if self.build_error is not None:
            raise BuildError(source.kernel_name, self.build_error, source.source_code)
        return source, NumpyKernel(source, self.kernel_max_threads)

    def kernel_max_workgroup_size(self, kernel):
        return min(kernel.max_threads, self.kernel_max_threads)

    def launch(self, kernel, grid_size, workgroup_size, args):
        self.launches.append((kernel.source.kernel_name, grid_size, workgroup_size, list(args)))
        if self.launch_error is not None:
            raise self.launch_error
        n = int(args[0])
        res = args[1].data
        params = [a.data[:n] if isinstance(a, DeviceBuffer) else a for a in args[2:]]
        namespace = dict(_NUMPY_FUNCTIONS)
        namespace.update(self.user_functions)
        namespace["A"] = {i: p for i, p in enumerate(params, start=1)}
        with np.errstate(all="ignore"):
            res[:n] = eval(kernel.expression, {"__builtins__": {}}, namespace)
        return NumpyEvent("launch")

    def wait(self, event):
        self.waits += 1

    def synchronize(self):
        self.syncs += 1


@pytest.fixture
def session():
    """Fresh session with equal partitioning (no device benchmarking)."""
    return Session(SessionConfig(partition_strategy=partition_equally))


@pytest.fixture
def device():
    return NumpyDevice("gpu0")


@pytest.fixture
def two_devices():
    return [NumpyDevice("gpu0"), NumpyDevice("gpu1")]


@pytest.fixture
def shared_context_devices():
    """Two queues on one context."""
    return [NumpyDevice("q0", context="ctx"), NumpyDevice("q1", context="ctx")]
