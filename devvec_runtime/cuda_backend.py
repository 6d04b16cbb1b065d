"""CUDA backend: CuPy-based Device and DeviceBuffer implementations.

Each CUDADevice owns one non-blocking CUDA stream on one GPU. The compute
context is the device ordinal, so several CUDADevice objects created for the
same GPU share compiled kernels but run on independent streams.

Kernels are compiled with NVRTC through cupy.RawModule.
"""

from __future__ import annotations

import contextlib
import logging
from typing import Any, Hashable, Sequence

import numpy as np

from devvec_compiler.kernel_program import KernelSource
from devvec_runtime.backend import Device, DeviceBuffer, DeviceClass, MemFlags
from devvec_runtime.errors import BuildError, DeviceOperationError, ErrorCategory

try:
    import cupy as cp

    HAS_CUPY = True
except ImportError:
    cp = None
    HAS_CUPY = False

logger = logging.getLogger(__name__)

# CUDA runtime and driver status codes share numbering for the cases below.
_STATUS_CATEGORY: dict[int, ErrorCategory] = {
    1: ErrorCategory.INVALID_ARGUMENT,  # invalid value
    2: ErrorCategory.RESOURCE_EXHAUSTION,  # out of memory
    3: ErrorCategory.INVALID_STATE,  # not initialized
    9: ErrorCategory.INVALID_KERNEL_ARGS,  # invalid launch configuration
    101: ErrorCategory.INVALID_ARGUMENT,  # invalid device
    201: ErrorCategory.INVALID_STATE,  # invalid context
    400: ErrorCategory.INVALID_STATE,  # invalid resource handle
    701: ErrorCategory.RESOURCE_EXHAUSTION,  # launch out of resources
    801: ErrorCategory.UNSUPPORTED,  # not supported
}


def categorize_status(status: int | None) -> ErrorCategory:
    if status is None:
        return ErrorCategory.UNKNOWN
    return _STATUS_CATEGORY.get(status, ErrorCategory.UNKNOWN)


@contextlib.contextmanager
def _device_errors(operation: str):
    """Translate CuPy/CUDA failures into DeviceOperationError."""
    try:
        yield
    except cp.cuda.memory.OutOfMemoryError as exc:
        raise DeviceOperationError(operation, ErrorCategory.RESOURCE_EXHAUSTION, str(exc)) from exc
    except (cp.cuda.runtime.CUDARuntimeError, cp.cuda.driver.CUDADriverError) as exc:
        status = getattr(exc, "status", None)
        raise DeviceOperationError(operation, categorize_status(status), str(exc), status=status) from exc


class CUDABuffer(DeviceBuffer):
    """CUDA GPU buffer backed by a 1-D cupy.ndarray."""

    def __init__(self, data: cp.ndarray, flags: MemFlags = MemFlags.READ_WRITE):
        self._data = data
        self._flags = flags

    @property
    def size(self) -> int:
        return int(self._data.size)

    @property
    def dtype(self) -> np.dtype:
        return self._data.dtype

    @property
    def flags(self) -> MemFlags:
        return self._flags

    @property
    def native_handle(self) -> Any:
        """Return the underlying cupy.ndarray."""
        return self._data

    def to_numpy(self) -> np.ndarray:
        """Blocking download of the whole buffer (debugging aid)."""
        return cp.asnumpy(self._data)


class CUDADevice(Device):
    """One CUDA stream on one GPU."""

    def __init__(self, ordinal: int = 0):
        if not HAS_CUPY:
            raise RuntimeError("CuPy is not installed. Install with: pip install 'devvec[cuda]'")
        self._ordinal = ordinal
        self._cp_device = cp.cuda.Device(ordinal)
        with _device_errors("device query"), self._cp_device:
            self._stream = cp.cuda.Stream(non_blocking=True)
            attrs = self._cp_device.attributes
            props = cp.cuda.runtime.getDeviceProperties(ordinal)
        self._max_workgroup_size = int(attrs["MaxThreadsPerBlock"])
        self._compute_units = int(attrs["MultiProcessorCount"])
        name = props["name"]
        self._name = name.decode() if isinstance(name, bytes) else str(name)

    def __repr__(self) -> str:
        return f"CUDADevice(ordinal={self._ordinal}, name={self._name!r})"

    @property
    def name(self) -> str:
        return self._name

    @property
    def ordinal(self) -> int:
        return self._ordinal

    @property
    def context_key(self) -> Hashable:
        return ("cuda", self._ordinal)

    @property
    def device_class(self) -> DeviceClass:
        return DeviceClass.GPU

    @property
    def max_workgroup_size(self) -> int:
        return self._max_workgroup_size

    @property
    def compute_units(self) -> int:
        return self._compute_units

    @property
    def queue(self) -> Any:
        """Return the CuPy stream."""
        return self._stream

    def allocate(self, size: int, dtype: np.dtype, flags: MemFlags = MemFlags.READ_WRITE) -> CUDABuffer:
        with _device_errors("allocate"), self._cp_device:
            data = cp.empty(size, dtype=dtype)
        return CUDABuffer(data, flags)

    def write_buffer(self, buffer: CUDABuffer, offset: int, host: np.ndarray) -> Any:
        with _device_errors("write buffer"), self._cp_device:
            buffer.native_handle[offset:offset + host.size].set(host, stream=self._stream)
            return self._stream.record()

    def read_buffer(self, buffer: CUDABuffer, offset: int, out: np.ndarray) -> Any:
        with _device_errors("read buffer"), self._cp_device:
            buffer.native_handle[offset:offset + out.size].get(
                stream=self._stream, out=out, blocking=False,
            )
            return self._stream.record()

    def copy_buffer(self, src: CUDABuffer, dst: CUDABuffer, count: int, src_offset: int = 0, dst_offset: int = 0) -> Any:
        nbytes = count * dst.dtype.itemsize
        with _device_errors("copy buffer"), self._cp_device:
            dst.native_handle[dst_offset:].data.copy_from_device_async(
                src.native_handle[src_offset:].data, nbytes, stream=self._stream,
            )
            return self._stream.record()

    def build_program(self, source: KernelSource) -> tuple[Any, Any]:
        with self._cp_device:
            try:
                # NVRTC compiles lazily on first get_function().
                module = cp.RawModule(code=source.source_code)
                kernel = module.get_function(source.kernel_name)
            except cp.cuda.compiler.CompileException as exc:
                raise BuildError(source.kernel_name, exc.get_message(), source.source_code) from exc
        logger.debug("Built %s on CUDA device %d", source.kernel_name, self._ordinal)
        return module, kernel

    def kernel_max_workgroup_size(self, kernel: Any) -> int:
        return int(kernel.max_threads_per_block)

    def launch(self, kernel: Any, grid_size: int, workgroup_size: int, args: Sequence[Any]) -> Any:
        native_args = tuple(a.native_handle if isinstance(a, DeviceBuffer) else a for a in args)
        with _device_errors("launch"), self._cp_device, self._stream:
            kernel((grid_size,), (workgroup_size,), native_args)
            return self._stream.record()

    def wait(self, event: Any) -> None:
        with _device_errors("wait"):
            event.synchronize()

    def synchronize(self) -> None:
        with _device_errors("synchronize"):
            self._stream.synchronize()


def cuda_device_count() -> int:
    """Number of visible CUDA devices; 0 without CuPy or a driver."""
    if not HAS_CUPY:
        return 0
    try:
        return cp.cuda.runtime.getDeviceCount()
    except cp.cuda.runtime.CUDARuntimeError:
        return 0


def cuda_devices(ordinals: Sequence[int] | None = None, queues_per_device: int = 1) -> list[CUDADevice]:
    """Create CUDADevice objects, ``queues_per_device`` streams per GPU.

    Args:
        ordinals: GPUs to use. Defaults to every visible GPU.
        queues_per_device: Independent streams (logical devices) per GPU.
    """
    if ordinals is None:
        ordinals = range(cuda_device_count())
    devices = [CUDADevice(o) for o in ordinals for _ in range(queues_per_device)]
    if not devices:
        raise RuntimeError("No CUDA device found")
    return devices
