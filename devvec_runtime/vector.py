"""LogicalVector: one logical 1-D vector spread over several devices.

Layout:
    - partition: D + 1 offsets; device d owns [part[d], part[d+1])
    - one buffer per device (None where the slice is empty)
    - one pending-event slot per device, overwritten by each transfer/launch

Assigning an expression (``v.assign(a + 2 * b)`` or ``v[:] = a + 2 * b``)
compiles one fused kernel per expression shape and context, then launches it
on every device without blocking. Each device kernel sees only its own
slice, indexed from 0, so all vectors in an expression must share the
destination's device list and partition.
"""

from __future__ import annotations

import bisect
from typing import Iterator, Sequence

import numpy as np

from devvec_compiler.expr import (
    ExpressionNode,
    ExpressionOps,
    OperatorProduct,
    VectorTerminal,
    as_expression,
    collect_vectors,
    split_operator_products,
)
from devvec_compiler.op_support import is_supported_dtype
from devvec_runtime.backend import Device, DeviceBuffer, MemFlags
from devvec_runtime.errors import DeviceOperationError, ErrorCategory, LayoutMismatchError, ShapeMismatchError
from devvec_runtime.partition import validate_partition
from devvec_runtime.session import Session, default_session


class Element:
    """Proxy for one vector element.

    Every get()/set() is a blocking single-element transfer; use it for
    debugging, not in loops.
    """

    __slots__ = ("_vector", "_device_index", "_local_index")

    def __init__(self, vector: LogicalVector, device_index: int, local_index: int):
        self._vector = vector
        self._device_index = device_index
        self._local_index = local_index

    @property
    def device_index(self) -> int:
        return self._device_index

    @property
    def local_index(self) -> int:
        return self._local_index

    def get(self):
        vec = self._vector
        device = vec.devices[self._device_index]
        out = np.empty(1, dtype=vec.dtype)
        device.wait(device.read_buffer(vec.buffer_handle(self._device_index), self._local_index, out))
        return out[0]

    def set(self, value) -> None:
        vec = self._vector
        device = vec.devices[self._device_index]
        host = np.array([value], dtype=vec.dtype)
        device.wait(device.write_buffer(vec.buffer_handle(self._device_index), self._local_index, host))

    def __float__(self) -> float:
        return float(self.get())

    def __int__(self) -> int:
        return int(self.get())

    def __repr__(self) -> str:
        return f"Element(device={self._device_index}, index={self._local_index})"


class VectorIterator:
    """Random-access position in a vector's flat index space.

    Tracks the device owning the current position; advancing only ever moves
    that device index forward.
    """

    device_iterator = True

    def __init__(self, vector: LogicalVector, pos: int):
        self.vector = vector
        self.pos = pos
        part = vector.partition()
        self.part = min(max(bisect.bisect_right(part, pos) - 1, 0), vector.device_count - 1)

    def deref(self) -> Element:
        return Element(self.vector, self.part, self.pos - self.vector.partition_start(self.part))

    def advance(self) -> VectorIterator:
        self.pos += 1
        part = self.vector.partition()
        last = self.vector.device_count - 1
        while self.part < last and self.pos >= part[self.part + 1]:
            self.part += 1
        return self

    def __add__(self, offset: int) -> VectorIterator:
        return VectorIterator(self.vector, self.pos + offset)

    def __sub__(self, other):
        if isinstance(other, VectorIterator):
            return self.pos - other.pos
        return VectorIterator(self.vector, self.pos - other)

    def __eq__(self, other) -> bool:
        return isinstance(other, VectorIterator) and other.vector is self.vector and other.pos == self.pos

    def __lt__(self, other: VectorIterator) -> bool:
        return self.pos < other.pos

    def __repr__(self) -> str:
        return f"VectorIterator(pos={self.pos}, device={self.part})"


class LogicalVector(ExpressionOps):
    """Device vector partitioned over one or more devices.

    Args:
        devices: Devices holding the vector, in partition order.
        size_or_host: Element count, or a 1-D host array to upload.
        dtype: Element type. Defaults to the host array's dtype or float32.
        host: Host data to upload when ``size_or_host`` is a size.
        flags: Memory access flags for every per-device buffer.
        session: Owning session (partition scheme, kernel cache).
        partition: Explicit D + 1 boundaries, bypassing the session's
            partition scheme. Used to match another vector's layout.
    """

    def __init__(
        self,
        devices: Sequence[Device],
        size_or_host=0,
        dtype=None,
        host=None,
        flags: MemFlags = MemFlags.READ_WRITE,
        session: Session | None = None,
        partition: Sequence[int] | None = None,
    ):
        if not devices:
            raise ValueError("A vector needs at least one device")
        if isinstance(size_or_host, (int, np.integer)):
            size = int(size_or_host)
        else:
            host = np.asarray(size_or_host)
            if host.ndim != 1:
                raise ValueError(f"Host data must be 1-D, got shape {host.shape}")
            size = host.size
        if size < 0:
            raise ValueError(f"Vector size must be non-negative, got {size}")
        if host is not None:
            host = np.asarray(host)
            if host.size < size:
                raise ValueError(f"Host data has {host.size} elements, vector needs {size}")
            if dtype is None:
                dtype = host.dtype
        self._dtype = np.dtype(dtype if dtype is not None else np.float32)
        if not is_supported_dtype(self._dtype):
            raise TypeError(f"Unsupported vector element type: {self._dtype}")

        self._session = session or default_session()
        self._devices = list(devices)
        self._flags = flags
        n_dev = len(self._devices)
        if partition is not None:
            self._partition = list(partition)
            validate_partition(self._partition, size, n_dev)
        elif size:
            self._partition = self._session.partition(size, self._devices)
        else:
            self._partition = [0] * (n_dev + 1)
        self._buffers: list[DeviceBuffer | None] = [None] * n_dev
        self._events: list = [None] * n_dev
        # Host arrays of in-flight writes stay referenced until the next transfer.
        self._staged: list[np.ndarray | None] = [None] * n_dev

        if size:
            self._allocate_buffers(host)

    def _allocate_buffers(self, host: np.ndarray | None) -> None:
        for d, device in enumerate(self._devices):
            psize = self.partition_size(d)
            if psize:
                self._buffers[d] = device.allocate(psize, self._dtype, self._flags)
        if host is not None:
            self.write_data(0, self.size, host, blocking=True)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def size(self) -> int:
        return self._partition[-1]

    def __len__(self) -> int:
        return self.size

    @property
    def dtype(self) -> np.dtype:
        return self._dtype

    @property
    def flags(self) -> MemFlags:
        return self._flags

    @property
    def session(self) -> Session:
        return self._session

    @property
    def devices(self) -> tuple[Device, ...]:
        return tuple(self._devices)

    @property
    def device_count(self) -> int:
        return len(self._devices)

    @property
    def events(self) -> list:
        """Per-device pending event slots (mutable, reused across calls)."""
        return self._events

    def partition(self) -> list[int]:
        return list(self._partition)

    def partition_size(self, d: int) -> int:
        return self._partition[d + 1] - self._partition[d]

    def partition_start(self, d: int) -> int:
        return self._partition[d]

    def queue_list(self) -> list:
        return [device.queue for device in self._devices]

    def buffer_handle(self, d: int = 0) -> DeviceBuffer | None:
        return self._buffers[d]

    def same_layout(self, other: LogicalVector) -> bool:
        return self._devices == other._devices and self._partition == other._partition

    def __repr__(self) -> str:
        return (
            f"LogicalVector(size={self.size}, dtype={self._dtype}, "
            f"devices={self.device_count}, partition={self._partition})"
        )

    # ------------------------------------------------------------------
    # Element access and iteration
    # ------------------------------------------------------------------

    def _normalize_index(self, index: int) -> int:
        index = int(index)
        if index < 0:
            index += self.size
        if not 0 <= index < self.size:
            raise IndexError(f"Index out of range for vector of size {self.size}")
        return index

    def element(self, index: int) -> Element:
        index = self._normalize_index(index)
        d = bisect.bisect_right(self._partition, index) - 1
        return Element(self, d, index - self._partition[d])

    def begin(self) -> VectorIterator:
        return VectorIterator(self, 0)

    def end(self) -> VectorIterator:
        return VectorIterator(self, self.size)

    def __iter__(self) -> Iterator:
        it, stop = self.begin(), self.end()
        while it != stop:
            yield it.deref().get()
            it.advance()

    def __getitem__(self, key):
        if isinstance(key, slice):
            start, stop, step = key.indices(self.size)
            if step != 1:
                raise ValueError("Only contiguous slices are supported")
            return self.read_data(start, max(stop - start, 0))
        return self.element(key).get()

    def __setitem__(self, key, value) -> None:
        if not isinstance(key, slice):
            self.element(key).set(value)
            return
        start, stop, step = key.indices(self.size)
        if step != 1:
            raise ValueError("Only contiguous slices are supported")
        if isinstance(value, ExpressionOps) or np.isscalar(value):
            if (start, stop) != (0, self.size):
                raise ValueError("Expressions can only be assigned to the whole vector")
            self.assign(value)
        else:
            self.write_data(start, max(stop - start, 0), value)

    # ------------------------------------------------------------------
    # Host transfers
    # ------------------------------------------------------------------

    def _overlaps(self, offset: int, count: int) -> Iterator[tuple[int, int, int]]:
        """(device, start, stop) for every device whose slice meets the range."""
        for d in range(self.device_count):
            start = max(offset, self._partition[d])
            stop = min(offset + count, self._partition[d + 1])
            if start < stop:
                yield d, start, stop

    def _check_range(self, offset: int, count: int) -> None:
        if offset < 0 or count < 0 or offset + count > self.size:
            raise IndexError(f"Range [{offset}, {offset + count}) outside vector of size {self.size}")

    def write_data(self, offset: int, count: int, host, blocking: bool = True) -> None:
        """Copy ``host[:count]`` to elements ``[offset, offset + count)``.

        Transfers are enqueued on every touched device without blocking; with
        ``blocking`` the call waits for each touched device's completion event.
        """
        if not count:
            return
        self._check_range(offset, count)
        host = np.ascontiguousarray(np.asarray(host).ravel()[:count], dtype=self._dtype)
        if host.size < count:
            raise ValueError(f"Host data has {host.size} elements, transfer needs {count}")

        touched = []
        for d, start, stop in self._overlaps(offset, count):
            device = self._devices[d]
            chunk = host[start - offset:stop - offset]
            self._events[d] = device.write_buffer(self._buffers[d], start - self._partition[d], chunk)
            self._staged[d] = chunk
            touched.append(d)

        if blocking:
            for d in touched:
                self._devices[d].wait(self._events[d])
                self._staged[d] = None

    def read_data(self, offset: int, count: int, host: np.ndarray | None = None, blocking: bool = True) -> np.ndarray:
        """Copy elements ``[offset, offset + count)`` into ``host``.

        Args:
            host: Contiguous writeable array of the vector dtype with at
                least ``count`` elements. Allocated when omitted.
            blocking: Wait for each touched device before returning. When
                false, the data is valid only after the vector's events
                complete.

        Returns:
            The host array.
        """
        if host is None:
            host = np.empty(count, dtype=self._dtype)
        elif (
            not isinstance(host, np.ndarray)
            or host.dtype != self._dtype
            or not host.flags.c_contiguous
            or not host.flags.writeable
        ):
            raise ValueError(f"read_data needs a contiguous writeable {self._dtype} numpy array")
        if not count:
            return host
        self._check_range(offset, count)
        if host.size < count:
            raise ValueError(f"Host array has {host.size} elements, transfer needs {count}")
        flat = host.reshape(-1)

        touched = []
        for d, start, stop in self._overlaps(offset, count):
            device = self._devices[d]
            out = flat[start - offset:stop - offset]
            self._events[d] = device.read_buffer(self._buffers[d], start - self._partition[d], out)
            touched.append(d)

        if blocking:
            for d in touched:
                self._devices[d].wait(self._events[d])
        return host

    def to_numpy(self) -> np.ndarray:
        return self.read_data(0, self.size)

    def synchronize(self) -> None:
        """Wait until every queue of this vector has drained."""
        for device in self._devices:
            device.synchronize()
        self._staged = [None] * self.device_count

    # ------------------------------------------------------------------
    # Assignment
    # ------------------------------------------------------------------

    def _to_expression(self) -> ExpressionNode:
        return VectorTerminal(self)

    def assign(self, source) -> LogicalVector:
        """Evaluate ``source`` into this vector.

        ``source`` may be another vector (device-local copy), a host scalar
        (fill), or any expression. Top-level ``+/- A * x`` terms with an
        external linear operator are applied after the kernel part.

        Raises:
            LayoutMismatchError: an operand is laid out differently.
            ShapeMismatchError: an operator product does not fit.
            BuildError: the kernel for a new expression shape failed to build.
        """
        if source is self:
            return self
        if isinstance(source, LogicalVector):
            return self._copy_from(source)

        expr = as_expression(source)
        kernel_expr, products = split_operator_products(expr)
        if kernel_expr is not None:
            if isinstance(kernel_expr, VectorTerminal):
                self._copy_from(kernel_expr.vector)
            else:
                self._evaluate(kernel_expr)
        for i, (sign, product) in enumerate(products):
            self._apply_product(product, sign, append=kernel_expr is not None or i > 0)
        return self

    def _check_layout(self, other: LogicalVector) -> None:
        if not self.same_layout(other):
            raise LayoutMismatchError(
                f"Vector layouts differ: {self._partition} on {self.device_count} device(s) "
                f"vs {other._partition} on {other.device_count} device(s)"
            )

    def _copy_from(self, other: LogicalVector) -> LogicalVector:
        if other is self:
            return self
        self._check_layout(other)
        if other.dtype != self._dtype:
            # Element conversion needs a kernel.
            self._evaluate(VectorTerminal(other))
            return self
        for d, device in enumerate(self._devices):
            psize = self.partition_size(d)
            if psize:
                self._events[d] = device.copy_buffer(other._buffers[d], self._buffers[d], psize)
        return self

    def _evaluate(self, expr: ExpressionNode) -> None:
        if self._flags is MemFlags.READ_ONLY:
            raise DeviceOperationError("assign", ErrorCategory.UNSUPPORTED, "destination vector is read-only")
        for vec in collect_vectors(expr):
            self._check_layout(vec)
        if not self.size:
            return
        kernels = self._session.kernel_cache.kernels_for(self._devices, expr, self._dtype)
        self._session.scheduler.dispatch(self, expr, kernels)

    def _apply_product(self, product: OperatorProduct, alpha: float, append: bool) -> None:
        rows, cols = product.operator.shape
        if rows != self.size or cols != product.vector.size:
            raise ShapeMismatchError(
                f"Operator of shape {(rows, cols)} cannot map a vector of size "
                f"{product.vector.size} into a vector of size {self.size}"
            )
        product.operator.mul_into(product.vector, self, alpha, append)

    def __iadd__(self, other):
        return self.assign(self + other)

    def __isub__(self, other):
        return self.assign(self - other)

    def __imul__(self, other):
        return self.assign(self * other)

    def __itruediv__(self, other):
        return self.assign(self / other)

    def __imod__(self, other):
        return self.assign(self % other)

    def __iand__(self, other):
        return self.assign(self & other)

    def __ior__(self, other):
        return self.assign(self | other)

    def __ixor__(self, other):
        return self.assign(self ^ other)

    def __ilshift__(self, other):
        return self.assign(self << other)

    def __irshift__(self, other):
        return self.assign(self >> other)

    # ------------------------------------------------------------------
    # Reallocation
    # ------------------------------------------------------------------

    def swap(self, other: LogicalVector) -> None:
        """Exchange descriptors with ``other``; no data moves."""
        for attr in ("_session", "_devices", "_dtype", "_flags", "_partition", "_buffers", "_events", "_staged"):
            mine, theirs = getattr(self, attr), getattr(other, attr)
            setattr(self, attr, theirs)
            setattr(other, attr, mine)

    def resize(self, devices_or_vector, size_or_host=None, host=None, flags: MemFlags = MemFlags.READ_WRITE) -> LogicalVector:
        """Reallocate the vector.

        ``resize(devices, size_or_host, host=None)`` discards the old contents.
        ``resize(other)`` takes ``other``'s devices, size and partition, then
        copies ``other`` into the fresh buffers. Resizing to itself is a no-op.
        """
        if isinstance(devices_or_vector, LogicalVector):
            other = devices_or_vector
            if other is self:
                return self
            fresh = LogicalVector(
                other.devices, other.size, dtype=self._dtype, flags=flags,
                session=self._session, partition=other.partition(),
            )
            self.swap(fresh)
            return self.assign(other)
        if size_or_host is None:
            raise TypeError("resize() needs a size or host data")
        fresh = LogicalVector(
            devices_or_vector, size_or_host, dtype=self._dtype, host=host, flags=flags, session=self._session,
        )
        self.swap(fresh)
        return self

    def resize_preserving(self, new_size: int) -> LogicalVector:
        """Reallocate to ``new_size`` on the same devices, keeping the first
        ``min(size, new_size)`` elements.

        Elements that stay on the same device are copied device-locally.
        Only elements whose owning device changes go through the host.
        """
        keep = min(self.size, new_size)
        fresh = LogicalVector(self._devices, new_size, dtype=self._dtype, flags=self._flags, session=self._session)
        old, new = self._partition, fresh._partition
        moved = np.ones(keep, dtype=bool)
        for d, device in enumerate(self._devices):
            start = max(old[d], new[d])
            stop = min(old[d + 1], new[d + 1], keep)
            if start >= stop:
                continue
            fresh._events[d] = device.copy_buffer(
                self._buffers[d], fresh._buffers[d], stop - start,
                src_offset=start - old[d], dst_offset=start - new[d],
            )
            moved[start:stop] = False
        for d, device in enumerate(self._devices):
            if fresh._events[d] is not None:
                device.wait(fresh._events[d])

        for start, stop in _runs(moved):
            fresh.write_data(start, stop - start, self.read_data(start, stop - start))
        self.swap(fresh)
        return self


def _runs(mask: np.ndarray) -> Iterator[tuple[int, int]]:
    """(start, stop) of every run of True values in ``mask``."""
    edges = np.flatnonzero(np.diff(np.concatenate(([0], mask.view(np.int8), [0]))))
    for start, stop in zip(edges[::2], edges[1::2]):
        yield int(start), int(stop)


def swap(a: LogicalVector, b: LogicalVector) -> None:
    a.swap(b)
