"""Copies between host arrays and device vectors.

copy() moves whole containers. copy_range() takes an iterator pair and a
destination iterator where exactly one side is a device vector iterator and
the other a host iterator; device-to-device ranges go through
LogicalVector.assign instead.
"""

from __future__ import annotations

import numpy as np

from devvec_runtime.vector import LogicalVector, VectorIterator


class HostIterator:
    """Position in a contiguous 1-D numpy array."""

    device_iterator = False

    def __init__(self, array: np.ndarray, pos: int = 0):
        self.array = array
        self.pos = pos

    @classmethod
    def begin(cls, array: np.ndarray) -> HostIterator:
        return cls(array, 0)

    @classmethod
    def end(cls, array: np.ndarray) -> HostIterator:
        return cls(array, len(array))

    def __add__(self, offset: int) -> HostIterator:
        return HostIterator(self.array, self.pos + offset)

    def __sub__(self, other):
        if isinstance(other, HostIterator):
            return self.pos - other.pos
        return HostIterator(self.array, self.pos - other)

    def __eq__(self, other) -> bool:
        return isinstance(other, HostIterator) and other.array is self.array and other.pos == self.pos

    def __repr__(self) -> str:
        return f"HostIterator(pos={self.pos}, size={len(self.array)})"


def copy(src, dst, blocking: bool = True) -> None:
    """Copy a whole host array into a vector or a whole vector into a host array.

    Sizes must match. Vector-to-vector copies are plain assignment.
    """
    if isinstance(src, LogicalVector) and isinstance(dst, LogicalVector):
        dst.assign(src)
        return
    if isinstance(dst, LogicalVector):
        host = np.asarray(src)
        if host.size != dst.size:
            raise ValueError(f"Cannot copy {host.size} host elements into a vector of size {dst.size}")
        dst.write_data(0, dst.size, host, blocking=blocking)
        return
    if isinstance(src, LogicalVector):
        if not isinstance(dst, np.ndarray) or dst.size != src.size:
            raise ValueError(f"Destination must be a numpy array of {src.size} elements")
        src.read_data(0, src.size, dst, blocking=blocking)
        return
    raise TypeError("copy() needs a LogicalVector on at least one side")


def copy_range(first, last, result, blocking: bool = True):
    """Copy ``[first, last)`` to ``result``.

    Returns:
        ``result + (last - first)``.
    """
    if first.device_iterator != last.device_iterator:
        raise TypeError("first and last must be the same kind of iterator")
    if first.device_iterator == result.device_iterator:
        raise TypeError("copy_range() copies between a host array and a device vector")
    count = last - first
    if count < 0:
        raise ValueError("last precedes first")

    if isinstance(first, VectorIterator):
        host = result.array
        if result.pos + count > len(host):
            raise IndexError("Host range too short for copy")
        first.vector.read_data(first.pos, count, host[result.pos:result.pos + count], blocking=blocking)
    else:
        host = first.array[first.pos:first.pos + count]
        result.vector.write_data(result.pos, count, host, blocking=blocking)
    return result + count
