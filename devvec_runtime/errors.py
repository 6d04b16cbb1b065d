"""Structured error types raised by the device-vector runtime."""

from __future__ import annotations

from enum import Enum


class DevvecError(Exception):
    """Base class for runtime errors."""


class BuildError(DevvecError):
    """Kernel source failed to compile. Carries the full compiler log."""

    def __init__(self, kernel_name: str, log: str, source: str = ""):
        self.kernel_name = kernel_name
        self.log = log
        self.source = source
        super().__init__(f"Kernel build failed ({kernel_name}):\n{log}")


class ErrorCategory(Enum):
    RESOURCE_EXHAUSTION = "resource exhaustion"
    INVALID_ARGUMENT = "invalid argument or size"
    INVALID_STATE = "invalid queue or context state"
    INVALID_KERNEL_ARGS = "invalid kernel arguments"
    UNSUPPORTED = "unsupported operation"
    UNKNOWN = "unknown"


class DeviceOperationError(DevvecError):
    """A transfer, allocation or kernel enqueue failed on a device."""

    def __init__(self, operation: str, category: ErrorCategory, message: str = "", status: int | None = None):
        self.operation = operation
        self.category = category
        self.status = status
        detail = f": {message}" if message else ""
        code = f" [status {status}]" if status is not None else ""
        super().__init__(f"{operation} failed ({category.value}){code}{detail}")


class ShapeMismatchError(DevvecError):
    """Operands of an assignment have incompatible shapes."""


class LayoutMismatchError(ShapeMismatchError):
    """Vectors do not share the same device list and partition."""
