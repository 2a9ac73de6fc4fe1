"""
Exception Hierarchy for tilesparse

All errors raised by the analyze → pack → multiply pipeline inherit from
TileSparseError. Accelerator-level failures (allocation, host/device copies,
kernel launches) are fatal: they are reported once through a CRITICAL log
record naming the operation and source location, then raised. Nothing in the
pipeline retries.

Exception Hierarchy:
- TileSparseError: Base for all errors
  - DeviceNotAvailableError: Requested device/runtime not available
  - DeviceOperationError: Fatal accelerator operation failure
    - MemoryAllocationError: Allocation failure
      - OutOfMemoryError: Device out of memory
    - TransferError: Host <-> device copy failure
    - KernelLaunchError: Kernel launch/execution failure
  - BlockStructureError: Packed matrix violates its structural invariants
  - ConfigurationError: Configuration validation errors
"""

import logging
import sys
from typing import Any, Dict, Optional

import torch

logger = logging.getLogger(__name__)


class TileSparseError(Exception):
    """
    Base exception for all tilesparse errors.

    Supports an optional details dictionary for structured error information.
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({details_str})"
        return self.message

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, details={self.details!r})"


class DeviceNotAvailableError(TileSparseError):
    """Raised when a device or runtime is not available."""

    def __init__(self, backend: str, reason: str = ""):
        message = f"{backend} not available"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message, {"backend": backend, "reason": reason})


# =============================================================================
# Fatal device operation errors
# =============================================================================

class DeviceOperationError(TileSparseError):
    """Raised when an accelerator operation fails. Always fatal."""

    def __init__(self, operation: str, location: str, error_message: str):
        self.operation = operation
        self.location = location
        message = f"{operation} failed at {location}: {error_message}"
        super().__init__(message, {
            "operation": operation,
            "location": location,
            "error": error_message,
        })

    def __str__(self) -> str:
        return self.message


class MemoryAllocationError(DeviceOperationError):
    """Raised when device memory allocation fails."""
    pass


class OutOfMemoryError(MemoryAllocationError):
    """Raised when the device runs out of memory."""
    pass


class TransferError(DeviceOperationError):
    """Raised when a host <-> device copy fails."""
    pass


class KernelLaunchError(DeviceOperationError):
    """Raised when a kernel launch fails."""
    pass


# =============================================================================
# Structural and configuration errors
# =============================================================================

class BlockStructureError(TileSparseError):
    """Raised when a packed block-sparse matrix violates its invariants."""

    def __init__(self, invariant: str, error_message: str, **details: Any):
        self.invariant = invariant
        message = f"Block structure invariant '{invariant}' violated: {error_message}"
        super().__init__(message, {"invariant": invariant, **details})


class ConfigurationError(TileSparseError):
    """Raised when configuration validation fails."""

    def __init__(self, parameter: str, value: Any, reason: str):
        message = f"Invalid configuration for '{parameter}': {value} - {reason}"
        super().__init__(message, {"parameter": parameter, "value": value, "reason": reason})


# =============================================================================
# Fatal operation guard
# =============================================================================

_OPERATION_ERRORS = {
    "allocate": MemoryAllocationError,
    "transfer": TransferError,
    "launch": KernelLaunchError,
}


class DeviceOperation:
    """
    Guard an accelerator operation and turn platform failures into fatal errors.

    The source location is captured from the frame that constructs the guard,
    so the diagnostic points at the pipeline code issuing the operation.

    Example:
        with DeviceOperation("copy tile counts to host", kind="transfer"):
            host_counts = counts.cpu()
    """

    def __init__(self, operation: str, kind: str = "allocate", abort: bool = False):
        if kind not in _OPERATION_ERRORS:
            raise ValueError(f"Unknown device operation kind: {kind}")
        self.operation = operation
        self.kind = kind
        self.abort = abort
        frame = sys._getframe(1)
        self.location = f"{frame.f_code.co_filename}:{frame.f_lineno}"

    def __enter__(self) -> "DeviceOperation":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc is None or isinstance(exc, TileSparseError):
            return False
        if not isinstance(exc, (RuntimeError, MemoryError)):
            return False

        if isinstance(exc, (torch.cuda.OutOfMemoryError, MemoryError)):
            error_class = OutOfMemoryError
        else:
            error_class = _OPERATION_ERRORS[self.kind]

        logger.critical(
            "Fatal device error in %s at %s: %s",
            self.operation, self.location, exc,
        )
        if self.abort:
            raise SystemExit(1) from exc
        raise error_class(self.operation, self.location, str(exc)) from exc


__all__ = [
    'TileSparseError',
    'DeviceNotAvailableError',
    'DeviceOperationError',
    'MemoryAllocationError',
    'OutOfMemoryError',
    'TransferError',
    'KernelLaunchError',
    'BlockStructureError',
    'ConfigurationError',
    'DeviceOperation',
]
