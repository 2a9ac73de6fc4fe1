"""
Scoped Device Buffer Management

Every buffer the pipeline places on the accelerator goes through a
DeviceBufferManager. Allocations and host <-> device copies run inside a
DeviceOperation guard, so platform failures surface as fatal typed errors
carrying the operation name and source location.

Buffers are owned by scopes: ``stage()`` releases everything allocated inside
it unless the buffer is handed out with ``keep()``; ``scratch()`` yields a
short-lived buffer (for example a scheduling unit's work list) that is
released on exit.
"""

import logging
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Deque, Dict, Iterator, List, Optional, Tuple
import time

import torch

from ..exceptions import DeviceOperation

logger = logging.getLogger(__name__)

# Allocation records kept for diagnostics; older ones are dropped
DEFAULT_HISTORY_LIMIT = 1024


@dataclass
class BufferAllocationInfo:
    """Information about one tracked allocation."""
    shape: Tuple[int, ...]
    dtype: torch.dtype
    size_bytes: int
    purpose: str = "unknown"
    stage: Optional[str] = None
    timestamp: float = field(default_factory=time.time)


@dataclass
class BufferStats:
    """Allocation statistics for a buffer manager."""
    live_bytes: int
    peak_bytes: int
    num_allocations: int
    num_transfers: int
    num_releases: int

    @property
    def live_mb(self) -> float:
        return self.live_bytes / (1024 ** 2)

    @property
    def peak_mb(self) -> float:
        return self.peak_bytes / (1024 ** 2)

    def to_dict(self) -> Dict[str, float]:
        """Convert to dictionary."""
        return {
            'live_mb': self.live_mb,
            'peak_mb': self.peak_mb,
            'num_allocations': self.num_allocations,
            'num_transfers': self.num_transfers,
            'num_releases': self.num_releases,
        }


class DeviceBufferManager:
    """
    Tracks device buffers and scopes their lifetime to pipeline stages.

    Args:
        device: Device buffers are placed on
        abort_on_error: Exit the process on fatal device errors instead of raising
        history_limit: Number of allocation records kept in ``allocation_history``
    """

    def __init__(
        self,
        device: torch.device,
        abort_on_error: bool = False,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
    ):
        self.device = torch.device(device)
        self.abort_on_error = abort_on_error

        # id(tensor) -> (tensor, info) for buffers owned by an open scope
        self._live: Dict[int, Tuple[torch.Tensor, BufferAllocationInfo]] = {}
        self._stage_stack: List[str] = []
        self._history: Deque[BufferAllocationInfo] = deque(maxlen=history_limit)

        self._live_bytes = 0
        self._peak_bytes = 0
        self._stats = {
            'allocations': 0,
            'transfers': 0,
            'releases': 0,
        }

        logger.debug("DeviceBufferManager initialized: device=%s", self.device)

    # =========================================================================
    # Allocation and transfer
    # =========================================================================

    def allocate(
        self,
        shape: Tuple[int, ...],
        dtype: torch.dtype = torch.float32,
        fill_value: Optional[float] = 0,
        purpose: str = "unknown",
    ) -> torch.Tensor:
        """
        Allocate a device buffer.

        Args:
            shape: Buffer shape
            dtype: Element type
            fill_value: Initial value, or None to leave the buffer uninitialized
            purpose: Purpose description for tracking and diagnostics

        Returns:
            Allocated tensor on the managed device
        """
        with DeviceOperation(f"allocate {purpose}", kind="allocate", abort=self.abort_on_error):
            if fill_value is None:
                tensor = torch.empty(shape, dtype=dtype, device=self.device)
            else:
                tensor = torch.full(shape, fill_value, dtype=dtype, device=self.device)

        self._stats['allocations'] += 1
        self._track(tensor, purpose)
        return tensor

    def to_device(self, tensor: torch.Tensor, purpose: str = "unknown") -> torch.Tensor:
        """Copy a host tensor to the managed device."""
        with DeviceOperation(f"copy {purpose} to device", kind="transfer", abort=self.abort_on_error):
            moved = tensor.to(self.device).contiguous()

        self._stats['transfers'] += 1
        if moved.device.type != "cpu":
            self._track(moved, purpose)
        return moved

    def to_host(self, tensor: torch.Tensor, purpose: str = "unknown") -> torch.Tensor:
        """Copy a device tensor to host memory."""
        with DeviceOperation(f"copy {purpose} to host", kind="transfer", abort=self.abort_on_error):
            host = tensor.detach().to("cpu")

        self._stats['transfers'] += 1
        return host

    # =========================================================================
    # Scopes
    # =========================================================================

    @contextmanager
    def stage(self, name: str) -> Iterator["DeviceBufferManager"]:
        """
        Scope buffers to a pipeline stage.

        Buffers allocated inside the scope are released on exit unless they
        were handed over with ``keep()``.
        """
        self._stage_stack.append(name)
        before = set(self._live)
        try:
            yield self
        finally:
            self._stage_stack.pop()
            for key in [k for k in self._live if k not in before]:
                self._release_key(key)

    @contextmanager
    def scratch(
        self,
        shape: Tuple[int, ...],
        dtype: torch.dtype = torch.int32,
        fill_value: Optional[float] = 0,
        purpose: str = "scratch",
    ) -> Iterator[torch.Tensor]:
        """Yield a scratch buffer released when the scope exits."""
        buffer = self.allocate(shape, dtype=dtype, fill_value=fill_value, purpose=purpose)
        try:
            yield buffer
        finally:
            self.release(buffer)

    def keep(self, *tensors: torch.Tensor) -> None:
        """Hand buffers over to the caller so no stage scope releases them."""
        for tensor in tensors:
            entry = self._live.pop(id(tensor), None)
            if entry is not None:
                self._live_bytes -= entry[1].size_bytes

    def release(self, tensor: torch.Tensor) -> None:
        """Release a tracked buffer early."""
        self._release_key(id(tensor))

    # =========================================================================
    # Statistics
    # =========================================================================

    def get_stats(self) -> BufferStats:
        """Get current allocation statistics."""
        return BufferStats(
            live_bytes=self._live_bytes,
            peak_bytes=self._peak_bytes,
            num_allocations=self._stats['allocations'],
            num_transfers=self._stats['transfers'],
            num_releases=self._stats['releases'],
        )

    @property
    def live_buffers(self) -> int:
        """Number of buffers currently owned by open scopes."""
        return len(self._live)

    @property
    def allocation_history(self) -> List[BufferAllocationInfo]:
        return list(self._history)

    def clear_history(self) -> None:
        """Drop the allocation records; counters and live buffers are kept."""
        self._history.clear()

    def _track(self, tensor: torch.Tensor, purpose: str) -> None:
        info = BufferAllocationInfo(
            shape=tuple(tensor.shape),
            dtype=tensor.dtype,
            size_bytes=tensor.element_size() * tensor.numel(),
            purpose=purpose,
            stage=self._stage_stack[-1] if self._stage_stack else None,
        )
        self._history.append(info)
        if not self._stage_stack:
            # Buffers outside any stage belong to the caller right away
            return

        self._live[id(tensor)] = (tensor, info)
        self._live_bytes += info.size_bytes
        self._peak_bytes = max(self._peak_bytes, self._live_bytes)

    def _release_key(self, key: int) -> None:
        entry = self._live.pop(key, None)
        if entry is None:
            return
        self._live_bytes -= entry[1].size_bytes
        self._stats['releases'] += 1
        logger.debug(
            "Released %s buffer %s (%d bytes)",
            entry[1].purpose, entry[1].shape, entry[1].size_bytes,
        )
