"""
Device memory management for tilesparse.
"""

from .buffer_manager import (
    BufferAllocationInfo,
    BufferStats,
    DeviceBufferManager,
)

__all__ = [
    'BufferAllocationInfo',
    'BufferStats',
    'DeviceBufferManager',
]
