"""
Block-sparse multiply kernels.

- mma: fixed-shape tile multiply-accumulate units
- spmm: the scheduled reference multiply kernel
"""

from .mma import (
    TileShape,
    TileMMA,
    MatmulTileMMA,
    LoopTileMMA,
    get_tile_mma,
    available_tile_mmas,
)
from .spmm import ScheduledBlockSparseKernel, SENTINEL

__all__ = [
    'TileShape',
    'TileMMA',
    'MatmulTileMMA',
    'LoopTileMMA',
    'get_tile_mma',
    'available_tile_mmas',
    'ScheduledBlockSparseKernel',
    'SENTINEL',
]
