"""
Block Sparsity Analyzer

Counts nonzero elements per 16x16 tile of a dense float32 matrix. Every tile
position is an independent unit of work: on CUDA one Triton program per tile,
elsewhere one vectorized reduction over a zero-padded tile view. Overhang past
rows/cols counts as zero.
"""

import logging
from typing import Optional

import torch
import torch.nn.functional as F

from ..core.config import ExecutionBackend, TileSparseConfig, get_config
from ..core.hardware_detector import select_backend
from ..exceptions import DeviceOperation
from ..memory import DeviceBufferManager
from ..triton_kernels import triton_tile_nnz
from .formats import TileCounts, num_tiles

logger = logging.getLogger(__name__)


def _check_dense(dense: torch.Tensor) -> None:
    if dense.dim() != 2:
        raise ValueError(f"Dense matrix must be 2-D, got shape {tuple(dense.shape)}")
    if dense.dtype != torch.float32:
        raise ValueError(f"Dense matrix must be float32, got {dense.dtype}")


def _reference_tile_nnz(dense: torch.Tensor, counts: torch.Tensor, block_size: int) -> torch.Tensor:
    rows, cols = dense.shape
    row_tiles = num_tiles(rows, block_size)
    col_tiles = num_tiles(cols, block_size)

    padded = F.pad(dense, (0, col_tiles * block_size - cols, 0, row_tiles * block_size - rows))
    tiles = padded.reshape(row_tiles, block_size, col_tiles, block_size)
    per_tile = (tiles != 0).sum(dim=(1, 3), dtype=torch.int32)
    counts.copy_(per_tile.reshape(-1))
    return counts


def analyze_tile_sparsity(
    dense: torch.Tensor,
    config: Optional[TileSparseConfig] = None,
    memory: Optional[DeviceBufferManager] = None,
) -> TileCounts:
    """
    Count nonzero elements in every tile of ``dense``.

    Args:
        dense: Row-major float32 matrix of shape (rows, cols)
        config: Pipeline configuration (global default if None)
        memory: Buffer manager owning the count buffer (created if None)

    Returns:
        TileCounts with one int32 count per tile position, row-major
    """
    _check_dense(dense)
    config = config or get_config()
    block_size = config.kernel.block_size
    memory = memory or DeviceBufferManager(dense.device, config.errors.abort_on_device_error)

    rows, cols = dense.shape
    total_tiles = num_tiles(rows, block_size) * num_tiles(cols, block_size)
    counts = memory.allocate((total_tiles,), dtype=torch.int32, purpose="tile counts")

    if total_tiles:
        backend = select_backend(dense.device, config.kernel)
        if backend == ExecutionBackend.TRITON:
            with DeviceOperation("tile_nnz_kernel", kind="launch",
                                 abort=config.errors.abort_on_device_error):
                triton_tile_nnz(dense.contiguous(), counts, block_size)
        else:
            _reference_tile_nnz(dense, counts, block_size)

    logger.debug(
        "Analyzed %dx%d matrix: %d tile positions",
        rows, cols, total_tiles,
    )
    return TileCounts(counts=counts, rows=rows, cols=cols, dense=dense, block_size=block_size)
