"""
Load-Balanced Block Packer

Turns per-tile nonzero counts into a packed BlockSparseMatrix:

1. Copy the counts to host memory.
2. Enumerate nonzero tiles as (row_tile, col_tile, count) in row-major order.
3. Sort by count, descending and stable, so heavier tiles come first.
4. Apply the packing order:
   - ROW_GROUPED: a stable re-sort by row tile keeps each row contiguous and
     densest-first within the row; row_block_index is the identity.
   - DENSITY_GLOBAL: storage keeps the global density order and
     row_block_index lists each row's blocks.
5. Prefix-sum the per-row block counts into row_ptrs.
6. Gather every retained tile (zero-padded past rows/cols), narrow to fp16.
7. Move the arrays to the device and validate the structure.

Packing is all-or-nothing: any device failure is fatal and nothing partial is
returned.
"""

import logging
from typing import Optional, Tuple

import numpy as np
import torch
import torch.nn.functional as F

from ..core.config import PackingOrder, TileSparseConfig, get_config
from ..exceptions import DeviceOperation
from ..memory import DeviceBufferManager
from .formats import BlockSparseMatrix, TileCounts
from .validation import validate_block_sparse

logger = logging.getLogger(__name__)


def sort_tiles_by_density(
    host_counts: np.ndarray,
    num_col_tiles: int,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Enumerate nonzero tiles and order them by descending count.

    Ties keep row-major enumeration order.

    Returns:
        (row_tiles, col_tiles, counts) arrays in density order
    """
    positions = np.flatnonzero(host_counts > 0)
    nnz = host_counts[positions].astype(np.int64)
    order = np.argsort(-nnz, kind="stable")
    positions = positions[order]
    return positions // num_col_tiles, positions % num_col_tiles, nnz[order]


def plan_packing(
    row_tiles: np.ndarray,
    col_tiles: np.ndarray,
    num_row_tiles: int,
    order: PackingOrder,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """
    Lay out density-sorted tiles in storage.

    Returns:
        (row_tags, col_indices, row_ptrs, row_block_index) as int32 arrays
    """
    by_row = np.argsort(row_tiles, kind="stable")

    if order == PackingOrder.ROW_GROUPED:
        row_tags = row_tiles[by_row]
        col_indices = col_tiles[by_row]
        row_block_index = np.arange(row_tags.size)
    else:
        row_tags = row_tiles
        col_indices = col_tiles
        row_block_index = by_row

    per_row = np.bincount(row_tags, minlength=num_row_tiles)
    row_ptrs = np.zeros(num_row_tiles + 1, dtype=np.int64)
    np.cumsum(per_row, out=row_ptrs[1:])

    return (
        row_tags.astype(np.int32),
        col_indices.astype(np.int32),
        row_ptrs.astype(np.int32),
        row_block_index.astype(np.int32),
    )


def gather_tiles(
    dense: torch.Tensor,
    row_tags: torch.Tensor,
    col_indices: torch.Tensor,
    block_size: int,
) -> torch.Tensor:
    """Copy the listed tiles out of ``dense`` (zero-padding the overhang), in fp32."""
    rows, cols = dense.shape
    row_tiles = (rows + block_size - 1) // block_size
    col_tiles = (cols + block_size - 1) // block_size

    padded = F.pad(dense, (0, col_tiles * block_size - cols, 0, row_tiles * block_size - rows))
    tiles = padded.reshape(row_tiles, block_size, col_tiles, block_size).permute(0, 2, 1, 3)
    return tiles[row_tags.long(), col_indices.long()].contiguous()


def pack_block_sparse(
    counts: TileCounts,
    config: Optional[TileSparseConfig] = None,
    memory: Optional[DeviceBufferManager] = None,
) -> BlockSparseMatrix:
    """
    Pack the nonzero tiles of an analyzed matrix.

    The dense source referenced by ``counts`` is dropped once its tiles are
    copied out.

    Args:
        counts: Analyzer output, still holding the dense source
        config: Pipeline configuration (global default if None)
        memory: Buffer manager for the packed arrays (created if None)

    Returns:
        BlockSparseMatrix on the dense source's device
    """
    if counts.dense is None:
        raise ValueError("TileCounts carries no dense source; it was already packed")

    config = config or get_config()
    dense = counts.dense
    block_size = counts.block_size
    abort = config.errors.abort_on_device_error
    memory = memory or DeviceBufferManager(dense.device, abort)
    order = config.packing.order

    with memory.stage("pack"):
        host_counts = memory.to_host(counts.counts, purpose="tile counts").numpy()

        row_tiles, col_tiles, _ = sort_tiles_by_density(host_counts, counts.num_col_tiles)
        row_tags, col_indices, row_ptrs, row_block_index = plan_packing(
            row_tiles, col_tiles, counts.num_row_tiles, order
        )
        num_blocks = int(row_tags.size)

        row_tags_d = memory.to_device(torch.from_numpy(row_tags), purpose="row tags")
        col_indices_d = memory.to_device(torch.from_numpy(col_indices), purpose="column indices")
        row_ptrs_d = memory.to_device(torch.from_numpy(row_ptrs), purpose="row pointers")
        row_block_index_d = memory.to_device(
            torch.from_numpy(row_block_index), purpose="row block index"
        )

        with DeviceOperation("gather and narrow tiles", kind="allocate", abort=abort):
            tiles = gather_tiles(dense, row_tags_d, col_indices_d, block_size)
            values = tiles.to(torch.float16)
            # Values the cast rounds to the largest half are not overflow
            overflow = int((torch.isinf(values) & torch.isfinite(tiles)).sum().item())
        del tiles

        if overflow:
            logger.warning(
                "%d elements exceed the float16 range and were narrowed to inf", overflow
            )

        memory.keep(row_tags_d, col_indices_d, row_ptrs_d, row_block_index_d)

    counts.dense = None

    packed = BlockSparseMatrix(
        rows=counts.rows,
        cols=counts.cols,
        num_blocks=num_blocks,
        values=values,
        col_indices=col_indices_d,
        row_tags=row_tags_d,
        row_ptrs=row_ptrs_d,
        row_block_index=row_block_index_d,
        order=order,
        block_size=block_size,
    )

    # Debug configurations always check the packed structure
    if config.packing.validate or config.debug:
        validate_block_sparse(packed)

    logger.info(
        "Packed %dx%d matrix into %d of %d tiles (order=%s)",
        packed.rows, packed.cols, num_blocks,
        packed.num_row_tiles * packed.num_col_tiles, order.value,
    )
    return packed
