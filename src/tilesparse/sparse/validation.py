"""
Structural validation of packed block-sparse matrices.

Checks run on host copies of the index arrays and fail fast with a
BlockStructureError naming the violated invariant.
"""

import logging

import numpy as np

from ..exceptions import BlockStructureError
from .formats import BlockSparseMatrix

logger = logging.getLogger(__name__)


def validate_block_sparse(matrix: BlockSparseMatrix) -> None:
    """
    Validate the invariants of a packed matrix.

    Raises:
        BlockStructureError: If any invariant does not hold
    """
    matrix._check_live()
    num_blocks = matrix.num_blocks
    num_row_tiles = matrix.num_row_tiles
    num_col_tiles = matrix.num_col_tiles
    bs = matrix.block_size

    row_ptrs = matrix.row_ptrs.cpu().numpy().astype(np.int64)
    row_tags = matrix.row_tags.cpu().numpy().astype(np.int64)
    col_indices = matrix.col_indices.cpu().numpy().astype(np.int64)
    row_block_index = matrix.row_block_index.cpu().numpy().astype(np.int64)

    if tuple(matrix.values.shape) != (num_blocks, bs, bs):
        raise BlockStructureError(
            "values_shape", f"expected {(num_blocks, bs, bs)}, got {tuple(matrix.values.shape)}"
        )
    for name, array in (("col_indices", col_indices), ("row_tags", row_tags),
                        ("row_block_index", row_block_index)):
        if array.shape != (num_blocks,):
            raise BlockStructureError(
                f"{name}_length", f"expected {num_blocks} entries, got {array.shape[0]}"
            )

    if row_ptrs.shape != (num_row_tiles + 1,):
        raise BlockStructureError(
            "row_ptrs_length", f"expected {num_row_tiles + 1} entries, got {row_ptrs.shape[0]}"
        )
    if row_ptrs[0] != 0:
        raise BlockStructureError("row_ptrs_start", f"row_ptrs[0] is {row_ptrs[0]}")
    if row_ptrs[-1] != num_blocks:
        raise BlockStructureError(
            "row_ptrs_end", f"row_ptrs[-1] is {row_ptrs[-1]}, num_blocks is {num_blocks}"
        )
    steps = np.diff(row_ptrs)
    if (steps < 0).any():
        row = int(np.argmax(steps < 0))
        raise BlockStructureError("row_ptrs_monotonic", f"decreases after row tile {row}", row_tile=row)

    if num_blocks == 0:
        return

    if row_tags.min() < 0 or row_tags.max() >= num_row_tiles:
        raise BlockStructureError(
            "row_tag_range", f"row tags must lie in [0, {num_row_tiles})"
        )
    if col_indices.min() < 0 or col_indices.max() >= num_col_tiles:
        raise BlockStructureError(
            "col_index_range", f"column indices must lie in [0, {num_col_tiles})"
        )
    if not np.array_equal(np.sort(row_block_index), np.arange(num_blocks)):
        raise BlockStructureError(
            "row_block_index_permutation", "row_block_index must list every block exactly once"
        )

    # Every entry in [row_ptrs[r], row_ptrs[r+1]) must carry row tag r
    expected = np.repeat(np.arange(num_row_tiles), steps)
    actual = row_tags[row_block_index]
    mismatch = np.flatnonzero(actual != expected)
    if mismatch.size:
        j = int(mismatch[0])
        raise BlockStructureError(
            "row_segment",
            f"entry {j} lies in the range of row tile {expected[j]} but names a block "
            f"tagged {actual[j]}",
            row_tile=int(expected[j]),
        )

    positions = row_tags * num_col_tiles + col_indices
    if np.unique(positions).size != num_blocks:
        raise BlockStructureError("unique_tiles", "a tile position is stored more than once")

    logger.debug("Validated block structure: %d blocks over %d row tiles", num_blocks, num_row_tiles)
