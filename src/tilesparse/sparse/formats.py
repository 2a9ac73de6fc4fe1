"""
Block-sparse data structures.

TileCounts is the analyzer's output and the packer's input. BlockSparseMatrix
is the packed, immutable form consumed by the multiply kernel.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import torch

from ..core.config import BLOCK_SIZE, PackingOrder


def num_tiles(extent: int, block_size: int = BLOCK_SIZE) -> int:
    """Number of tiles covering ``extent`` elements (the last one may overhang)."""
    return (extent + block_size - 1) // block_size


@dataclass
class TileCounts:
    """
    Per-tile nonzero counts for a dense matrix.

    ``counts`` is flat and row-major over tile positions. ``dense`` is a
    borrowed reference handed to the packer, which drops it once the tiles
    are copied out.
    """
    counts: torch.Tensor
    rows: int
    cols: int
    dense: Optional[torch.Tensor] = field(default=None, repr=False)
    block_size: int = BLOCK_SIZE

    @property
    def num_row_tiles(self) -> int:
        return num_tiles(self.rows, self.block_size)

    @property
    def num_col_tiles(self) -> int:
        return num_tiles(self.cols, self.block_size)

    @property
    def num_nonzero_tiles(self) -> int:
        return int((self.counts > 0).sum().item())

    def as_grid(self) -> torch.Tensor:
        """Counts shaped ``(num_row_tiles, num_col_tiles)``."""
        return self.counts.view(self.num_row_tiles, self.num_col_tiles)


@dataclass
class BlockSparseMatrix:
    """
    Packed block-sparse matrix.

    Tiles are stored in packing order. The range
    ``row_ptrs[r] .. row_ptrs[r + 1]`` of ``row_block_index`` lists the stored
    blocks of row tile ``r``; with row-grouped packing ``row_block_index`` is
    the identity.
    """
    rows: int
    cols: int
    num_blocks: int
    values: torch.Tensor           # (num_blocks, 16, 16) float16
    col_indices: torch.Tensor      # (num_blocks,) int32
    row_tags: torch.Tensor         # (num_blocks,) int32
    row_ptrs: torch.Tensor         # (num_row_tiles + 1,) int32
    row_block_index: torch.Tensor  # (num_blocks,) int32
    order: PackingOrder = PackingOrder.ROW_GROUPED
    block_size: int = BLOCK_SIZE
    _released: bool = field(default=False, repr=False)

    @property
    def num_row_tiles(self) -> int:
        return num_tiles(self.rows, self.block_size)

    @property
    def num_col_tiles(self) -> int:
        return num_tiles(self.cols, self.block_size)

    @property
    def shape(self) -> tuple:
        return (self.rows, self.cols)

    @property
    def device(self) -> torch.device:
        return self.values.device

    @property
    def density(self) -> float:
        """Fraction of tile positions that are stored."""
        total = self.num_row_tiles * self.num_col_tiles
        return self.num_blocks / total if total else 0.0

    @property
    def released(self) -> bool:
        return self._released

    @property
    def nbytes(self) -> int:
        return sum(
            t.element_size() * t.numel()
            for t in (self.values, self.col_indices, self.row_tags,
                      self.row_ptrs, self.row_block_index)
        )

    def to_dense(self) -> torch.Tensor:
        """Expand back to a dense float32 matrix (narrowed values widened)."""
        self._check_live()
        bs = self.block_size
        dense = torch.zeros(
            self.num_row_tiles * bs, self.num_col_tiles * bs,
            dtype=torch.float32, device=self.device,
        )
        if self.num_blocks:
            tiles = dense.view(self.num_row_tiles, bs, self.num_col_tiles, bs).permute(0, 2, 1, 3)
            tiles[self.row_tags.long(), self.col_indices.long()] = self.values.float()
        return dense[:self.rows, :self.cols]

    def release(self) -> None:
        """Drop the device buffers. The matrix is unusable afterwards."""
        if self._released:
            return
        empty = torch.empty(0)
        self.values = empty
        self.col_indices = empty
        self.row_tags = empty
        self.row_ptrs = empty
        self.row_block_index = empty
        self._released = True

    def _check_live(self) -> None:
        if self._released:
            raise RuntimeError("BlockSparseMatrix has been released")

    def __enter__(self) -> "BlockSparseMatrix":
        return self

    def __exit__(self, *args: Any) -> None:
        self.release()

    def summary(self) -> Dict[str, Any]:
        """Shape and occupancy summary for logs and reports."""
        return {
            'rows': self.rows,
            'cols': self.cols,
            'num_blocks': self.num_blocks,
            'num_row_tiles': self.num_row_tiles,
            'num_col_tiles': self.num_col_tiles,
            'density': round(self.density, 4),
            'order': self.order.value,
            'nbytes': self.nbytes,
        }
