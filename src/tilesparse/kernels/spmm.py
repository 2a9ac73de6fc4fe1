"""
Scheduled Block-Sparse Multiply (reference kernel)

Runs the same schedule as the Triton kernel, one scheduling unit at a time,
with torch ops standing in for the device's tile unit:

1. The packed work list is split into units of ``schedule_group_size`` slots.
2. Each unit stages its slice of ``row_tags`` in a sentinel-filled scratch
   table; the lanes of the unit copy it cooperatively.
3. Each lane walks the slots ``lane, lane + lanes, ...``. A slot computes its
   row tile only if it is the first block listed for that row, so each output
   row tile is written once.
4. The owning lane accumulates the row's blocks against the matching tiles of
   the right-hand operand, one 16-column output tile at a time, and stores
   the result clipped to the output bounds.
"""

import logging
from typing import List, Optional

import torch
import torch.nn.functional as F

from ..core.config import KernelConfig
from ..exceptions import BlockStructureError
from ..memory import DeviceBufferManager
from ..sparse.formats import BlockSparseMatrix, num_tiles
from .mma import TileMMA, TileShape, get_tile_mma

logger = logging.getLogger(__name__)

SENTINEL = -1


class ScheduledBlockSparseKernel:
    """
    Reference implementation of the scheduled block-sparse multiply.

    Args:
        config: Kernel configuration (group size, lanes, MMA implementation)
        memory: Buffer manager providing per-unit scratch memory
        tile_mma: MMA unit to use instead of ``config.tile_mma``
    """

    def __init__(
        self,
        config: KernelConfig,
        memory: DeviceBufferManager,
        tile_mma: Optional[TileMMA] = None,
    ):
        self.config = config
        self.memory = memory
        bs = config.block_size
        self.mma = tile_mma or get_tile_mma(config.tile_mma, TileShape(bs, bs, bs))
        self.stats = {'units': 0, 'owned_rows': 0, 'mma_calls': 0}

    def __call__(self, packed: BlockSparseMatrix, rhs: torch.Tensor, out: torch.Tensor) -> torch.Tensor:
        """Accumulate ``packed @ rhs`` into the zeroed ``out``."""
        self.stats = {'units': 0, 'owned_rows': 0, 'mma_calls': 0}
        num_blocks = packed.num_blocks
        n = out.shape[1]
        if num_blocks == 0 or n == 0:
            return out

        group = self.config.schedule_group_size
        bs = packed.block_size

        # Index arrays are read on the host by the lane loops
        row_ptrs = self.memory.to_host(packed.row_ptrs, purpose="row pointers").tolist()
        row_block_index = self.memory.to_host(
            packed.row_block_index, purpose="row block index"
        ).tolist()
        col_indices = self.memory.to_host(packed.col_indices, purpose="column indices").tolist()

        # Zero-pad the operand to whole tiles; the padding never reaches ``out``
        padded_rows = num_tiles(rhs.shape[0], bs) * bs
        padded_cols = num_tiles(n, bs) * bs
        rhs_tiles = F.pad(rhs, (0, padded_cols - n, 0, padded_rows - rhs.shape[0]))

        num_units = (num_blocks + group - 1) // group
        for unit in range(num_units):
            sched = self._load_schedule(packed, unit)
            base = unit * group
            for lane in range(self.config.lanes_per_unit):
                for i in range(lane, group, self.config.lanes_per_unit):
                    row_tile = sched[i]
                    if row_tile == SENTINEL:
                        continue
                    if not 0 <= row_tile < packed.num_row_tiles:
                        raise BlockStructureError(
                            "row_tag_range",
                            f"work-list slot {base + i} names row tile {row_tile} "
                            f"outside [0, {packed.num_row_tiles})",
                            slot=base + i,
                        )
                    start, end = row_ptrs[row_tile], row_ptrs[row_tile + 1]
                    if row_block_index[start] != base + i:
                        continue
                    self._compute_row(
                        packed, rhs_tiles, out, row_tile,
                        row_block_index[start:end], col_indices,
                    )
            self.stats['units'] += 1

        logger.debug(
            "Reference multiply: %d units, %d rows owned, %d MMA calls",
            self.stats['units'], self.stats['owned_rows'], self.stats['mma_calls'],
        )
        return out

    def _load_schedule(self, packed: BlockSparseMatrix, unit: int) -> List[int]:
        """Stage one unit's slice of the work list in a sentinel-filled table."""
        group = self.config.schedule_group_size
        lanes = self.config.lanes_per_unit
        base = unit * group
        count = min(group, packed.num_blocks - base)

        with self.memory.scratch((group,), dtype=torch.int32, fill_value=SENTINEL,
                                 purpose="sched_table") as table:
            for lane in range(lanes):
                slots = torch.arange(lane, group, lanes, device=table.device)
                # Slots past the end of the work list keep the sentinel
                slots = slots[slots < count]
                table[slots] = packed.row_tags[base + slots]
            # Barrier: every lane's copy lands before any lane reads the table
            return self.memory.to_host(table, purpose="sched_table").tolist()

    def _compute_row(
        self,
        packed: BlockSparseMatrix,
        rhs_tiles: torch.Tensor,
        out: torch.Tensor,
        row_tile: int,
        blocks: List[int],
        col_indices: List[int],
    ) -> None:
        bs = packed.block_size
        n = out.shape[1]
        row0 = row_tile * bs
        height = min(bs, packed.rows - row0)

        # Widen each block once; it is reused for every output column tile
        staged = [(self.mma.stage(packed.values[b]), col_indices[b]) for b in blocks]

        for col0 in range(0, n, bs):
            width = min(bs, n - col0)
            acc = torch.zeros(bs, bs, dtype=self.mma.accum_dtype, device=out.device)
            for a, col_tile in staged:
                k0 = col_tile * bs
                b = self.mma.stage(rhs_tiles[k0:k0 + bs, col0:col0 + bs])
                acc = self.mma.mma_sync(acc, a, b)
                self.stats['mma_calls'] += 1
            out[row0:row0 + height, col0:col0 + width] = acc[:height, :width]

        self.stats['owned_rows'] += 1
