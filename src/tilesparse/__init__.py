"""
Block-Sparse Conversion and Multiply on Tile MMA Units

Converts a dense float32 matrix into a block-sparse format of 16x16 tiles and
multiplies it by a dense operand on the device's tile multiply-accumulate
units.

Stages:
- Analyze: count nonzeros in every 16x16 tile
- Pack: keep the nonzero tiles, heaviest first, narrowed to float16
- Multiply: scheduled kernel, one writer per output row tile, fp32 accumulation

Backends:
- Triton kernels (CUDA devices)
- Scheduled reference kernel (any device)
"""

__version__ = "0.1.0"

from .core import *
from .exceptions import *
from .memory import DeviceBufferManager, BufferStats
from .sparse import (
    TileCounts,
    BlockSparseMatrix,
    analyze_tile_sparsity,
    pack_block_sparse,
    validate_block_sparse,
)
from .kernels import (
    TileMMA,
    MatmulTileMMA,
    LoopTileMMA,
    get_tile_mma,
    ScheduledBlockSparseKernel,
)
from .pipeline import block_sparse_mm, BlockSparsePipeline, PipelineResult
