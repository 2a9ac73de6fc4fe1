"""
Block-sparse analysis and packing.

- analyzer: per-tile nonzero counts of a dense matrix
- packer: load-balanced packing of nonzero tiles
- validation: structural checks on packed matrices
"""

from .formats import TileCounts, BlockSparseMatrix, num_tiles
from .analyzer import analyze_tile_sparsity
from .packer import pack_block_sparse, sort_tiles_by_density, plan_packing, gather_tiles
from .validation import validate_block_sparse

__all__ = [
    'TileCounts',
    'BlockSparseMatrix',
    'num_tiles',
    'analyze_tile_sparsity',
    'pack_block_sparse',
    'sort_tiles_by_density',
    'plan_packing',
    'gather_tiles',
    'validate_block_sparse',
]
