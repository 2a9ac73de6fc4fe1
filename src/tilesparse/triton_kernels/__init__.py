"""
Triton kernels for the CUDA path of the block-sparse pipeline.
"""

from .block_sparse_ops import (
    tile_nnz_kernel,
    block_sparse_spmm_kernel,
    triton_tile_nnz,
    triton_block_sparse_mm,
)

__all__ = [
    'tile_nnz_kernel',
    'block_sparse_spmm_kernel',
    'triton_tile_nnz',
    'triton_block_sparse_mm',
]
