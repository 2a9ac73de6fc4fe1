"""
Triton Kernels for Block-Sparse Analysis and Multiplication

Two kernels back the CUDA path of the pipeline:

- tile_nnz_kernel: one program per 16x16 tile position, counting nonzero
  elements with masked loads so tile overhang past rows/cols reads as zero.
- block_sparse_spmm_kernel: one program per (work-list slot, output column
  tile). The grid is padded to whole scheduling units of 128 slots; slots past
  num_blocks exit without touching the packed arrays. A slot computes its row
  tile only if it is the first block listed for that row, so every output row
  tile has exactly one writer.

Triton stages operand tiles through shared memory itself; tl.dot lowers to the
Tensor Core MMA instruction.
"""

import torch
import triton
import triton.language as tl


@triton.jit
def tile_nnz_kernel(
    dense_ptr,
    counts_ptr,
    rows,
    cols,
    stride_m,
    stride_n,
    num_col_tiles,
    BLOCK: tl.constexpr,
):
    """Count nonzero elements of one tile of the dense matrix."""
    pid = tl.program_id(0)
    row_tile = pid // num_col_tiles
    col_tile = pid % num_col_tiles

    offs_m = row_tile * BLOCK + tl.arange(0, BLOCK)
    offs_n = col_tile * BLOCK + tl.arange(0, BLOCK)
    mask = (offs_m[:, None] < rows) & (offs_n[None, :] < cols)

    x = tl.load(
        dense_ptr + offs_m[:, None] * stride_m + offs_n[None, :] * stride_n,
        mask=mask,
        other=0.0,
    )
    nonzero = (x != 0.0).to(tl.int32)
    nnz = tl.sum(tl.sum(nonzero, axis=1), axis=0)
    tl.store(counts_ptr + pid, nnz)


@triton.jit
def block_sparse_spmm_kernel(
    values_ptr,
    col_indices_ptr,
    row_tags_ptr,
    row_ptrs_ptr,
    row_block_index_ptr,
    rhs_ptr,
    out_ptr,
    num_blocks,
    rows,
    cols,
    n,
    stride_rk,
    stride_rn,
    stride_om,
    stride_on,
    BLOCK: tl.constexpr,
    BLOCK_N: tl.constexpr,
):
    """Accumulate one output tile of the row tile owned by this work-list slot."""
    slot = tl.program_id(0)
    pid_n = tl.program_id(1)

    # Sentinel slot in the last scheduling unit
    if slot >= num_blocks:
        return

    row_tile = tl.load(row_tags_ptr + slot)
    start = tl.load(row_ptrs_ptr + row_tile)
    end = tl.load(row_ptrs_ptr + row_tile + 1)

    # Only the slot holding the row's first listed block writes the row
    owner = tl.load(row_block_index_ptr + start)
    if owner != slot:
        return

    offs = tl.arange(0, BLOCK)
    offs_n = pid_n * BLOCK_N + tl.arange(0, BLOCK_N)
    n_mask = offs_n[None, :] < n

    acc = tl.zeros((BLOCK, BLOCK_N), dtype=tl.float32)
    for j in range(start, end):
        block = tl.load(row_block_index_ptr + j)
        col_tile = tl.load(col_indices_ptr + block)

        a = tl.load(values_ptr + block * BLOCK * BLOCK + offs[:, None] * BLOCK + offs[None, :])

        offs_k = col_tile * BLOCK + offs
        b = tl.load(
            rhs_ptr + offs_k[:, None] * stride_rk + offs_n[None, :] * stride_rn,
            mask=(offs_k[:, None] < cols) & n_mask,
            other=0.0,
        )

        # Widen to fp32 before the MMA; accumulate in fp32
        acc += tl.dot(a.to(tl.float32), b.to(tl.float32))

    offs_m = row_tile * BLOCK + offs
    tl.store(
        out_ptr + offs_m[:, None] * stride_om + offs_n[None, :] * stride_on,
        acc,
        mask=(offs_m[:, None] < rows) & n_mask,
    )


def triton_tile_nnz(dense: torch.Tensor, counts: torch.Tensor, block_size: int) -> torch.Tensor:
    """Launch tile_nnz_kernel over every tile position of ``dense``."""
    rows, cols = dense.shape
    num_col_tiles = triton.cdiv(cols, block_size)
    grid = (counts.numel(),)
    tile_nnz_kernel[grid](
        dense, counts,
        rows, cols,
        dense.stride(0), dense.stride(1),
        num_col_tiles,
        BLOCK=block_size,
    )
    return counts


def triton_block_sparse_mm(
    values: torch.Tensor,
    col_indices: torch.Tensor,
    row_tags: torch.Tensor,
    row_ptrs: torch.Tensor,
    row_block_index: torch.Tensor,
    rhs: torch.Tensor,
    out: torch.Tensor,
    num_blocks: int,
    rows: int,
    cols: int,
    block_size: int,
    schedule_group_size: int,
) -> torch.Tensor:
    """Launch block_sparse_spmm_kernel; ``out`` must already be zeroed."""
    n = rhs.shape[1]
    if num_blocks == 0 or n == 0:
        return out

    num_units = triton.cdiv(num_blocks, schedule_group_size)
    block_n = block_size
    grid = (num_units * schedule_group_size, triton.cdiv(n, block_n))
    block_sparse_spmm_kernel[grid](
        values, col_indices, row_tags, row_ptrs, row_block_index,
        rhs, out,
        num_blocks, rows, cols, n,
        rhs.stride(0), rhs.stride(1),
        out.stride(0), out.stride(1),
        BLOCK=block_size,
        BLOCK_N=block_n,
    )
    return out
