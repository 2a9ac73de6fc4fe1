"""
Block-Sparse Pipeline

Entry point for the multiply stage and the three-stage pipeline:

    dense --analyze--> TileCounts --pack--> BlockSparseMatrix --multiply--> output

Each stage owns its device buffers through a DeviceBufferManager scope;
only the stage outputs outlive it.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import torch

from .core.config import ExecutionBackend, TileSparseConfig, get_config
from .core.hardware_detector import select_backend
from .exceptions import DeviceOperation
from .kernels import ScheduledBlockSparseKernel
from .memory import DeviceBufferManager
from .monitoring import correlation_context, get_logger, log_stage
from .sparse import BlockSparseMatrix, TileCounts, analyze_tile_sparsity, pack_block_sparse
from .triton_kernels import triton_block_sparse_mm

logger = logging.getLogger(__name__)


def _check_operands(
    packed: BlockSparseMatrix,
    rhs: torch.Tensor,
    n: Optional[int],
    out: Optional[torch.Tensor],
) -> int:
    packed._check_live()
    if rhs.dim() != 2:
        raise ValueError(f"Right-hand operand must be 2-D, got shape {tuple(rhs.shape)}")
    if rhs.dtype != torch.float16:
        raise ValueError(f"Right-hand operand must be float16, got {rhs.dtype}")
    if rhs.shape[0] != packed.cols:
        raise ValueError(
            f"Inner dimensions differ: matrix has {packed.cols} columns, "
            f"operand has {rhs.shape[0]} rows"
        )
    if rhs.device != packed.device:
        raise ValueError(f"Operand on {rhs.device}, packed matrix on {packed.device}")

    if n is None:
        n = rhs.shape[1]
    elif n != rhs.shape[1]:
        raise ValueError(f"Output width {n} does not match operand width {rhs.shape[1]}")

    if out is not None:
        if out.dtype != torch.float32:
            raise ValueError(f"Output must be float32, got {out.dtype}")
        if tuple(out.shape) != (packed.rows, n):
            raise ValueError(f"Output must have shape {(packed.rows, n)}, got {tuple(out.shape)}")
        if out.device != packed.device:
            raise ValueError(f"Output on {out.device}, packed matrix on {packed.device}")
    return n


def block_sparse_mm(
    packed: BlockSparseMatrix,
    rhs: torch.Tensor,
    n: Optional[int] = None,
    out: Optional[torch.Tensor] = None,
    config: Optional[TileSparseConfig] = None,
    memory: Optional[DeviceBufferManager] = None,
) -> torch.Tensor:
    """
    Multiply a packed block-sparse matrix by a dense operand.

    Args:
        packed: Packed matrix of shape (rows, cols)
        rhs: float16 operand of shape (cols, n)
        n: Output width; defaults to the operand width
        out: Optional float32 (rows, n) output; zeroed before accumulation
        config: Pipeline configuration (global default if None)
        memory: Buffer manager for the output and scratch buffers

    Returns:
        float32 tensor of shape (rows, n)
    """
    n = _check_operands(packed, rhs, n, out)
    config = config or get_config()
    abort = config.errors.abort_on_device_error
    memory = memory or DeviceBufferManager(packed.device, abort)

    if out is None:
        out = memory.allocate((packed.rows, n), dtype=torch.float32, purpose="output")
    else:
        with DeviceOperation("zero output", kind="allocate", abort=abort):
            out.zero_()

    if packed.num_blocks == 0 or n == 0 or packed.rows == 0:
        return out

    backend = select_backend(packed.device, config.kernel)
    if backend == ExecutionBackend.TRITON:
        with DeviceOperation("block_sparse_spmm_kernel", kind="launch", abort=abort):
            triton_block_sparse_mm(
                packed.values, packed.col_indices, packed.row_tags,
                packed.row_ptrs, packed.row_block_index,
                rhs, out,
                packed.num_blocks, packed.rows, packed.cols,
                packed.block_size, config.kernel.schedule_group_size,
            )
    else:
        kernel = ScheduledBlockSparseKernel(config.kernel, memory)
        with DeviceOperation("scheduled reference multiply", kind="launch", abort=abort):
            kernel(packed, rhs, out)

    logger.debug(
        "Multiplied %dx%d (%d blocks) by %dx%d on %s",
        packed.rows, packed.cols, packed.num_blocks, rhs.shape[0], n, backend.value,
    )
    return out


@dataclass
class PipelineResult:
    """Outputs and timings of one pipeline run."""
    output: torch.Tensor
    packed: BlockSparseMatrix
    timings_ms: Dict[str, float] = field(default_factory=dict)

    @property
    def total_ms(self) -> float:
        return sum(self.timings_ms.values())


class BlockSparsePipeline:
    """
    Runs analyze -> pack -> multiply with stage-scoped buffers and timing.

    Example:
        pipeline = BlockSparsePipeline()
        packed = pipeline.prepare(weights)
        out = pipeline.multiply(packed, activations)
    """

    def __init__(self, config: Optional[TileSparseConfig] = None):
        self.config = config or get_config()
        self.memory = DeviceBufferManager(
            self.config.device, self.config.errors.abort_on_device_error
        )
        self.logger = get_logger(__name__)
        self.timings_ms: Dict[str, float] = {}

    def analyze(self, dense: torch.Tensor) -> TileCounts:
        """Count nonzeros per tile."""
        dense = self._place(dense)
        with log_stage(self.logger, "analyze", device=dense.device,
                       rows=dense.shape[0], cols=dense.shape[1]) as timer:
            counts = analyze_tile_sparsity(dense, self.config, self.memory)
            timer.context["nonzero_tiles"] = counts.num_nonzero_tiles
        self.timings_ms["analyze"] = timer.duration_ms
        return counts

    def pack(self, counts: TileCounts) -> BlockSparseMatrix:
        """Pack the nonzero tiles; the counts buffer is not needed afterwards."""
        with log_stage(self.logger, "pack", device=counts.counts.device,
                       order=self.config.packing.order.value) as timer:
            packed = pack_block_sparse(counts, self.config, self.memory)
            timer.context.update(num_blocks=packed.num_blocks, density=round(packed.density, 4))
        self.timings_ms["pack"] = timer.duration_ms
        return packed

    def prepare(self, dense: torch.Tensor) -> BlockSparseMatrix:
        """Analyze and pack ``dense``."""
        with self.memory.stage("prepare"):
            counts = self.analyze(dense)
            return self.pack(counts)

    def multiply(
        self,
        packed: BlockSparseMatrix,
        rhs: torch.Tensor,
        out: Optional[torch.Tensor] = None,
    ) -> torch.Tensor:
        """Multiply a packed matrix by ``rhs``."""
        rhs = self._place(rhs)
        with log_stage(self.logger, "multiply", device=packed.device,
                       num_blocks=packed.num_blocks, n=rhs.shape[1]) as timer:
            with self.memory.stage("multiply"):
                result = block_sparse_mm(packed, rhs, out=out, config=self.config, memory=self.memory)
                self.memory.keep(result)
        self.timings_ms["multiply"] = timer.duration_ms
        return result

    def run(self, dense: torch.Tensor, rhs: torch.Tensor) -> PipelineResult:
        """Run all three stages under one correlation ID."""
        self.timings_ms = {}
        with correlation_context() as ctx:
            self.logger.info("Starting pipeline run %s", ctx.correlation_id)
            packed = self.prepare(dense)
            output = self.multiply(packed, rhs)
        return PipelineResult(output=output, packed=packed, timings_ms=dict(self.timings_ms))

    def memory_stats(self) -> Dict[str, Any]:
        return self.memory.get_stats().to_dict()

    def _place(self, tensor: torch.Tensor) -> torch.Tensor:
        if tensor.device == self.config.device:
            return tensor
        return self.memory.to_device(tensor, purpose="pipeline input")
