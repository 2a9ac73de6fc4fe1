"""
Tests for block_sparse_mm and the three-stage pipeline.
"""

import logging

import pytest
import torch

from tilesparse import (
    BlockSparsePipeline,
    PipelineResult,
    analyze_tile_sparsity,
    block_sparse_mm,
    pack_block_sparse,
)
from tilesparse.core.config import ExecutionBackend, KernelConfig, TileSparseConfig
from tilesparse.exceptions import DeviceNotAvailableError

from conftest import dense_reference, make_rhs, make_tile_sparse, random_tile_sparse


def pack(dense, config):
    return pack_block_sparse(analyze_tile_sparsity(dense, config), config)


class TestBlockSparseMM:
    """Multiply entry point."""

    def test_all_ones_identity_operand(self, all_ones_32, reference_config):
        packed = pack(all_ones_32, reference_config)
        out = block_sparse_mm(packed, torch.eye(32, dtype=torch.float16), config=reference_config)

        assert out.dtype == torch.float32
        assert torch.equal(out, all_ones_32)

    def test_structural_equivalence(self, packing_order_config, tolerance):
        dense = random_tile_sparse(112, 72, tile_density=0.4, seed=17)
        rhs = make_rhs(72, 48)
        packed = pack(dense, packing_order_config)

        out = block_sparse_mm(packed, rhs, config=packing_order_config)

        torch.testing.assert_close(out, dense_reference(dense, rhs), **tolerance)

    def test_loop_tile_mma(self, loop_config, tolerance):
        dense = random_tile_sparse(48, 48, tile_density=0.5, seed=23)
        rhs = make_rhs(48, 16)
        out = block_sparse_mm(pack(dense, loop_config), rhs, config=loop_config)
        torch.testing.assert_close(out, dense_reference(dense, rhs), **tolerance)

    def test_empty_matrix_gives_zero_output(self, reference_config):
        packed = pack(torch.zeros(33, 40), reference_config)
        out = block_sparse_mm(packed, make_rhs(40, 12), config=reference_config)

        assert out.shape == (33, 12)
        assert torch.all(out == 0)

    def test_caller_output_is_zeroed(self, reference_config, tolerance):
        dense = make_tile_sparse(32, 32, [(0, 1)])
        rhs = make_rhs(32, 16)
        packed = pack(dense, reference_config)
        out = torch.full((32, 16), float("nan"))

        result = block_sparse_mm(packed, rhs, out=out, config=reference_config)

        assert result is out
        # Row tile 1 holds no blocks and must still read as zero
        assert torch.all(out[16:] == 0)
        torch.testing.assert_close(out, dense_reference(dense, rhs), **tolerance)

    def test_repeated_multiply_into_same_output(self, reference_config):
        dense = random_tile_sparse(32, 32, tile_density=1.0, seed=2)
        rhs = make_rhs(32, 16)
        packed = pack(dense, reference_config)
        out = torch.empty(32, 16)

        first = block_sparse_mm(packed, rhs, out=out, config=reference_config).clone()
        second = block_sparse_mm(packed, rhs, out=out, config=reference_config)

        assert torch.equal(first, second)

    def test_explicit_n(self, reference_config):
        packed = pack(torch.ones(16, 16), reference_config)
        out = block_sparse_mm(packed, make_rhs(16, 8), n=8, config=reference_config)
        assert out.shape == (16, 8)

    def test_uses_global_config(self, all_ones_32):
        packed = pack_block_sparse(analyze_tile_sparsity(all_ones_32))
        out = block_sparse_mm(packed, torch.eye(32, dtype=torch.float16))
        assert torch.equal(out, all_ones_32)

    @pytest.mark.parametrize("rhs,match", [
        (torch.zeros(32, 8, dtype=torch.float32), "float16"),
        (torch.zeros(16, 8, dtype=torch.float16), "Inner dimensions"),
        (torch.zeros(32, dtype=torch.float16), "2-D"),
    ])
    def test_rejects_bad_operand(self, rhs, match, all_ones_32, reference_config):
        packed = pack(all_ones_32, reference_config)
        with pytest.raises(ValueError, match=match):
            block_sparse_mm(packed, rhs, config=reference_config)

    def test_rejects_mismatched_n(self, all_ones_32, reference_config):
        packed = pack(all_ones_32, reference_config)
        with pytest.raises(ValueError, match="Output width"):
            block_sparse_mm(packed, make_rhs(32, 8), n=9, config=reference_config)

    @pytest.mark.parametrize("out,match", [
        (torch.zeros(32, 8, dtype=torch.float16), "float32"),
        (torch.zeros(31, 8), "shape"),
    ])
    def test_rejects_bad_output(self, out, match, all_ones_32, reference_config):
        packed = pack(all_ones_32, reference_config)
        with pytest.raises(ValueError, match=match):
            block_sparse_mm(packed, make_rhs(32, 8), out=out, config=reference_config)

    def test_released_matrix(self, all_ones_32, reference_config):
        packed = pack(all_ones_32, reference_config)
        packed.release()
        with pytest.raises(RuntimeError, match="released"):
            block_sparse_mm(packed, make_rhs(32, 8), config=reference_config)

    def test_triton_backend_requires_cuda(self, all_ones_32):
        config = TileSparseConfig(kernel=KernelConfig(backend=ExecutionBackend.TRITON), device="cpu")
        packed = pack(all_ones_32, TileSparseConfig(device="cpu"))
        with pytest.raises(DeviceNotAvailableError):
            block_sparse_mm(packed, make_rhs(32, 8), config=config)


class TestBlockSparsePipeline:
    """Analyze -> pack -> multiply."""

    def test_run(self, packing_order_config, tolerance):
        dense = random_tile_sparse(80, 64, tile_density=0.5, seed=31)
        rhs = make_rhs(64, 24)

        result = BlockSparsePipeline(packing_order_config).run(dense, rhs)

        assert isinstance(result, PipelineResult)
        assert set(result.timings_ms) == {"analyze", "pack", "multiply"}
        assert result.total_ms >= 0
        torch.testing.assert_close(result.output, dense_reference(dense, rhs), **tolerance)

    def test_prepare_then_multiply(self, reference_config, tolerance):
        pipeline = BlockSparsePipeline(reference_config)
        dense = random_tile_sparse(64, 64, tile_density=0.3, seed=5)
        packed = pipeline.prepare(dense)

        for seed in range(3):
            rhs = make_rhs(64, 16, seed=seed)
            out = pipeline.multiply(packed, rhs)
            torch.testing.assert_close(out, dense_reference(dense, rhs), **tolerance)

        assert pipeline.memory.live_buffers == 0

    def test_stage_records_logged(self, reference_config, caplog):
        pipeline = BlockSparsePipeline(reference_config)
        with caplog.at_level(logging.INFO, logger="tilesparse.pipeline"):
            pipeline.run(torch.ones(32, 32), make_rhs(32, 8))

        stages = [r.stage for r in caplog.records if hasattr(r, "stage")]
        assert stages == ["analyze", "pack", "multiply"]
        pack_record = next(r for r in caplog.records if getattr(r, "stage", None) == "pack")
        assert pack_record.num_blocks == 4

    def test_run_shares_correlation_id(self, reference_config, caplog):
        from tilesparse.monitoring import structured_logging

        seen = []

        class Recorder(logging.Handler):
            def emit(self, record):
                seen.append(structured_logging.get_correlation_id())

        handler = Recorder()
        logger = logging.getLogger("tilesparse.pipeline")
        logger.addHandler(handler)
        try:
            with caplog.at_level(logging.INFO, logger="tilesparse.pipeline"):
                BlockSparsePipeline(reference_config).run(torch.ones(16, 16), make_rhs(16, 8))
        finally:
            logger.removeHandler(handler)

        assert seen and seen[0] is not None
        assert len(set(seen)) == 1
        assert structured_logging.get_correlation_id() is None

    def test_memory_stats(self, reference_config):
        pipeline = BlockSparsePipeline(reference_config)
        pipeline.run(torch.ones(32, 32), make_rhs(32, 8))
        stats = pipeline.memory_stats()
        assert stats["num_allocations"] >= 2
        assert stats["num_transfers"] >= 1
