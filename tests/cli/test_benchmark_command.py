"""
Tests for the benchmark command.
"""

import json

import pytest
import torch
from unittest.mock import patch

from tilesparse.cli import main
from tilesparse.cli.benchmark import BenchmarkResult, make_block_diagonal, throughput_gflops


@pytest.fixture(autouse=True)
def no_logging_setup():
    with patch('tilesparse.monitoring.configure_logging'):
        yield


class TestBlockDiagonal:

    def test_only_diagonal_tiles(self):
        dense = make_block_diagonal(48)
        assert dense.shape == (48, 48)
        assert dense.dtype == torch.float32
        assert torch.all(dense[:16, 16:] == 0)
        assert torch.all(dense[16:32, 16:32] >= 0.5)

    def test_partial_last_tile(self):
        dense = make_block_diagonal(40)
        assert int((dense != 0).sum()) == 2 * 16 * 16 + 8 * 8

    def test_seeded(self):
        assert torch.equal(make_block_diagonal(32, seed=4), make_block_diagonal(32, seed=4))


class TestThroughput:

    def test_gflops(self):
        # 2 * 4 * 256 * 128 flops in 1 ms
        assert throughput_gflops(4, 128, 1.0) == pytest.approx(262144 / 1e-3 / 1e9)

    def test_zero_time(self):
        assert throughput_gflops(4, 128, 0.0) == 0.0


class TestBenchmarkCommand:

    def test_reference_run_with_output(self, tmp_path, capsys):
        output = tmp_path / "results" / "bench.json"
        result = main([
            'benchmark', '--size', '64', '--n', '16',
            '--device', 'cpu', '--backend', 'reference',
            '--warmup', '0', '--runs', '2', '--output', str(output),
        ])

        assert result == 0
        assert "completed successfully" in capsys.readouterr().out

        data = json.loads(output.read_text())
        entry = data['benchmark_results'][0]
        assert entry['num_blocks'] == 4
        assert entry['backend'] == 'reference'
        assert entry['verified'] is True
        assert set(entry['stage_times_ms']) == {'analyze', 'pack'}

    def test_density_global_loop_mma(self):
        assert main([
            'benchmark', '--size', '48', '--n', '8', '--device', 'cpu',
            '--backend', 'reference', '--order', 'density_global',
            '--tile-mma', 'loop', '--warmup', '0', '--runs', '1',
        ]) == 0

    def test_invalid_size(self, capsys):
        result = main(['benchmark', '--size', '0', '--device', 'cpu'])
        assert result == 1
        assert "must be positive" in capsys.readouterr().out

    def test_failed_verification(self):
        failed = BenchmarkResult(
            name="x", rows=16, cols=16, n=8, num_blocks=1, backend="reference",
            stage_times_ms={}, mean_time_ms=1.0, std_time_ms=0.0, gflops=0.0,
            max_abs_error=1.0, verified=False,
        )
        with patch('tilesparse.cli.benchmark.BenchmarkCommand._run', return_value=failed):
            assert main(['benchmark', '--size', '16', '--device', 'cpu']) == 1
