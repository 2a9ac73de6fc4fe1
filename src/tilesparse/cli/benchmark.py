"""
Benchmarking command for the tilesparse CLI.

Fabricates a block-diagonal test matrix, runs analyze -> pack -> multiply,
reports per-stage time and achieved throughput, and checks the product
against a dense reference.
"""

import argparse
import json
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Dict, Optional

import torch

from ..core.config import BLOCK_SIZE, ExecutionBackend, PackingOrder, TileSparseConfig
from ..core.hardware_detector import select_backend
from ..pipeline import BlockSparsePipeline, block_sparse_mm


@dataclass
class BenchmarkResult:
    """Results from a benchmark run."""
    name: str
    rows: int
    cols: int
    n: int
    num_blocks: int
    backend: str
    stage_times_ms: Dict[str, float]
    mean_time_ms: float
    std_time_ms: float
    gflops: float
    max_abs_error: Optional[float] = None
    verified: Optional[bool] = None
    memory: Dict[str, float] = field(default_factory=dict)


def make_block_diagonal(
    size: int,
    block_size: int = BLOCK_SIZE,
    device: Optional[torch.device] = None,
    seed: int = 0,
) -> torch.Tensor:
    """
    Build a ``size x size`` float32 matrix whose only nonzero tiles are the
    diagonal ``block_size x block_size`` tiles, filled with random values.
    """
    generator = torch.Generator().manual_seed(seed)
    dense = torch.zeros(size, size, dtype=torch.float32)
    for start in range(0, size, block_size):
        end = min(start + block_size, size)
        dense[start:end, start:end] = torch.rand(end - start, end - start, generator=generator) + 0.5
    return dense.to(device) if device is not None else dense


def throughput_gflops(num_blocks: int, n: int, time_ms: float, block_size: int = BLOCK_SIZE) -> float:
    """Achieved GFLOP/s counting ``2 * num_blocks * block_size**2 * n`` operations."""
    if time_ms <= 0:
        return 0.0
    flops = 2.0 * num_blocks * block_size * block_size * n
    return flops / (time_ms * 1e-3) / 1e9


class BenchmarkCommand:
    """Benchmark command implementation."""

    @staticmethod
    def register(subparsers) -> None:
        """Register the benchmark command with argument parser."""
        parser = subparsers.add_parser(
            'benchmark',
            help='Benchmark the block-sparse pipeline',
            description='Run analyze, pack and multiply on a block-diagonal matrix',
            formatter_class=argparse.RawDescriptionHelpFormatter,
            epilog="""
Examples:
  tilesparse benchmark --size 4096 --n 512
  tilesparse benchmark --size 1024 --backend reference --tile-mma loop
  tilesparse benchmark --order density_global --output results.json
            """
        )

        parser.add_argument(
            '--size',
            type=int,
            default=1024,
            help='Rows and columns of the square test matrix (default: 1024)'
        )

        parser.add_argument(
            '--n',
            type=int,
            default=256,
            help='Width of the right-hand operand (default: 256)'
        )

        parser.add_argument(
            '--backend',
            choices=[b.value for b in ExecutionBackend],
            default=ExecutionBackend.AUTO.value,
            help='Kernel backend (default: auto)'
        )

        parser.add_argument(
            '--order',
            choices=[o.value for o in PackingOrder],
            default=PackingOrder.ROW_GROUPED.value,
            help='Packing order (default: row_grouped)'
        )

        parser.add_argument(
            '--tile-mma',
            choices=['matmul', 'loop'],
            default='matmul',
            help='Tile MMA for the reference kernel (default: matmul)'
        )

        parser.add_argument(
            '--device',
            type=str,
            help='Device to run on (default: cuda if available, else cpu)'
        )

        parser.add_argument(
            '--warmup',
            type=int,
            default=2,
            help='Number of warmup multiplies (default: 2)'
        )

        parser.add_argument(
            '--runs',
            type=int,
            default=10,
            help='Number of timed multiplies (default: 10)'
        )

        parser.add_argument(
            '--seed',
            type=int,
            default=0,
            help='Seed for the test matrix and operand (default: 0)'
        )

        parser.add_argument(
            '--no-verify',
            action='store_true',
            help='Skip the dense reference check'
        )

        parser.add_argument(
            '--output', '-o',
            type=str,
            help='Output file for results (JSON format)'
        )

        parser.add_argument(
            '--verbose', '-v',
            action='store_true',
            help='Enable verbose output'
        )

    @staticmethod
    def execute(args) -> int:
        """Execute the benchmark command."""
        print("📊 tilesparse Block-Sparse Benchmark")
        print("=" * 50)

        try:
            config = BenchmarkCommand._build_config(args)
            result = BenchmarkCommand._run(args, config)

            BenchmarkCommand._display_results(result, args.verbose)

            if args.output:
                BenchmarkCommand._save_results(result, args.output, args.verbose)

            if result.verified is False:
                print("\n❌ Result does not match the dense reference")
                return 1

            print("\n✅ Benchmarking completed successfully!")
            return 0

        except Exception as e:
            print(f"❌ Benchmarking failed: {e}")
            if args.verbose:
                import traceback
                traceback.print_exc()
            return 1

    @staticmethod
    def _build_config(args) -> TileSparseConfig:
        if args.size <= 0 or args.n <= 0 or args.runs <= 0:
            raise ValueError("--size, --n and --runs must be positive")
        config = TileSparseConfig.for_benchmark()
        if args.device:
            config.update(device=args.device)
        config.kernel.backend = ExecutionBackend(args.backend)
        config.kernel.tile_mma = args.tile_mma
        config.packing.order = PackingOrder(args.order)
        return config

    @staticmethod
    def _run(args, config: TileSparseConfig) -> BenchmarkResult:
        device = config.device
        if args.verbose:
            print(f"🖥️  Device: {device}")

        dense = make_block_diagonal(args.size, device=device, seed=args.seed)
        generator = torch.Generator().manual_seed(args.seed + 1)
        rhs = torch.randn(args.size, args.n, generator=generator).to(device=device, dtype=torch.float16)

        pipeline = BlockSparsePipeline(config)
        packed = pipeline.prepare(dense)
        backend = select_backend(packed.device, config.kernel)
        if args.verbose:
            print(f"   Packed {packed.num_blocks} blocks, backend {backend.value}")

        out = torch.empty(packed.rows, args.n, dtype=torch.float32, device=device)
        for _ in range(args.warmup):
            block_sparse_mm(packed, rhs, out=out, config=config)

        times = []
        for _ in range(args.runs):
            if device.type == 'cuda':
                torch.cuda.synchronize()
            start_time = time.perf_counter()
            block_sparse_mm(packed, rhs, out=out, config=config)
            if device.type == 'cuda':
                torch.cuda.synchronize()
            times.append((time.perf_counter() - start_time) * 1000)

        mean_time = sum(times) / len(times) if times else 0.0
        std_time = (sum((t - mean_time) ** 2 for t in times) / len(times)) ** 0.5 if times else 0.0

        max_abs_error = None
        verified = None
        if not args.no_verify:
            # Same fp16 narrowing as the packed values, fp32 accumulation
            reference = dense.half().float() @ rhs.float()
            max_abs_error = (out - reference).abs().max().item() if out.numel() else 0.0
            verified = torch.allclose(out, reference, rtol=1e-3, atol=1e-3)

        result = BenchmarkResult(
            name=f"block_diagonal_{args.size}x{args.size}_n{args.n}",
            rows=packed.rows,
            cols=packed.cols,
            n=args.n,
            num_blocks=packed.num_blocks,
            backend=backend.value,
            stage_times_ms=dict(pipeline.timings_ms),
            mean_time_ms=mean_time,
            std_time_ms=std_time,
            gflops=throughput_gflops(packed.num_blocks, args.n, mean_time),
            max_abs_error=max_abs_error,
            verified=verified,
            memory=pipeline.memory_stats(),
        )
        packed.release()
        return result

    @staticmethod
    def _display_results(result: BenchmarkResult, verbose: bool) -> None:
        """Display benchmark results."""
        print("\n📊 Benchmark Results:")
        print("-" * 60)
        print(f"{'Problem':<24} {result.name}")
        print(f"{'Blocks':<24} {result.num_blocks}")
        print(f"{'Backend':<24} {result.backend}")
        for stage, ms in result.stage_times_ms.items():
            print(f"{stage + ' (ms)':<24} {ms:.3f}")
        print(f"{'multiply mean (ms)':<24} {result.mean_time_ms:.3f} ± {result.std_time_ms:.3f}")
        print(f"{'Throughput (GFLOP/s)':<24} {result.gflops:.2f}")
        if result.verified is not None:
            print(f"{'Max abs error':<24} {result.max_abs_error:.3e}")
        if verbose:
            print(f"{'Peak buffers (MB)':<24} {result.memory.get('peak_mb', 0.0):.2f}")

    @staticmethod
    def _save_results(result: BenchmarkResult, output_path: str, verbose: bool) -> None:
        """Save results to JSON file."""
        if verbose:
            print(f"💾 Saving results to: {output_path}")

        results_dict = {
            'benchmark_results': [asdict(result)],
            'timestamp': time.time(),
            'device': str(torch.cuda.get_device_name() if torch.cuda.is_available() else 'CPU'),
        }

        Path(output_path).parent.mkdir(parents=True, exist_ok=True)
        with open(output_path, 'w') as f:
            json.dump(results_dict, f, indent=2)

