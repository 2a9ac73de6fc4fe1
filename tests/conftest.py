"""
Shared pytest fixtures for the tilesparse test suite.

This module provides reusable fixtures for:
- CPU device
- Pipeline configurations for each backend and packing order
- Tile-sparse matrix factories
- Numerical tolerances
- Mock utilities for hardware simulation
"""

import pytest
import torch
from unittest.mock import MagicMock, patch

from tilesparse.core import config as config_module
from tilesparse.core.config import (
    ExecutionBackend,
    KernelConfig,
    PackingConfig,
    PackingOrder,
    TileSparseConfig,
)
from tilesparse.memory import DeviceBufferManager


def pytest_configure(config):
    config.addinivalue_line("markers", "gpu: test needs a CUDA device and Triton")


def pytest_collection_modifyitems(config, items):
    if torch.cuda.is_available():
        return
    skip_gpu = pytest.mark.skip(reason="CUDA not available")
    for item in items:
        if "gpu" in item.keywords:
            item.add_marker(skip_gpu)


# ============================================================================
# Device Fixtures
# ============================================================================

@pytest.fixture
def cpu_device():
    """Force CPU device for tests requiring CPU."""
    return torch.device("cpu")


# ============================================================================
# Configuration Fixtures
# ============================================================================

@pytest.fixture(autouse=True)
def reset_global_config():
    """Every test starts from a fresh global configuration."""
    config_module.set_config(None)
    yield
    config_module.set_config(None)


@pytest.fixture
def reference_config():
    """CPU configuration running the scheduled reference kernel."""
    return TileSparseConfig(
        kernel=KernelConfig(backend=ExecutionBackend.REFERENCE),
        device="cpu",
    )


@pytest.fixture
def loop_config():
    """Reference kernel with the rank-1 update tile MMA."""
    return TileSparseConfig(
        kernel=KernelConfig(backend=ExecutionBackend.REFERENCE, tile_mma="loop"),
        device="cpu",
    )


@pytest.fixture
def small_group_config():
    """Reference kernel with small scheduling units so tests span many units."""
    return TileSparseConfig(
        kernel=KernelConfig(
            backend=ExecutionBackend.REFERENCE,
            schedule_group_size=8,
            lanes_per_unit=4,
        ),
        device="cpu",
    )


@pytest.fixture(params=[PackingOrder.ROW_GROUPED, PackingOrder.DENSITY_GLOBAL],
                ids=["row_grouped", "density_global"])
def packing_order_config(request):
    """Reference configuration parametrized over both packing orders."""
    return TileSparseConfig(
        kernel=KernelConfig(
            backend=ExecutionBackend.REFERENCE,
            schedule_group_size=8,
            lanes_per_unit=2,
        ),
        packing=PackingConfig(order=request.param),
        device="cpu",
    )


@pytest.fixture
def triton_config():
    """CUDA configuration running the Triton kernels."""
    return TileSparseConfig(
        kernel=KernelConfig(backend=ExecutionBackend.TRITON),
        device="cuda",
    )


@pytest.fixture
def cpu_memory(cpu_device):
    """Buffer manager on the CPU."""
    return DeviceBufferManager(cpu_device)


# ============================================================================
# Matrix Fixtures
# ============================================================================

def make_tile_sparse(rows, cols, tiles, block_size=16, seed=0, fill=None):
    """
    Dense float32 matrix whose nonzero elements lie only in the listed tiles.

    Args:
        tiles: Iterable of (row_tile, col_tile) positions to fill
        fill: Constant fill value; random values in [0.5, 1.5) if None
    """
    generator = torch.Generator().manual_seed(seed)
    dense = torch.zeros(rows, cols, dtype=torch.float32)
    for row_tile, col_tile in tiles:
        r0, c0 = row_tile * block_size, col_tile * block_size
        r1, c1 = min(r0 + block_size, rows), min(c0 + block_size, cols)
        if fill is None:
            dense[r0:r1, c0:c1] = torch.rand(r1 - r0, c1 - c0, generator=generator) + 0.5
        else:
            dense[r0:r1, c0:c1] = fill
    return dense


def random_tile_sparse(rows, cols, tile_density=0.3, block_size=16, seed=0):
    """Dense matrix with a random subset of tiles holding random sparse values."""
    generator = torch.Generator().manual_seed(seed)
    row_tiles = (rows + block_size - 1) // block_size
    col_tiles = (cols + block_size - 1) // block_size
    keep = torch.rand(row_tiles, col_tiles, generator=generator) < tile_density
    mask = keep.repeat_interleave(block_size, 0).repeat_interleave(block_size, 1)[:rows, :cols]
    # Sparse within tiles too, so tile counts vary
    elements = torch.rand(rows, cols, generator=generator) < 0.6
    values = torch.randn(rows, cols, generator=generator)
    return torch.where(mask & elements, values, torch.zeros_like(values))


def make_rhs(cols, n, seed=1):
    """float16 right-hand operand."""
    generator = torch.Generator().manual_seed(seed)
    return torch.randn(cols, n, generator=generator).to(torch.float16)


def dense_reference(dense, rhs):
    """Product with the same fp16 narrowing of the matrix and fp32 accumulation."""
    return dense.to(torch.float16).float() @ rhs.float()


@pytest.fixture
def all_ones_32():
    """32x32 all-ones matrix: four full tiles."""
    return torch.ones(32, 32, dtype=torch.float32)


@pytest.fixture
def sparse_matrix():
    """48x64 matrix with tiles of varying density in every row tile."""
    return random_tile_sparse(48, 64, tile_density=0.5, seed=3)


# ============================================================================
# Tolerance Fixtures
# ============================================================================

@pytest.fixture
def tolerance():
    """Tolerance for comparing against an fp16-narrowed dense product."""
    return {"rtol": 1e-3, "atol": 1e-3}


# ============================================================================
# Mock Fixtures for Hardware Simulation
# ============================================================================

@pytest.fixture
def mock_cuda_available():
    """Mock CUDA as available."""
    with patch("torch.cuda.is_available", return_value=True):
        with patch("torch.cuda.device_count", return_value=1):
            mock_props = MagicMock()
            mock_props.name = "NVIDIA GeForce RTX 4090"
            mock_props.major = 8
            mock_props.minor = 9
            mock_props.total_memory = 24 * 1024 * 1024 * 1024  # 24GB
            with patch("torch.cuda.get_device_properties", return_value=mock_props):
                yield mock_props


@pytest.fixture
def mock_pascal_gpu():
    """Mock a GPU without Tensor Cores."""
    with patch("torch.cuda.is_available", return_value=True):
        with patch("torch.cuda.device_count", return_value=1):
            mock_props = MagicMock()
            mock_props.name = "Tesla P100"
            mock_props.major = 6
            mock_props.minor = 0
            mock_props.total_memory = 16 * 1024 * 1024 * 1024  # 16GB
            with patch("torch.cuda.get_device_properties", return_value=mock_props):
                yield mock_props


@pytest.fixture
def mock_cuda_unavailable():
    """Mock CUDA as unavailable."""
    with patch("torch.cuda.is_available", return_value=False):
        yield
