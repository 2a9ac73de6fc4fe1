"""
Tile Multiply-Accumulate Units

The multiply kernel issues one fixed-shape multiply-accumulate per stored
block. TileMMA abstracts that unit so the scheduled kernel does not depend on
a particular intrinsic:

- MatmulTileMMA: one fused addmm per tile, the torch analogue of a 16x16x16
  Tensor Core MMA
- LoopTileMMA: an explicit k-loop of rank-1 updates for platforms without a
  tile unit

Operands arrive as float16 tiles, are widened
by stage() and accumulated in float32.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Type

import torch

from ..core.config import BLOCK_SIZE
from ..exceptions import ConfigurationError


@dataclass(frozen=True)
class TileShape:
    """Shape of one multiply-accumulate: (M x K) @ (K x N) -> (M x N)."""
    m: int = BLOCK_SIZE
    n: int = BLOCK_SIZE
    k: int = BLOCK_SIZE


class TileMMA(ABC):
    """Fixed-shape tile multiply-accumulate."""

    name = "abstract"

    def __init__(
        self,
        shape: TileShape = TileShape(),
        input_dtype: torch.dtype = torch.float16,
        accum_dtype: torch.dtype = torch.float32,
    ):
        self.shape = shape
        self.input_dtype = input_dtype
        self.accum_dtype = accum_dtype

    def stage(self, tile: torch.Tensor) -> torch.Tensor:
        """Widen a narrowed tile into the accumulator type."""
        return tile.to(self.accum_dtype)

    @abstractmethod
    def mma_sync(self, acc: torch.Tensor, a: torch.Tensor, b: torch.Tensor) -> torch.Tensor:
        """Return ``acc + a @ b`` computed in the accumulator type."""
        pass

    def _check_shapes(self, acc: torch.Tensor, a: torch.Tensor, b: torch.Tensor) -> None:
        m, n, k = self.shape.m, self.shape.n, self.shape.k
        if a.shape != (m, k) or b.shape != (k, n) or acc.shape != (m, n):
            raise ValueError(
                f"{self.name} MMA expects ({m}x{k}) @ ({k}x{n}) into ({m}x{n}), got "
                f"{tuple(a.shape)} @ {tuple(b.shape)} into {tuple(acc.shape)}"
            )

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}(shape={self.shape.m}x{self.shape.n}x{self.shape.k}, "
            f"input={self.input_dtype}, accum={self.accum_dtype})"
        )


class MatmulTileMMA(TileMMA):
    """Fused multiply-accumulate via torch.addmm."""

    name = "matmul"

    def mma_sync(self, acc: torch.Tensor, a: torch.Tensor, b: torch.Tensor) -> torch.Tensor:
        self._check_shapes(acc, a, b)
        return acc.addmm_(a, b)


class LoopTileMMA(TileMMA):
    """Multiply-accumulate as K rank-1 updates."""

    name = "loop"

    def mma_sync(self, acc: torch.Tensor, a: torch.Tensor, b: torch.Tensor) -> torch.Tensor:
        self._check_shapes(acc, a, b)
        for k in range(self.shape.k):
            acc.add_(torch.outer(a[:, k], b[k, :]))
        return acc


_TILE_MMA_REGISTRY: Dict[str, Type[TileMMA]] = {
    MatmulTileMMA.name: MatmulTileMMA,
    LoopTileMMA.name: LoopTileMMA,
}


def get_tile_mma(name: str, shape: TileShape = TileShape()) -> TileMMA:
    """
    Resolve a tile MMA implementation by name.

    Raises:
        ConfigurationError: If no implementation has that name
    """
    try:
        mma_class = _TILE_MMA_REGISTRY[name]
    except KeyError:
        raise ConfigurationError(
            "tile_mma", name, f"expected one of {sorted(_TILE_MMA_REGISTRY)}"
        ) from None
    return mma_class(shape)


def available_tile_mmas() -> list:
    """Names accepted by get_tile_mma()."""
    return sorted(_TILE_MMA_REGISTRY)
