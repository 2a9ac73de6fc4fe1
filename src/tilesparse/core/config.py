"""
Unified Configuration System for tilesparse

Dataclass configuration for the three pipeline stages: tile analysis, packing
and the scheduled multiply kernel, plus device error policy.
"""

from dataclasses import dataclass, field
from typing import Optional, Dict, Any
from enum import Enum
import torch

from ..exceptions import ConfigurationError

# Fixed tile edge length. The hardware tile-multiply unit works on 16x16x16.
BLOCK_SIZE = 16

# Work-list slots staged per scheduling unit.
SCHEDULE_GROUP_SIZE = 128


class ExecutionBackend(Enum):
    """Kernel backends for the analyzer and multiply stages."""
    AUTO = "auto"
    TRITON = "triton"          # Triton kernels, CUDA devices only
    REFERENCE = "reference"    # Scheduled torch kernel, any device


class PackingOrder(Enum):
    """Storage order of the packed tiles."""
    ROW_GROUPED = "row_grouped"        # Contiguous per row, densest first within a row
    DENSITY_GLOBAL = "density_global"  # Densest first globally, rows reached via row_block_index


@dataclass
class KernelConfig:
    """Multiply kernel and analyzer execution configuration."""
    block_size: int = BLOCK_SIZE
    schedule_group_size: int = SCHEDULE_GROUP_SIZE
    lanes_per_unit: int = 32
    backend: ExecutionBackend = ExecutionBackend.AUTO
    tile_mma: str = "matmul"
    triton_enabled: bool = True

    def __post_init__(self):
        if self.block_size != BLOCK_SIZE:
            raise ConfigurationError(
                "block_size", self.block_size,
                f"only {BLOCK_SIZE}x{BLOCK_SIZE} tiles are supported"
            )
        if self.schedule_group_size <= 0:
            raise ConfigurationError(
                "schedule_group_size", self.schedule_group_size, "must be positive"
            )
        if self.lanes_per_unit <= 0:
            raise ConfigurationError("lanes_per_unit", self.lanes_per_unit, "must be positive")
        if self.schedule_group_size % self.lanes_per_unit != 0:
            raise ConfigurationError(
                "lanes_per_unit", self.lanes_per_unit,
                f"must divide schedule_group_size ({self.schedule_group_size})"
            )
        if isinstance(self.backend, str):
            self.backend = ExecutionBackend(self.backend)


@dataclass
class PackingConfig:
    """Block packer configuration."""
    order: PackingOrder = PackingOrder.ROW_GROUPED
    validate: bool = True

    def __post_init__(self):
        if isinstance(self.order, str):
            self.order = PackingOrder(self.order)


@dataclass
class ErrorConfig:
    """Device error policy."""
    # Exit the process instead of raising on fatal device errors
    abort_on_device_error: bool = False


@dataclass
class TileSparseConfig:
    """
    Top-level configuration for tilesparse.

    Aggregates kernel, packing and error configuration with the target device.
    """
    kernel: KernelConfig = field(default_factory=KernelConfig)
    packing: PackingConfig = field(default_factory=PackingConfig)
    errors: ErrorConfig = field(default_factory=ErrorConfig)
    device: Optional[torch.device] = None
    debug: bool = False

    def __post_init__(self):
        if self.device is None:
            self.device = self._detect_device()
        elif isinstance(self.device, str):
            self.device = torch.device(self.device)

        # Triton kernels only run on CUDA devices
        if self.device.type != "cuda":
            self.kernel.triton_enabled = False

    @staticmethod
    def _detect_device() -> torch.device:
        if torch.cuda.is_available():
            return torch.device("cuda")
        return torch.device("cpu")

    @classmethod
    def for_development(cls) -> 'TileSparseConfig':
        """Create configuration for development with debugging enabled."""
        config = cls()
        config.debug = True
        config.kernel.tile_mma = "loop"
        config.kernel.backend = ExecutionBackend.REFERENCE
        config.packing.validate = True
        return config

    @classmethod
    def for_benchmark(cls) -> 'TileSparseConfig':
        """Create configuration for benchmarking (no packing validation)."""
        config = cls()
        config.packing.validate = False
        return config

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary."""
        def _convert_value(value):
            if hasattr(value, '__dataclass_fields__'):
                return {k: _convert_value(v) for k, v in value.__dict__.items()}
            elif isinstance(value, Enum):
                return value.value
            elif isinstance(value, torch.device):
                return str(value)
            return value

        return {key: _convert_value(value) for key, value in self.__dict__.items()}

    def update(self, **kwargs) -> None:
        """
        Update configuration with keyword arguments.

        Changing the device re-derives ``kernel.triton_enabled`` from it.
        """
        for key, value in kwargs.items():
            if hasattr(self, key):
                if key == "device" and isinstance(value, str):
                    value = torch.device(value)
                setattr(self, key, value)
            else:
                raise ValueError(f"Unknown configuration parameter: {key}")

        if "device" in kwargs:
            self.kernel.triton_enabled = self.device.type == "cuda"


# Global default configuration instance
default_config: Optional[TileSparseConfig] = None


def get_config() -> TileSparseConfig:
    """Get the global default configuration."""
    global default_config
    if default_config is None:
        default_config = TileSparseConfig()
    return default_config


def set_config(config: TileSparseConfig) -> None:
    """Set the global default configuration."""
    global default_config
    default_config = config


def configure(**kwargs) -> TileSparseConfig:
    """Configure tilesparse with keyword arguments."""
    config = TileSparseConfig()
    config.update(**kwargs)
    set_config(config)
    return config
