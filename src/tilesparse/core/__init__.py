"""
Core configuration and hardware detection for tilesparse.
"""

from .config import (
    BLOCK_SIZE,
    SCHEDULE_GROUP_SIZE,
    ExecutionBackend,
    PackingOrder,
    KernelConfig,
    PackingConfig,
    ErrorConfig,
    TileSparseConfig,
    get_config,
    set_config,
    configure,
)
from .hardware_detector import (
    HardwareType,
    HardwareProfile,
    HardwareDetector,
    get_hardware_detector,
    detect_hardware,
    select_backend,
)

__all__ = [
    'BLOCK_SIZE',
    'SCHEDULE_GROUP_SIZE',
    'ExecutionBackend',
    'PackingOrder',
    'KernelConfig',
    'PackingConfig',
    'ErrorConfig',
    'TileSparseConfig',
    'get_config',
    'set_config',
    'configure',
    'HardwareType',
    'HardwareProfile',
    'HardwareDetector',
    'get_hardware_detector',
    'detect_hardware',
    'select_backend',
]
