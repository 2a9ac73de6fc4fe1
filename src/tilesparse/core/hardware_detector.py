"""
Hardware Detection Module

Detects the available accelerator and resolves which kernel backend the
analyzer and multiply stages run on.
"""

import logging
import torch
import triton
from typing import Optional
from dataclasses import dataclass
from enum import Enum

from ..exceptions import DeviceNotAvailableError
from .config import ExecutionBackend, KernelConfig

logger = logging.getLogger(__name__)


class HardwareType(Enum):
    """Available hardware types."""
    NVIDIA_GPU = "nvidia_gpu"
    CPU = "cpu"


@dataclass
class HardwareProfile:
    """Hardware profile relevant to block-sparse execution."""
    hardware_type: HardwareType
    device_name: str
    device_count: int
    compute_capability: Optional[tuple] = None
    total_memory_gb: float = 0.0
    cuda_version: Optional[str] = None
    triton_version: Optional[str] = None

    @property
    def has_tensor_cores(self) -> bool:
        """Tensor Cores (16x16x16 MMA) are present on compute capability 7.0+."""
        return self.compute_capability is not None and self.compute_capability[0] >= 7

    @property
    def supports_triton(self) -> bool:
        """Triton block-sparse kernels need a CUDA device."""
        return self.hardware_type == HardwareType.NVIDIA_GPU and self.triton_version is not None


class HardwareDetector:
    """
    Automatic hardware detection with a cached profile.
    """

    def __init__(self):
        self._cached_profile: Optional[HardwareProfile] = None

    def detect(self, force_redetect: bool = False) -> HardwareProfile:
        """
        Detect hardware and return profile.

        Args:
            force_redetect: Force re-detection even if cached

        Returns:
            HardwareProfile for the primary device
        """
        if self._cached_profile and not force_redetect:
            return self._cached_profile

        profile = self._detect_nvidia_gpu() or self._detect_cpu()
        logger.debug("Detected hardware: %s (%s)", profile.device_name, profile.hardware_type.value)

        self._cached_profile = profile
        return profile

    def _detect_nvidia_gpu(self) -> Optional[HardwareProfile]:
        """Detect NVIDIA GPU hardware."""
        if not torch.cuda.is_available():
            return None

        props = torch.cuda.get_device_properties(0)
        return HardwareProfile(
            hardware_type=HardwareType.NVIDIA_GPU,
            device_name=props.name,
            device_count=torch.cuda.device_count(),
            compute_capability=(props.major, props.minor),
            total_memory_gb=props.total_memory / 1024**3,
            cuda_version=torch.version.cuda,
            triton_version=triton.__version__,
        )

    def _detect_cpu(self) -> HardwareProfile:
        """Detect CPU as fallback."""
        return HardwareProfile(
            hardware_type=HardwareType.CPU,
            device_name="CPU",
            device_count=1,
            triton_version=triton.__version__,
        )

    def select_backend(
        self,
        device: torch.device,
        kernel_config: Optional[KernelConfig] = None,
    ) -> ExecutionBackend:
        """
        Resolve the kernel backend for tensors living on ``device``.

        An explicit backend in the config is honored; AUTO picks Triton for
        CUDA tensors when Triton kernels are enabled and the reference
        scheduled kernel otherwise.
        """
        kernel_config = kernel_config or KernelConfig()

        if kernel_config.backend == ExecutionBackend.TRITON and device.type != "cuda":
            raise DeviceNotAvailableError("triton", f"Triton kernels need a CUDA device, got {device}")
        if kernel_config.backend != ExecutionBackend.AUTO:
            return kernel_config.backend

        if device.type == "cuda" and kernel_config.triton_enabled:
            return ExecutionBackend.TRITON
        return ExecutionBackend.REFERENCE


# Global detector instance
_global_detector: Optional[HardwareDetector] = None


def get_hardware_detector() -> HardwareDetector:
    """Get global hardware detector instance."""
    global _global_detector
    if _global_detector is None:
        _global_detector = HardwareDetector()
    return _global_detector


def detect_hardware() -> HardwareProfile:
    """Convenience function to detect hardware."""
    return get_hardware_detector().detect()


def select_backend(device: torch.device, kernel_config: Optional[KernelConfig] = None) -> ExecutionBackend:
    """Convenience function to resolve the execution backend."""
    return get_hardware_detector().select_backend(device, kernel_config)
