"""
System diagnostics command for the tilesparse CLI.

Reports the detected hardware profile, library versions and the kernel
backend that AUTO resolves to on this machine.
"""

import argparse
import json
import platform
import time
from dataclasses import asdict, dataclass
from typing import List, Optional

import numpy as np
import torch
import triton

from ..core.config import KernelConfig
from ..core.hardware_detector import HardwareProfile, detect_hardware, select_backend


@dataclass
class DiagnosticResult:
    """Result from a single diagnostic check."""
    name: str
    status: str  # "pass", "warning", "fail"
    message: str
    details: Optional[str] = None
    recommendation: Optional[str] = None


class DoctorCommand:
    """System diagnostics command implementation."""

    @staticmethod
    def register(subparsers) -> None:
        """Register the doctor command with argument parser."""
        parser = subparsers.add_parser(
            'doctor',
            help='Show the hardware profile and selected kernel backend',
            description='Check whether this system can run the Triton block-sparse kernels',
            formatter_class=argparse.RawDescriptionHelpFormatter,
            epilog="""
Examples:
  tilesparse doctor
  tilesparse doctor --verbose --output report.json
            """
        )

        parser.add_argument(
            '--output', '-o',
            type=str,
            help='Save diagnostic report to file'
        )

        parser.add_argument(
            '--verbose', '-v',
            action='store_true',
            help='Enable verbose output'
        )

    @staticmethod
    def execute(args) -> int:
        """Execute the doctor command."""
        print("🩺 tilesparse System Diagnostics")
        print("=" * 50)

        try:
            profile = detect_hardware()
            results = DoctorCommand._check_versions() + DoctorCommand._check_hardware(profile)

            DoctorCommand._display_results(results, args.verbose)
            print(DoctorCommand._generate_summary(results))

            if args.output:
                DoctorCommand._save_report(results, profile, args.output, args.verbose)

            has_failures = any(r.status == 'fail' for r in results)
            return 1 if has_failures else 0

        except Exception as e:
            print(f"❌ Diagnostics failed: {e}")
            if args.verbose:
                import traceback
                traceback.print_exc()
            return 1

    @staticmethod
    def _check_versions() -> List[DiagnosticResult]:
        results = [
            DiagnosticResult("Python Version", "pass", f"Python {platform.python_version()}"),
            DiagnosticResult("NumPy Version", "pass", f"NumPy {np.__version__}"),
            DiagnosticResult("Triton Version", "pass", f"Triton {triton.__version__}"),
        ]

        torch_major = int(torch.__version__.split('.')[0])
        if torch_major >= 2:
            results.append(DiagnosticResult("PyTorch Version", "pass", f"PyTorch {torch.__version__}"))
        else:
            results.append(DiagnosticResult(
                "PyTorch Version",
                "fail",
                f"PyTorch {torch.__version__} (requires 2.0+)",
                recommendation="Upgrade to PyTorch 2.0 or later"
            ))
        return results

    @staticmethod
    def _check_hardware(profile: HardwareProfile) -> List[DiagnosticResult]:
        results = []

        if profile.supports_triton:
            results.append(DiagnosticResult(
                "CUDA GPU",
                "pass",
                f"{profile.device_name} with {profile.total_memory_gb:.1f} GB",
                details=f"CUDA {profile.cuda_version}, {profile.device_count} device(s)"
            ))
            major, minor = profile.compute_capability
            if profile.has_tensor_cores:
                results.append(DiagnosticResult(
                    "Tensor Cores",
                    "pass",
                    f"Compute {major}.{minor} supports 16x16x16 MMA"
                ))
            else:
                results.append(DiagnosticResult(
                    "Tensor Cores",
                    "warning",
                    f"Compute {major}.{minor} has no Tensor Cores",
                    recommendation="tl.dot falls back to CUDA cores; expect lower throughput"
                ))
        else:
            results.append(DiagnosticResult(
                "CUDA GPU",
                "warning",
                "No CUDA GPU detected (reference kernel only)",
                recommendation="Install a CUDA build of PyTorch to use the Triton kernels"
            ))

        device = torch.device("cuda" if profile.supports_triton else "cpu")
        backend = select_backend(device, KernelConfig())
        results.append(DiagnosticResult(
            "Kernel Backend",
            "pass",
            f"AUTO selects '{backend.value}' on {device}"
        ))
        return results

    @staticmethod
    def _display_results(results: List[DiagnosticResult], verbose: bool) -> None:
        """Display diagnostic results in a formatted way."""
        print("\n📋 Diagnostic Results:")
        print("-" * 60)

        for result in results:
            status_icon = {
                'pass': '✅',
                'warning': '⚠️ ',
                'fail': '❌'
            }.get(result.status, '')

            print(f"{status_icon} {result.name}: {result.message}")

            if verbose and result.details:
                print(f"   Details: {result.details}")

            if result.recommendation:
                print(f"   💡 Recommendation: {result.recommendation}")

    @staticmethod
    def _generate_summary(results: List[DiagnosticResult]) -> str:
        """Generate a summary of diagnostic results."""
        total = len(results)
        passed = sum(1 for r in results if r.status == 'pass')
        warnings = sum(1 for r in results if r.status == 'warning')
        failed = sum(1 for r in results if r.status == 'fail')

        summary = f"\n📊 Summary: {passed}/{total} checks passed"
        if warnings > 0:
            summary += f", {warnings} warnings"
        if failed > 0:
            summary += f", {failed} failures"
        return summary

    @staticmethod
    def _save_report(
        results: List[DiagnosticResult],
        profile: HardwareProfile,
        output_path: str,
        verbose: bool,
    ) -> None:
        """Save diagnostic report to file."""
        if verbose:
            print(f"💾 Saving diagnostic report to: {output_path}")

        report = {
            'timestamp': time.time(),
            'system_info': {
                'platform': platform.platform(),
                'python_version': platform.python_version(),
                'pytorch_version': torch.__version__,
                'hardware_type': profile.hardware_type.value,
                'device_name': profile.device_name,
                'compute_capability': profile.compute_capability,
            },
            'diagnostics': [asdict(r) for r in results],
        }

        with open(output_path, 'w') as f:
            json.dump(report, f, indent=2)
