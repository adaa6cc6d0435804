"""Utilities for quantized inference.

Provides device abstraction and backend selection.
"""

from rotalabs_qlinear.utils.device import (
    get_device,
    is_cuda_available,
    is_triton_available,
    use_triton,
)

__all__ = [
    "get_device",
    "is_cuda_available",
    "is_triton_available",
    "use_triton",
]
