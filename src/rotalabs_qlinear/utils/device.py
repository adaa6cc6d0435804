"""Device abstraction and backend selection.

Decides whether an operator call runs on a Triton kernel or on the PyTorch
reference path.
"""

import logging
from typing import Optional

import torch

logger = logging.getLogger(__name__)


def is_cuda_available() -> bool:
    """Check if CUDA is available."""
    return torch.cuda.is_available()


def is_triton_available() -> bool:
    """Check if Triton is available."""
    try:
        import triton  # noqa: F401
        return True
    except ImportError:
        return False


def get_device(device: Optional[str] = None) -> torch.device:
    """
    Get a torch device, with smart defaults.

    Args:
        device: Device string ('cuda', 'cpu', 'cuda:0', etc.).
                If None, returns CUDA if available, else CPU.

    Example:
        >>> device = get_device()  # Auto-detect
        >>> x_q = quantize_linear(x.to(device), 0.5)
    """
    if device is not None:
        return torch.device(device)

    if is_cuda_available():
        return torch.device('cuda')
    return torch.device('cpu')


def use_triton(*tensors: torch.Tensor) -> bool:
    """
    Whether the Triton kernels can serve a call on these tensors.

    All tensors must live on a CUDA device, the same one, and Triton must be
    importable. Empty tensors always take the PyTorch path.
    """
    if not tensors or not is_triton_available():
        return False
    device = tensors[0].device
    if device.type != 'cuda':
        return False
    if any(t.device != device for t in tensors):
        logger.debug("Tensors span devices %s; using PyTorch path", {str(t.device) for t in tensors})
        return False
    return all(t.numel() > 0 for t in tensors)
