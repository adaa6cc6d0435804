"""rotalabs-qlinear - Affine INT8/UINT8 quantization for inference.

Provides:
- QuantizeLinear / DequantizeLinear, per-tensor and per-axis
- Requantization of INT32 accumulators
- QLinearConv computed entirely in the integer domain
- Tagged operator dispatch for graph executors
- Drop-in nn.Module wrappers
- Output validation helpers for operator tests

Example:
    >>> import torch
    >>> from rotalabs_qlinear import quantize_linear, dequantize_linear, qlinear_conv
    >>>
    >>> x = torch.tensor([32.25, 48.34, 50.0, 83.0])
    >>> x_q = quantize_linear(x, 0.5)            # uint8 [64, 97, 100, 166]
    >>> x_r = dequantize_linear(x_q, 0.5)        # within 0.25 of x
    >>>
    >>> # Per-axis parameters, negative axis
    >>> w = torch.randn(8, 3, 3, 3)
    >>> w_q = quantize_linear(w, torch.rand(8) + 0.01, axis=-4, dtype=torch.int8)
"""

from rotalabs_qlinear._version import __version__

# Errors
from rotalabs_qlinear.errors import (
    QLinearError,
    InvalidParams,
    ShapeMismatch,
    UnsupportedElementType,
    UnsupportedOperator,
)

# Parameters and configuration
from rotalabs_qlinear.quantization import (
    QuantParams,
    qrange,
    normalize_axis,
)
from rotalabs_qlinear.config import AutoPad, ConvAttributes

# Kernels
from rotalabs_qlinear.kernels import (
    round_half_to_even,
    quantize_linear,
    dequantize_linear,
    requantize,
    calculate_quantization_error,
    qlinear_conv,
    QuantizeLinear,
    DequantizeLinear,
    QLinearConv,
)

# Dispatch
from rotalabs_qlinear.ops import OpKind, QuantNode, run_node

# Utils
from rotalabs_qlinear.utils import (
    get_device,
    is_cuda_available,
    is_triton_available,
)

__all__ = [
    # Version
    "__version__",
    # Errors
    "QLinearError",
    "InvalidParams",
    "ShapeMismatch",
    "UnsupportedElementType",
    "UnsupportedOperator",
    # Parameters
    "QuantParams",
    "qrange",
    "normalize_axis",
    "AutoPad",
    "ConvAttributes",
    # Kernels
    "round_half_to_even",
    "quantize_linear",
    "dequantize_linear",
    "requantize",
    "calculate_quantization_error",
    "qlinear_conv",
    # Modules
    "QuantizeLinear",
    "DequantizeLinear",
    "QLinearConv",
    # Dispatch
    "OpKind",
    "QuantNode",
    "run_node",
    # Utils
    "get_device",
    "is_cuda_available",
    "is_triton_available",
]
