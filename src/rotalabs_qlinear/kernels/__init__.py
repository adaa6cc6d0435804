"""Quantized operator kernels.

Provides QuantizeLinear, DequantizeLinear, requantization and QLinearConv.
All element-wise kernels have PyTorch fallbacks when Triton is not available.
"""

# Check for Triton availability
try:
    import triton  # noqa: F401
    HAS_TRITON = True
except ImportError:
    HAS_TRITON = False

# Element-wise quantization kernels
from rotalabs_qlinear.kernels.quantization import (
    round_half_to_even,
    quantize_linear,
    quantize_linear_torch,
    dequantize_linear,
    dequantize_linear_torch,
    requantize,
    requantize_torch,
    requantize_scaled_torch,
    calculate_quantization_error,
    QuantizeLinear,
    DequantizeLinear,
)

# Quantized convolution
from rotalabs_qlinear.kernels.conv import (
    qlinear_conv,
    qlinear_conv_accumulate,
    quantize_conv_weight,
    QLinearConv,
)

__all__ = [
    # Triton availability
    "HAS_TRITON",
    # Element-wise
    "round_half_to_even",
    "quantize_linear",
    "quantize_linear_torch",
    "dequantize_linear",
    "dequantize_linear_torch",
    "requantize",
    "requantize_torch",
    "requantize_scaled_torch",
    "calculate_quantization_error",
    "QuantizeLinear",
    "DequantizeLinear",
    # Convolution
    "qlinear_conv",
    "qlinear_conv_accumulate",
    "quantize_conv_weight",
    "QLinearConv",
]
