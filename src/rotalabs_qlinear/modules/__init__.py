"""nn.Module wrappers around the quantized operators.

Parameters live in module buffers, so the modules move with .to(device) and
round-trip through state_dict().
"""

from rotalabs_qlinear.kernels.quantization import QuantizeLinear, DequantizeLinear
from rotalabs_qlinear.kernels.conv import QLinearConv

__all__ = [
    "QuantizeLinear",
    "DequantizeLinear",
    "QLinearConv",
]
