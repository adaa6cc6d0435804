"""Quantization parameters for affine INT8/UINT8 inference.

Provides the scale / zero-point description shared by every operator.
"""

from rotalabs_qlinear.quantization.params import (
    QUANTIZED_DTYPES,
    DEFAULT_AXIS,
    QuantParams,
    qrange,
    normalize_axis,
)

__all__ = [
    "QUANTIZED_DTYPES",
    "DEFAULT_AXIS",
    "QuantParams",
    "qrange",
    "normalize_axis",
]
