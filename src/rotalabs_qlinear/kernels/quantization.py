"""
QuantizeLinear, DequantizeLinear and requantization kernels.

Affine quantization scheme:
- quantize:   y = clamp(round_half_to_even(x / scale) + zero_point, qmin, qmax)
- dequantize: y = (x - zero_point) * scale
- requantize: y = clamp(round_half_to_even(acc * multiplier) + zero_point, qmin, qmax)

Ties at exactly .5 round to the nearest even integer (banker's rounding), so
32.25 / 0.5 = 64.5 quantizes to 64 and 3 / 2 = 1.5 to 2. Out-of-range values
saturate to the type limits; NaN maps to the zero point.

Each operator validates all parameters before allocating output, then runs a
Triton kernel for CUDA tensors or the PyTorch reference path otherwise. Both
paths are element-wise and produce identical results.

Reference: ONNX QuantizeLinear / DequantizeLinear operators
https://onnx.ai/onnx/operators/onnx__QuantizeLinear.html
"""

import logging
import math
from typing import Dict, Optional, Sequence, Tuple, Union

import torch

from rotalabs_qlinear.errors import ShapeMismatch, UnsupportedElementType
from rotalabs_qlinear.quantization.params import QUANTIZED_DTYPES, ParamLike, QuantParams
from rotalabs_qlinear.utils.device import use_triton

# Optional Triton import
try:
    import triton
    import triton.language as tl
    HAS_TRITON = True
except ImportError:
    HAS_TRITON = False
    triton = None
    tl = None

logger = logging.getLogger(__name__)

ScaleLike = Union[ParamLike, QuantParams]


def round_half_to_even(x: torch.Tensor) -> torch.Tensor:
    """Round to the nearest integer, sending exact .5 ties to the even neighbour."""
    # torch.round implements round-half-to-even on every backend.
    return torch.round(x)


def _saturate(
    values: torch.Tensor,
    zero_point: torch.Tensor,
    params: QuantParams,
) -> torch.Tensor:
    values = torch.nan_to_num(values, nan=0.0)
    q = round_half_to_even(values) + zero_point
    return q.clamp_(params.qmin, params.qmax).to(params.dtype)


def _check_out(out: Optional[torch.Tensor], shape: Sequence[int], dtype: torch.dtype) -> None:
    if out is None:
        return
    if out.dtype != dtype:
        raise UnsupportedElementType(f"out has dtype {out.dtype}, expected {dtype}")
    if tuple(out.shape) != tuple(shape):
        raise ShapeMismatch(f"out has shape {tuple(out.shape)}, expected {tuple(shape)}")


def _emit(result: torch.Tensor, out: Optional[torch.Tensor]) -> torch.Tensor:
    if out is None:
        return result
    out.copy_(result)
    return out


def _axis_geometry(shape: Sequence[int], axis: Optional[int]) -> Tuple[int, int]:
    """(inner, channels) such that channel = (flat_index // inner) % channels."""
    if axis is None:
        return 1, 1
    return math.prod(shape[axis + 1:]), shape[axis]


def quantize_linear_torch(x: torch.Tensor, params: QuantParams) -> torch.Tensor:
    """
    PyTorch reference implementation of QuantizeLinear.

    Works on any device (CPU or CUDA).
    """
    scale, zero_point = params.broadcast(x.shape, device=x.device)
    return _saturate(x.float() / scale, zero_point, params)


def dequantize_linear_torch(x: torch.Tensor, params: QuantParams) -> torch.Tensor:
    """
    PyTorch reference implementation of DequantizeLinear.

    Works on any device (CPU or CUDA).
    """
    scale, zero_point = params.broadcast(x.shape, device=x.device)
    return (x.to(torch.int32) - zero_point).to(torch.float32) * scale


def requantize_torch(acc: torch.Tensor, params: QuantParams) -> torch.Tensor:
    """
    PyTorch reference implementation of requantization.

    The product is formed in float64 so accumulators above 2**24 do not
    lose integer precision before rounding.
    """
    multiplier, zero_point = params.broadcast(acc.shape, device=acc.device)
    return requantize_scaled_torch(acc, multiplier, zero_point, params)


def requantize_scaled_torch(
    acc: torch.Tensor,
    multiplier: torch.Tensor,
    zero_point: torch.Tensor,
    params: QuantParams,
) -> torch.Tensor:
    """
    Requantize with a multiplier and zero point already shaped against acc.

    The multiplier is used as given, in float64, and is not re-validated as a
    float32 scale; only the element type and range are taken from params.
    """
    return _saturate(acc.to(torch.float64) * multiplier.to(torch.float64), zero_point, params)


# Triton kernels (only defined when Triton is available)
if HAS_TRITON:
    @triton.jit
    def _round_half_to_even(v):
        """Half-to-even rounding from floor; v - floor(v) is exact."""
        f = tl.floor(v)
        diff = v - f
        odd = (f - 2.0 * tl.floor(f * 0.5)) != 0.0
        up = (diff > 0.5) | ((diff == 0.5) & odd)
        return tl.where(up, f + 1.0, f)

    @triton.jit
    def _quantize_kernel(
        X,           # Float input pointer
        Y,           # Quantized output pointer (uint8 / int8)
        Scale,       # Scale pointer (FP32): [channels]
        ZeroPoint,   # Zero point pointer (INT32): [channels]
        n_elements,  # Total number of elements
        inner,       # Elements per step along the quantization axis
        channels,    # Extent of the quantization axis (1 for per-tensor)
        qmin,
        qmax,
        BLOCK_SIZE: tl.constexpr,
    ):
        """Triton kernel for QuantizeLinear."""
        pid = tl.program_id(0)
        offsets = pid * BLOCK_SIZE + tl.arange(0, BLOCK_SIZE)
        mask = offsets < n_elements
        channel = (offsets // inner) % channels

        x = tl.load(X + offsets, mask=mask, other=0.0).to(tl.float32)
        scale = tl.load(Scale + channel, mask=mask, other=1.0)
        zp = tl.load(ZeroPoint + channel, mask=mask, other=0).to(tl.float32)

        v = x / scale
        v = tl.where(v != v, 0.0, v)  # NaN
        q = _round_half_to_even(v) + zp
        q = tl.minimum(tl.maximum(q, qmin), qmax)
        tl.store(Y + offsets, q.to(Y.dtype.element_ty), mask=mask)

    @triton.jit
    def _dequantize_kernel(
        X, Y, Scale, ZeroPoint,
        n_elements, inner, channels,
        BLOCK_SIZE: tl.constexpr,
    ):
        """Triton kernel for DequantizeLinear."""
        pid = tl.program_id(0)
        offsets = pid * BLOCK_SIZE + tl.arange(0, BLOCK_SIZE)
        mask = offsets < n_elements
        channel = (offsets // inner) % channels

        x = tl.load(X + offsets, mask=mask, other=0).to(tl.int32)
        scale = tl.load(Scale + channel, mask=mask, other=1.0)
        zp = tl.load(ZeroPoint + channel, mask=mask, other=0)

        y = (x - zp).to(tl.float32) * scale
        tl.store(Y + offsets, y, mask=mask)

    @triton.jit
    def _requantize_kernel(
        Acc, Y, Multiplier, ZeroPoint,
        n_elements, inner, channels,
        qmin, qmax,
        BLOCK_SIZE: tl.constexpr,
    ):
        """Triton kernel for requantizing INT32 accumulators."""
        pid = tl.program_id(0)
        offsets = pid * BLOCK_SIZE + tl.arange(0, BLOCK_SIZE)
        mask = offsets < n_elements
        channel = (offsets // inner) % channels

        acc = tl.load(Acc + offsets, mask=mask, other=0).to(tl.float64)
        multiplier = tl.load(Multiplier + channel, mask=mask, other=1.0).to(tl.float64)
        zp = tl.load(ZeroPoint + channel, mask=mask, other=0).to(tl.float64)

        q = _round_half_to_even(acc * multiplier) + zp
        q = tl.minimum(tl.maximum(q, qmin), qmax)
        tl.store(Y + offsets, q.to(Y.dtype.element_ty), mask=mask)

    def _launch_elementwise(kernel, x, y, params, with_range):
        """Launch one of the element-wise kernels over flattened tensors."""
        axis = params.resolve_axis(x.shape)
        inner, channels = _axis_geometry(x.shape, axis)
        x_flat = x.contiguous().view(-1)
        n_elements = x_flat.numel()

        BLOCK_SIZE = 1024
        grid = (triton.cdiv(n_elements, BLOCK_SIZE),)

        extra = (params.qmin, params.qmax) if with_range else ()
        kernel[grid](
            x_flat,
            y.view(-1),
            params.scale.to(x.device),
            params.zero_point.to(x.device),
            n_elements,
            inner,
            channels,
            *extra,
            BLOCK_SIZE=BLOCK_SIZE,
        )
        return y

    def _quantize_triton(x: torch.Tensor, params: QuantParams) -> torch.Tensor:
        """Triton implementation of QuantizeLinear (requires CUDA + Triton)."""
        y = torch.empty(x.shape, dtype=params.dtype, device=x.device)
        return _launch_elementwise(_quantize_kernel, x, y, params, with_range=True)

    def _dequantize_triton(x: torch.Tensor, params: QuantParams) -> torch.Tensor:
        """Triton implementation of DequantizeLinear (requires CUDA + Triton)."""
        y = torch.empty(x.shape, dtype=torch.float32, device=x.device)
        return _launch_elementwise(_dequantize_kernel, x, y, params, with_range=False)

    def _requantize_triton(acc: torch.Tensor, params: QuantParams) -> torch.Tensor:
        """Triton implementation of requantization (requires CUDA + Triton)."""
        y = torch.empty(acc.shape, dtype=params.dtype, device=acc.device)
        return _launch_elementwise(_requantize_kernel, acc, y, params, with_range=True)


def quantize_linear(
    x: torch.Tensor,
    scale: ScaleLike,
    zero_point: Optional[ParamLike] = None,
    axis: Optional[int] = None,
    dtype: Optional[torch.dtype] = None,
    out: Optional[torch.Tensor] = None,
) -> torch.Tensor:
    """
    QuantizeLinear: real tensor to uint8/int8 tensor.

    Computes: y = clamp(round_half_to_even(x / scale) + zero_point, qmin, qmax)

    Uses Triton kernel on CUDA when available, otherwise falls back to PyTorch.

    Args:
        x: Floating point tensor. Computation happens in float32.
        scale: Scale(s), or a prebuilt QuantParams. One value means
            per-tensor; several mean per-axis along `axis`.
        zero_point: Zero point(s). Defaults to 0. A uint8/int8 tensor also
            selects the output type.
        axis: Per-axis dimension, may be negative. Defaults to 1 for
            per-axis parameters.
        dtype: Output type (torch.uint8 or torch.int8). Defaults to the
            zero point's type, else uint8.
        out: Optional preallocated output of x's shape and the output type.

    Returns:
        Quantized tensor of the same shape as x.

    Raises:
        InvalidParams: bad scale, zero point, axis or per-axis cardinality.
        UnsupportedElementType: x is not floating point, or dtype is not
            uint8/int8.

    Example:
        >>> x = torch.tensor([32.25, 48.34, 50.0, 83.0])
        >>> quantize_linear(x, 0.5)
        tensor([ 64,  97, 100, 166], dtype=torch.uint8)
    """
    if not x.is_floating_point():
        raise UnsupportedElementType(f"quantize_linear expects a float tensor, got {x.dtype}")
    params = QuantParams.create(scale, zero_point, axis, dtype)
    params.resolve_axis(x.shape)
    _check_out(out, x.shape, params.dtype)

    if HAS_TRITON and use_triton(x):
        logger.debug("quantize_linear: triton path for %s", tuple(x.shape))
        return _emit(_quantize_triton(x, params), out)

    return _emit(quantize_linear_torch(x, params), out)


def dequantize_linear(
    x: torch.Tensor,
    scale: ScaleLike,
    zero_point: Optional[ParamLike] = None,
    axis: Optional[int] = None,
    out: Optional[torch.Tensor] = None,
) -> torch.Tensor:
    """
    DequantizeLinear: uint8/int8 tensor to float32 tensor.

    Computes: y = (x - zero_point) * scale

    Uses Triton kernel on CUDA when available, otherwise falls back to PyTorch.

    Args:
        x: Quantized tensor (torch.uint8 or torch.int8).
        scale: Scale(s), or a prebuilt QuantParams of x's element type.
        zero_point: Zero point(s). Defaults to 0. A typed zero point must
            share x's element type.
        axis: Per-axis dimension, may be negative. Defaults to 1 for
            per-axis parameters.
        out: Optional preallocated float32 output of x's shape.

    Returns:
        Float32 tensor of the same shape as x.

    Example:
        >>> x = torch.tensor([19, 210, 21, 10], dtype=torch.uint8)
        >>> dequantize_linear(x, 4.0)
        tensor([ 76., 840.,  84.,  40.])
    """
    if x.dtype not in QUANTIZED_DTYPES:
        raise UnsupportedElementType(
            f"dequantize_linear expects a uint8 or int8 tensor, got {x.dtype}"
        )
    params = QuantParams.create(scale, zero_point, axis, dtype=x.dtype)
    params.resolve_axis(x.shape)
    _check_out(out, x.shape, torch.float32)

    if HAS_TRITON and use_triton(x):
        logger.debug("dequantize_linear: triton path for %s", tuple(x.shape))
        return _emit(_dequantize_triton(x, params), out)

    return _emit(dequantize_linear_torch(x, params), out)


def requantize(
    acc: torch.Tensor,
    multiplier: ScaleLike,
    zero_point: Optional[ParamLike] = None,
    axis: Optional[int] = None,
    dtype: Optional[torch.dtype] = None,
    out: Optional[torch.Tensor] = None,
) -> torch.Tensor:
    """
    Rescale a wide integer accumulator into a narrow quantized tensor.

    Computes: y = clamp(round_half_to_even(acc * multiplier) + zero_point, qmin, qmax)

    The multiplier is typically x_scale * w_scale / y_scale, per tensor or
    per output channel.

    Args:
        acc: Integer accumulator tensor (usually int32).
        multiplier: Combined scale(s), or a prebuilt QuantParams.
        zero_point: Output zero point(s). Defaults to 0.
        axis: Per-axis dimension for per-channel multipliers.
        dtype: Output type. Defaults to the zero point's type, else uint8.
        out: Optional preallocated output.

    Example:
        >>> acc = torch.tensor([8, 12, 20, 24], dtype=torch.int32)
        >>> requantize(acc, 0.0625, torch.tensor(10, dtype=torch.uint8))
        tensor([10, 11, 11, 12], dtype=torch.uint8)
    """
    if acc.is_floating_point() or acc.is_complex() or acc.dtype == torch.bool:
        raise UnsupportedElementType(f"requantize expects an integer accumulator, got {acc.dtype}")
    params = QuantParams.create(multiplier, zero_point, axis, dtype)
    params.resolve_axis(acc.shape)
    _check_out(out, acc.shape, params.dtype)

    if HAS_TRITON and use_triton(acc):
        logger.debug("requantize: triton path for %s", tuple(acc.shape))
        return _emit(_requantize_triton(acc, params), out)

    return _emit(requantize_torch(acc, params), out)


def calculate_quantization_error(
    original: torch.Tensor,
    quantized: torch.Tensor,
    params: QuantParams,
) -> Dict[str, float]:
    """
    Calculate quantization error metrics.

    Args:
        original: Original float tensor.
        quantized: Its quantized form, as produced by quantize_linear.
        params: Parameters used for quantization.

    Returns:
        Dictionary with error metrics:
        - max_abs_error: Maximum absolute error
        - mean_abs_error: Mean absolute error
        - max_error_in_steps: Max error relative to the applicable scale;
          at most 0.5 for values inside the representable range
        - snr_db: Signal-to-noise ratio in dB
    """
    restored = dequantize_linear(quantized, params)
    scale, _ = params.broadcast(original.shape, device=original.device)

    diff = (original.float() - restored).abs()
    original_float = original.float()

    signal_power = (original_float ** 2).mean()
    noise_power = (diff ** 2).mean()
    snr_db = 10 * torch.log10(signal_power / (noise_power + 1e-10)).item()

    return {
        "max_abs_error": diff.max().item() if diff.numel() else 0.0,
        "mean_abs_error": diff.mean().item() if diff.numel() else 0.0,
        "max_error_in_steps": (diff / scale).max().item() if diff.numel() else 0.0,
        "snr_db": snr_db,
    }


class QuantizeLinear(torch.nn.Module):
    """
    QuantizeLinear as a module with fixed parameters.

    Args:
        scale: Scale value(s).
        zero_point: Zero point value(s). Defaults to 0.
        axis: Per-axis dimension. Defaults to 1 for per-axis parameters.
        dtype: Output type. Defaults to the zero point's type, else uint8.

    Example:
        >>> quant = QuantizeLinear(2.0, torch.tensor(128, dtype=torch.uint8))
        >>> quant(torch.tensor([0.0, 2.0, 3.0, 1000.0]))
        tensor([128, 129, 130, 255], dtype=torch.uint8)
    """

    def __init__(
        self,
        scale: ParamLike,
        zero_point: Optional[ParamLike] = None,
        axis: Optional[int] = None,
        dtype: Optional[torch.dtype] = None,
    ):
        super().__init__()
        params = QuantParams.create(scale, zero_point, axis, dtype)
        self.register_buffer("scale", params.scale)
        self.register_buffer("zero_point", params.zero_point)
        self.axis = params.axis
        self.dtype = params.dtype

    @property
    def params(self) -> QuantParams:
        return QuantParams(self.scale, self.zero_point, self.axis, self.dtype)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return quantize_linear(x, self.params)

    def extra_repr(self) -> str:
        return f"channels={self.scale.numel()}, axis={self.axis}, dtype={self.dtype}"


class DequantizeLinear(torch.nn.Module):
    """
    DequantizeLinear as a module with fixed parameters.

    Args:
        scale: Scale value(s).
        zero_point: Zero point value(s). Defaults to 0.
        axis: Per-axis dimension. Defaults to 1 for per-axis parameters.
        dtype: Expected input type. Defaults to the zero point's type, else
            uint8.
    """

    def __init__(
        self,
        scale: ParamLike,
        zero_point: Optional[ParamLike] = None,
        axis: Optional[int] = None,
        dtype: Optional[torch.dtype] = None,
    ):
        super().__init__()
        params = QuantParams.create(scale, zero_point, axis, dtype)
        self.register_buffer("scale", params.scale)
        self.register_buffer("zero_point", params.zero_point)
        self.axis = params.axis
        self.dtype = params.dtype

    @property
    def params(self) -> QuantParams:
        return QuantParams(self.scale, self.zero_point, self.axis, self.dtype)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return dequantize_linear(x, self.params)

    def extra_repr(self) -> str:
        return f"channels={self.scale.numel()}, axis={self.axis}, dtype={self.dtype}"
