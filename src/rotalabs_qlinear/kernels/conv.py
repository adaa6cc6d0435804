"""
Quantized convolution (QLinearConv) computed in the integer domain.

Input, weights and output are all affine-quantized:

    x_real = x_scale * (x - x_zero_point)
    w_real = w_scale[m] * (w - w_zero_point[m])
    y_real = y_scale * (y - y_zero_point)

so the real-domain convolution factors into an integer accumulation and a
single per-channel rescale:

    acc[n, m, ...] = sum((x - x_zero_point) * (w - w_zero_point[m])) + bias[m]
    y = clamp(round_half_to_even(acc * x_scale * w_scale[m] / y_scale) + y_zero_point)

The dequantized float tensors are never materialized. Zero points are
subtracted before padding, so padded positions contribute exactly 0.

Accumulation runs as an N-d im2col followed by a grouped INT32 batched
matmul. CPU matmul supports integer operands directly; on CUDA the same
matmul runs in float64, which is exact while |acc| < 2**53.

Reference: ONNX QLinearConv operator
https://onnx.ai/onnx/operators/onnx__QLinearConv.html
"""

import logging
import math
from typing import Any, Mapping, Optional, Tuple, Union

import torch

from rotalabs_qlinear.config import AutoPad, ConvAttributes, ResolvedConv
from rotalabs_qlinear.errors import InvalidParams, ShapeMismatch, UnsupportedElementType
from rotalabs_qlinear.kernels.quantization import (
    ScaleLike,
    _check_out,
    _emit,
    quantize_linear,
    requantize_scaled_torch,
    round_half_to_even,
)
from rotalabs_qlinear.quantization.params import (
    QUANTIZED_DTYPES,
    ParamLike,
    QuantParams,
    normalize_axis,
)

logger = logging.getLogger(__name__)

AttrsLike = Union[ConvAttributes, Mapping[str, Any], None]


def _weight_params(
    w: torch.Tensor,
    w_scale: ScaleLike,
    w_zero_point: Optional[ParamLike],
) -> QuantParams:
    """Weight parameters: per-tensor or per output channel (axis 0)."""
    if isinstance(w_scale, QuantParams):
        params = QuantParams.create(w_scale, w_zero_point, dtype=w.dtype)
    else:
        params = QuantParams.create(w_scale, w_zero_point, axis=0, dtype=w.dtype)
    if params.is_per_axis and normalize_axis(params.axis, w.dim()) != 0:
        raise InvalidParams(
            f"per-channel weight parameters must use axis 0, got axis {params.axis}"
        )
    params.resolve_axis(w.shape)
    return params


def _per_tensor(params: QuantParams, name: str) -> QuantParams:
    if params.is_per_axis:
        raise InvalidParams(f"{name} must be per-tensor, got {params.num_channels} values")
    return params


def _int_matmul(a: torch.Tensor, b: torch.Tensor) -> torch.Tensor:
    if a.device.type == "cpu":
        return torch.matmul(a, b)
    # No integer matmul on CUDA; float64 holds every partial sum exactly.
    return torch.matmul(a.to(torch.float64), b.to(torch.float64)).to(torch.int32)


def _extract_patches(
    x: torch.Tensor,
    kernel_shape: Tuple[int, ...],
    geometry: ResolvedConv,
) -> torch.Tensor:
    """
    N-d im2col over a (N, C, *spatial) tensor.

    Returns a (N, C, *kernel_shape, *output_shape) view-derived tensor.
    """
    pad = []
    for begin, end in zip(reversed(geometry.pads_begin), reversed(geometry.pads_end)):
        pad.extend([begin, end])
    if any(pad):
        x = torch.nn.functional.pad(x, pad)

    patches = x
    for d, (k, s, dil) in enumerate(zip(kernel_shape, geometry.strides, geometry.dilations)):
        window = dil * (k - 1) + 1
        # unfold appends the window as the last dimension
        patches = patches.unfold(2 + d, window, s)
        if dil > 1:
            patches = patches[..., ::dil]

    spatial = len(kernel_shape)
    perm = [0, 1] + [2 + spatial + i for i in range(spatial)] + [2 + i for i in range(spatial)]
    return patches.permute(perm)


def qlinear_conv_accumulate(
    x_centered: torch.Tensor,
    w_centered: torch.Tensor,
    geometry: ResolvedConv,
    group: int = 1,
) -> torch.Tensor:
    """
    INT32 convolution accumulator over zero-point-subtracted operands.

    Args:
        x_centered: INT32 input minus its zero point, shape (N, C, *spatial).
        w_centered: INT32 weight minus its zero point(s), shape
            (M, C / group, *kernel).
        geometry: Resolved strides, dilations, pads and output shape.
        group: Number of channel groups.

    Returns:
        INT32 tensor of shape (N, M, *geometry.output_shape).
    """
    n, c = x_centered.shape[:2]
    m = w_centered.shape[0]
    kernel_shape = tuple(w_centered.shape[2:])
    kernel_numel = math.prod(kernel_shape)
    out_numel = math.prod(geometry.output_shape)

    patches = _extract_patches(x_centered, kernel_shape, geometry)
    cols = patches.reshape(n, group, (c // group) * kernel_numel, out_numel)
    weights = w_centered.reshape(group, m // group, (c // group) * kernel_numel)

    acc = _int_matmul(weights.unsqueeze(0), cols)  # (N, G, M/G, L)
    return acc.reshape(n, m, *geometry.output_shape)


def qlinear_conv(
    x: torch.Tensor,
    x_scale: ScaleLike,
    x_zero_point: Optional[ParamLike],
    w: torch.Tensor,
    w_scale: ScaleLike,
    w_zero_point: Optional[ParamLike],
    y_scale: ScaleLike,
    y_zero_point: Optional[ParamLike] = None,
    attrs: AttrsLike = None,
    bias: Optional[torch.Tensor] = None,
    dtype: Optional[torch.dtype] = None,
    out: Optional[torch.Tensor] = None,
) -> torch.Tensor:
    """
    QLinearConv: convolution of quantized input and weights into a quantized output.

    Equivalent to dequantize -> convolve -> quantize, computed with an INT32
    accumulator and one requantization at the end.

    Args:
        x: uint8/int8 input of shape (N, C, *spatial).
        x_scale: Per-tensor input scale (or QuantParams).
        x_zero_point: Per-tensor input zero point, or None for 0.
        w: uint8/int8 weight of shape (M, C / group, *kernel).
        w_scale: Weight scale, per tensor or one per output channel M.
        w_zero_point: Weight zero point(s), or None for 0.
        y_scale: Per-tensor output scale.
        y_zero_point: Per-tensor output zero point; its element type selects
            the output type unless `dtype` is given. Defaults to 0 (uint8).
        attrs: ConvAttributes or an ONNX-style attribute mapping.
        bias: Optional INT32 bias of shape (M,), in accumulator units
            (scale x_scale * w_scale, zero point 0).
        dtype: Output type override (torch.uint8 or torch.int8).
        out: Optional preallocated output.

    Returns:
        Quantized tensor of shape (N, M, *output_spatial).

    Raises:
        InvalidParams: bad or wrongly shaped quantization parameters.
        ShapeMismatch: channel, group, kernel or bias shapes disagree.
        UnsupportedElementType: operands outside uint8/int8, bias not integer.

    Example:
        >>> x = torch.arange(1, 10, dtype=torch.uint8).reshape(1, 1, 3, 3)
        >>> w = torch.full((1, 1, 2, 2), 3, dtype=torch.uint8)
        >>> qlinear_conv(x, 0.5, torch.tensor(1, dtype=torch.uint8),
        ...              w, 0.5, torch.tensor(2, dtype=torch.uint8),
        ...              4.0, torch.tensor(10, dtype=torch.uint8))
        tensor([[[[10, 11],
                  [11, 12]]]], dtype=torch.uint8)
    """
    for name, tensor in (("x", x), ("w", w)):
        if tensor.dtype not in QUANTIZED_DTYPES:
            raise UnsupportedElementType(f"{name} must be uint8 or int8, got {tensor.dtype}")
    if x.dim() < 3:
        raise ShapeMismatch(f"x must have shape (N, C, *spatial), got {tuple(x.shape)}")
    if w.dim() != x.dim():
        raise ShapeMismatch(
            f"w has rank {w.dim()} but x has rank {x.dim()}: {tuple(w.shape)} vs {tuple(x.shape)}"
        )
    if w.device != x.device:
        raise InvalidParams(f"x and w live on different devices: {x.device} vs {w.device}")

    if attrs is None:
        attrs = ConvAttributes()
    elif not isinstance(attrs, ConvAttributes):
        attrs = ConvAttributes.from_dict(attrs)

    x_params = _per_tensor(QuantParams.create(x_scale, x_zero_point, dtype=x.dtype), "x_scale")
    w_params = _weight_params(w, w_scale, w_zero_point)
    y_params = _per_tensor(QuantParams.create(y_scale, y_zero_point, dtype=dtype), "y_scale")

    channels, out_channels, group = x.shape[1], w.shape[0], attrs.group
    if w.shape[1] * group != channels:
        raise ShapeMismatch(
            f"input has {channels} channels but weight expects {w.shape[1]} x group {group}"
        )
    if out_channels % group != 0:
        raise ShapeMismatch(f"{out_channels} output channels not divisible by group {group}")

    geometry = attrs.resolve(tuple(x.shape[2:]), tuple(w.shape[2:]))
    out_shape = (x.shape[0], out_channels) + geometry.output_shape

    if bias is not None:
        if bias.is_floating_point() or bias.is_complex() or bias.dtype == torch.bool:
            raise UnsupportedElementType(f"bias must be an integer tensor, got {bias.dtype}")
        if tuple(bias.shape) != (out_channels,):
            raise ShapeMismatch(f"bias must have shape ({out_channels},), got {tuple(bias.shape)}")
    _check_out(out, out_shape, y_params.dtype)

    logger.debug(
        "qlinear_conv: x=%s w=%s group=%d -> %s", tuple(x.shape), tuple(w.shape), group, out_shape
    )

    channel_view = (1, -1) + (1,) * len(geometry.output_shape)
    # x_scale * w_scale[m] / y_scale in float64: the float32 product of valid
    # scales can underflow to 0 or overflow to inf.
    multiplier = (
        x_params.scale.to(x.device, torch.float64)
        * w_params.scale.to(x.device, torch.float64)
        / y_params.scale.to(x.device, torch.float64)
    ).view(channel_view)
    _, y_zp = y_params.broadcast(out_shape, device=x.device)

    _, x_zp = x_params.broadcast(x.shape, device=x.device)
    _, w_zp = w_params.broadcast(w.shape, device=w.device)
    x_centered = x.to(torch.int32) - x_zp
    w_centered = w.to(torch.int32) - w_zp

    acc = qlinear_conv_accumulate(x_centered, w_centered, geometry, group)
    if bias is not None:
        acc = acc + bias.to(device=acc.device, dtype=torch.int32).view(channel_view)

    return _emit(requantize_scaled_torch(acc, multiplier, y_zp, y_params), out)


def quantize_conv_weight(weight: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
    """
    Symmetric per-output-channel INT8 quantization of a float conv weight.

    scale[m] = max(|weight[m]|) / 127, with all-zero channels given scale 1.

    Returns:
        Tuple of (weight_int8, scale) with scale of shape (M,).
    """
    qmax = 127
    max_val = weight.detach().abs().reshape(weight.shape[0], -1).amax(dim=1).float()
    scale = max_val / qmax
    scale = torch.where(scale == 0, torch.ones_like(scale), scale)
    weight_int8 = quantize_linear(weight.detach().float(), scale, axis=0, dtype=torch.int8)
    return weight_int8, scale


class QLinearConv(torch.nn.Module):
    """
    Convolution layer with quantized input, weights and output.

    Holds the quantized weight and every scale / zero point in buffers and
    runs qlinear_conv in forward.

    Args:
        weight: uint8/int8 weight of shape (M, C / group, *kernel).
        w_scale: Weight scale(s), per tensor or per output channel.
        w_zero_point: Weight zero point(s).
        x_scale: Input scale.
        x_zero_point: Input zero point; its type fixes the expected input type.
        y_scale: Output scale.
        y_zero_point: Output zero point; its type fixes the output type.
        attrs: Convolution attributes.
        bias: Optional INT32 bias in accumulator units.

    Example:
        >>> conv = torch.nn.Conv2d(3, 8, kernel_size=3, padding=1)
        >>> qconv = QLinearConv.from_conv(
        ...     conv, x_scale=0.02, x_zero_point=torch.tensor(128, dtype=torch.uint8),
        ...     y_scale=0.05, y_zero_point=torch.tensor(128, dtype=torch.uint8))
        >>> y = qconv(torch.randint(0, 256, (1, 3, 16, 16), dtype=torch.uint8))
    """

    def __init__(
        self,
        weight: torch.Tensor,
        w_scale: ParamLike,
        w_zero_point: Optional[ParamLike],
        x_scale: ParamLike,
        x_zero_point: Optional[ParamLike],
        y_scale: ParamLike,
        y_zero_point: Optional[ParamLike] = None,
        attrs: AttrsLike = None,
        bias: Optional[torch.Tensor] = None,
    ):
        super().__init__()
        if weight.dtype not in QUANTIZED_DTYPES:
            raise UnsupportedElementType(f"weight must be uint8 or int8, got {weight.dtype}")
        if attrs is None:
            attrs = ConvAttributes()
        elif not isinstance(attrs, ConvAttributes):
            attrs = ConvAttributes.from_dict(attrs)

        w_params = _weight_params(weight, w_scale, w_zero_point)
        x_params = _per_tensor(QuantParams.create(x_scale, x_zero_point), "x_scale")
        y_params = _per_tensor(QuantParams.create(y_scale, y_zero_point), "y_scale")

        self.register_buffer("weight", weight.clone())
        self.register_buffer("w_scale", w_params.scale)
        self.register_buffer("w_zero_point", w_params.zero_point)
        self.register_buffer("x_scale", x_params.scale)
        self.register_buffer("x_zero_point", x_params.zero_point)
        self.register_buffer("y_scale", y_params.scale)
        self.register_buffer("y_zero_point", y_params.zero_point)
        if bias is not None:
            self.register_buffer("bias", bias.to(torch.int32).clone())
        else:
            self.register_buffer("bias", None)

        self.attrs = attrs
        self.x_dtype = x_params.dtype
        self.y_dtype = y_params.dtype

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        w_params = QuantParams(self.w_scale, self.w_zero_point, axis=0, dtype=self.weight.dtype)
        x_params = QuantParams(self.x_scale, self.x_zero_point, dtype=self.x_dtype)
        y_params = QuantParams(self.y_scale, self.y_zero_point, dtype=self.y_dtype)
        return qlinear_conv(
            x, x_params, None,
            self.weight, w_params, None,
            y_params, None,
            attrs=self.attrs,
            bias=self.bias,
        )

    @classmethod
    def from_conv(
        cls,
        conv: torch.nn.modules.conv._ConvNd,
        x_scale: ParamLike,
        y_scale: ParamLike,
        x_zero_point: Optional[ParamLike] = None,
        y_zero_point: Optional[ParamLike] = None,
    ) -> "QLinearConv":
        """
        Create QLinearConv from an existing float nn.Conv1d/2d/3d.

        Weights are quantized symmetrically per output channel to INT8; the
        bias is quantized to INT32 with scale x_scale * w_scale and zero
        point 0.

        Args:
            conv: Pretrained convolution with zero padding mode.
            x_scale: Scale of the quantized input this layer will receive.
            y_scale: Scale of the quantized output.
            x_zero_point: Input zero point. Defaults to 0 (uint8).
            y_zero_point: Output zero point. Defaults to 0 (uint8).
        """
        if conv.padding_mode != "zeros":
            raise InvalidParams(f"Only zero padding is supported, got {conv.padding_mode}")
        if isinstance(conv, torch.nn.modules.conv._ConvTransposeNd):
            raise InvalidParams("Transposed convolutions are not supported")

        if isinstance(conv.padding, str):
            auto_pad = AutoPad.SAME_UPPER if conv.padding == "same" else AutoPad.VALID
            pads = None
        else:
            auto_pad = AutoPad.NOTSET
            pads = tuple(conv.padding)
        attrs = ConvAttributes(
            kernel_shape=tuple(conv.kernel_size),
            strides=tuple(conv.stride),
            pads=pads,
            dilations=tuple(conv.dilation),
            group=conv.groups,
            auto_pad=auto_pad,
        )

        weight_int8, w_scale = quantize_conv_weight(conv.weight.data)
        x_params = QuantParams.create(x_scale, x_zero_point)

        bias = None
        if conv.bias is not None:
            bias_scale = x_params.scale.to(w_scale.device) * w_scale
            bias = round_half_to_even(conv.bias.data.float() / bias_scale).to(torch.int32)

        return cls(
            weight_int8, w_scale, None,
            x_params.scale, x_params.zero_point.to(x_params.dtype),
            y_scale, y_zero_point,
            attrs=attrs,
            bias=bias,
        )

    def extra_repr(self) -> str:
        return (
            f"in_channels={self.weight.shape[1] * self.attrs.group}, "
            f"out_channels={self.weight.shape[0]}, kernel_shape={tuple(self.weight.shape[2:])}, "
            f"group={self.attrs.group}, bias={self.bias is not None}"
        )
