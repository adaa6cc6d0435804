"""
Affine quantization parameters and per-axis broadcasting.

A quantized value q represents the real value r through

    r = scale * (q - zero_point)

One (scale, zero_point) pair per tensor is per-tensor quantization. One pair
per slice along a designated axis is per-axis quantization; the slice an
element belongs to is selected by its coordinate along that axis alone.

Axis handling is done once, here: negative axes wrap by the tensor rank, an
unspecified axis defaults to 1, and the parameters are reshaped so they
broadcast along the resolved axis. Quantize, dequantize, requantize and the
QLinearConv weight scales all go through QuantParams.broadcast().
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence, Tuple, Union

import torch

from rotalabs_qlinear.errors import InvalidParams, UnsupportedElementType

QUANTIZED_DTYPES = (torch.uint8, torch.int8)

# Axis used when per-axis parameters arrive without one (channel axis of NCHW).
DEFAULT_AXIS = 1

ParamLike = Union[int, float, Sequence[float], torch.Tensor]


def qrange(dtype: torch.dtype) -> Tuple[int, int]:
    """Return (min, max) representable by a quantized element type."""
    if dtype not in QUANTIZED_DTYPES:
        raise UnsupportedElementType(
            f"Quantized tensors must be uint8 or int8, got {dtype}"
        )
    info = torch.iinfo(dtype)
    return info.min, info.max


def normalize_axis(axis: int, rank: int) -> int:
    """
    Map a possibly negative axis into [0, rank).

    Example:
        >>> normalize_axis(-2, 2)
        0
    """
    normalized = axis + rank if axis < 0 else axis
    if not 0 <= normalized < rank:
        raise InvalidParams(f"axis {axis} is out of range for a tensor of rank {rank}")
    return normalized


def _flatten(value: ParamLike, name: str) -> torch.Tensor:
    tensor = value if isinstance(value, torch.Tensor) else torch.as_tensor(value)
    if tensor.dim() > 1:
        raise InvalidParams(f"{name} must be a scalar or 1-D, got shape {tuple(tensor.shape)}")
    tensor = tensor.reshape(-1)
    if tensor.numel() == 0:
        raise InvalidParams(f"{name} must not be empty")
    return tensor


@dataclass(frozen=True, eq=False)
class QuantParams:
    """
    Immutable scale / zero-point description, per-tensor or per-axis.

    Attributes:
        scale: 1-D float32 tensor of strictly positive, finite scales.
        zero_point: 1-D int32 tensor of zero points, same length as scale.
        axis: Axis the parameters vary along. Ignored for per-tensor params.
        dtype: Quantized element type (torch.uint8 or torch.int8).

    Construct with QuantParams.create() to accept Python numbers, lists or
    tensors of any dtype; the raw constructor normalizes its fields the same
    way.

    Example:
        >>> params = QuantParams.create([1.0, 2.0, 4.0], axis=0)
        >>> params.lookup((2, 3), shape=(3, 4))
        (4.0, 0)
    """
    scale: torch.Tensor
    zero_point: Optional[torch.Tensor] = None
    axis: Optional[int] = None
    dtype: Optional[torch.dtype] = None

    def __post_init__(self) -> None:
        """Normalize and validate parameters."""
        scale = _flatten(self.scale, "scale")
        if scale.is_complex() or scale.dtype == torch.bool:
            raise InvalidParams(f"scale must be real-valued, got {scale.dtype}")
        scale = scale.to(torch.float32)
        if not bool(torch.isfinite(scale).all()):
            raise InvalidParams(f"scale must be finite, got {scale.tolist()}")
        if not bool((scale > 0).all()):
            raise InvalidParams(f"scale must be > 0, got {scale.tolist()}")

        dtype = self.dtype
        if self.zero_point is None:
            zero_point = torch.zeros(1, dtype=torch.int32, device=scale.device)
        else:
            zero_point = _flatten(self.zero_point, "zero_point")
            if zero_point.dtype in QUANTIZED_DTYPES:
                if dtype is not None and dtype != zero_point.dtype:
                    raise InvalidParams(
                        f"zero_point element type {zero_point.dtype} does not match {dtype}"
                    )
                dtype = zero_point.dtype
            elif zero_point.is_floating_point():
                if not bool((zero_point == zero_point.round()).all()):
                    raise InvalidParams(
                        f"zero_point must be integral, got {zero_point.tolist()}"
                    )
            elif zero_point.dtype == torch.bool or zero_point.is_complex():
                raise InvalidParams(f"zero_point must be an integer, got {zero_point.dtype}")

        if dtype is None:
            dtype = torch.uint8
        qmin, qmax = qrange(dtype)

        zp_wide = zero_point.to(torch.int64)
        if bool((zp_wide < qmin).any()) or bool((zp_wide > qmax).any()):
            raise InvalidParams(
                f"zero_point must lie in [{qmin}, {qmax}] for {dtype}, got {zp_wide.tolist()}"
            )
        zero_point = zp_wide.to(torch.int32)

        # A single-element side broadcasts over per-axis values on the other.
        n_scale, n_zp = scale.numel(), zero_point.numel()
        if n_scale != n_zp and min(n_scale, n_zp) != 1:
            raise InvalidParams(
                f"scale and zero_point sizes differ: {n_scale} vs {n_zp}"
            )
        channels = max(n_scale, n_zp)
        if n_scale != channels:
            scale = scale.expand(channels).clone()
        if n_zp != channels:
            zero_point = zero_point.expand(channels).clone()

        axis = self.axis
        if channels > 1 and axis is None:
            axis = DEFAULT_AXIS

        object.__setattr__(self, "scale", scale)
        object.__setattr__(self, "zero_point", zero_point.to(scale.device))
        object.__setattr__(self, "axis", axis)
        object.__setattr__(self, "dtype", dtype)

    @classmethod
    def create(
        cls,
        scale: Union[ParamLike, "QuantParams"],
        zero_point: Optional[ParamLike] = None,
        axis: Optional[int] = None,
        dtype: Optional[torch.dtype] = None,
    ) -> "QuantParams":
        """
        Build parameters from loose operator inputs.

        Args:
            scale: Scale value(s), or an existing QuantParams which is
                returned as is after checking it against dtype.
            zero_point: Zero point value(s). Defaults to 0. A uint8/int8
                tensor also fixes the element type.
            axis: Per-axis dimension; may be negative. Defaults to 1 for
                per-axis parameters.
            dtype: Quantized element type. Defaults to the zero point's
                type, else uint8.
        """
        if isinstance(scale, QuantParams):
            if zero_point is not None or axis is not None:
                raise InvalidParams("zero_point/axis must not be given alongside QuantParams")
            if dtype is not None and dtype != scale.dtype:
                raise InvalidParams(
                    f"QuantParams element type {scale.dtype} does not match {dtype}"
                )
            return scale
        return cls(scale=scale, zero_point=zero_point, axis=axis, dtype=dtype)

    @property
    def num_channels(self) -> int:
        return self.scale.numel()

    @property
    def is_per_axis(self) -> bool:
        return self.num_channels > 1

    @property
    def qmin(self) -> int:
        return qrange(self.dtype)[0]

    @property
    def qmax(self) -> int:
        return qrange(self.dtype)[1]

    def resolve_axis(self, shape: Sequence[int]) -> Optional[int]:
        """
        Normalize the axis against a tensor shape.

        Returns None for per-tensor parameters. Raises InvalidParams when the
        axis is out of bounds or the channel count differs from shape[axis].
        """
        if not self.is_per_axis:
            return None
        axis = normalize_axis(self.axis, len(shape))
        if shape[axis] != self.num_channels:
            raise InvalidParams(
                f"per-axis parameters have {self.num_channels} values but axis {self.axis} "
                f"of shape {tuple(shape)} has extent {shape[axis]}"
            )
        return axis

    def broadcast(
        self,
        shape: Sequence[int],
        device: Optional[torch.device] = None,
    ) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Return (scale, zero_point) shaped to broadcast against `shape`.

        Per-tensor parameters come back as 0-d tensors; per-axis parameters
        as tensors of rank len(shape) with every extent 1 except the axis.
        """
        scale, zero_point = self.scale, self.zero_point
        if device is not None:
            scale, zero_point = scale.to(device), zero_point.to(device)
        axis = self.resolve_axis(shape)
        if axis is None:
            return scale.reshape(()), zero_point.reshape(())
        view = [1] * len(shape)
        view[axis] = self.num_channels
        return scale.view(view), zero_point.view(view)

    def lookup(self, index: Sequence[int], shape: Sequence[int]) -> Tuple[float, int]:
        """Return the (scale, zero_point) pair that applies at one multi-index."""
        if len(index) != len(shape):
            raise InvalidParams(f"index {tuple(index)} does not match rank {len(shape)}")
        for dim, (i, extent) in enumerate(zip(index, shape)):
            if not 0 <= i < extent:
                raise InvalidParams(
                    f"index {tuple(index)} is out of range for shape {tuple(shape)} at dim {dim}"
                )
        axis = self.resolve_axis(shape)
        channel = 0 if axis is None else index[axis]
        return float(self.scale[channel]), int(self.zero_point[channel])

    def __repr__(self) -> str:
        mode = f"axis={self.axis}" if self.is_per_axis else "per_tensor"
        return (
            f"QuantParams(scale={self.scale.tolist()}, zero_point={self.zero_point.tolist()}, "
            f"{mode}, dtype={self.dtype})"
        )
