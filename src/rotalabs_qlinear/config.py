"""Configuration classes for quantized convolution.

This module provides the attribute dataclass consumed by QLinearConv and the
resolution of those attributes against concrete input and kernel shapes
(explicit or automatic padding, output extents).

Author: Rotalabs Research <research@rotalabs.ai>
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple

from rotalabs_qlinear.errors import InvalidParams, ShapeMismatch


class AutoPad(Enum):
    """Automatic padding mode, with ONNX semantics.

    Attributes:
        NOTSET: Use the explicit pads.
        SAME_UPPER: Pad so output extent is ceil(input / stride); an odd
            total pad puts the extra element at the end.
        SAME_LOWER: As SAME_UPPER but the extra element goes at the beginning.
        VALID: No padding.
    """
    NOTSET = "NOTSET"
    SAME_UPPER = "SAME_UPPER"
    SAME_LOWER = "SAME_LOWER"
    VALID = "VALID"


def _as_tuple(value: Optional[Sequence[int]]) -> Optional[Tuple[int, ...]]:
    if value is None:
        return None
    if isinstance(value, int):
        return (value,)
    return tuple(int(v) for v in value)


@dataclass
class ConvAttributes:
    """Attributes of an N-dimensional convolution.

    Every field is optional; unset fields take their ONNX defaults once
    resolved against an input: unit strides and dilations, no padding,
    kernel shape taken from the weight.

    Attributes:
        kernel_shape: Spatial kernel extents. Checked against the weight.
        strides: Step per spatial axis. Default: all 1.
        pads: Either one value per spatial axis (same padding at both ends)
            or 2n values laid out [x1_begin, x2_begin, ..., x1_end, x2_end].
            Default: all 0.
        dilations: Kernel element spacing per spatial axis. Default: all 1.
        group: Number of groups input and output channels are split into.
            Default: 1.
        auto_pad: Automatic padding mode. Explicit pads are only allowed
            with NOTSET. Default: NOTSET.

    Example:
        >>> attrs = ConvAttributes(pads=(1, 1), strides=(2, 2))
        >>> attrs.resolve((9, 9), (3, 3)).output_shape
        (5, 5)
    """
    kernel_shape: Optional[Tuple[int, ...]] = None
    strides: Optional[Tuple[int, ...]] = None
    pads: Optional[Tuple[int, ...]] = None
    dilations: Optional[Tuple[int, ...]] = None
    group: int = 1
    auto_pad: AutoPad = AutoPad.NOTSET

    def __post_init__(self) -> None:
        """Validate configuration parameters."""
        self.kernel_shape = _as_tuple(self.kernel_shape)
        self.strides = _as_tuple(self.strides)
        self.pads = _as_tuple(self.pads)
        self.dilations = _as_tuple(self.dilations)
        if isinstance(self.auto_pad, str):
            try:
                self.auto_pad = AutoPad(self.auto_pad.upper())
            except ValueError:
                raise InvalidParams(f"Unknown auto_pad mode: {self.auto_pad}") from None

        if self.group < 1:
            raise InvalidParams(f"group must be >= 1, got {self.group}")
        if self.kernel_shape is not None and any(k < 1 for k in self.kernel_shape):
            raise InvalidParams(f"kernel_shape must be >= 1, got {self.kernel_shape}")
        if self.strides is not None and any(s < 1 for s in self.strides):
            raise InvalidParams(f"strides must be >= 1, got {self.strides}")
        if self.dilations is not None and any(d < 1 for d in self.dilations):
            raise InvalidParams(f"dilations must be >= 1, got {self.dilations}")
        if self.pads is not None and any(p < 0 for p in self.pads):
            raise InvalidParams(f"pads must be >= 0, got {self.pads}")
        if self.pads is not None and self.auto_pad != AutoPad.NOTSET and any(self.pads):
            raise InvalidParams(
                f"explicit pads {self.pads} cannot be combined with auto_pad={self.auto_pad.value}"
            )

    @classmethod
    def from_dict(cls, attributes: Optional[Mapping[str, Any]] = None) -> "ConvAttributes":
        """Build from an ONNX-style attribute mapping; unknown keys are rejected."""
        attributes = dict(attributes or {})
        known = {"kernel_shape", "strides", "pads", "dilations", "group", "auto_pad"}
        unknown = set(attributes) - known
        if unknown:
            raise InvalidParams(f"Unknown convolution attributes: {sorted(unknown)}")
        if isinstance(attributes.get("auto_pad"), bytes):
            attributes["auto_pad"] = attributes["auto_pad"].decode()
        return cls(**attributes)

    def to_dict(self) -> Dict[str, Any]:
        """Attribute mapping with unset fields omitted."""
        result: Dict[str, Any] = {"group": self.group, "auto_pad": self.auto_pad.value}
        for name in ("kernel_shape", "strides", "pads", "dilations"):
            value = getattr(self, name)
            if value is not None:
                result[name] = list(value)
        return result

    def resolve(
        self,
        input_spatial: Sequence[int],
        kernel_spatial: Sequence[int],
    ) -> "ResolvedConv":
        """
        Resolve defaults and padding against concrete spatial shapes.

        Args:
            input_spatial: Spatial extents of the input (without N and C).
            kernel_spatial: Spatial extents of the weight (without M and C/group).

        Returns:
            ResolvedConv with explicit strides, dilations, per-side pads and
            the output spatial shape.

        Raises:
            ShapeMismatch: attribute lengths disagree with the spatial rank,
                kernel_shape disagrees with the weight, or an output extent
                would be < 1.
        """
        rank = len(input_spatial)
        if len(kernel_spatial) != rank:
            raise ShapeMismatch(
                f"weight has {len(kernel_spatial)} spatial dims but input has {rank}"
            )
        if self.kernel_shape is not None and tuple(self.kernel_shape) != tuple(kernel_spatial):
            raise ShapeMismatch(
                f"kernel_shape {self.kernel_shape} does not match weight {tuple(kernel_spatial)}"
            )

        strides = self.strides or (1,) * rank
        dilations = self.dilations or (1,) * rank
        for name, value in (("strides", strides), ("dilations", dilations)):
            if len(value) != rank:
                raise ShapeMismatch(f"{name} has {len(value)} values for {rank} spatial dims")

        if self.auto_pad in (AutoPad.SAME_UPPER, AutoPad.SAME_LOWER):
            begin, end = [], []
            for size, k, s, d in zip(input_spatial, kernel_spatial, strides, dilations):
                out = -(-size // s)
                total = max(0, (out - 1) * s + (k - 1) * d + 1 - size)
                small = total // 2
                if self.auto_pad == AutoPad.SAME_UPPER:
                    begin.append(small)
                    end.append(total - small)
                else:
                    begin.append(total - small)
                    end.append(small)
            pads_begin, pads_end = tuple(begin), tuple(end)
        elif self.auto_pad == AutoPad.VALID or self.pads is None:
            pads_begin = pads_end = (0,) * rank
        elif len(self.pads) == rank:
            pads_begin = pads_end = tuple(self.pads)
        elif len(self.pads) == 2 * rank:
            pads_begin, pads_end = tuple(self.pads[:rank]), tuple(self.pads[rank:])
        else:
            raise ShapeMismatch(f"pads has {len(self.pads)} values for {rank} spatial dims")

        output_shape = []
        for size, k, s, d, pb, pe in zip(
            input_spatial, kernel_spatial, strides, dilations, pads_begin, pads_end
        ):
            extent = (size + pb + pe - ((k - 1) * d + 1)) // s + 1
            if extent < 1:
                raise ShapeMismatch(
                    f"convolution output would be empty: input {tuple(input_spatial)}, "
                    f"kernel {tuple(kernel_spatial)}, dilations {tuple(dilations)}, "
                    f"pads {pads_begin + pads_end}"
                )
            output_shape.append(extent)

        return ResolvedConv(
            strides=tuple(strides),
            dilations=tuple(dilations),
            pads_begin=pads_begin,
            pads_end=pads_end,
            output_shape=tuple(output_shape),
        )


@dataclass(frozen=True)
class ResolvedConv:
    """Convolution geometry with every default filled in."""
    strides: Tuple[int, ...]
    dilations: Tuple[int, ...]
    pads_begin: Tuple[int, ...]
    pads_end: Tuple[int, ...]
    output_shape: Tuple[int, ...]
