"""Operator-node dispatch for quantized graphs.

A graph executor describes each quantized operator as a QuantNode (kind plus
attributes) and hands its inputs over in ONNX operator order. Every kind maps
to one pure function; there is no per-node state.

Input order:
    QuantizeLinear:   x, y_scale, y_zero_point?
    DequantizeLinear: x, x_scale, x_zero_point?
    QLinearConv:      x, x_scale, x_zero_point, w, w_scale, w_zero_point,
                      y_scale, y_zero_point, B?

Optional inputs may be omitted from the end or passed as None.

Example:
    >>> node = QuantNode(OpKind.QUANTIZE_LINEAR)
    >>> run_node(node, [torch.tensor([32.25, 48.34]), torch.tensor(0.5)])
    tensor([64, 97], dtype=torch.uint8)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

import torch

from rotalabs_qlinear.errors import InvalidParams, ShapeMismatch, UnsupportedOperator
from rotalabs_qlinear.kernels.conv import qlinear_conv
from rotalabs_qlinear.kernels.quantization import dequantize_linear, quantize_linear

logger = logging.getLogger(__name__)


class OpKind(Enum):
    """Quantized operator kinds, valued by their ONNX op_type."""
    QUANTIZE_LINEAR = "QuantizeLinear"
    DEQUANTIZE_LINEAR = "DequantizeLinear"
    QLINEAR_CONV = "QLinearConv"


@dataclass(frozen=True)
class QuantNode:
    """One operator node: its kind, attributes and an optional name."""
    kind: OpKind
    attributes: Mapping[str, Any] = field(default_factory=dict)
    name: str = ""

    def __post_init__(self) -> None:
        if not isinstance(self.kind, OpKind):
            try:
                object.__setattr__(self, "kind", OpKind(self.kind))
            except ValueError:
                raise UnsupportedOperator(f"Unknown operator kind: {self.kind}") from None


def _unpack(
    inputs: Sequence[Optional[torch.Tensor]],
    total: int,
    required: Sequence[int],
    kind: OpKind,
) -> List[Optional[torch.Tensor]]:
    if len(inputs) > total:
        raise ShapeMismatch(f"{kind.value} takes at most {total} inputs, got {len(inputs)}")
    padded = list(inputs) + [None] * (total - len(inputs))
    missing = [i for i in required if padded[i] is None]
    if missing:
        raise InvalidParams(f"{kind.value} is missing required inputs at positions {missing}")
    return padded


def _check_attributes(attributes: Mapping[str, Any], allowed: Sequence[str], kind: OpKind) -> None:
    unknown = set(attributes) - set(allowed)
    if unknown:
        raise InvalidParams(f"Unknown {kind.value} attributes: {sorted(unknown)}")


def _run_quantize_linear(inputs, attributes):
    _check_attributes(attributes, ("axis",), OpKind.QUANTIZE_LINEAR)
    x, y_scale, y_zero_point = _unpack(inputs, 3, (0, 1), OpKind.QUANTIZE_LINEAR)
    return quantize_linear(x, y_scale, y_zero_point, axis=attributes.get("axis"))


def _run_dequantize_linear(inputs, attributes):
    _check_attributes(attributes, ("axis",), OpKind.DEQUANTIZE_LINEAR)
    x, x_scale, x_zero_point = _unpack(inputs, 3, (0, 1), OpKind.DEQUANTIZE_LINEAR)
    return dequantize_linear(x, x_scale, x_zero_point, axis=attributes.get("axis"))


def _run_qlinear_conv(inputs, attributes):
    x, x_scale, x_zp, w, w_scale, w_zp, y_scale, y_zp, bias = _unpack(
        inputs, 9, (0, 1, 3, 4, 6), OpKind.QLINEAR_CONV
    )
    return qlinear_conv(
        x, x_scale, x_zp, w, w_scale, w_zp, y_scale, y_zp,
        attrs=attributes,
        bias=bias,
    )


_KERNELS: Dict[OpKind, Callable[[List[Optional[torch.Tensor]], Dict[str, Any]], torch.Tensor]] = {
    OpKind.QUANTIZE_LINEAR: _run_quantize_linear,
    OpKind.DEQUANTIZE_LINEAR: _run_dequantize_linear,
    OpKind.QLINEAR_CONV: _run_qlinear_conv,
}


def run_node(node: QuantNode, inputs: Sequence[Optional[torch.Tensor]]) -> torch.Tensor:
    """
    Execute one quantized operator node.

    Args:
        node: Node kind and attributes.
        inputs: Operator inputs in ONNX order.

    Returns:
        The operator's single output tensor.

    Raises:
        UnsupportedOperator: no kernel is registered for node.kind.
        InvalidParams, ShapeMismatch, UnsupportedElementType: from the kernel.
    """
    kernel = _KERNELS.get(node.kind)
    if kernel is None:
        raise UnsupportedOperator(f"No kernel registered for {node.kind}")
    logger.debug("Running %s node %r", node.kind.value, node.name)
    return kernel(list(inputs), dict(node.attributes))
