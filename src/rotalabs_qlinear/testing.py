"""Output validation for quantized operators.

Checks an operator's outputs the way a graph test harness does:
- shapes must match exactly
- integer outputs must match exactly
- float outputs must be close within a fixed tolerance

Example:
    >>> case = OpTestCase(OpKind.DEQUANTIZE_LINEAR)
    >>> case.add_input(torch.tensor([19, 210, 21, 10], dtype=torch.uint8))
    >>> case.add_input(torch.tensor(4.0))
    >>> case.add_expected_output((4,), [76.0, 840.0, 84.0, 40.0])
    >>> case.run()
"""

from __future__ import annotations

from typing import Callable, List, Optional, Sequence, Union

import torch

from rotalabs_qlinear.ops import OpKind, QuantNode, run_node

# Fixed tolerance for float outputs
FLOAT_RTOL = 1e-5
FLOAT_ATOL = 1e-6


def outputs_close(
    expected: torch.Tensor,
    actual: torch.Tensor,
    rtol: float = FLOAT_RTOL,
    atol: float = FLOAT_ATOL,
) -> bool:
    """True when shapes are equal and values match (exactly for integers)."""
    if tuple(expected.shape) != tuple(actual.shape):
        return False
    if expected.is_floating_point() or actual.is_floating_point():
        return bool(torch.allclose(actual.float(), expected.float(), rtol=rtol, atol=atol))
    return bool(torch.equal(actual.to(torch.int64), expected.to(torch.int64)))


def assert_outputs_close(
    expected: torch.Tensor,
    actual: torch.Tensor,
    rtol: float = FLOAT_RTOL,
    atol: float = FLOAT_ATOL,
) -> None:
    """
    Assert an output matches its expectation.

    Raises:
        AssertionError: shape, dtype or value mismatch.
    """
    if tuple(actual.shape) != tuple(expected.shape):
        raise AssertionError(
            f"Shape mismatch: expected {tuple(expected.shape)}, got {tuple(actual.shape)}"
        )
    if expected.is_floating_point():
        torch.testing.assert_close(actual, expected, rtol=rtol, atol=atol)
    else:
        torch.testing.assert_close(actual, expected, rtol=0, atol=0)


class OpTestCase:
    """
    Collects inputs and expected outputs for one operator and checks them.

    Args:
        op: An OpKind, a QuantNode, or any callable taking the inputs
            positionally.
        attributes: Node attributes when `op` is an OpKind.
    """

    def __init__(
        self,
        op: Union[OpKind, QuantNode, Callable[..., torch.Tensor]],
        attributes: Optional[dict] = None,
    ):
        if isinstance(op, OpKind):
            op = QuantNode(op, attributes or {})
        self.op = op
        self.inputs: List[Optional[torch.Tensor]] = []
        self.expected: List[torch.Tensor] = []

    def add_input(
        self,
        values: Union[torch.Tensor, Sequence, None],
        dtype: Optional[torch.dtype] = None,
    ) -> None:
        """Append one input; None stands for an omitted optional input."""
        if values is not None and not isinstance(values, torch.Tensor):
            values = torch.tensor(values, dtype=dtype)
        elif values is not None and dtype is not None:
            values = values.to(dtype)
        self.inputs.append(values)

    def add_expected_output(
        self,
        shape: Sequence[int],
        values: Union[torch.Tensor, Sequence],
        dtype: torch.dtype = torch.float32,
    ) -> None:
        """Append one expected output with its exact shape."""
        if not isinstance(values, torch.Tensor):
            values = torch.tensor(values, dtype=dtype)
        self.expected.append(values.reshape(tuple(shape)))

    def execute(self) -> List[torch.Tensor]:
        if isinstance(self.op, QuantNode):
            result = run_node(self.op, self.inputs)
        else:
            result = self.op(*self.inputs)
        return list(result) if isinstance(result, (tuple, list)) else [result]

    def run(self) -> List[torch.Tensor]:
        """Execute the operator and check every output; returns the outputs."""
        outputs = self.execute()
        if len(outputs) != len(self.expected):
            raise AssertionError(
                f"Expected {len(self.expected)} outputs, operator produced {len(outputs)}"
            )
        for expected, actual in zip(self.expected, outputs):
            assert_outputs_close(expected, actual)
        return outputs
