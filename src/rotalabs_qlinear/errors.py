"""Exception types raised by the quantized operators.

Every error describes a static misconfiguration of an operator node and is
raised before any output is allocated or written. Saturation during
quantization is not an error.
"""


class QLinearError(Exception):
    """Base class for all rotalabs-qlinear errors."""


class InvalidParams(QLinearError, ValueError):
    """Bad scale, zero point, axis or per-axis cardinality."""


class ShapeMismatch(InvalidParams):
    """Tensor shapes incompatible with each other or with conv attributes."""


class UnsupportedElementType(QLinearError, TypeError):
    """Element type outside the supported quantization matrix."""


class UnsupportedOperator(QLinearError, KeyError):
    """Operator kind with no registered kernel."""
