"""Tests for QuantizeLinear."""

import pytest
import torch

from rotalabs_qlinear import (
    InvalidParams,
    QuantParams,
    ShapeMismatch,
    UnsupportedElementType,
    calculate_quantization_error,
    dequantize_linear,
    quantize_linear,
    round_half_to_even,
)
from rotalabs_qlinear.kernels import quantize_linear_torch


def _u8(value):
    return torch.tensor(value, dtype=torch.uint8)


def _i8(value):
    return torch.tensor(value, dtype=torch.int8)


class TestRoundHalfToEven:
    """Test tie-breaking."""

    def test_ties_go_to_even(self):
        x = torch.tensor([0.5, 1.5, 2.5, 3.5, -0.5, -1.5, -2.5])
        assert round_half_to_even(x).tolist() == [0.0, 2.0, 2.0, 4.0, -0.0, -2.0, -2.0]

    def test_non_ties_round_to_nearest(self):
        x = torch.tensor([0.49, 0.51, -0.51, 2.6])
        assert round_half_to_even(x).tolist() == [0.0, 1.0, -1.0, 3.0]


class TestQuantizeLinearPerTensor:
    """Test per-tensor quantization."""

    def test_quantize_linear(self):
        """Test scale only; 32.25 / 0.5 = 64.5 rounds to 64."""
        x = torch.tensor([32.25, 48.34, 50.0, 83.0])
        y = quantize_linear(x, 0.5)

        assert y.dtype == torch.uint8
        assert y.tolist() == [64, 97, 100, 166]

    def test_quantize_linear_zero_point(self):
        """Test zero point offset with saturation at both ends."""
        x = torch.tensor([0.0, 2.0, 3.0, 1000.0, -254.0, -1000.0])
        y = quantize_linear(x, 2.0, _u8(128))

        assert y.tolist() == [128, 129, 130, 255, 1, 0]

    def test_quantize_linear_int8(self):
        """Test int8 output and its saturation limits."""
        x = torch.tensor([-1.5, -0.5, 0.5, 1.5, 2.5, 200.0, -200.0])
        y = quantize_linear(x, 1.0, _i8(0))

        assert y.dtype == torch.int8
        assert y.tolist() == [-2, 0, 0, 2, 2, 127, -128]

    def test_quantize_linear_int8_zero_point(self):
        x = torch.tensor([0.0, 1.0, -300.0])
        y = quantize_linear(x, 2.0, _i8(-10))

        assert y.tolist() == [-10, -10, -128]

    def test_dtype_without_zero_point(self):
        """Test explicit dtype with the zero point defaulting to 0."""
        y = quantize_linear(torch.tensor([-3.0, 3.0]), 1.0, dtype=torch.int8)

        assert y.dtype == torch.int8
        assert y.tolist() == [-3, 3]

    def test_nan_maps_to_zero_point(self):
        x = torch.tensor([float("nan"), float("inf"), float("-inf")])
        y = quantize_linear(x, 1.0, _u8(5))

        assert y.tolist() == [5, 255, 0]

    def test_half_input(self):
        """Test half-precision input is computed in float32."""
        x = torch.tensor([1.0, 2.5, 4.0], dtype=torch.float16)
        assert quantize_linear(x, 1.0).tolist() == [1, 2, 4]

    def test_scalar_input(self):
        y = quantize_linear(torch.tensor(7.0), 2.0)
        assert y.shape == ()
        assert y.item() == 4

    def test_empty_input(self):
        y = quantize_linear(torch.empty(0, 3), 1.0)
        assert y.shape == (0, 3)
        assert y.dtype == torch.uint8


class TestQuantizeLinearPerAxis:
    """Test per-axis quantization."""

    def test_quantize_linear_axis_zero(self):
        """Test per-row scales along axis 0."""
        x = torch.tensor([
            [0.0, 2.0, 3.0, 1000.0],
            [0.0, 2.0, 3.0, 1000.0],
            [0.0, 2.0, 3.0, 1000.0],
        ])
        y = quantize_linear(x, torch.tensor([1.0, 2.0, 4.0]), _u8([0, 0, 0]), axis=0)

        assert y.flatten().tolist() == [0, 2, 3, 255, 0, 1, 2, 255, 0, 0, 1, 250]

    def test_quantize_linear_axis_negative(self):
        """Test axis -2 on a rank-2 tensor is axis 0."""
        x = torch.tensor([[0.0, 2.0, 3.0, 1000.0]] * 3)
        scale = torch.tensor([1.0, 2.0, 4.0])

        neg = quantize_linear(x, scale, _u8([0, 0, 0]), axis=-2)
        pos = quantize_linear(x, scale, _u8([0, 0, 0]), axis=0)

        assert torch.equal(neg, pos)
        assert neg.flatten().tolist() == [0, 2, 3, 255, 0, 1, 2, 255, 0, 0, 1, 250]

    def test_default_axis(self):
        """Test per-axis params without axis apply along dimension 1."""
        x = torch.tensor([[4.0, 4.0, 4.0], [8.0, 8.0, 8.0]])
        y = quantize_linear(x, [1.0, 2.0, 4.0])

        assert y.tolist() == [[4, 2, 1], [8, 4, 2]]

    def test_per_axis_zero_points(self):
        x = torch.zeros(2, 2, 3)
        y = quantize_linear(x, [1.0, 1.0], _i8([-5, 7]), axis=1)

        assert y[:, 0].eq(-5).all()
        assert y[:, 1].eq(7).all()

    def test_prebuilt_params(self):
        params = QuantParams.create([1.0, 2.0, 4.0], axis=0)
        x = torch.full((3, 2), 8.0)
        assert quantize_linear(x, params).tolist() == [[8, 8], [4, 4], [2, 2]]


class TestQuantizeLinearOut:
    """Test preallocated outputs."""

    def test_out_is_filled(self):
        out = torch.empty(4, dtype=torch.uint8)
        y = quantize_linear(torch.tensor([32.25, 48.34, 50.0, 83.0]), 0.5, out=out)

        assert y is out
        assert out.tolist() == [64, 97, 100, 166]

    def test_out_wrong_shape(self):
        with pytest.raises(ShapeMismatch):
            quantize_linear(torch.zeros(4), 1.0, out=torch.empty(3, dtype=torch.uint8))

    def test_out_wrong_dtype(self):
        with pytest.raises(UnsupportedElementType):
            quantize_linear(torch.zeros(4), 1.0, out=torch.empty(4, dtype=torch.int8))

    def test_invalid_params_leave_out_untouched(self):
        """Test rejected parameters never write to the output."""
        out = torch.full((3, 4), 7, dtype=torch.uint8)
        with pytest.raises(InvalidParams):
            quantize_linear(torch.ones(3, 4), [1.0, 2.0], axis=0, out=out)

        assert out.eq(7).all()


class TestQuantizeLinearErrors:
    """Test rejected inputs."""

    def test_integer_input(self):
        with pytest.raises(UnsupportedElementType):
            quantize_linear(torch.tensor([1, 2, 3]), 1.0)

    def test_unsupported_output_type(self):
        with pytest.raises(UnsupportedElementType):
            quantize_linear(torch.zeros(3), 1.0, dtype=torch.int16)

    def test_zero_scale(self):
        with pytest.raises(InvalidParams):
            quantize_linear(torch.zeros(3), 0.0)

    def test_cardinality_mismatch(self):
        with pytest.raises(InvalidParams):
            quantize_linear(torch.zeros(3, 4), [1.0, 2.0, 4.0], axis=1)

    def test_axis_out_of_range(self):
        with pytest.raises(InvalidParams):
            quantize_linear(torch.zeros(3, 4), [1.0, 2.0, 4.0], axis=2)


class TestQuantizationError:
    """Test round-trip error bounds."""

    @pytest.mark.parametrize("scale,zero_point,dtype", [
        (1.0, 128, torch.uint8),
        (0.05, 0, torch.uint8),
        (0.37, -20, torch.int8),
        (3.0, 127, torch.int8),
    ])
    def test_round_trip_within_half_step(self, scale, zero_point, dtype):
        """Test |dequantize(quantize(x)) - x| <= scale / 2 inside the representable range."""
        torch.manual_seed(0)
        params = QuantParams.create(scale, zero_point, dtype=dtype)
        low = (params.qmin - zero_point) * scale
        high = (params.qmax - zero_point) * scale
        x = torch.empty(4096).uniform_(low, high)

        q = quantize_linear(x, params)
        errors = calculate_quantization_error(x, q, params)

        assert errors["max_error_in_steps"] <= 0.5 + 1e-4
        assert errors["max_abs_error"] <= scale / 2 * (1 + 1e-4)
        assert errors["snr_db"] > 20

    def test_round_trip_per_axis(self):
        torch.manual_seed(0)
        scale = torch.tensor([0.01, 0.1, 1.0])
        params = QuantParams.create(scale, axis=-1, dtype=torch.int8)
        x = (torch.rand(64, 3) * 2 - 1) * scale * 120

        q = quantize_linear(x, params)
        restored = dequantize_linear(q, params)

        assert ((restored - x).abs() <= scale / 2 * (1 + 1e-4)).all()
        assert calculate_quantization_error(x, q, params)["max_error_in_steps"] <= 0.5 + 1e-4

    def test_reference_path_matches_public(self):
        torch.manual_seed(0)
        x = torch.randn(5, 7) * 10
        params = QuantParams.create(0.1, _i8(3))
        assert torch.equal(quantize_linear(x, params), quantize_linear_torch(x, params))
