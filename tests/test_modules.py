"""Tests for the nn.Module wrappers."""

import pytest
import torch
import torch.nn as nn

from rotalabs_qlinear import InvalidParams, dequantize_linear, qlinear_conv, quantize_linear
from rotalabs_qlinear.kernels import quantize_conv_weight
from rotalabs_qlinear.modules import DequantizeLinear, QLinearConv, QuantizeLinear


def _u8(value):
    return torch.tensor(value, dtype=torch.uint8)


class TestQuantizeLinearModule:
    """Test QuantizeLinear module."""

    def test_forward(self):
        quant = QuantizeLinear(2.0, _u8(128))
        y = quant(torch.tensor([0.0, 2.0, 3.0, 1000.0]))

        assert y.tolist() == [128, 129, 130, 255]

    def test_per_axis(self):
        quant = QuantizeLinear([1.0, 2.0, 4.0], axis=0)
        y = quant(torch.tensor([[0.0, 2.0, 3.0, 1000.0]] * 3))

        assert y.flatten().tolist() == [0, 2, 3, 255, 0, 1, 2, 255, 0, 0, 1, 250]

    def test_buffers(self):
        """Test scale and zero point are registered buffers."""
        quant = QuantizeLinear([1.0, 2.0], torch.tensor([0, -1], dtype=torch.int8))
        state = quant.state_dict()

        assert set(state) == {"scale", "zero_point"}
        assert quant.dtype == torch.int8
        assert quant.axis == 1
        assert "axis=1" in repr(quant)

    def test_invalid_scale(self):
        with pytest.raises(InvalidParams):
            QuantizeLinear(0.0)


class TestDequantizeLinearModule:
    """Test DequantizeLinear module."""

    def test_forward(self):
        dequant = DequantizeLinear(4.0)
        y = dequant(_u8([19, 210, 21, 10]))

        assert y.tolist() == [76.0, 840.0, 84.0, 40.0]

    def test_round_trip_with_quantize(self):
        quant = QuantizeLinear(0.5, _u8(10))
        dequant = DequantizeLinear(0.5, _u8(10))
        x = torch.tensor([-5.0, -1.25, 0.0, 3.3, 100.0])

        assert ((dequant(quant(x)) - x).abs() <= 0.25 + 1e-6).all()

    def test_input_type_mismatch(self):
        """Test an int8 module rejects uint8 input."""
        dequant = DequantizeLinear(1.0, torch.tensor(0, dtype=torch.int8))
        with pytest.raises(InvalidParams):
            dequant(_u8([1, 2]))


class TestQuantizeConvWeight:
    """Test symmetric per-channel weight quantization."""

    def test_scales_and_values(self):
        weight = torch.tensor([[127.0, -63.0], [0.0, 0.0], [2.0, -1.0]]).reshape(3, 2, 1, 1)
        weight_int8, scale = quantize_conv_weight(weight)

        assert weight_int8.dtype == torch.int8
        assert weight_int8.shape == weight.shape
        assert scale.shape == (3,)
        assert weight_int8[0].flatten().tolist() == [127, -63]
        assert scale[1].item() == 1.0
        assert weight_int8[1].eq(0).all()
        assert weight_int8[2].flatten()[0].item() == 127


class TestQLinearConvModule:
    """Test QLinearConv module."""

    def test_matches_functional(self):
        torch.manual_seed(0)
        weight = torch.randint(0, 256, (4, 3, 3, 3), dtype=torch.uint8)
        x = torch.randint(0, 256, (1, 3, 6, 6), dtype=torch.uint8)
        attrs = {"pads": [1, 1, 1, 1]}
        bias = torch.randint(-500, 500, (4,), dtype=torch.int32)

        qconv = QLinearConv(
            weight, [0.01, 0.02, 0.03, 0.04], _u8(128),
            0.05, _u8(120),
            0.2, _u8(128),
            attrs=attrs, bias=bias,
        )
        expected = qlinear_conv(
            x, 0.05, _u8(120), weight, torch.tensor([0.01, 0.02, 0.03, 0.04]), _u8(128),
            0.2, _u8(128), attrs=attrs, bias=bias,
        )

        assert torch.equal(qconv(x), expected)

    def test_state_dict_round_trip(self):
        torch.manual_seed(0)
        weight = torch.randint(-128, 128, (2, 1, 3, 3), dtype=torch.int8)
        bias = torch.tensor([5, -5], dtype=torch.int32)
        qconv = QLinearConv(weight, [0.1, 0.2], None, 0.5, None, 1.0, None, bias=bias)

        clone = QLinearConv(torch.zeros_like(weight), [1.0, 1.0], None, 1.0, None, 1.0, None,
                            bias=torch.zeros(2, dtype=torch.int32))
        clone.load_state_dict(qconv.state_dict())

        x = torch.randint(0, 256, (1, 1, 5, 5), dtype=torch.uint8)
        assert torch.equal(clone(x), qconv(x))
        assert {"weight", "w_scale", "w_zero_point", "x_scale", "x_zero_point",
                "y_scale", "y_zero_point", "bias"} == set(qconv.state_dict())

    def test_input_type_checked(self):
        """Test the input must match the input zero point's type."""
        weight = torch.zeros((1, 1, 1, 1), dtype=torch.int8)
        qconv = QLinearConv(weight, 1.0, None, 1.0, _u8(0), 1.0)
        with pytest.raises(InvalidParams):
            qconv(torch.zeros((1, 1, 2, 2), dtype=torch.int8))

    def test_float_weight_rejected(self):
        with pytest.raises(TypeError):
            QLinearConv(torch.zeros(1, 1, 1, 1), 1.0, None, 1.0, None, 1.0)

    def test_extra_repr(self):
        weight = torch.zeros((4, 2, 3, 3), dtype=torch.int8)
        qconv = QLinearConv(weight, 1.0, None, 1.0, None, 1.0, attrs={"group": 2})
        text = repr(qconv)

        assert "in_channels=4" in text
        assert "out_channels=4" in text
        assert "group=2" in text


class TestFromConv:
    """Test conversion from a float convolution."""

    def test_close_to_float_conv(self):
        """Test the quantized layer tracks the float layer within a couple of output steps."""
        torch.manual_seed(0)
        conv = nn.Conv2d(2, 3, kernel_size=3, padding=1)
        x_scale, x_zp = 2.0 / 255, _u8(128)
        y_scale, y_zp = 0.05, _u8(128)

        qconv = QLinearConv.from_conv(conv, x_scale, y_scale, x_zero_point=x_zp, y_zero_point=y_zp)

        x = torch.rand(1, 2, 6, 6) * 2 - 1
        x_q = quantize_linear(x, x_scale, x_zp)
        with torch.no_grad():
            expected = conv(dequantize_linear(x_q, x_scale, x_zp))
        actual = dequantize_linear(qconv(x_q), y_scale, y_zp)

        assert actual.shape == expected.shape
        assert (actual - expected).abs().max().item() <= 2 * y_scale

    def test_quantized_buffers(self):
        conv = nn.Conv1d(4, 6, kernel_size=3, stride=2, groups=2)
        qconv = QLinearConv.from_conv(conv, 0.1, 0.2)

        assert qconv.weight.dtype == torch.int8
        assert qconv.w_scale.shape == (6,)
        assert qconv.bias.dtype == torch.int32
        assert qconv.attrs.group == 2
        assert qconv.attrs.strides == (2,)

    def test_same_padding(self):
        conv = nn.Conv2d(1, 1, kernel_size=3, padding="same", bias=False)
        qconv = QLinearConv.from_conv(conv, 0.1, 0.1)

        y = qconv(torch.zeros((1, 1, 5, 7), dtype=torch.uint8))
        assert y.shape == (1, 1, 5, 7)
        assert qconv.bias is None

    def test_reflect_padding_rejected(self):
        conv = nn.Conv2d(1, 1, kernel_size=3, padding=1, padding_mode="reflect")
        with pytest.raises(InvalidParams):
            QLinearConv.from_conv(conv, 0.1, 0.1)

    def test_transposed_rejected(self):
        conv = nn.ConvTranspose2d(1, 1, kernel_size=3)
        with pytest.raises(InvalidParams):
            QLinearConv.from_conv(conv, 0.1, 0.1)
