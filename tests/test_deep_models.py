import numpy as np
import pytest

from mlnet.ComputingNodes import ConfigurationError, ShapeError
from mlnet.DeepModels import (
    ActivationLayer,
    ConvNet,
    ConvolutionalLayer,
    DeepModelFactory,
    DropoutLayer,
    FlattenLayer,
)
from mlnet.Functions import ActivationFunctionFactory

from mocks import chain_convnet


def _convnet(seed=3):
    net = ConvNet(2, 5)
    net.add_layer(ConvolutionalLayer(3, 3, padding=1, activation=ActivationFunctionFactory.create("TANH")))
    net.add_layer(ConvolutionalLayer(4, 2, stride=2))
    net.add_layer(ActivationLayer(ActivationFunctionFactory.create("RELU")))
    net.add_layer(FlattenLayer(3, activation=ActivationFunctionFactory.create("LGST")))
    net.build()
    net.randomize_params(seed=seed, scale=0.5)
    return net


def test_output_shapes_are_inferred_in_order():
    net = _convnet()
    conv1, conv2, act, flat = net.layers

    assert conv1.input_shape == (2, 5, 5) and conv1.output_shape == (3, 5, 5)
    assert conv2.input_shape == (3, 5, 5) and conv2.output_shape == (4, 2, 2)
    assert act.output_shape == (4, 2, 2)
    assert flat.window_size == 2 and flat.output_shape == (3, 1, 1)
    assert net.output_shape == (3, 1, 1)


def test_parameter_count_and_contiguous_ranges():
    net = _convnet()
    conv1, conv2, act, flat = net.layers

    assert conv1.param_count == 3 * (2 * 3 * 3 + 1)
    assert conv2.param_count == 4 * (3 * 2 * 2 + 1)
    assert act.param_count == 0
    assert flat.param_count == 3 * (4 * 2 * 2 + 1)
    assert conv2.start_idx == conv1.param_count
    assert flat.start_idx == conv1.param_count + conv2.param_count
    assert net.param_count == conv1.param_count + conv2.param_count + flat.param_count


def test_convolution_matches_direct_sum():
    layer = ConvolutionalLayer(2, 2, stride=1)
    net = ConvNet(1, 3)
    net.add_layer(layer)
    net.build()
    net.randomize_params(seed=2)

    x = np.arange(9, dtype=float).reshape(1, 3, 3)
    out = net.calculate(x)

    kernels, biases = layer.kernels, layer.biases
    for c in range(2):
        for i in range(2):
            for j in range(2):
                expected = np.sum(kernels[c, 0] * x[0, i:i + 2, j:j + 2]) + biases[c]
                assert out[c, i, j] == pytest.approx(expected)


def test_convolution_parameter_layout_is_kernel_then_bias():
    net = ConvNet(1, 2)
    layer = net.add_layer(ConvolutionalLayer(2, 2))
    net.build()
    net.try_update_params(np.arange(10, dtype=float), False)

    np.testing.assert_array_equal(layer.kernels[0, 0], [[0.0, 1.0], [2.0, 3.0]])
    np.testing.assert_array_equal(layer.biases, [4.0, 9.0])
    assert net.try_get_param(9) == (True, 9.0)
    np.testing.assert_array_equal(layer.weights, np.arange(10, dtype=float))


def test_padding_and_window_errors():
    net = ConvNet(1, 2)
    net.add_layer(ConvolutionalLayer(1, 3))
    with pytest.raises(ShapeError):
        net.build()

    with pytest.raises(ConfigurationError):
        ConvolutionalLayer(0, 3)
    with pytest.raises(ConfigurationError):
        ConvolutionalLayer(1, 3, stride=0)
    with pytest.raises(ConfigurationError):
        ConvNet(1, 0)


def test_flatten_needs_square_input():
    net = ConvNet(1, 2, 3)
    net.add_layer(FlattenLayer(2))
    with pytest.raises(ShapeError):
        net.build()


def test_convnet_rejects_wrong_input_shape():
    net = _convnet()
    with pytest.raises(ShapeError):
        net.calculate(np.zeros((2, 4, 4)))


def test_convnet_accepts_only_deep_layers():
    with pytest.raises(ConfigurationError):
        ConvNet(1, 2).add_layer(object())


def test_activation_layer_requires_function():
    with pytest.raises(ConfigurationError):
        ActivationLayer(None)


def test_dropout_is_identity_outside_training():
    net = ConvNet(2, 4)
    layer = net.add_layer(DropoutLayer(0.3))
    net.build()

    x = np.random.default_rng(0).normal(size=(2, 4, 4))
    np.testing.assert_array_equal(net.calculate(x), x)
    assert layer.mask is None


def test_dropout_rescales_kept_elements_in_training():
    net = ConvNet(1, 60)
    layer = net.add_layer(DropoutLayer(0.25, seed=4))
    net.build()
    net.is_training = True

    x = np.ones((1, 60, 60))
    out = net.calculate(x)
    mask = layer.mask

    assert mask.dtype == np.uint8
    np.testing.assert_allclose(out, mask / 0.75)
    # expected value of every output element is the input
    assert out.mean() == pytest.approx(1.0, abs=0.05)
    assert mask.mean() == pytest.approx(0.75, abs=0.03)


def test_dropout_backprop_replays_the_mask():
    net = ConvNet(1, 3)
    layer = net.add_layer(DropoutLayer(0.5, seed=9))
    net.build()
    net.is_training = True

    x = np.ones((1, 3, 3))
    net.calculate(x)
    error = np.full((1, 3, 3), 2.0)
    np.testing.assert_allclose(layer.backprop(x, error), error * layer.mask / 0.5)


def test_dropout_rate_must_be_in_open_interval():
    for rate in (0.0, 1.0, -0.1, 1.5):
        with pytest.raises(ConfigurationError):
            DropoutLayer(rate)


def test_training_flag_reaches_layers():
    net = ConvNet(1, 2)
    layer = net.add_layer(DropoutLayer(0.5))
    net.is_training = True
    assert layer.is_training
    late = net.add_layer(DropoutLayer(0.5))
    assert late.is_training
    net.is_training = False
    assert not layer.is_training and not late.is_training


def test_chain_convnet_forward():
    net = chain_convnet()
    out = net.calculate(np.ones((1, 1, 1)))
    assert out.shape == (1, 1, 1)
    assert out[0, 0, 0] == pytest.approx(-62.0)
    assert [layer.value[0, 0, 0] for layer in net.layers] == [12.0, 33.0, -62.0]


def test_factory_creates_layers_from_ids():
    layer = DeepModelFactory.create("ConvolutionalLayer", output_depth=2, window_size=3, activation="TANH")
    assert isinstance(layer, ConvolutionalLayer)
    assert layer.activation_function.id == "TANH"
    with pytest.raises(ConfigurationError):
        DeepModelFactory.create("PoolingLayer")


def test_serialize_restores_structure_and_parameters():
    net = _convnet(seed=8)
    copy = DeepModelFactory.deserialize(net.serialize())

    assert [layer.__class__ for layer in copy.layers] == [layer.__class__ for layer in net.layers]
    assert copy.output_shape == net.output_shape
    np.testing.assert_array_equal(copy.get_params(), net.get_params())
    x = np.random.default_rng(1).normal(size=(2, 5, 5))
    np.testing.assert_allclose(copy.calculate(x), net.calculate(x))


def test_serialize_restores_chain_parameters():
    copy = DeepModelFactory.deserialize(chain_convnet(dropout=0.5).serialize())
    np.testing.assert_array_equal(copy.get_params(), [3.0, 1.0, 1.0, -1.0, -1.0, 2.0])
    assert copy.calculate(np.ones((1, 1, 1)))[0, 0, 0] == pytest.approx(-62.0)


def test_serialize_keeps_dropout_layers():
    net = ConvNet(1, 4)
    net.add_layer(ConvolutionalLayer(2, 3))
    net.add_layer(DropoutLayer(0.4, seed=12))
    net.add_layer(FlattenLayer(2))
    net.build()

    copy = DeepModelFactory.deserialize(net.serialize())
    dropout = copy.layers[1]
    assert isinstance(dropout, DropoutLayer)
    assert dropout.drop_rate == pytest.approx(0.4)
    assert copy.param_count == net.param_count
