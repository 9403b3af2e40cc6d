import numpy as np
import pytest

from mlnet.ComputingNodes import ConfigurationError
from mlnet.Functions import (
    ActivationFunctionFactory,
    IdentityActivation,
    LossFunctionFactory,
)

SMOOTH_IDS = [("ATAN", {}), ("TANH", {}), ("EXP", {}), ("LGST", {"a": 2.0}), ("RATL", {"p": 1.5}), ("IDT", {})]


@pytest.mark.parametrize("function_id, params", SMOOTH_IDS)
def test_derivative_matches_finite_difference(function_id, params):
    f = ActivationFunctionFactory.create(function_id, **params)
    h = 1e-6
    for r in (-1.3, -0.2, 0.4, 1.7):
        numeric = (f.value(r + h) - f.value(r - h)) / (2 * h)
        assert f.derivative(r) == pytest.approx(numeric, rel=1e-5, abs=1e-7)


@pytest.mark.parametrize("function_id, params", SMOOTH_IDS)
def test_derivative_from_value_agrees_with_derivative(function_id, params):
    f = ActivationFunctionFactory.create(function_id, **params)
    for r in (-0.9, 0.0, 0.3, 1.1):
        assert f.derivative_from_value(f.value(r)) == pytest.approx(f.derivative(r), rel=1e-9, abs=1e-12)


def test_step_family_values():
    step = ActivationFunctionFactory.create("STEP")
    sstep = ActivationFunctionFactory.create("SSTEP", p=0.5)
    sign = ActivationFunctionFactory.create("SIGN")
    relu = ActivationFunctionFactory.create("RELU")

    assert step.value(-0.1) == 0.0 and step.value(0.0) == 1.0
    assert sstep.value(0.4) == 0.0 and sstep.value(0.5) == 1.0
    assert sign.value(-3.0) == -1.0 and sign.value(2.0) == 1.0
    assert relu.value(-2.0) == 0.0 and relu.value(2.5) == 2.5
    assert relu.derivative(-1.0) == 0.0 and relu.derivative(1.0) == 1.0
    assert step.derivative(0.3) == 0.0


def test_activation_works_elementwise_on_arrays():
    f = ActivationFunctionFactory.create("TANH")
    r = np.array([[-1.0, 0.0], [0.5, 2.0]])
    np.testing.assert_allclose(f.value(r), np.tanh(r))
    np.testing.assert_allclose(f.derivative_from_value(f.value(r)), 1 - np.tanh(r) ** 2)

    relu = ActivationFunctionFactory.create("RELU")
    np.testing.assert_array_equal(relu.value(np.array([-1.0, 3.0])), [0.0, 3.0])


def test_factory_shares_instances():
    assert ActivationFunctionFactory.create("TANH") is ActivationFunctionFactory.create("TANH")
    assert ActivationFunctionFactory.create("LGST", a=2) is ActivationFunctionFactory.create("LGST", a=2.0)
    assert ActivationFunctionFactory.create("LGST", a=2.0) is not ActivationFunctionFactory.create("LGST", a=3.0)
    assert isinstance(ActivationFunctionFactory.create("IDT"), IdentityActivation)


def test_factory_rejects_unknown_ids():
    with pytest.raises(ConfigurationError, match="Unknown activation function"):
        ActivationFunctionFactory.create("NOPE")
    with pytest.raises(ConfigurationError, match="Unknown loss function"):
        LossFunctionFactory.create("NOPE")


def test_rational_rejects_non_positive_parameter():
    with pytest.raises(ConfigurationError):
        ActivationFunctionFactory.create("RATL", p=0.0)


def test_serialize_round_trip_keeps_parameters():
    f = ActivationFunctionFactory.create("LGST", a=0.5)
    assert f.serialize() == {"id": "LGST", "params": {"a": 0.5}}
    assert ActivationFunctionFactory.deserialize(f.serialize()) is f
    assert ActivationFunctionFactory.deserialize(None) is None


def test_euclidean_loss():
    loss = LossFunctionFactory.create("EUCL")
    actual = np.array([1.0, -2.0, 0.5])
    expected = np.array([0.0, 1.0, 0.5])

    assert loss.value(actual, expected) == pytest.approx(0.5 * (1 + 9))
    np.testing.assert_allclose(loss.derivative(actual, expected), [1.0, -3.0, 0.0])


def test_cross_entropy_softmax_loss_gradient():
    loss = LossFunctionFactory.create("CESM")
    actual = np.array([0.2, -1.0, 1.5])
    expected = np.array([0.0, 0.0, 1.0])

    h = 1e-6
    numeric = []
    for i in range(len(actual)):
        plus, minus = actual.copy(), actual.copy()
        plus[i] += h
        minus[i] -= h
        numeric.append((loss.value(plus, expected) - loss.value(minus, expected)) / (2 * h))

    np.testing.assert_allclose(loss.derivative(actual, expected), numeric, rtol=1e-4, atol=1e-6)
    assert loss.derivative(actual, expected).sum() == pytest.approx(0.0, abs=1e-12)
