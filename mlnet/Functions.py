import numpy as np

from mlnet.ComputingNodes import ConfigurationError


class ActivationFunction:
    """Base class for all scalar activation functions.

    Activation functions are stateless and shared by reference between all the
    nodes that use them. Every method accepts a Python float or a numpy array
    (applied elementwise).
    """

    id = None
    name = None

    def value(self, r):
        """
        Compute the function value.

        Args:
            r: Function argument (net input of a unit)

        Returns:
            f(r)
        """
        raise NotImplementedError("Subclasses must implement value method")

    def derivative(self, r):
        """Compute f'(r) from the raw argument."""
        raise NotImplementedError("Subclasses must implement derivative method")

    def derivative_from_value(self, y):
        """
        Compute the derivative from an already computed output value.

        Args:
            y: Function value f(r)

        Returns:
            f'(r) expressed through y
        """
        raise NotImplementedError("Subclasses must implement derivative_from_value method")

    def describe(self):
        return f"{self.name} activation ({self.id})"

    def serialize(self):
        return {"id": self.id, "params": {}}


class IdentityActivation(ActivationFunction):
    """Identity activation: f(r) = r"""

    id = "IDT"
    name = "Identity"

    def value(self, r):
        return r

    def derivative(self, r):
        return np.ones_like(r, dtype=float) if isinstance(r, np.ndarray) else 1.0

    def derivative_from_value(self, y):
        return np.ones_like(y, dtype=float) if isinstance(y, np.ndarray) else 1.0


class ArctanActivation(ActivationFunction):
    """Arctangent activation: f(r) = atan(r)"""

    id = "ATAN"
    name = "Arctangent"

    def value(self, r):
        return np.arctan(r)

    def derivative(self, r):
        return 1.0 / (1.0 + r * r)

    def derivative_from_value(self, y):
        # 1/(1 + tan(y)^2)
        c = np.cos(y)
        return c * c


class StepActivation(ActivationFunction):
    """Heaviside step activation: f(r) = 1 if r >= 0 else 0"""

    id = "STEP"
    name = "Step"

    def value(self, r):
        return np.where(np.asarray(r) >= 0, 1.0, 0.0) if isinstance(r, np.ndarray) else (1.0 if r >= 0 else 0.0)

    def derivative(self, r):
        return np.zeros_like(r, dtype=float) if isinstance(r, np.ndarray) else 0.0

    def derivative_from_value(self, y):
        return np.zeros_like(y, dtype=float) if isinstance(y, np.ndarray) else 0.0


class ShiftedStepActivation(StepActivation):
    """Shifted step activation: f(r) = 1 if r >= p else 0"""

    id = "SSTEP"
    name = "Shifted Step"

    def __init__(self, p):
        self.p = float(p)

    def value(self, r):
        return np.where(np.asarray(r) >= self.p, 1.0, 0.0) if isinstance(r, np.ndarray) else (1.0 if r >= self.p else 0.0)

    def describe(self):
        return f"{self.name} activation ({self.id}, p={self.p})"

    def serialize(self):
        return {"id": self.id, "params": {"p": self.p}}


class SignActivation(ActivationFunction):
    """Sign activation: f(r) = sign(r)"""

    id = "SIGN"
    name = "Sign"

    def value(self, r):
        return np.sign(r) if isinstance(r, np.ndarray) else float(np.sign(r))

    def derivative(self, r):
        return np.zeros_like(r, dtype=float) if isinstance(r, np.ndarray) else 0.0

    def derivative_from_value(self, y):
        return np.zeros_like(y, dtype=float) if isinstance(y, np.ndarray) else 0.0


class ReLUActivation(ActivationFunction):
    """Rectified linear activation: f(r) = max(0, r)"""

    id = "RELU"
    name = "ReLU"

    def value(self, r):
        return np.maximum(r, 0.0) if isinstance(r, np.ndarray) else max(r, 0.0)

    def derivative(self, r):
        return np.where(np.asarray(r) > 0, 1.0, 0.0) if isinstance(r, np.ndarray) else (1.0 if r > 0 else 0.0)

    def derivative_from_value(self, y):
        return np.where(np.asarray(y) > 0, 1.0, 0.0) if isinstance(y, np.ndarray) else (1.0 if y > 0 else 0.0)


class TanhActivation(ActivationFunction):
    """Hyperbolic tangent activation: f(r) = tanh(r)"""

    id = "TANH"
    name = "Hyperbolic Tangent"

    def value(self, r):
        return np.tanh(r)

    def derivative(self, r):
        t = np.tanh(r)
        return 1.0 - t * t

    def derivative_from_value(self, y):
        return 1.0 - y * y


class ExpActivation(ActivationFunction):
    """Exponential activation: f(r) = exp(r)"""

    id = "EXP"
    name = "Exponential"

    def value(self, r):
        return np.exp(r)

    def derivative(self, r):
        return np.exp(r)

    def derivative_from_value(self, y):
        return y


class LogisticActivation(ActivationFunction):
    """Logistic activation: f(r) = 1/(1 + exp(-a*r))"""

    id = "LGST"
    name = "Logistic"

    def __init__(self, a=1.0):
        self.a = float(a)

    def value(self, r):
        return 1.0 / (1.0 + np.exp(-self.a * r))

    def derivative(self, r):
        y = self.value(r)
        return self.a * y * (1.0 - y)

    def derivative_from_value(self, y):
        return self.a * y * (1.0 - y)

    def describe(self):
        return f"{self.name} activation ({self.id}, a={self.a})"

    def serialize(self):
        return {"id": self.id, "params": {"a": self.a}}


class RationalActivation(ActivationFunction):
    """Rational sigmoid activation: f(r) = r/(p + |r|)"""

    id = "RATL"
    name = "Rational"

    def __init__(self, p=1.0):
        if p <= 0:
            raise ConfigurationError(f"Rational activation parameter must be positive, got {p}")
        self.p = float(p)

    def value(self, r):
        return r / (self.p + np.abs(r))

    def derivative(self, r):
        d = self.p + np.abs(r)
        return self.p / (d * d)

    def derivative_from_value(self, y):
        # p + |r| = p/(1 - |y|)
        t = 1.0 - np.abs(y)
        return t * t / self.p

    def describe(self):
        return f"{self.name} activation ({self.id}, p={self.p})"

    def serialize(self):
        return {"id": self.id, "params": {"p": self.p}}


class ActivationFunctionFactory:
    """Factory class for looking up activation functions by their short id."""

    # Registry of activation function types
    _function_types = {
        "IDT": IdentityActivation,
        "ATAN": ArctanActivation,
        "STEP": StepActivation,
        "SSTEP": ShiftedStepActivation,
        "SIGN": SignActivation,
        "RELU": ReLUActivation,
        "TANH": TanhActivation,
        "EXP": ExpActivation,
        "LGST": LogisticActivation,
        "RATL": RationalActivation,
    }

    # Shared instances, keyed by (id, sorted params)
    _instances = {}

    @classmethod
    def create(cls, function_id, **kwargs):
        """
        Return the activation function registered under the given id.

        Instances are cached, so two calls with the same id and parameters
        return the same object.

        Args:
            function_id: Short id of the function, e.g. "TANH" or "LGST"
            **kwargs: Parameters of parametrised functions (e.g. a=2.0)

        Returns:
            ActivationFunction instance
        """
        if function_id not in cls._function_types:
            raise ConfigurationError(f"Unknown activation function: {function_id}")

        key = (function_id, tuple(sorted((k, float(v)) for k, v in kwargs.items())))
        if key not in cls._instances:
            cls._instances[key] = cls._function_types[function_id](**kwargs)
        return cls._instances[key]

    @classmethod
    def register(cls, function_class):
        """Register an additional activation function type under its id."""
        cls._function_types[function_class.id] = function_class
        return function_class

    @classmethod
    def deserialize(cls, data):
        if data is None:
            return None
        return cls.create(data["id"], **data.get("params", {}))


class LossFunction:
    """Base class for loss functions used by the deep trainer."""

    id = None
    name = None

    def value(self, actual, expected):
        raise NotImplementedError("Subclasses must implement value method")

    def derivative(self, actual, expected):
        """Gradient of the loss with respect to every component of ``actual``."""
        raise NotImplementedError("Subclasses must implement derivative method")


class EuclideanLoss(LossFunction):
    """Euclidean loss: L = 1/2 * sum((y - t)^2)"""

    id = "EUCL"
    name = "Euclidean"

    def value(self, actual, expected):
        diff = np.asarray(actual, dtype=float) - np.asarray(expected, dtype=float)
        return 0.5 * float(np.sum(diff * diff))

    def derivative(self, actual, expected):
        return np.asarray(actual, dtype=float) - np.asarray(expected, dtype=float)


class CrossEntropySoftMaxLoss(LossFunction):
    """Softmax over the outputs followed by cross-entropy."""

    id = "CESM"
    name = "Cross-Entropy over SoftMax"

    @staticmethod
    def _softmax(actual):
        actual = np.asarray(actual, dtype=float)
        exp_x = np.exp(actual - np.max(actual))
        return exp_x / np.sum(exp_x)

    def value(self, actual, expected):
        probs = self._softmax(actual)
        return -float(np.sum(np.asarray(expected, dtype=float) * np.log(probs + 1e-10)))

    def derivative(self, actual, expected):
        return self._softmax(actual) - np.asarray(expected, dtype=float)


class LossFunctionFactory:
    """Factory class for looking up loss functions by their short id."""

    _loss_types = {
        "EUCL": EuclideanLoss,
        "CESM": CrossEntropySoftMaxLoss,
    }

    _instances = {}

    @classmethod
    def create(cls, loss_id):
        if loss_id not in cls._loss_types:
            raise ConfigurationError(f"Unknown loss function: {loss_id}")
        if loss_id not in cls._instances:
            cls._instances[loss_id] = cls._loss_types[loss_id]()
        return cls._instances[loss_id]
