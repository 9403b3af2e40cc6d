import numpy as np

from mlnet.ComputingNodes import (
    ComputingNode,
    ConfigurationError,
    SequenceNode,
    ShapeError,
)
from mlnet.Functions import ActivationFunctionFactory


class DeepLayerBase(ComputingNode):
    """
    Base class for layers working on multi-channel 2-D inputs.

    Inputs and outputs are arrays of shape (depth, height, width). The input
    shape is assigned by the owning ConvNet while building, after the
    predecessor layer has fixed its own output shape.
    """

    def __init__(self, output_depth, window_size, stride=1, padding=0, activation=None):
        """
        Initialize a deep layer.

        Args:
            output_depth: Number of output channels
            window_size: Side of the square window
            stride: Window step
            padding: Zero padding added on every side of the input
            activation: ActivationFunction applied to the output (default: identity)
        """
        super().__init__()
        if output_depth <= 0:
            raise ConfigurationError(f"Output depth must be positive, got {output_depth}")
        if window_size <= 0:
            raise ConfigurationError(f"Window size must be positive, got {window_size}")
        if stride <= 0:
            raise ConfigurationError(f"Stride must be positive, got {stride}")
        if padding < 0:
            raise ConfigurationError(f"Padding must be non-negative, got {padding}")

        self._output_depth = output_depth
        self._window_size = window_size
        self._stride = stride
        self._padding = padding
        self.activation_function = activation or ActivationFunctionFactory.create("IDT")

        self._input_depth = None
        self._input_height = None
        self._input_width = None
        self._output_height = None
        self._output_width = None

        self.is_training = False
        self._value = None

    @property
    def input_shape(self):
        return (self._input_depth, self._input_height, self._input_width)

    @property
    def output_shape(self):
        return (self._output_depth, self._output_height, self._output_width)

    @property
    def window_size(self):
        return self._window_size

    @property
    def stride(self):
        return self._stride

    @property
    def padding(self):
        return self._padding

    @property
    def value(self):
        """Output of the last calculate call."""
        return self._value

    @property
    def param_count(self):
        return 0

    def set_input_shape(self, depth, height, width):
        if self._is_built:
            raise ConfigurationError("Can not change the input shape of a built layer")
        self._input_depth = depth
        self._input_height = height
        self._input_width = width

    def _build_shape(self):
        if self._input_depth is None:
            raise ConfigurationError(f"{self.__class__.__name__} has no input shape, add it to a ConvNet")

        w, s, p = self._window_size, self._stride, self._padding
        height = (self._input_height + 2 * p - w) // s + 1
        width = (self._input_width + 2 * p - w) // s + 1
        if height < 1 or width < 1:
            raise ShapeError(f"Window {w} does not fit input {self._input_height}x{self._input_width} "
                             f"with padding {p}")
        self._output_height = height
        self._output_width = width
        self._is_built = True

    def calculate(self, input):
        self._check_built()
        x = np.asarray(input, dtype=float)
        if x.shape != self.input_shape:
            raise ShapeError(f"{self.__class__.__name__} expects input of shape {self.input_shape}, got {x.shape}")
        self._value = self._do_calculate(x)
        return self._value

    def _do_calculate(self, x):
        raise NotImplementedError("Subclasses must implement _do_calculate method")

    def derivative(self, value):
        """Derivative of the layer activation, expressed through its output value."""
        return self.activation_function.derivative_from_value(value)

    def backprop(self, input, error):
        """
        Propagate an error through the layer.

        Args:
            input: Input of the forward pass
            error: Gradient of the loss with respect to this layer's net input

        Returns:
            Gradient of the loss with respect to the layer input
        """
        raise NotImplementedError("Subclasses must implement backprop method")

    def layer_gradient(self, input, error):
        """Gradient of the loss with respect to this layer's parameters, in index order."""
        return np.zeros(0, dtype=float)

    def describe(self):
        return (f"{self.__class__.__name__} {self.input_shape} -> {self.output_shape}, "
                f"{self.activation_function.name}")

    def serialize(self):
        return {
            "type": self.__class__.__name__,
            "activation": self.activation_function.serialize(),
        }


class ConvolutionalLayer(DeepLayerBase):
    """
    Convolution over a (depth, height, width) input.

    Every output channel owns a kernel of shape (input_depth, window, window)
    and a bias; its parameters are the kernel in C order followed by the bias.
    """

    def __init__(self, output_depth, window_size, stride=1, padding=0, activation=None):
        super().__init__(output_depth, window_size, stride=stride, padding=padding, activation=activation)
        self._params = None

    @property
    def param_count(self):
        return 0 if self._params is None else self._params.size

    @property
    def kernels(self):
        d, w = self._input_depth, self._window_size
        return self._params[:, :-1].reshape(self._output_depth, d, w, w)

    @property
    def biases(self):
        return self._params[:, -1]

    @property
    def weights(self):
        """Copy of the flat parameter vector of the layer."""
        return self._params.reshape(-1).copy()

    def _build_shape(self):
        super()._build_shape()
        if self._params is None:
            size = self._input_depth * self._window_size * self._window_size + 1
            self._params = np.zeros((self._output_depth, size), dtype=float)

    def _padded(self, x):
        p = self._padding
        if not p:
            return x
        return np.pad(x, ((0, 0), (p, p), (p, p)), mode="constant")

    def _do_calculate(self, x):
        xp = self._padded(x)
        w, s = self._window_size, self._stride
        kernels = self.kernels

        net = np.empty(self.output_shape, dtype=float)
        for i in range(self._output_height):
            for j in range(self._output_width):
                patch = xp[:, i * s:i * s + w, j * s:j * s + w]
                net[:, i, j] = np.tensordot(kernels, patch, axes=3)
        net += self.biases[:, None, None]

        return self.activation_function.value(net)

    def backprop(self, input, error):
        w, s, p = self._window_size, self._stride, self._padding
        kernels = self.kernels

        grad = np.zeros(self._padded(np.asarray(input, dtype=float)).shape, dtype=float)
        for i in range(self._output_height):
            for j in range(self._output_width):
                grad[:, i * s:i * s + w, j * s:j * s + w] += np.tensordot(error[:, i, j], kernels, axes=1)

        return grad[:, p:p + self._input_height, p:p + self._input_width]

    def layer_gradient(self, input, error):
        xp = self._padded(np.asarray(input, dtype=float))
        w, s = self._window_size, self._stride

        grad_kernels = np.zeros_like(self.kernels)
        for i in range(self._output_height):
            for j in range(self._output_width):
                patch = xp[:, i * s:i * s + w, j * s:j * s + w]
                grad_kernels += error[:, i, j][:, None, None, None] * patch[None]
        grad_biases = error.sum(axis=(1, 2))

        grad = np.concatenate([grad_kernels.reshape(self._output_depth, -1), grad_biases[:, None]], axis=1)
        return grad.reshape(-1)

    def _do_get_param(self, idx):
        return float(self._params.flat[idx])

    def _do_set_param(self, idx, value, is_delta):
        if is_delta:
            self._params.flat[idx] += value
        else:
            self._params.flat[idx] = value

    def _do_update_params(self, pars, is_delta, cursor):
        flat = self._params.reshape(-1)
        chunk = np.asarray(pars[cursor:cursor + flat.size], dtype=float)
        if is_delta:
            flat += chunk
        else:
            flat[:] = chunk

    def get_params(self):
        self._check_built()
        return self._params.reshape(-1).copy()

    def serialize(self):
        data = super().serialize()
        data.update({
            "output_depth": self._output_depth,
            "window_size": self._window_size,
            "stride": self._stride,
            "padding": self._padding,
        })
        return data


class FlattenLayer(ConvolutionalLayer):
    """
    Fully connected layer over a multi-channel input: a convolution whose
    window covers the whole (square) input. Output shape is (output_dim, 1, 1).
    """

    def __init__(self, output_dim, activation=None):
        # window size is overridden with the input size when building
        super().__init__(output_dim, window_size=1, stride=1, padding=0, activation=activation)

    def _build_shape(self):
        if self._input_depth is not None and self._input_height != self._input_width:
            raise ShapeError(f"FlattenLayer needs a square input, got {self._input_height}x{self._input_width}")
        if self._input_height is not None:
            self._window_size = self._input_height
        super()._build_shape()

    def serialize(self):
        return {
            "type": "FlattenLayer",
            "output_dim": self._output_depth,
            "activation": self.activation_function.serialize(),
        }


class ActivationLayer(DeepLayerBase):
    """Applies an activation function to every input element."""

    def __init__(self, activation):
        if activation is None:
            raise ConfigurationError("Activation function is None")
        # output depth is overridden with the input depth when building
        super().__init__(output_depth=1, window_size=1, activation=activation)

    def _build_shape(self):
        if self._input_depth is not None:
            self._output_depth = self._input_depth
        super()._build_shape()

    def _do_calculate(self, x):
        return self.activation_function.value(x)

    def backprop(self, input, error):
        return np.array(error, dtype=float)


class DropoutLayer(DeepLayerBase):
    """
    Inverted dropout.

    In training mode every element is kept with probability 1 - rate and kept
    elements are scaled by 1/(1 - rate); the mask is retained for the backward
    pass. Outside training mode the layer is the identity.
    """

    def __init__(self, rate, seed=0):
        if rate <= 0 or rate >= 1:
            raise ConfigurationError(f"Incorrect dropout rate {rate}, must be in (0, 1)")
        # output depth is overridden with the input depth when building
        super().__init__(output_depth=1, window_size=1)
        self._drop_rate = float(rate)
        self._retain_rate = 1.0 - self._drop_rate
        self._seed = seed
        self._generator = np.random.default_rng(seed)
        self._mask = None

    @property
    def drop_rate(self):
        return self._drop_rate

    @property
    def retain_rate(self):
        return self._retain_rate

    @property
    def mask(self):
        """Keep mask of the last training-mode calculation, None in inference mode."""
        return self._mask

    def _build_shape(self):
        if self._input_depth is not None:
            self._output_depth = self._input_depth
        super()._build_shape()

    def _do_calculate(self, x):
        if not self.is_training:
            self._mask = None
            return x.copy()

        self._mask = (self._generator.random(x.shape) < self._retain_rate).astype(np.uint8)
        return x * self._mask / self._retain_rate

    def backprop(self, input, error):
        if self._mask is None:
            return np.array(error, dtype=float)
        return error * self._mask / self._retain_rate

    def serialize(self):
        return {"type": "DropoutLayer", "rate": self._drop_rate, "seed": self._seed}


class ConvNet(SequenceNode):
    """
    Sequence of deep layers over a (depth, height, width) input.

    Building assigns every layer its input shape from its predecessor, in
    order, before the layer fixes its own output shape.
    """

    def __init__(self, input_depth, input_height, input_width=None):
        """
        Initialize a convolutional network.

        Args:
            input_depth: Number of input channels
            input_height: Input height
            input_width: Input width (default: same as height)
        """
        super().__init__()
        if input_width is None:
            input_width = input_height
        if input_depth <= 0 or input_height <= 0 or input_width <= 0:
            raise ConfigurationError(f"Invalid input shape ({input_depth}, {input_height}, {input_width})")
        self._input_shape = (input_depth, input_height, input_width)
        self._is_training = False

    @property
    def input_shape(self):
        return self._input_shape

    @property
    def output_shape(self):
        self._check_built()
        layers = self.layers
        return layers[-1].output_shape if layers else self._input_shape

    @property
    def layers(self):
        return self.sub_nodes

    @property
    def layer_count(self):
        return len(self._sub_nodes)

    def __getitem__(self, idx):
        return self._sub_nodes[idx]

    @property
    def is_training(self):
        return self._is_training

    @is_training.setter
    def is_training(self, value):
        self._is_training = bool(value)
        for layer in self._sub_nodes:
            layer.is_training = self._is_training

    def add_sub_node(self, node):
        if not isinstance(node, DeepLayerBase):
            raise ConfigurationError(f"ConvNet accepts only deep layers, got {node.__class__.__name__}")
        node.is_training = self._is_training
        return super().add_sub_node(node)

    def add_layer(self, layer):
        return self.add_sub_node(layer)

    def _build_shape(self):
        shape = self._input_shape
        for layer in self._sub_nodes:
            if not layer.is_built:
                layer.set_input_shape(*shape)
            layer._build_shape()
            shape = layer.output_shape
        self._is_built = True

    def calculate(self, input):
        x = np.asarray(input, dtype=float)
        if x.shape != self._input_shape:
            raise ShapeError(f"ConvNet expects input of shape {self._input_shape}, got {x.shape}")
        return super().calculate(x)

    def serialize(self):
        return {
            "type": "ConvNet",
            "input_shape": list(self._input_shape),
            "layers": [layer.serialize() for layer in self._sub_nodes],
            "params": self.get_params().tolist() if self._is_built else None,
        }


class DeepModelFactory:
    """Factory class for creating and deserializing deep layers and networks."""

    # Registry of layer types
    _layer_types = {
        "ConvolutionalLayer": ConvolutionalLayer,
        "FlattenLayer": FlattenLayer,
        "ActivationLayer": ActivationLayer,
        "DropoutLayer": DropoutLayer,
    }

    @classmethod
    def create(cls, layer_type, **kwargs):
        """
        Create a new layer of the specified type.

        Args:
            layer_type: String identifier of the layer type
            **kwargs: Arguments to pass to the layer constructor; an
                "activation" given as a string is looked up by id
        """
        if layer_type not in cls._layer_types:
            raise ConfigurationError(f"Unknown deep layer type: {layer_type}")
        if isinstance(kwargs.get("activation"), str):
            kwargs["activation"] = ActivationFunctionFactory.create(kwargs["activation"])
        return cls._layer_types[layer_type](**kwargs)

    @classmethod
    def deserialize(cls, data):
        """
        Create a network (or a single layer) from serialized data.

        Networks are rebuilt layer by layer, built, and then receive their
        parameter vector through one absolute bulk update.
        """
        if data["type"] != "ConvNet":
            return cls._deserialize_layer(data)

        net = ConvNet(*data["input_shape"])
        for layer_data in data["layers"]:
            net.add_layer(cls._deserialize_layer(layer_data))
        net.build()

        if data.get("params") is not None:
            success, _ = net.try_update_params(data["params"], False)
            if not success:
                raise ConfigurationError("Serialized parameters do not match the network structure")
        return net

    @classmethod
    def _deserialize_layer(cls, data):
        kwargs = {k: v for k, v in data.items() if k != "type"}
        if "activation" in kwargs:
            kwargs["activation"] = ActivationFunctionFactory.deserialize(kwargs["activation"])
        return cls.create(data["type"], **kwargs)
