import numpy as np

from mlnet.ComputingNodes import (
    AggregateNode,
    ComputingNode,
    ConfigurationError,
    SequenceNode,
    ShapeError,
)
from mlnet.Functions import ActivationFunctionFactory


class Neuron(ComputingNode):
    """
    Single unit: f(x) = activation(sum_h w[h] * x[h] + bias)

    Weights are sparse: only explicitly assigned input slots exist. An absent
    slot reads as None and is not a parameter; an explicit 0.0 is a parameter.
    Parameter order is the weights by ascending slot, then the bias.
    """

    def __init__(self, activation=None):
        """
        Initialize a neuron.

        Args:
            activation: ActivationFunction (default: identity)
        """
        super().__init__()
        self._pending = {}  # slot -> weight until build
        self._slots = None
        self._weights = None
        self.bias = 0.0
        self.activation_function = activation or ActivationFunctionFactory.create("IDT")

        # cached forward value and error signal, owned by the trainer
        self.value = 0.0
        self.error = 0.0

    @property
    def param_count(self):
        if self._slots is None:
            return len(self._pending) + 1
        return len(self._slots) + 1

    @property
    def slots(self):
        """Assigned input slots in ascending order."""
        if self._slots is None:
            return tuple(sorted(self._pending))
        return tuple(int(s) for s in self._slots)

    @property
    def weights(self):
        """Weights of the assigned slots, in slot order."""
        if self._slots is None:
            return np.array([self._pending[s] for s in sorted(self._pending)], dtype=float)
        return self._weights.copy()

    def _find(self, slot):
        pos = int(np.searchsorted(self._slots, slot))
        if pos < len(self._slots) and self._slots[pos] == slot:
            return pos
        return -1

    def __getitem__(self, slot):
        if self._slots is None:
            return self._pending.get(slot)
        pos = self._find(slot)
        return float(self._weights[pos]) if pos >= 0 else None

    def __setitem__(self, slot, value):
        if slot < 0:
            raise ShapeError(f"Input slot must be non-negative, got {slot}")
        if value is None:
            del self[slot]
            return
        if self._slots is None:
            self._pending[int(slot)] = float(value)
            return
        pos = self._find(slot)
        if pos < 0:
            raise ConfigurationError(f"Can not create weight slot {slot} in a built neuron")
        self._weights[pos] = value

    def __delitem__(self, slot):
        if self._slots is not None:
            raise ConfigurationError(f"Can not remove weight slot {slot} from a built neuron")
        self._pending.pop(slot, None)

    def _build_shape(self):
        if self._slots is None:
            slots = sorted(self._pending)
            self._slots = np.array(slots, dtype=np.intp)
            self._weights = np.array([self._pending[s] for s in slots], dtype=float)
            self._pending = None
        self._is_built = True

    def calculate(self, input):
        self._check_built()
        x = np.asarray(input, dtype=float)
        if len(self._slots) and x.shape[0] <= self._slots[-1]:
            raise ShapeError(f"Input of length {x.shape[0]} is too short for weight slot {self._slots[-1]}")

        net = float(np.dot(self._weights, x[self._slots])) + self.bias
        self.value = self.activation_function.value(net)
        return self.value

    def propagate_error(self, errors):
        """Add this neuron's error, weighted by its slots, into the previous layer's error vector."""
        if len(self._slots) and len(errors) <= self._slots[-1]:
            raise ShapeError(f"Error vector of length {len(errors)} is too short for weight slot {self._slots[-1]}")
        errors[self._slots] += self.error * self._weights

    def descend(self, values, learning_rate):
        """
        Gradient descent step on the assigned weights and the bias.

        Args:
            values: Input vector the neuron was evaluated on
            learning_rate: Step multiplier

        Returns:
            Squared length of the applied step
        """
        dj = learning_rate * self.error
        dw = dj * np.asarray(values, dtype=float)[self._slots]
        self._weights -= dw
        self.bias -= dj
        return float(np.dot(dw, dw)) + dj * dj

    def _do_get_param(self, idx):
        if idx < len(self._weights):
            return float(self._weights[idx])
        return self.bias

    def _do_set_param(self, idx, value, is_delta):
        if idx < len(self._weights):
            if is_delta:
                self._weights[idx] += value
            else:
                self._weights[idx] = value
        elif is_delta:
            self.bias += value
        else:
            self.bias = float(value)

    def _do_update_params(self, pars, is_delta, cursor):
        n = len(self._weights)
        chunk = np.asarray(pars[cursor:cursor + n], dtype=float)
        if is_delta:
            self._weights += chunk
            self.bias += float(pars[cursor + n])
        else:
            self._weights[:] = chunk
            self.bias = float(pars[cursor + n])

    def get_params(self):
        self._check_built()
        return np.append(self._weights, self.bias)

    def describe(self):
        terms = " + ".join(f"{w:.3f}*x[{s}]" for s, w in zip(self.slots, self.weights))
        return f"Neuron {self.activation_function.name}({terms or '0'} + {self.bias:.3f})"

    def serialize(self):
        return {
            "type": "Neuron",
            "slots": list(self.slots),
            "weights": self.weights.tolist(),
            "bias": self.bias,
            "activation": self.activation_function.serialize(),
        }


class NeuralLayer(AggregateNode):
    """Layer of neurons evaluated independently on the same input."""

    def __init__(self, activation=None):
        """
        Initialize a neural layer.

        Args:
            activation: Default activation for neurons created by create_neuron
        """
        super().__init__()
        self.activation_function = activation

    def add_sub_node(self, node):
        if not isinstance(node, Neuron):
            raise ConfigurationError(f"NeuralLayer accepts only neurons, got {node.__class__.__name__}")
        return super().add_sub_node(node)

    def create_neuron(self, activation=None):
        return self.add_sub_node(Neuron(activation or self.activation_function))

    @property
    def neurons(self):
        return self.sub_nodes

    @property
    def neuron_count(self):
        return len(self._sub_nodes)

    def __getitem__(self, idx):
        return self._sub_nodes[idx]

    def __len__(self):
        return len(self._sub_nodes)

    def calculate(self, input):
        self._check_built()
        x = np.asarray(input, dtype=float)
        return np.array([neuron.calculate(x) for neuron in self._sub_nodes], dtype=float)

    def serialize(self):
        return {
            "type": "NeuralLayer",
            "activation": self.activation_function.serialize() if self.activation_function else None,
            "nodes": [neuron.serialize() for neuron in self._sub_nodes],
        }


class NeuralNetwork(SequenceNode):
    """
    Multi-layer network: a stack of neural layers and an optional output node.

    Each hidden layer's output vector is the next layer's input; the output
    node, if set, consumes the last hidden layer's output.
    """

    def __init__(self, input_dim=None, activation=None):
        """
        Initialize a neural network.

        Args:
            input_dim: Input vector length (default: inferred at build from
                the highest weight slot of the first layer)
            activation: Default activation for layers created by create_hidden_layer
        """
        super().__init__()
        self._input_dim = input_dim
        self._output_node = None
        self.activation_function = activation
        self.is_training = False

    @property
    def input_dim(self):
        return self._input_dim

    @property
    def output_dim(self):
        if self._output_node is not None and not isinstance(self._output_node, NeuralLayer):
            return None
        layers = self.layers
        return layers[-1].neuron_count if layers else 0

    @property
    def hidden_layers(self):
        return tuple(self._sub_nodes)

    @property
    def output_node(self):
        return self._output_node

    @property
    def sub_nodes(self):
        if self._output_node is None:
            return tuple(self._sub_nodes)
        return tuple(self._sub_nodes) + (self._output_node,)

    @property
    def layers(self):
        """Hidden layers followed by the output node when it is a neural layer."""
        if isinstance(self._output_node, NeuralLayer):
            return self.sub_nodes
        return self.hidden_layers

    @property
    def layer_count(self):
        return len(self.layers)

    def __getitem__(self, idx):
        return self.layers[idx]

    def add_sub_node(self, node):
        if not isinstance(node, NeuralLayer):
            raise ConfigurationError(f"Hidden layers must be neural layers, got {node.__class__.__name__}")
        return super().add_sub_node(node)

    def create_hidden_layer(self, activation=None):
        return self.add_sub_node(NeuralLayer(activation or self.activation_function))

    def set_output_node(self, node):
        if self._is_built:
            raise ConfigurationError("Can not replace the output node of a built network")
        self._output_node = node
        return node

    def _build_shape(self):
        if self._input_dim is None:
            first = self.sub_nodes[0] if self.sub_nodes else None
            if isinstance(first, NeuralLayer):
                top = [n.slots[-1] for n in first.neurons if n.slots]
                self._input_dim = (max(top) + 1) if top else 0
        super()._build_shape()

    def serialize(self):
        return {
            "type": "NeuralNetwork",
            "input_dim": self._input_dim,
            "activation": self.activation_function.serialize() if self.activation_function else None,
            "hidden_layers": [layer.serialize() for layer in self._sub_nodes],
            "output_node": self._output_node.serialize() if self._output_node is not None else None,
        }


class NeuralModelFactory:
    """Factory class for creating and deserializing neural models."""

    # Registry of model types
    _node_types = {
        "Neuron": Neuron,
        "NeuralLayer": NeuralLayer,
        "NeuralNetwork": NeuralNetwork,
    }

    @classmethod
    def create(cls, node_type, **kwargs):
        if node_type not in cls._node_types:
            raise ConfigurationError(f"Unknown neural model type: {node_type}")
        return cls._node_types[node_type](**kwargs)

    @classmethod
    def create_network(cls, input_dim, layer_sizes, activation="TANH", output_activation=None, seed=None, scale=0.5):
        """
        Create a fully connected, built network with random parameters.

        Args:
            input_dim: Input vector length
            layer_sizes: Number of neurons of each layer, the last one being the output layer
            activation: Activation id of hidden layers
            output_activation: Activation id of the last layer (default: same as hidden)
            seed: Seed of the parameter initialization
            scale: Parameters are drawn uniformly from [-scale, scale]

        Returns:
            Built NeuralNetwork
        """
        hidden_act = ActivationFunctionFactory.create(activation)
        output_act = ActivationFunctionFactory.create(output_activation) if output_activation else hidden_act

        net = NeuralNetwork(input_dim=input_dim)
        prev = input_dim
        for i, size in enumerate(layer_sizes):
            layer = net.create_hidden_layer(output_act if i == len(layer_sizes) - 1 else hidden_act)
            for _ in range(size):
                neuron = layer.create_neuron()
                for h in range(prev):
                    neuron[h] = 0.0
            prev = size

        net.build()
        net.randomize_params(seed, scale)
        return net

    @classmethod
    def deserialize(cls, data):
        """
        Create a neural model from serialized data.

        Args:
            data: Dictionary produced by serialize()

        Returns:
            Built model with the serialized parameter values
        """
        node = cls._deserialize(data)
        node.build()
        return node

    @classmethod
    def _deserialize(cls, data):
        node_type = data["type"]
        if node_type not in cls._node_types:
            raise ConfigurationError(f"Unknown neural model type: {node_type}")

        if node_type == "Neuron":
            neuron = Neuron(ActivationFunctionFactory.deserialize(data["activation"]))
            for slot, weight in zip(data["slots"], data["weights"]):
                neuron[slot] = weight
            neuron.bias = float(data["bias"])
            return neuron

        if node_type == "NeuralLayer":
            layer = NeuralLayer(ActivationFunctionFactory.deserialize(data.get("activation")))
            for neuron_data in data["nodes"]:
                layer.add_sub_node(cls._deserialize(neuron_data))
            return layer

        net = NeuralNetwork(
            input_dim=data.get("input_dim"),
            activation=ActivationFunctionFactory.deserialize(data.get("activation")),
        )
        for layer_data in data["hidden_layers"]:
            net.add_sub_node(cls._deserialize(layer_data))
        if data.get("output_node") is not None:
            net.set_output_node(cls._deserialize(data["output_node"]))
        return net
