from collections import namedtuple
from contextlib import contextmanager
from enum import Enum
from time import time

import matplotlib.pyplot as plt
import numpy as np
from tqdm import tqdm

from mlnet.ComputingNodes import ConfigurationError, MLError
from mlnet.DeepModels import ConvNet
from mlnet.Functions import LossFunction, LossFunctionFactory
from mlnet.NeuralModels import NeuralLayer, NeuralNetwork

DFT_EPOCH_COUNT = 1
DFT_LEARNING_RATE = 0.1
DFT_Q_LAMBDA = 0.9
DFT_BATCH_SIZE = 1


class StopCriteria(Enum):
    """When a multi-epoch training run stops before its epoch count."""

    FULL_LOOP = 0
    ERROR_FUNC = 1
    STEP_MIN = 2
    Q_FUNC = 3

    @classmethod
    def parse(cls, value):
        """Accept a member, its integer value, or a name such as "q_func" or "QFunc"."""
        if isinstance(value, cls):
            return value
        if isinstance(value, int) and not isinstance(value, bool):
            try:
                return cls(value)
            except ValueError:
                pass
        elif isinstance(value, str):
            key = value.replace("_", "").lower()
            for member in cls:
                if member.name.replace("_", "").lower() == key:
                    return member
        raise ConfigurationError(f"Unknown stop criteria: {value}")


DFT_STOP_CRITERIA = StopCriteria.FULL_LOOP


class Class(namedtuple("Class", ["name", "value"])):
    """Class label: a name and an integer value."""

    __slots__ = ()

    def __str__(self):
        return f"{self.name}"


Class.NONE = Class("None", None)

ErrorInfo = namedtuple("ErrorInfo", ["input", "true_class", "predicted_class"])


class ClassifiedSample:
    """
    Insertion-ordered mapping from input objects to classes.

    Inputs are stored as float arrays; equal arrays are the same key.
    """

    def __init__(self, items=None):
        self._items = {}
        for x, cls in items or []:
            self[x] = cls

    @staticmethod
    def _key(x):
        a = np.asarray(x, dtype=float)
        return a.shape, a.tobytes()

    def __setitem__(self, x, cls):
        if cls is None:
            raise ConfigurationError("Class can not be None")
        self._items[self._key(x)] = (np.array(x, dtype=float), cls)

    def __getitem__(self, x):
        return self._items[self._key(x)][1]

    def __contains__(self, x):
        return self._key(x) in self._items

    def __len__(self):
        return len(self._items)

    def __iter__(self):
        return iter(self._items.values())

    def add(self, x, cls):
        self[x] = cls

    @property
    def classes(self):
        """Distinct classes of the sample, ordered by value."""
        distinct = {cls for _, cls in self._items.values()}
        return sorted(distinct, key=lambda c: (c.value is None, c.value, c.name))


@contextmanager
def training_mode(net, is_training=True, restore=None):
    """
    Set the training flag of a network for the duration of a block.

    The flag is restored on every exit path, to its previous value or to
    ``restore`` when given.
    """
    previous = net.is_training
    net.is_training = is_training
    try:
        yield net
    finally:
        net.is_training = previous if restore is None else restore


class NeuralNetworkAlgorithmBase:
    """
    Training algorithm over a classified sample.

    Owns the training run state (error statistics, Q statistic, epoch
    counter) and drives epochs; subclasses implement one iteration.
    """

    id = None
    name = None

    def __init__(self, classified_sample, net, learning_rate=DFT_LEARNING_RATE, epoch_count=DFT_EPOCH_COUNT,
                 stop=DFT_STOP_CRITERIA, error_stop_delta=0.0, step_stop_value=0.0, q_lambda=DFT_Q_LAMBDA,
                 q_stop_delta=0.0, epoch_ended=None, verbose=False):
        """
        Initialize the algorithm.

        Args:
            classified_sample: ClassifiedSample to train on
            net: Network to train; built here if not built yet
            learning_rate: Gradient descent step, must be positive
            epoch_count: Maximum number of epochs of train()
            stop: StopCriteria (or its name) checked after each epoch
            error_stop_delta: ERROR_FUNC threshold on |epoch error delta|
            step_stop_value: STEP_MIN threshold on the last step size
            q_lambda: Smoothing of the Q statistic, in [0, 1]
            q_stop_delta: Q_FUNC threshold on |Q delta|
            epoch_ended: Optional callable invoked with the algorithm after every epoch
            verbose: Report progress of train()
        """
        if classified_sample is None:
            raise ConfigurationError("Classified sample can not be None")
        if net is None:
            raise ConfigurationError("Network can not be None")
        if len(classified_sample) == 0:
            raise ConfigurationError("Classified sample can not be empty")

        self._sample = classified_sample
        self._net = net
        if not net.is_built:
            net.build()

        self.learning_rate = learning_rate
        self.epoch_count = epoch_count
        self.stop = stop
        self.error_stop_delta = error_stop_delta
        self.step_stop_value = step_stop_value
        self.q_lambda = q_lambda
        self.q_stop_delta = q_stop_delta
        self.epoch_ended = epoch_ended
        self.verbose = verbose

        self._iter_error_value = 0.0
        self._prev_error_value = 0.0
        self._error_value = 0.0
        self._error_delta = 0.0
        self._step2 = 0.0
        self._prev_q_value = 0.0
        self._q_value = 0.0
        self._q_delta = 0.0
        self._epoch = 0
        self.train_losses = []

        self._check_network()
        self._init_expected_outputs()

    # ------------------------------------------------------------------
    # Hyperparameters

    @property
    def learning_rate(self):
        return self._learning_rate

    @learning_rate.setter
    def learning_rate(self, value):
        if value is None or value <= 0:
            raise ConfigurationError(f"Learning rate must be positive, got {value}")
        self._learning_rate = float(value)

    @property
    def epoch_count(self):
        return self._epoch_count

    @epoch_count.setter
    def epoch_count(self, value):
        if value is None or int(value) != value or value <= 0:
            raise ConfigurationError(f"Epoch count must be a positive integer, got {value}")
        self._epoch_count = int(value)

    @property
    def stop(self):
        return self._stop

    @stop.setter
    def stop(self, value):
        self._stop = StopCriteria.parse(value)

    @property
    def error_stop_delta(self):
        return self._error_stop_delta

    @error_stop_delta.setter
    def error_stop_delta(self, value):
        if value is None or value < 0:
            raise ConfigurationError(f"Error stop delta must be non-negative, got {value}")
        self._error_stop_delta = float(value)

    @property
    def step_stop_value(self):
        return self._step_stop_value

    @step_stop_value.setter
    def step_stop_value(self, value):
        if value is None or value < 0:
            raise ConfigurationError(f"Step stop value must be non-negative, got {value}")
        self._step_stop_value = float(value)

    @property
    def q_lambda(self):
        return self._q_lambda

    @q_lambda.setter
    def q_lambda(self, value):
        if value is None or value < 0 or value > 1:
            raise ConfigurationError(f"Lambda for Q-stop criteria must be in [0, 1], got {value}")
        self._q_lambda = float(value)

    @property
    def q_stop_delta(self):
        return self._q_stop_delta

    @q_stop_delta.setter
    def q_stop_delta(self, value):
        if value is None or value < 0:
            raise ConfigurationError(f"Q stop delta must be non-negative, got {value}")
        self._q_stop_delta = float(value)

    # ------------------------------------------------------------------
    # Training run state

    @property
    def net(self):
        return self._net

    @property
    def training_sample(self):
        return self._sample

    @property
    def classes(self):
        return tuple(self._classes)

    @property
    def output_dim(self):
        return self._output_dim

    @property
    def iter_error_value(self):
        return self._iter_error_value

    @property
    def error_value(self):
        return self._error_value

    @property
    def error_delta(self):
        return self._error_delta

    @property
    def step2(self):
        return self._step2

    @property
    def q_value(self):
        return self._q_value

    @property
    def q_delta(self):
        return self._q_delta

    @property
    def epoch(self):
        return self._epoch

    # ------------------------------------------------------------------
    # Public

    def classify(self, x):
        """Map an object to the class of the largest network output."""
        result = np.ravel(self._net.calculate(x))
        return self._class_by_value.get(int(np.argmax(result)), Class.NONE)

    def get_errors(self, classified_sample):
        """
        Classify every object of a sample outside training mode.

        Returns:
            List of ErrorInfo for the misclassified objects
        """
        errors = []
        with training_mode(self._net, False):
            for x, cls in classified_sample:
                predicted = self.classify(x)
                if predicted != cls:
                    errors.append(ErrorInfo(x, cls, predicted))
        return errors

    def train(self):
        """
        Run up to epoch_count epochs in training mode, stopping early when
        the stop criterion is met.

        Returns:
            List of epoch error values
        """
        with training_mode(self._net, True, restore=False):
            epochs = tqdm(range(self._epoch_count), desc=self.name, disable=not self.verbose)
            for epoch in epochs:
                start_time = time()
                self.run_epoch()

                if self.verbose:
                    epoch_time = time() - start_time
                    tqdm.write(f"Epoch {epoch+1}/{self._epoch_count} - {epoch_time:.2f}s - "
                               f"error: {self._error_value:.4f} - q: {self._q_value:.4f}")

                if self._check_stop_criteria():
                    if self.verbose:
                        tqdm.write(f"Stop criteria {self._stop.name} met at epoch {epoch+1}")
                    break

        return self.train_losses

    def run_epoch(self):
        """Run one iteration per sample object, in sample order, and update epoch statistics."""
        for x, cls in self._sample:
            self.run_iteration(x, cls)
            self._iteration_ended()
        self._epoch_finishing()

        self._prev_error_value = self._error_value
        self._error_value = self._iter_error_value / len(self._sample)
        self._error_delta = self._error_value - self._prev_error_value
        self._iter_error_value = 0.0
        self._epoch += 1
        self.train_losses.append(self._error_value)

        if self.epoch_ended is not None:
            self.epoch_ended(self)

    def run_iteration(self, x, cls):
        """Run forward pass, backward pass and update on one (object, class) pair."""
        expected = self._expected_outputs.get(cls)
        if expected is None:
            raise ConfigurationError(f"Class {cls!r} is not a class of the training sample")

        loss = self._do_iteration(x, expected)

        self._iter_error_value += loss
        self._prev_q_value = self._q_value
        self._q_value = (1 - self._q_lambda) * self._q_value + self._q_lambda * loss
        self._q_delta = self._q_value - self._prev_q_value

    def plot_loss(self, filename='loss_plot.png'):
        """Plot the epoch error values."""
        plt.figure(figsize=(10, 6))
        plt.plot(range(1, len(self.train_losses) + 1), self.train_losses, label='Epoch Error')
        plt.xlabel('Epoch')
        plt.ylabel('Error')
        plt.title(f'{self.name} Training Error')
        plt.legend()
        plt.grid(True)
        plt.savefig(filename)
        plt.close()

    # ------------------------------------------------------------------
    # Internal helpers

    def _check_network(self):
        pass

    def _get_output_dim(self):
        raise NotImplementedError("Subclasses must implement _get_output_dim method")

    def _do_iteration(self, x, expected):
        """Train on one object; return the iteration loss."""
        raise NotImplementedError("Subclasses must implement _do_iteration method")

    def _iteration_ended(self):
        pass

    def _epoch_finishing(self):
        pass

    def _init_expected_outputs(self):
        self._output_dim = self._get_output_dim()
        self._classes = self._sample.classes

        count = len(self._classes)
        if count != self._output_dim:
            raise ConfigurationError(f"Number of classes ({count}) must be equal to dimension "
                                     f"of output vector ({self._output_dim})")

        self._class_by_value = {cls.value: cls for cls in self._classes}
        self._expected_outputs = {}
        for i in range(count):
            cls = self._class_by_value.get(i)
            if cls is None:
                raise ConfigurationError(f"There is no class with value {i}. It is necessary to have "
                                         f"full set of classes with values from 0 to {count-1}")
            output = np.zeros(count, dtype=float)
            output[i] = 1.0
            self._expected_outputs[cls] = output

    def _check_stop_criteria(self):
        if self._stop is StopCriteria.FULL_LOOP:
            return False
        if self._stop is StopCriteria.ERROR_FUNC:
            return abs(self._error_delta) < self._error_stop_delta
        if self._stop is StopCriteria.STEP_MIN:
            return self._step2 < self._step_stop_value
        if self._stop is StopCriteria.Q_FUNC:
            return abs(self._q_delta) < self._q_stop_delta
        raise ConfigurationError(f"Unknown stop criteria: {self._stop}")


class BackpropAlgorithm(NeuralNetworkAlgorithmBase):
    """
    Multi-layer neural network training with backpropagation.

    Works unit by unit on a NeuralNetwork whose layers (hidden layers plus an
    optional NeuralLayer output node) are all neural layers. Uses the squared
    error of the one-hot expected output.
    """

    id = "MLP_BP"
    name = "MLP Neural Network with Backpropagation"

    @property
    def input_dim(self):
        return self._net.input_dim

    def _check_network(self):
        if not isinstance(self._net, NeuralNetwork):
            raise ConfigurationError(f"{self.id} trains a NeuralNetwork, got {self._net.__class__.__name__}")
        if self._net.output_node is not None and not isinstance(self._net.output_node, NeuralLayer):
            raise ConfigurationError("Backpropagation needs the output node to be a NeuralLayer")
        if self._net.layer_count == 0:
            raise ConfigurationError("Network has no layers")

    def _get_output_dim(self):
        return self._net.layers[-1].neuron_count

    def _do_iteration(self, x, expected):
        x = np.asarray(x, dtype=float)

        # forward calculation
        serr2 = self._feed_forward(x, expected)

        # error backpropagation
        layers = self._net.layers
        self._step2 = 0.0
        for lidx in range(len(layers) - 1, -1, -1):
            self._feed_backward(layers, lidx, x)

        return serr2 / 2

    def _feed_forward(self, x, expected):
        output = self._net.calculate(x)
        serr2 = 0.0

        for j, neuron in enumerate(self._net.layers[-1].neurons):
            ej = output[j] - expected[j]
            neuron.error = ej * neuron.activation_function.derivative_from_value(neuron.value)
            serr2 += ej * ej

        return serr2

    def _feed_backward(self, layers, lidx, input):
        layer = layers[lidx]

        # previous layer errors use the weights of this layer before its update
        if lidx > 0:
            player = layers[lidx - 1]
            errors = np.zeros(player.neuron_count, dtype=float)
            for neuron in layer.neurons:
                neuron.propagate_error(errors)
            for h, pneuron in enumerate(player.neurons):
                pneuron.error = errors[h] * pneuron.activation_function.derivative_from_value(pneuron.value)
            values = np.array([pneuron.value for pneuron in player.neurons], dtype=float)
        else:
            values = input

        for neuron in layer.neurons:
            self._step2 += neuron.descend(values, self._learning_rate)


class ConvBackpropAlgorithm(NeuralNetworkAlgorithmBase):
    """
    Backpropagation over a ConvNet.

    Every iteration stores per-layer values and errors and accumulates the
    parameter gradient; the gradient is applied every batch_size iterations
    (and at the end of an epoch) by flush_gradient as one bulk update.
    """

    id = "CNN_BP"
    name = "Convolutional Neural Network with Backpropagation"

    def __init__(self, classified_sample, net, loss_function="EUCL", batch_size=DFT_BATCH_SIZE, **kwargs):
        """
        Initialize the algorithm.

        Args:
            classified_sample: ClassifiedSample of (depth, height, width) objects
            net: ConvNet to train
            loss_function: LossFunction or its id
            batch_size: Number of iterations between gradient updates
            **kwargs: Hyperparameters of NeuralNetworkAlgorithmBase
        """
        self.loss_function = loss_function
        self.batch_size = batch_size
        super().__init__(classified_sample, net, **kwargs)

        self._gradient = np.zeros(self._net.param_count, dtype=float)
        self._batch_count = 0
        self._values = []
        self._errors = []

    @property
    def loss_function(self):
        return self._loss_function

    @loss_function.setter
    def loss_function(self, value):
        if isinstance(value, str):
            value = LossFunctionFactory.create(value)
        if not isinstance(value, LossFunction):
            raise ConfigurationError(f"Unknown loss function: {value}")
        self._loss_function = value

    @property
    def batch_size(self):
        return self._batch_size

    @batch_size.setter
    def batch_size(self, value):
        if value is None or int(value) != value or value <= 0:
            raise ConfigurationError(f"Batch size must be a positive integer, got {value}")
        self._batch_size = int(value)

    @property
    def input_dim(self):
        return self._net.input_shape

    @property
    def values(self):
        """Outputs of every layer in the last iteration."""
        return list(self._values)

    @property
    def errors(self):
        """Loss gradient with respect to every layer's net input in the last iteration."""
        return list(self._errors)

    @property
    def gradient(self):
        """Accumulated gradient, split per layer."""
        return [self._gradient[layer.start_idx:layer.start_idx + layer.param_count] for layer in self._net.layers]

    def flush_gradient(self):
        """Apply the accumulated gradient as a single bulk parameter update."""
        if self._batch_count == 0:
            return

        step = -self._learning_rate * self._gradient / self._batch_count
        success, _ = self._net.try_update_params(step, True)
        if not success:
            raise MLError("Gradient vector does not match the network parameters")

        self._step2 = float(np.dot(step, step))
        self._gradient[:] = 0.0
        self._batch_count = 0

    def _check_network(self):
        if not isinstance(self._net, ConvNet):
            raise ConfigurationError(f"{self.id} trains a ConvNet, got {self._net.__class__.__name__}")
        if self._net.layer_count == 0:
            raise ConfigurationError("Network has no layers")

    def _get_output_dim(self):
        return int(np.prod(self._net.output_shape))

    def _do_iteration(self, x, expected):
        layers = self._net.layers
        x = np.asarray(x, dtype=float)

        output = self._net.calculate(x)
        values = [layer.value for layer in layers]
        inputs = [x] + values[:-1]

        flat = np.ravel(output)
        loss = self._loss_function.value(flat, expected)
        error = self._loss_function.derivative(flat, expected).reshape(output.shape) * layers[-1].derivative(output)

        errors = [None] * len(layers)
        for lidx in range(len(layers) - 1, -1, -1):
            errors[lidx] = error
            if lidx > 0:
                error = layers[lidx].backprop(inputs[lidx], error) * layers[lidx - 1].derivative(values[lidx - 1])

        for lidx, layer in enumerate(layers):
            if layer.param_count:
                start = layer.start_idx
                self._gradient[start:start + layer.param_count] += layer.layer_gradient(inputs[lidx], errors[lidx])

        self._values = values
        self._errors = errors
        self._batch_count += 1

        return loss

    def _iteration_ended(self):
        if self._batch_count >= self._batch_size:
            self.flush_gradient()

    def _epoch_finishing(self):
        self.flush_gradient()
