"""
network.py
~~~~~~~~~~

A fully-connected feedforward network trained with full-batch gradient
descent.

Layers are stored in order from the input side. Every layer computes
``activation(previous_output . weights + bias)`` with samples as rows, so a
layer with ``n`` inputs and ``m`` neurons has an ``(n, m)`` weight matrix
and a ``(1, m)`` bias row. Hidden layers use ReLU; the single output layer
uses softmax and is trained against integer class labels with
cross-entropy loss.
"""

import enum
import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

import numpy as np

logger = logging.getLogger(__name__)


class NetworkConfigurationError(ValueError):
    """Raised when a network is wired or fed inconsistently."""


class Activation(enum.Enum):
    RELU = 'relu'
    SOFTMAX = 'softmax'


class LayerRole(enum.Enum):
    HIDDEN = 'hidden'
    OUTPUT = 'output'


def relu(z: np.ndarray) -> np.ndarray:
    return np.maximum(z, 0.0)


def softmax(z: np.ndarray) -> np.ndarray:
    """Row-wise softmax, shifted by the row maximum for stability."""
    shifted = z - np.max(z, axis=1, keepdims=True)
    exps = np.exp(shifted)
    return exps / np.sum(exps, axis=1, keepdims=True)


_ACTIVATIONS = {
    Activation.RELU: relu,
    Activation.SOFTMAX: softmax,
}


class Layer:
    """One fully-connected layer and its parameters."""

    def __init__(
        self,
        input_count: int,
        neuron_count: int,
        activation: Activation,
        role: LayerRole,
        rng: np.random.Generator
    ):
        self.neuron_count = neuron_count
        self.activation = activation
        self.role = role
        self.weights = rng.uniform(-0.5, 0.5, size=(input_count, neuron_count))
        self.bias = rng.uniform(-0.5, 0.5, size=(1, neuron_count))

    @property
    def input_count(self) -> int:
        return self.weights.shape[0]

    def forward(self, inputs: np.ndarray):
        """Return ``(pre_activation, activation)`` for a batch of rows."""
        z = inputs @ self.weights + self.bias
        return z, _ACTIVATIONS[self.activation](z)

    def __repr__(self) -> str:
        return (
            f"Layer({self.input_count}->{self.neuron_count}, "
            f"{self.activation.value}, {self.role.value})"
        )


def one_hot(labels: np.ndarray, class_count: int) -> np.ndarray:
    """Expand a column of integer labels into one row per sample."""
    indices = np.asarray(labels).reshape(-1).astype(int)
    encoded = np.zeros((indices.shape[0], class_count))
    encoded[np.arange(indices.shape[0]), indices] = 1.0
    return encoded


@dataclass(frozen=True, eq=False)
class TrainingProgress:
    """
    Snapshot handed to the progress observer after each iteration.

    ``predictions`` is the output of that iteration's forward pass over the
    training batch (computed before the parameter update), one row per
    sample; ``labels`` holds the matching integer classes.
    """
    iteration: int
    total_iterations: int
    elapsed_time: float
    predictions: np.ndarray
    labels: np.ndarray

    @property
    def total(self) -> int:
        return int(self.labels.shape[0])

    @property
    def correct(self) -> int:
        return int(np.sum(np.argmax(self.predictions, axis=1) == self.labels))

    @property
    def accuracy(self) -> float:
        return self.correct / self.total

    @property
    def loss(self) -> float:
        """Mean cross-entropy of the predictions."""
        picked = self.predictions[np.arange(self.total), self.labels]
        return float(-np.mean(np.log(np.clip(picked, 1e-12, 1.0))))

    @property
    def progress(self) -> float:
        return self.iteration / self.total_iterations * 100


ProgressObserver = Callable[[TrainingProgress], None]


class Network:
    """
    Stack of fully-connected layers.

    Build it with an input feature count and an output class count, then
    append layers with :meth:`add_layer`. The last layer added must be the
    output layer: role ``LayerRole.OUTPUT``, softmax activation and
    ``output_size`` neurons.
    """

    def __init__(
        self,
        input_size: int,
        output_size: int,
        rng: Optional[np.random.Generator] = None
    ):
        if input_size < 1 or output_size < 1:
            raise NetworkConfigurationError(
                f"Input and output sizes must be positive, got "
                f"{input_size} and {output_size}"
            )
        self.input_size = input_size
        self.output_size = output_size
        self.layers: List[Layer] = []
        self._rng = rng if rng is not None else np.random.default_rng()

    @property
    def sizes(self) -> List[int]:
        return [self.input_size] + [layer.neuron_count for layer in self.layers]

    @property
    def weights(self) -> List[np.ndarray]:
        return [layer.weights for layer in self.layers]

    @property
    def biases(self) -> List[np.ndarray]:
        return [layer.bias for layer in self.layers]

    @property
    def has_output_layer(self) -> bool:
        return bool(self.layers) and self.layers[-1].role is LayerRole.OUTPUT

    def add_layer(
        self,
        neuron_count: int,
        activation: Activation = Activation.RELU,
        role: LayerRole = LayerRole.HIDDEN
    ) -> Layer:
        """
        Append a layer with freshly randomised parameters.

        Raises:
            NetworkConfigurationError: If the output layer was already
                added, or the layer's size or activation does not fit
                its role
        """
        if neuron_count < 1:
            raise NetworkConfigurationError(
                f"Layer needs at least one neuron, got {neuron_count}"
            )
        if self.has_output_layer:
            raise NetworkConfigurationError(
                "Cannot add layers after the output layer"
            )
        if role is LayerRole.OUTPUT:
            if activation is not Activation.SOFTMAX:
                raise NetworkConfigurationError("Output layer must use softmax")
            if neuron_count != self.output_size:
                raise NetworkConfigurationError(
                    f"Output layer must have {self.output_size} neurons, "
                    f"got {neuron_count}"
                )
        elif activation is not Activation.RELU:
            raise NetworkConfigurationError("Hidden layers must use ReLU")

        input_count = self.layers[-1].neuron_count if self.layers else self.input_size
        layer = Layer(input_count, neuron_count, activation, role, self._rng)
        self.layers.append(layer)
        return layer

    def add_output_layer(self) -> Layer:
        return self.add_layer(self.output_size, Activation.SOFTMAX, LayerRole.OUTPUT)

    def _check_ready(self, inputs: np.ndarray) -> None:
        if not self.layers:
            raise NetworkConfigurationError("Network has no layers")
        if not self.has_output_layer:
            raise NetworkConfigurationError("Network has no output layer")
        if inputs.shape[1] != self.input_size:
            raise NetworkConfigurationError(
                f"Expected {self.input_size} input features, "
                f"got {inputs.shape[1]}"
            )

    def _forward(self, inputs: np.ndarray):
        """Run every layer, keeping the intermediate values for backprop."""
        pre_activations = []
        activations = [inputs]
        for layer in self.layers:
            z, a = layer.forward(activations[-1])
            pre_activations.append(z)
            activations.append(a)
        return pre_activations, activations

    def feedforward(self, data: np.ndarray) -> np.ndarray:
        """
        Return the network's output for ``data``.

        A 1-D feature vector yields a 1-D vector of ``output_size``
        confidences; a 2-D matrix yields one output row per input row.
        """
        data = np.asarray(data, dtype=np.float64)
        single = data.ndim == 1
        inputs = data.reshape(1, -1) if single else data
        self._check_ready(inputs)

        _, activations = self._forward(inputs)
        output = activations[-1]
        return output[0] if single else output

    def evaluate(self, inputs: np.ndarray, labels: np.ndarray) -> int:
        """Return the number of rows whose highest output matches the label."""
        predictions = np.argmax(self.feedforward(inputs), axis=1)
        return int(np.sum(predictions == np.asarray(labels).reshape(-1).astype(int)))

    def train(
        self,
        inputs: np.ndarray,
        labels: np.ndarray,
        limit_to_samples: int,
        iterations: int,
        learning_rate: float,
        progress_observer: Optional[ProgressObserver] = None,
        yield_func: Optional[Callable[[], None]] = None
    ) -> None:
        """
        Train with full-batch gradient descent.

        Args:
            inputs: One normalised feature vector per row
            labels: Integer class of each row, shape ``(rows, 1)`` or ``(rows,)``
            limit_to_samples: Use only the first rows of ``inputs``
            iterations: Number of parameter updates to perform
            learning_rate: Gradient step scale
            progress_observer: Called synchronously after every iteration
            yield_func: Called after every iteration to let other tasks run

        Raises:
            NetworkConfigurationError: If the network or the data is
                wired inconsistently
        """
        inputs = np.asarray(inputs, dtype=np.float64)
        if inputs.ndim != 2:
            raise NetworkConfigurationError(
                f"Training inputs must be a matrix, got {inputs.ndim} dimensions"
            )
        self._check_ready(inputs)

        raw_labels = np.asarray(labels, dtype=np.float64).reshape(-1)
        label_vector = raw_labels.astype(int)
        if np.any(label_vector != raw_labels):
            raise NetworkConfigurationError("Labels must be whole numbers")
        if label_vector.shape[0] != inputs.shape[0]:
            raise NetworkConfigurationError(
                f"Got {inputs.shape[0]} input rows but {label_vector.shape[0]} labels"
            )
        if iterations < 1:
            raise NetworkConfigurationError(f"iterations must be positive, got {iterations}")
        if learning_rate <= 0:
            raise NetworkConfigurationError(
                f"learning_rate must be positive, got {learning_rate}"
            )

        sample_count = min(limit_to_samples, inputs.shape[0])
        if sample_count < 1:
            raise NetworkConfigurationError("No training samples")

        x = inputs[:sample_count]
        y = label_vector[:sample_count]
        if y.min() < 0 or y.max() >= self.output_size:
            raise NetworkConfigurationError(
                f"Labels must be in [0, {self.output_size - 1}]"
            )
        targets = one_hot(y, self.output_size)

        logger.info(
            f"Training {self.sizes} on {sample_count} samples: "
            f"iterations={iterations}, learning_rate={learning_rate}"
        )
        start_time = time.time()

        for iteration in range(1, iterations + 1):
            pre_activations, activations = self._forward(x)
            self._backpropagate(pre_activations, activations, targets, learning_rate)

            if progress_observer is not None:
                progress_observer(TrainingProgress(
                    iteration=iteration,
                    total_iterations=iterations,
                    elapsed_time=time.time() - start_time,
                    predictions=activations[-1],
                    labels=y
                ))

            if yield_func is not None:
                yield_func()

        logger.info(f"Training finished in {time.time() - start_time:.2f}s")

    def _backpropagate(
        self,
        pre_activations: List[np.ndarray],
        activations: List[np.ndarray],
        targets: np.ndarray,
        learning_rate: float
    ) -> None:
        sample_count = targets.shape[0]

        # Softmax with cross-entropy: the output error is simply output - target
        delta = activations[-1] - targets

        for index in reversed(range(len(self.layers))):
            layer = self.layers[index]
            weight_gradient = activations[index].T @ delta / sample_count
            bias_gradient = np.sum(delta, axis=0, keepdims=True) / sample_count

            if index > 0:
                delta = (delta @ layer.weights.T) * (pre_activations[index - 1] > 0)

            layer.weights -= learning_rate * weight_gradient
            layer.bias -= learning_rate * bias_gradient
