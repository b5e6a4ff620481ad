"""
recognizer.py
~~~~~~~~~~~~~

Training orchestration for the digit recognition network.

A DigitRecognizer binds a training dataset to a configuration. Every
training run builds a brand new network, trains it privately and then
publishes it with a single reference assignment, so readers always see
either the previous network or the fully trained one.
"""

import dataclasses
import logging
import time
from dataclasses import dataclass
from typing import Callable, NamedTuple, Optional, Sequence, Tuple, Union

import gevent
import numpy as np

from digit_recognition.dataset_transforms import (
    cropped,
    input_and_label_matrices,
    normalized_pixel_vector,
    shuffled
)
from digit_recognition.mnist_parser import NUM_CLASSES, Dataset, Sample
from digit_recognition.network import (
    Activation,
    LayerRole,
    Network,
    ProgressObserver
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TrainingConfiguration:
    """Hyperparameters of one training run."""
    max_training_items: int = 5000
    iterations: int = 300
    learning_rate: float = 0.06
    hidden_layers: Tuple[int, ...] = (10,)

    def __post_init__(self):
        # Accept any sequence for hidden_layers but store a tuple
        object.__setattr__(self, 'hidden_layers', tuple(self.hidden_layers))

        if self.max_training_items < 1:
            raise ValueError('max_training_items must be a positive integer')
        if self.iterations < 1:
            raise ValueError('iterations must be a positive integer')
        if self.learning_rate <= 0:
            raise ValueError('learning_rate must be a positive number')
        if any(count < 1 for count in self.hidden_layers):
            raise ValueError('hidden layer sizes must be positive integers')

    def to_dict(self) -> dict:
        data = dataclasses.asdict(self)
        data['hidden_layers'] = list(self.hidden_layers)
        return data


class Digit(NamedTuple):
    value: int
    confidence: float

    @property
    def id(self) -> int:
        return self.value


class PredictionOutcome:
    """Confidence of every digit class for one image, in digit order."""

    def __init__(self, digits: Sequence[Digit]):
        digits = tuple(digits)
        if len(digits) != NUM_CLASSES:
            raise ValueError(
                f"A prediction needs exactly {NUM_CLASSES} digits, got {len(digits)}"
            )
        self.digits = digits

    @classmethod
    def empty(cls) -> 'PredictionOutcome':
        return cls(Digit(value, 0.0) for value in range(NUM_CLASSES))

    @classmethod
    def from_output(cls, output: np.ndarray) -> 'PredictionOutcome':
        return cls(
            Digit(value, float(confidence))
            for value, confidence in enumerate(np.asarray(output).reshape(-1))
        )

    @property
    def highest_digit(self) -> Digit:
        # max() keeps the first of equal confidences, i.e. the lowest digit
        return max(self.digits, key=lambda digit: digit.confidence)

    def to_list(self):
        return [digit._asdict() for digit in self.digits]

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PredictionOutcome):
            return NotImplemented
        return self.digits == other.digits

    __hash__ = None

    def __repr__(self) -> str:
        return f"PredictionOutcome(highest={self.highest_digit})"


class DigitRecognizer:
    """
    Trains networks on a dataset and decodes their predictions.

    Args:
        training_data: Dataset every training run samples from
        configuration: Hyperparameters; defaults to TrainingConfiguration()
        rng: Source of randomness for shuffling and weight initialisation
        network: An already trained network to publish instead of a
            freshly initialised one
    """

    def __init__(
        self,
        training_data: Dataset,
        configuration: Optional[TrainingConfiguration] = None,
        rng: Optional[np.random.Generator] = None,
        network: Optional[Network] = None
    ):
        self.training_data = training_data
        self.configuration = configuration or TrainingConfiguration()
        self._rng = rng if rng is not None else np.random.default_rng()

        if network is not None:
            if network.input_size != self.input_size:
                raise ValueError(
                    f"Network expects {network.input_size} inputs, dataset "
                    f"images have {self.input_size} pixels"
                )
            self._network = network
        else:
            self.reset()

    @property
    def input_size(self) -> int:
        return self.training_data.image_width * self.training_data.image_width

    @property
    def network(self) -> Network:
        """The currently published network."""
        return self._network

    def _build_network(self, configuration: TrainingConfiguration) -> Network:
        network = Network(self.input_size, NUM_CLASSES, rng=self._rng)
        for neuron_count in configuration.hidden_layers:
            network.add_layer(neuron_count, Activation.RELU, LayerRole.HIDDEN)
        network.add_output_layer()
        return network

    def reset(self) -> None:
        """Publish a freshly initialised network for the current configuration."""
        self._network = self._build_network(self.configuration)

    def _run_training(
        self,
        configuration: TrainingConfiguration,
        observer: Optional[ProgressObserver],
        yield_func: Optional[Callable[[], None]]
    ) -> Network:
        start_time = time.time()
        network = self._build_network(configuration)

        training_set = cropped(
            shuffled(self.training_data, self._rng),
            configuration.max_training_items
        )
        inputs, labels = input_and_label_matrices(training_set)

        network.train(
            inputs,
            labels,
            limit_to_samples=min(configuration.max_training_items, self.training_data.count),
            iterations=configuration.iterations,
            learning_rate=configuration.learning_rate,
            progress_observer=observer,
            yield_func=yield_func
        )

        self._network = network
        logger.info(f"Training NN took {time.time() - start_time:.2f}s")
        return network

    def train(
        self,
        observer: Optional[ProgressObserver] = None,
        yield_func: Optional[Callable[[], None]] = None
    ) -> Network:
        """Train a new network synchronously and publish it."""
        return self._run_training(self.configuration, observer, yield_func)

    def train_async(self, observer: Optional[ProgressObserver] = None) -> gevent.Greenlet:
        """
        Train a new network in a background greenlet.

        The run uses the configuration current at call time and yields to
        other greenlets after every iteration. The greenlet's value is the
        trained network, which is also published on completion. When
        several runs overlap, the last one to finish wins.
        """
        def yield_to_other_tasks():
            gevent.sleep(0)

        return gevent.spawn(
            self._run_training, self.configuration, observer, yield_to_other_tasks
        )

    def digit_predictions(self, image: Union[np.ndarray, Sample]) -> PredictionOutcome:
        """Return the confidence of every digit for a single image."""
        if isinstance(image, Sample):
            image = image.image

        output = self._network.feedforward(normalized_pixel_vector(image))
        return PredictionOutcome.from_output(output)

    def evaluate(self, dataset: Dataset) -> float:
        """Return the fraction of ``dataset`` the published network classifies correctly."""
        if dataset.count == 0:
            raise ValueError('Cannot evaluate on an empty dataset')
        inputs, labels = input_and_label_matrices(dataset)
        return self._network.evaluate(inputs, labels) / dataset.count
