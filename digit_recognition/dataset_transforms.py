"""
dataset_transforms.py
~~~~~~~~~~~~~~~~~~~~~

Pure transforms that turn a parsed Dataset into training matrices.

None of these functions modify their argument; each returns a new Dataset
(or the same one, when nothing needs to change).
"""

from typing import Optional, Tuple

import numpy as np

from digit_recognition.mnist_parser import Dataset

PIXEL_MAX = 255.0


def shuffled(
    dataset: Dataset,
    rng: Optional[np.random.Generator] = None
) -> Dataset:
    """Return a copy of ``dataset`` with its samples uniformly permuted."""
    if rng is None:
        rng = np.random.default_rng()

    order = rng.permutation(dataset.count)
    images = dataset.images[order]
    labels = dataset.labels[order]
    # Fancy indexing already copied; read-only arrays are kept as they are
    images.setflags(write=False)
    labels.setflags(write=False)
    return Dataset(images, labels, dataset.image_width)


def cropped(dataset: Dataset, max_length: int) -> Dataset:
    """Return at most the first ``max_length`` samples of ``dataset``."""
    if max_length < 0:
        raise ValueError(f"max_length must be non-negative, got {max_length}")
    if dataset.count <= max_length:
        return dataset

    return Dataset(
        dataset.images[:max_length],
        dataset.labels[:max_length],
        dataset.image_width
    )


def normalized_pixel_vector(image: np.ndarray) -> np.ndarray:
    """Flatten an image and scale its pixels into [0, 1]."""
    return np.asarray(image, dtype=np.float64).reshape(-1) / PIXEL_MAX


def input_and_label_matrices(dataset: Dataset) -> Tuple[np.ndarray, np.ndarray]:
    """
    Vectorise a dataset.

    Returns:
        tuple: ``(inputs, labels)`` where ``inputs`` has one normalised
        pixel vector per row, shape ``(count, width**2)``, and ``labels``
        holds the numeric label of the matching row, shape ``(count, 1)``
    """
    pixel_count = dataset.image_width * dataset.image_width
    inputs = dataset.images.reshape(dataset.count, pixel_count).astype(np.float64)
    inputs /= PIXEL_MAX
    labels = dataset.labels.astype(np.float64).reshape(dataset.count, 1)
    return inputs, labels
