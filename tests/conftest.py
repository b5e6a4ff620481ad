"""
conftest.py
~~~~~~~~~~~

Shared fixtures that build synthetic MNIST IDX data.
"""

import struct

import numpy as np
import pytest

from digit_recognition.mnist_parser import Dataset


def encode_images(images, count=None, magic=2051):
    """Encode a (n, w, w) uint8 array as an IDX image stream."""
    images = np.asarray(images, dtype=np.uint8)
    n, rows, cols = images.shape
    header = struct.pack('>IIII', magic, n if count is None else count, rows, cols)
    return header + images.tobytes()


def encode_labels(labels, count=None, magic=2049):
    """Encode a sequence of labels as an IDX label stream."""
    labels = np.asarray(labels, dtype=np.uint8)
    header = struct.pack('>II', magic, len(labels) if count is None else count)
    return header + labels.tobytes()


def random_dataset(count, width=4, seed=0):
    rng = np.random.default_rng(seed)
    images = rng.integers(0, 256, size=(count, width, width), dtype=np.uint8)
    labels = rng.integers(0, 10, size=count, dtype=np.uint8)
    return Dataset(images, labels, width)


@pytest.fixture
def small_dataset():
    """Twenty random 4x4 samples."""
    return random_dataset(20)


@pytest.fixture
def mnist_dir(tmp_path):
    """Directory holding the four MNIST files with tiny random contents."""
    training = random_dataset(30, width=4, seed=1)
    testing = random_dataset(12, width=4, seed=2)

    files = {
        'train-images-idx3-ubyte': encode_images(training.images),
        'train-labels-idx1-ubyte': encode_labels(training.labels),
        't10k-images-idx3-ubyte': encode_images(testing.images),
        't10k-labels-idx1-ubyte': encode_labels(testing.labels),
    }
    for name, content in files.items():
        (tmp_path / name).write_bytes(content)

    return tmp_path
