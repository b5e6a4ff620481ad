"""
mnist_loader.py
~~~~~~~~~~~~~~~

Locates the four MNIST IDX files in a data directory and parses them.

Configuration comes from the environment:

- ``MNIST_DATA_DIR``: directory holding the files (default ``data``)
- ``MNIST_MAX_COUNT``: only load this many samples per split, handy for
  quick debugging runs (default: load everything)
"""

import logging
import os
import time
from typing import NamedTuple, Optional

from digit_recognition.mnist_parser import Dataset, load_dataset

logger = logging.getLogger(__name__)

TRAIN_IMAGES = 'train-images-idx3-ubyte'
TRAIN_LABELS = 'train-labels-idx1-ubyte'
TEST_IMAGES = 't10k-images-idx3-ubyte'
TEST_LABELS = 't10k-labels-idx1-ubyte'


class MNISTData(NamedTuple):
    training: Dataset
    testing: Dataset
    all: Dataset


def default_data_dir() -> str:
    return os.getenv('MNIST_DATA_DIR', 'data')


def default_max_count() -> Optional[int]:
    value = os.getenv('MNIST_MAX_COUNT')
    if not value:
        return None
    max_count = int(value)
    if max_count < 1:
        raise ValueError(f"MNIST_MAX_COUNT must be positive, got {value}")
    return max_count


def _resource_path(data_dir: str, name: str) -> str:
    path = os.path.join(data_dir, name)
    if not os.path.isfile(path):
        raise FileNotFoundError(f"MNIST file not found: {path}")
    return path


def load_data(
    data_dir: Optional[str] = None,
    max_count: Optional[int] = None
) -> MNISTData:
    """
    Load the training and test splits.

    Args:
        data_dir: Directory holding the IDX files; defaults to MNIST_DATA_DIR
        max_count: Cap on samples per split; defaults to MNIST_MAX_COUNT

    Returns:
        MNISTData with training, testing and their concatenation

    Raises:
        FileNotFoundError: If one of the four files is missing
        MNISTFormatError: If a file cannot be decoded
    """
    if data_dir is None:
        data_dir = default_data_dir()
    if max_count is None:
        max_count = default_max_count()

    # Resolve every path first so a missing file fails before any parsing
    paths = [
        _resource_path(data_dir, name)
        for name in (TRAIN_IMAGES, TRAIN_LABELS, TEST_IMAGES, TEST_LABELS)
    ]

    start_time = time.time()
    training = load_dataset(paths[0], paths[1], max_count=max_count)
    testing = load_dataset(paths[2], paths[3], max_count=max_count)
    logger.info(f"Loading training data took {time.time() - start_time:.2f}s")

    return MNISTData(training=training, testing=testing, all=training + testing)
