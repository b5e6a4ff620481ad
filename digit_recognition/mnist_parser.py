"""
mnist_parser.py
~~~~~~~~~~~~~~~

Decoding of the MNIST IDX binary format into in-memory datasets.

An image file starts with a 16 byte big-endian header (magic number 2051,
image count, rows, columns) followed by one unsigned byte per pixel, row
major, images concatenated. A label file starts with an 8 byte header
(magic number 2049, label count) followed by one unsigned byte per label.
"""

import io
import logging
import struct
from typing import BinaryIO, Iterator, NamedTuple, Optional, Union

import numpy as np

logger = logging.getLogger(__name__)

IMAGE_MAGIC = 2051
LABEL_MAGIC = 2049
IMAGE_HEADER = struct.Struct('>IIII')
LABEL_HEADER = struct.Struct('>II')
NUM_CLASSES = 10

Source = Union[bytes, bytearray, BinaryIO]


class MNISTFormatError(ValueError):
    """Raised when an image or label stream cannot be decoded."""


class Sample(NamedTuple):
    """One image with its label."""
    image: np.ndarray
    label: int


class Dataset:
    """
    Immutable ordered collection of samples sharing one image width.

    The pixel data is kept in a single read-only ``(count, width, width)``
    uint8 array and the labels in a read-only ``(count,)`` uint8 array, so
    transforms can build new datasets with array indexing instead of
    copying samples one by one.
    """

    def __init__(self, images: np.ndarray, labels: np.ndarray, image_width: int):
        images = np.asarray(images, dtype=np.uint8)
        labels = np.asarray(labels, dtype=np.uint8)

        if images.ndim != 3 or images.shape[1:] != (image_width, image_width):
            raise ValueError(
                f"Images must have shape (count, {image_width}, {image_width}), "
                f"got {images.shape}"
            )
        if labels.shape != (images.shape[0],):
            raise ValueError(
                f"Expected {images.shape[0]} labels, got shape {labels.shape}"
            )

        # Never alias a caller's writable buffer
        self._images = images.copy() if images.flags.writeable else images
        self._labels = labels.copy() if labels.flags.writeable else labels
        self._images.setflags(write=False)
        self._labels.setflags(write=False)
        self.image_width = int(image_width)

    @property
    def images(self) -> np.ndarray:
        return self._images

    @property
    def labels(self) -> np.ndarray:
        return self._labels

    @property
    def count(self) -> int:
        return int(self._labels.shape[0])

    def __len__(self) -> int:
        return self.count

    def __getitem__(self, index: int) -> Sample:
        return Sample(self._images[index], int(self._labels[index]))

    def __iter__(self) -> Iterator[Sample]:
        for index in range(self.count):
            yield self[index]

    def __add__(self, other: 'Dataset') -> 'Dataset':
        if not isinstance(other, Dataset):
            return NotImplemented
        if other.image_width != self.image_width:
            raise ValueError(
                f"Cannot concatenate datasets with image widths "
                f"{self.image_width} and {other.image_width}"
            )
        images = np.concatenate([self._images, other._images])
        labels = np.concatenate([self._labels, other._labels])
        images.setflags(write=False)
        labels.setflags(write=False)
        return Dataset(images, labels, self.image_width)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Dataset):
            return NotImplemented
        return (
            self.image_width == other.image_width
            and np.array_equal(self._images, other._images)
            and np.array_equal(self._labels, other._labels)
        )

    __hash__ = None

    def __repr__(self) -> str:
        return f"Dataset(count={self.count}, image_width={self.image_width})"


def _as_stream(source: Source) -> BinaryIO:
    if isinstance(source, (bytes, bytearray)):
        return io.BytesIO(source)
    return source


def _read_exactly(stream: BinaryIO, size: int, what: str) -> bytes:
    data = stream.read(size)
    if len(data) != size:
        raise MNISTFormatError(
            f"Truncated {what}: expected {size} bytes, got {len(data)}"
        )
    return data


def _read_image_header(stream: BinaryIO):
    magic, count, rows, cols = IMAGE_HEADER.unpack(
        _read_exactly(stream, IMAGE_HEADER.size, 'image header')
    )
    if magic != IMAGE_MAGIC:
        raise MNISTFormatError(
            f"Invalid magic number in image stream: {magic} "
            f"(expected {IMAGE_MAGIC})"
        )
    if rows != cols:
        raise MNISTFormatError(f"Images must be square, got {rows}x{cols}")
    return count, rows


def _read_label_header(stream: BinaryIO) -> int:
    magic, count = LABEL_HEADER.unpack(
        _read_exactly(stream, LABEL_HEADER.size, 'label header')
    )
    if magic != LABEL_MAGIC:
        raise MNISTFormatError(
            f"Invalid magic number in label stream: {magic} "
            f"(expected {LABEL_MAGIC})"
        )
    return count


def parse_dataset(
    image_source: Source,
    label_source: Source,
    max_count: Optional[int] = None
) -> Dataset:
    """
    Decode an image stream and its label stream into a Dataset.

    Args:
        image_source: IDX image data (bytes or a binary file object)
        label_source: IDX label data (bytes or a binary file object)
        max_count: Only decode the first ``max_count`` samples when given

    Returns:
        Dataset with samples in stream order

    Raises:
        MNISTFormatError: If a header is invalid, the two streams disagree
            on the sample count, a payload is truncated or a label is not
            a digit
    """
    if max_count is not None and max_count < 0:
        raise ValueError(f"max_count must be non-negative, got {max_count}")

    image_stream = _as_stream(image_source)
    label_stream = _as_stream(label_source)

    image_count, width = _read_image_header(image_stream)
    label_count = _read_label_header(label_stream)

    if image_count != label_count:
        raise MNISTFormatError(
            f"Image count ({image_count}) does not match "
            f"label count ({label_count})"
        )

    count = image_count if max_count is None else min(max_count, image_count)
    pixels_per_image = width * width

    pixels = _read_exactly(image_stream, count * pixels_per_image, 'image payload')
    label_bytes = _read_exactly(label_stream, count, 'label payload')

    images = np.frombuffer(pixels, dtype=np.uint8).reshape(count, width, width)
    labels = np.frombuffer(label_bytes, dtype=np.uint8)

    if count and labels.max() >= NUM_CLASSES:
        raise MNISTFormatError(
            f"Label out of range: {int(labels.max())} (expected 0-9)"
        )

    return Dataset(images, labels, width)


def load_dataset(
    image_path: str,
    label_path: str,
    max_count: Optional[int] = None
) -> Dataset:
    """Parse an image file and a label file from disk."""
    with open(image_path, 'rb') as image_file, open(label_path, 'rb') as label_file:
        dataset = parse_dataset(image_file, label_file, max_count=max_count)

    logger.info(
        f"Parsed {dataset.count} samples ({dataset.image_width}x"
        f"{dataset.image_width}) from {image_path}"
    )
    return dataset
