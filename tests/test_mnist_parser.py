"""
test_mnist_parser.py
~~~~~~~~~~~~~~~~~~~~

Unit tests for IDX decoding and the Dataset type.
"""

import io

import numpy as np
import pytest

from digit_recognition.mnist_parser import (
    Dataset,
    MNISTFormatError,
    Sample,
    load_dataset,
    parse_dataset
)
from conftest import encode_images, encode_labels, random_dataset


@pytest.mark.unit
class TestParseDataset:
    """Decoding image and label streams."""

    def test_parses_samples_in_stream_order(self):
        images = np.arange(3 * 2 * 2, dtype=np.uint8).reshape(3, 2, 2)
        labels = [7, 0, 9]

        dataset = parse_dataset(encode_images(images), encode_labels(labels))

        assert dataset.count == 3
        assert dataset.image_width == 2
        for index, sample in enumerate(dataset):
            assert np.array_equal(sample.image, images[index])
            assert sample.label == labels[index]

    def test_accepts_file_objects(self):
        images = np.full((2, 3, 3), 255, dtype=np.uint8)

        dataset = parse_dataset(
            io.BytesIO(encode_images(images)),
            io.BytesIO(encode_labels([1, 2]))
        )

        assert dataset.count == 2
        assert dataset[1].label == 2
        assert dataset[1].image.max() == 255

    def test_count_matches_label_stream_and_labels_are_digits(self):
        source = random_dataset(50, width=5, seed=3)

        dataset = parse_dataset(
            encode_images(source.images),
            encode_labels(source.labels)
        )

        assert dataset.count == len(source.labels)
        assert all(0 <= sample.label <= 9 for sample in dataset)

    def test_max_count_limits_both_streams(self):
        source = random_dataset(10, seed=4)

        dataset = parse_dataset(
            encode_images(source.images),
            encode_labels(source.labels),
            max_count=4
        )

        assert dataset.count == 4
        assert np.array_equal(dataset.images, source.images[:4])
        assert np.array_equal(dataset.labels, source.labels[:4])

    def test_max_count_larger_than_file_reads_everything(self):
        source = random_dataset(5, seed=5)

        dataset = parse_dataset(
            encode_images(source.images),
            encode_labels(source.labels),
            max_count=100
        )

        assert dataset == source

    def test_header_claims_more_images_than_labels(self):
        """Three images in the header but only two labels must fail."""
        images = np.zeros((3, 2, 2), dtype=np.uint8)

        with pytest.raises(MNISTFormatError) as exc_info:
            parse_dataset(encode_images(images), encode_labels([1, 2]))
        assert "does not match" in str(exc_info.value)

    def test_truncated_image_payload(self):
        images = np.zeros((2, 2, 2), dtype=np.uint8)
        data = encode_images(images, count=3)

        with pytest.raises(MNISTFormatError) as exc_info:
            parse_dataset(data, encode_labels([1, 2, 3]))
        assert "Truncated" in str(exc_info.value)

    def test_truncated_label_payload(self):
        images = np.zeros((3, 2, 2), dtype=np.uint8)

        with pytest.raises(MNISTFormatError):
            parse_dataset(encode_images(images), encode_labels([1, 2], count=3))

    def test_truncated_header(self):
        with pytest.raises(MNISTFormatError):
            parse_dataset(b'\x00\x00', encode_labels([]))

    def test_bad_magic_numbers(self):
        images = np.zeros((1, 2, 2), dtype=np.uint8)

        with pytest.raises(MNISTFormatError):
            parse_dataset(encode_images(images, magic=1234), encode_labels([0]))
        with pytest.raises(MNISTFormatError):
            parse_dataset(encode_images(images), encode_labels([0], magic=1234))

    def test_non_square_images_rejected(self):
        images = np.zeros((1, 2, 3), dtype=np.uint8)

        with pytest.raises(MNISTFormatError):
            parse_dataset(encode_images(images), encode_labels([0]))

    def test_label_out_of_range(self):
        images = np.zeros((2, 2, 2), dtype=np.uint8)

        with pytest.raises(MNISTFormatError):
            parse_dataset(encode_images(images), encode_labels([3, 10]))

    def test_negative_max_count(self):
        images = np.zeros((1, 2, 2), dtype=np.uint8)

        with pytest.raises(ValueError):
            parse_dataset(encode_images(images), encode_labels([0]), max_count=-1)

    def test_empty_streams(self):
        images = np.zeros((0, 2, 2), dtype=np.uint8)

        dataset = parse_dataset(encode_images(images), encode_labels([]))

        assert dataset.count == 0
        assert dataset.image_width == 2

    def test_load_dataset_from_files(self, mnist_dir):
        dataset = load_dataset(
            str(mnist_dir / 't10k-images-idx3-ubyte'),
            str(mnist_dir / 't10k-labels-idx1-ubyte'),
            max_count=5
        )

        assert dataset.count == 5
        assert dataset.image_width == 4


@pytest.mark.unit
class TestDataset:
    """The immutable Dataset container."""

    def test_arrays_are_read_only(self, small_dataset):
        with pytest.raises(ValueError):
            small_dataset.images[0, 0, 0] = 1
        with pytest.raises(ValueError):
            small_dataset.labels[0] = 1

    def test_does_not_alias_caller_arrays(self):
        images = np.zeros((1, 2, 2), dtype=np.uint8)
        labels = np.array([4], dtype=np.uint8)

        dataset = Dataset(images, labels, 2)
        images[0, 0, 0] = 200
        labels[0] = 5

        assert dataset[0].image[0, 0] == 0
        assert dataset[0].label == 4

    def test_keeps_read_only_arrays_without_copying(self):
        images = np.zeros((2, 2, 2), dtype=np.uint8)
        labels = np.array([1, 2], dtype=np.uint8)
        images.setflags(write=False)
        labels.setflags(write=False)

        dataset = Dataset(images, labels, 2)

        assert dataset.images is images
        assert dataset.labels is labels

    def test_indexing_returns_samples(self, small_dataset):
        sample = small_dataset[3]

        assert isinstance(sample, Sample)
        assert isinstance(sample.label, int)
        assert sample.image.shape == (4, 4)

    def test_concatenation_preserves_counts_and_order(self):
        training = random_dataset(7, seed=10)
        testing = random_dataset(3, seed=11)

        combined = training + testing

        assert combined.count == training.count + testing.count
        assert np.array_equal(combined.images[:7], training.images)
        assert np.array_equal(combined.images[7:], testing.images)
        assert np.array_equal(combined.labels[:7], training.labels)
        assert np.array_equal(combined.labels[7:], testing.labels)
        # Operands are untouched
        assert training.count == 7
        assert testing.count == 3

    def test_concatenation_requires_same_width(self):
        with pytest.raises(ValueError):
            random_dataset(2, width=4) + random_dataset(2, width=5)

    def test_mismatched_shapes_rejected(self):
        with pytest.raises(ValueError):
            Dataset(np.zeros((2, 3, 3)), np.zeros(2), 2)
        with pytest.raises(ValueError):
            Dataset(np.zeros((2, 2, 2)), np.zeros(3), 2)
