"""
test_dataset_transforms.py
~~~~~~~~~~~~~~~~~~~~~~~~~~

Unit tests for shuffling, cropping and vectorising datasets.
"""

import numpy as np
import pytest

from digit_recognition.dataset_transforms import (
    cropped,
    input_and_label_matrices,
    normalized_pixel_vector,
    shuffled
)
from digit_recognition.mnist_parser import Dataset
from conftest import random_dataset


def _sample_keys(dataset):
    """Hashable form of every sample, for multiset comparisons."""
    return sorted(
        (sample.image.tobytes(), sample.label) for sample in dataset
    )


@pytest.mark.unit
class TestShuffled:

    def test_is_a_permutation(self, small_dataset):
        result = shuffled(small_dataset, np.random.default_rng(1))

        assert result.count == small_dataset.count
        assert result.image_width == small_dataset.image_width
        assert _sample_keys(result) == _sample_keys(small_dataset)

    def test_keeps_images_paired_with_labels(self):
        # Every image is filled with its own label, so pairs are checkable
        labels = np.arange(10, dtype=np.uint8)
        images = np.repeat(labels, 9).reshape(10, 3, 3)
        dataset = Dataset(images, labels, 3)

        for sample in shuffled(dataset, np.random.default_rng(7)):
            assert np.all(sample.image == sample.label)

    def test_does_not_modify_input(self, small_dataset):
        before_images = small_dataset.images.copy()
        before_labels = small_dataset.labels.copy()

        shuffled(small_dataset)

        assert np.array_equal(small_dataset.images, before_images)
        assert np.array_equal(small_dataset.labels, before_labels)

    def test_seeded_shuffles_are_reproducible(self, small_dataset):
        first = shuffled(small_dataset, np.random.default_rng(42))
        second = shuffled(small_dataset, np.random.default_rng(42))

        assert first == second

    def test_actually_reorders(self):
        dataset = random_dataset(200, seed=8)

        result = shuffled(dataset, np.random.default_rng(3))

        assert not np.array_equal(result.labels, dataset.labels)

    def test_result_owns_read_only_arrays(self, small_dataset):
        result = shuffled(small_dataset, np.random.default_rng(5))

        assert not result.images.flags.writeable
        assert not result.labels.flags.writeable
        assert not np.shares_memory(result.images, small_dataset.images)
        assert not np.shares_memory(result.labels, small_dataset.labels)


@pytest.mark.unit
class TestCropped:

    @pytest.mark.parametrize('max_length', [0, 1, 5, 19, 20, 25])
    def test_prefix_of_min_length(self, small_dataset, max_length):
        result = cropped(small_dataset, max_length)

        expected = min(max_length, small_dataset.count)
        assert result.count == expected
        assert np.array_equal(result.images, small_dataset.images[:expected])
        assert np.array_equal(result.labels, small_dataset.labels[:expected])

    def test_short_dataset_returned_unchanged(self, small_dataset):
        assert cropped(small_dataset, 100) is small_dataset

    def test_crop_after_shuffle_is_prefix_of_shuffle(self, small_dataset):
        mixed = shuffled(small_dataset, np.random.default_rng(5))

        result = cropped(mixed, 6)

        assert np.array_equal(result.labels, mixed.labels[:6])

    def test_negative_length_rejected(self, small_dataset):
        with pytest.raises(ValueError):
            cropped(small_dataset, -1)


@pytest.mark.unit
class TestVectorise:

    def test_shapes_and_range(self, small_dataset):
        inputs, labels = input_and_label_matrices(small_dataset)

        assert inputs.shape == (small_dataset.count, 16)
        assert labels.shape == (small_dataset.count, 1)
        assert inputs.min() >= 0.0
        assert inputs.max() <= 1.0

    def test_rows_follow_sample_order(self, small_dataset):
        inputs, labels = input_and_label_matrices(small_dataset)

        for row, sample in enumerate(small_dataset):
            assert labels[row, 0] == sample.label
            assert np.allclose(inputs[row], sample.image.reshape(-1) / 255.0)

    def test_extreme_pixels(self):
        images = np.array([[[0, 255], [255, 0]]], dtype=np.uint8)
        dataset = Dataset(images, np.array([3], dtype=np.uint8), 2)

        inputs, labels = input_and_label_matrices(dataset)

        assert inputs.tolist() == [[0.0, 1.0, 1.0, 0.0]]
        assert labels.tolist() == [[3.0]]

    def test_normalized_pixel_vector(self):
        image = np.array([[0, 51], [102, 255]], dtype=np.uint8)

        vector = normalized_pixel_vector(image)

        assert vector.shape == (4,)
        assert np.allclose(vector, [0.0, 0.2, 0.4, 1.0])

    def test_empty_dataset(self):
        dataset = Dataset(np.zeros((0, 2, 2)), np.zeros(0), 2)

        inputs, labels = input_and_label_matrices(dataset)

        assert inputs.shape == (0, 4)
        assert labels.shape == (0, 1)
