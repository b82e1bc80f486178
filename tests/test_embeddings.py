import math

import pytest

from embedgate.service.embeddings import (
    deterministic_embedding,
    normalize_vector,
    sigmoid,
    softmax,
    validate_embedding,
)


def test_validate_embedding_rejects_nan():
    with pytest.raises(ValueError, match="NaN"):
        validate_embedding([0.1, float("nan")])


def test_validate_embedding_rejects_infinity():
    with pytest.raises(ValueError, match="Infinity"):
        validate_embedding([float("-inf")], name="scores")


def test_normalize_vector_unit_length():
    assert normalize_vector([3.0, 4.0]) == [0.6, 0.8]


def test_normalize_zero_vector_unchanged():
    assert normalize_vector([0.0, 0.0]) == [0.0, 0.0]


def test_sigmoid_is_stable_for_large_magnitudes():
    low, mid, high = sigmoid([-1000.0, 0.0, 1000.0])
    assert low == pytest.approx(0.0)
    assert mid == 0.5
    assert high == pytest.approx(1.0)


def test_softmax_sums_to_one_and_keeps_order():
    scores = softmax([1.0, 3.0, 2.0])
    assert math.fsum(scores) == pytest.approx(1.0)
    assert scores[1] > scores[2] > scores[0]
    assert softmax([1000.0, 1000.0]) == [0.5, 0.5]


def test_deterministic_embedding_depends_on_position():
    assert deterministic_embedding([4, 5]) == deterministic_embedding([4, 5])
    assert deterministic_embedding([4, 5]) != deterministic_embedding([5, 4])
    assert len(deterministic_embedding([1], dim=16)) == 16
