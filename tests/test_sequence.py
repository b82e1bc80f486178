import pytest

from embedgate.service.errors import ShapeError, ValidationError
from embedgate.service.sequence import (
    Batch,
    Pair,
    Single,
    as_sequences,
    normalize_embed_input,
    normalize_predict_input,
    sequence_from_list,
)


def test_bare_string_is_single():
    assert normalize_predict_input("hello") == Single("hello")


def test_one_element_list_is_single():
    assert normalize_predict_input(["hello"]) == Single("hello")


def test_two_strings_make_a_pair_in_order():
    result = normalize_predict_input(["What is Deep Learning?", "Deep learning is..."])
    assert result == Pair("What is Deep Learning?", "Deep learning is...")
    assert result.second == "Deep learning is..."


def test_three_bare_strings_rejected_with_length():
    with pytest.raises(ShapeError) as excinfo:
        normalize_predict_input(["a", "b", "c"])
    assert excinfo.value.kind == "arity"
    assert excinfo.value.length == 3
    assert excinfo.value.position is None


def test_empty_list_rejected():
    with pytest.raises(ShapeError) as excinfo:
        normalize_predict_input([])
    assert excinfo.value.length == 0


def test_mixed_batch_preserves_order():
    result = normalize_predict_input([["a"], ["b", "c"], ["d"]])
    assert isinstance(result, Batch)
    assert list(result) == [Single("a"), Pair("b", "c"), Single("d")]
    assert len(result) == 3
    assert result[1] == Pair("b", "c")


def test_batch_element_too_long_reports_position():
    with pytest.raises(ShapeError) as excinfo:
        normalize_predict_input([["a"], ["b", "c", "d"]])
    assert excinfo.value.kind == "arity"
    assert excinfo.value.length == 3
    assert excinfo.value.position == 1
    assert "position 1" in excinfo.value.message


def test_empty_batch_element_rejected():
    with pytest.raises(ShapeError) as excinfo:
        normalize_predict_input([["a"], []])
    assert excinfo.value.length == 0
    assert excinfo.value.position == 1


def test_bare_string_inside_batch_rejected():
    with pytest.raises(ShapeError) as excinfo:
        normalize_predict_input([["a"], "b"])
    assert excinfo.value.kind == "type"
    assert excinfo.value.position == 1


def test_non_string_leaf_rejected():
    with pytest.raises(ShapeError) as excinfo:
        normalize_predict_input(["a", 3])
    assert excinfo.value.kind == "type"


@pytest.mark.parametrize("value", [42, None, {"text": "a"}, 1.5])
def test_non_sequence_values_rejected(value):
    with pytest.raises(ShapeError) as excinfo:
        normalize_predict_input(value)
    assert excinfo.value.kind == "type"


def test_number_as_first_element_rejected():
    with pytest.raises(ShapeError) as excinfo:
        normalize_predict_input([1, "a"])
    assert excinfo.value.position == 0


def test_shape_error_is_a_validation_error():
    with pytest.raises(ValidationError) as excinfo:
        normalize_predict_input(["a", "b", "c"])
    assert excinfo.value.status_code == 422
    assert excinfo.value.error_type == "Validation"


def test_normalization_is_pure():
    payload = [["a"], ["b", "c"]]
    normalize_predict_input(payload)
    assert payload == [["a"], ["b", "c"]]
    assert normalize_predict_input(payload) == normalize_predict_input(payload)


def test_sequence_from_list_builds_pair():
    assert sequence_from_list(["x", "y"]) == Pair("x", "y")


def test_embed_flat_list_is_batch_of_singles():
    result = normalize_embed_input(["hello", "world"])
    assert result == Batch((Single("hello"), Single("world")))


def test_embed_flat_list_allows_more_than_two_strings():
    result = normalize_embed_input(["a", "b", "c"])
    assert len(result) == 3


def test_embed_string_is_single():
    assert normalize_embed_input("hello") == Single("hello")


def test_embed_nested_lists_follow_batch_rules():
    result = normalize_embed_input([["a", "b"], ["c"]])
    assert list(result) == [Pair("a", "b"), Single("c")]


def test_embed_flat_list_with_non_string_reports_position():
    with pytest.raises(ShapeError) as excinfo:
        normalize_embed_input(["a", "b", 3])
    assert excinfo.value.kind == "type"
    assert excinfo.value.position == 2


def test_embed_empty_list_rejected():
    with pytest.raises(ShapeError):
        normalize_embed_input([])


def test_as_sequences_flattens():
    assert as_sequences(Single("a")) == [Single("a")]
    assert as_sequences(Batch((Single("a"), Pair("b", "c")))) == [Single("a"), Pair("b", "c")]

