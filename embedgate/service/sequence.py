"""Normalization of loosely-shaped client inputs.

Clients may send a bare string, a pair of strings, or a batch mixing single
strings and pairs. Everything is collapsed into a small closed set of
variants before it reaches the inference engine:

- ``Single(text)``
- ``Pair(first, second)``
- ``Batch([Single | Pair, ...])``

The parser is a hand-written recursive descent over plain JSON values. The
shape of the first top-level element decides whether the payload is a
sequence or a batch. Normalization is pure and never reorders or drops
elements.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, List, Tuple, Union

from embedgate.service.errors import ShapeError

_EXPECTING = (
    "a string, a pair of strings [string, string] "
    "or a batch of mixed strings and pairs [[string], [string, string], ...]"
)


@dataclass(frozen=True)
class Single:
    text: str


@dataclass(frozen=True)
class Pair:
    first: str
    second: str


Sequence = Union[Single, Pair]


@dataclass(frozen=True)
class Batch:
    sequences: Tuple[Sequence, ...]

    def __len__(self) -> int:
        return len(self.sequences)

    def __iter__(self):
        return iter(self.sequences)

    def __getitem__(self, index: int) -> Sequence:
        return self.sequences[index]


NormalizedInput = Union[Single, Pair, Batch]


def _invalid_length(length: int, *, position: int | None = None) -> ShapeError:
    where = f" at batch position {position}" if position is not None else ""
    return ShapeError(
        f"invalid length {length}{where}, expected {_EXPECTING}",
        length=length,
        position=position,
    )


def _invalid_type(value: Any, *, position: int | None = None) -> ShapeError:
    where = f" at batch position {position}" if position is not None else ""
    return ShapeError(
        f"invalid type {type(value).__name__}{where}, expected {_EXPECTING}",
        position=position,
        kind="type",
    )


def _is_text_list(value: Any) -> bool:
    return isinstance(value, list) and all(isinstance(item, str) for item in value)


def sequence_from_list(value: List[str], *, position: int | None = None) -> Sequence:
    """Validate a 1- or 2-element list of strings and build the sequence.

    The second element is kept as the second member of the pair.
    """
    if not _is_text_list(value):
        raise _invalid_type(value, position=position)
    if len(value) == 1:
        return Single(value[0])
    if len(value) == 2:
        first, second = value
        return Pair(first, second)
    raise _invalid_length(len(value), position=position)


def _parse_batch(items: List[Any]) -> Batch:
    sequences: List[Sequence] = []
    for position, item in enumerate(items):
        if not isinstance(item, list):
            raise _invalid_type(item, position=position)
        sequences.append(sequence_from_list(item, position=position))
    return Batch(tuple(sequences))


def normalize_predict_input(value: Any) -> NormalizedInput:
    """Parse the full sequence grammar.

    - ``"a"`` and ``["a"]`` are ``Single("a")``
    - ``["a", "b"]`` is ``Pair("a", "b")``
    - ``[["a"], ["b", "c"]]`` is ``Batch([Single("a"), Pair("b", "c")])``

    Raises:
        ShapeError: empty sequences, three or more bare strings, a batch
            element that is not a 1- or 2-string list, or non-string leaves.
    """
    if isinstance(value, str):
        return Single(value)
    if not isinstance(value, list):
        raise _invalid_type(value)
    if not value:
        raise _invalid_length(0)

    head = value[0]
    if isinstance(head, str):
        if len(value) > 2:
            raise _invalid_length(len(value))
        return sequence_from_list(value)
    if isinstance(head, list):
        return _parse_batch(value)
    raise _invalid_type(head, position=0)


def normalize_embed_input(value: Any) -> NormalizedInput:
    """Parse the embedding grammar.

    A bare string is a single sequence and a flat list of strings is a batch
    of single sequences. Nested lists follow the batch rules of
    :func:`normalize_predict_input`, so pairs can still be embedded.
    """
    if isinstance(value, str):
        return Single(value)
    if not isinstance(value, list):
        raise _invalid_type(value)
    if not value:
        raise _invalid_length(0)

    head = value[0]
    if isinstance(head, str):
        for position, item in enumerate(value):
            if not isinstance(item, str):
                raise _invalid_type(item, position=position)
        return Batch(tuple(Single(item) for item in value))
    if isinstance(head, list):
        return _parse_batch(value)
    raise _invalid_type(head, position=0)


def as_sequences(value: NormalizedInput) -> List[Sequence]:
    """Flatten a normalized input into its ordered list of sequences."""
    if isinstance(value, Batch):
        return list(value.sequences)
    return [value]


__all__ = [
    "Single",
    "Pair",
    "Sequence",
    "Batch",
    "NormalizedInput",
    "sequence_from_list",
    "normalize_predict_input",
    "normalize_embed_input",
    "as_sequences",
]
