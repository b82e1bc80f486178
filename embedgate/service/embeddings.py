from __future__ import annotations

import hashlib
import math
from typing import Iterable, List, Sequence

DEFAULT_STUB_DIM = 64


def validate_embedding(vec: Iterable[float], *, name: str = "embedding") -> List[float]:
    """Validate a result vector for NaN/Infinity values.

    Raises:
        ValueError: If vector contains NaN or Infinity values
    """
    result = [float(v) for v in vec]
    for i, val in enumerate(result):
        if math.isnan(val):
            raise ValueError(f"{name}[{i}] contains NaN")
        if math.isinf(val):
            raise ValueError(f"{name}[{i}] contains Infinity")
    return result


def normalize_vector(vec: List[float]) -> List[float]:
    """Normalize a vector to unit length.

    Returns the zero vector unchanged when the input has zero magnitude.
    """
    if not vec:
        return vec
    magnitude = math.sqrt(sum(v * v for v in vec))
    if magnitude == 0:
        return [0.0] * len(vec)
    return [v / magnitude for v in vec]


def sigmoid(scores: Sequence[float]) -> List[float]:
    result = []
    for s in scores:
        # split on sign so math.exp never overflows
        if s >= 0:
            result.append(1.0 / (1.0 + math.exp(-s)))
        else:
            z = math.exp(s)
            result.append(z / (1.0 + z))
    return result


def softmax(scores: Sequence[float]) -> List[float]:
    if not scores:
        return []
    peak = max(scores)
    exps = [math.exp(s - peak) for s in scores]
    total = sum(exps)
    return [e / total for e in exps]


def deterministic_embedding(token_ids: Sequence[int], dim: int = DEFAULT_STUB_DIM) -> List[float]:
    """Hash token ids into a fixed-size, un-normalized vector.

    Identical token sequences always produce identical vectors, which keeps
    the stub backend useful for tests and smoke runs without model weights.
    """
    vec = [0.0] * dim
    for position, token_id in enumerate(token_ids):
        h = int(hashlib.sha256(f"{token_id}:{position}".encode()).hexdigest(), 16)
        vec[h % dim] += 1.0 + (h >> 8) % 7
    return vec
