"""Map ordered engine results back onto the response dialects."""

from __future__ import annotations

from typing import Dict, List, Sequence

from embedgate.service.infer import ClassificationResult, EmbeddingResult


def project_embeddings(results: Sequence[EmbeddingResult]) -> List[List[float]]:
    """Plain dialect: one vector per input sequence, in input order."""
    return [list(result.results) for result in results]


def project_openai(results: Sequence[EmbeddingResult], model: str) -> dict:
    """OpenAI-compatible dialect with positional indices and token usage."""
    prompt_tokens = total_tokens(results)
    return {
        "object": "list",
        "data": [
            {"object": "embedding", "embedding": list(result.results), "index": index}
            for index, result in enumerate(results)
        ],
        "model": model,
        "usage": {"prompt_tokens": prompt_tokens, "total_tokens": prompt_tokens},
    }


def project_predictions(
    result: ClassificationResult, id2label: Dict[str, str]
) -> List[dict]:
    """Label every score and sort by descending score."""
    predictions = [
        {"score": score, "label": id2label.get(str(index), f"LABEL_{index}")}
        for index, score in enumerate(result.results)
    ]
    predictions.sort(key=lambda p: p["score"], reverse=True)
    return predictions


def total_tokens(results: Sequence[EmbeddingResult | ClassificationResult]) -> int:
    return sum(result.prompt_tokens for result in results)
