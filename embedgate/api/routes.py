from __future__ import annotations

import time
from typing import List, Sequence, Union

from fastapi import APIRouter, Depends, Request, Response

from embedgate.api.schemas import (
    EmbedRequest,
    EmbedResponse,
    HealthResponse,
    InfoResponse,
    OpenAICompatRequest,
    OpenAICompatResponse,
    PredictRequest,
    PredictResponse,
)
from embedgate.config import Settings
from embedgate.service.assembler import ModelInfo
from embedgate.service.errors import UnhealthyError, ValidationError
from embedgate.service.infer import ClassificationResult, EmbeddingResult, InferenceEngine
from embedgate.service.model_backend import ClassifierModel, EmbeddingModel
from embedgate.service.projection import (
    project_embeddings,
    project_openai,
    project_predictions,
    total_tokens,
)
from embedgate.service.sequence import (
    Batch,
    as_sequences,
    normalize_embed_input,
    normalize_predict_input,
)

router = APIRouter()

AnyResult = Union[EmbeddingResult, ClassificationResult]


def get_engine(request: Request) -> InferenceEngine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise UnhealthyError("inference pipeline is not ready")
    return engine


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_model_info(request: Request) -> ModelInfo:
    info = getattr(request.app.state, "info", None)
    if info is None:
        raise UnhealthyError("inference pipeline is not ready")
    return info


def _check_client_batch(size: int, settings: Settings) -> None:
    if size > settings.max_client_batch_size:
        raise ValidationError(
            f"batch size {size} > maximum allowed batch size {settings.max_client_batch_size}"
        )


def _set_timing_headers(
    response: Response, results: Sequence[AnyResult], started: float
) -> None:
    inference_ms = max((r.inference_ms for r in results), default=0.0)
    response.headers["x-compute-tokens"] = str(total_tokens(results))
    response.headers["x-total-time"] = str(int((time.perf_counter() - started) * 1000))
    response.headers["x-inference-time"] = str(int(inference_ms))


@router.get("/health", response_model=HealthResponse, tags=["health"])
async def health(engine: InferenceEngine = Depends(get_engine)) -> HealthResponse:
    """Probe the compute backend. Answers 503 when the probe fails."""
    if not await engine.health():
        raise UnhealthyError("model is unhealthy")
    return HealthResponse()


@router.get("/info", response_model=InfoResponse, tags=["info"])
async def info(request: Request, model: ModelInfo = Depends(get_model_info)) -> InfoResponse:
    if isinstance(model.model_type, ClassifierModel):
        model_type = {
            "classifier": {
                "id2label": model.model_type.id2label,
                "label2id": model.model_type.label2id,
            }
        }
    elif isinstance(model.model_type, EmbeddingModel):
        model_type = {"embedding": {"pooling": model.model_type.pooling.value}}
    else:
        model_type = {}
    engine: InferenceEngine = request.app.state.engine
    return InfoResponse(
        model_id=model.model_id,
        revision=model.revision,
        model_dtype=model.dtype,
        model_type=model_type,
        max_concurrent_requests=model.limits.max_concurrent_requests,
        max_input_length=model.limits.max_input_length,
        max_batch_tokens=model.limits.max_batch_tokens,
        max_batch_requests=engine.queue.max_batch_requests,
        max_client_batch_size=model.max_client_batch_size,
        tokenization_workers=model.limits.tokenization_workers,
        version=request.app.version,
    )


@router.post("/embed", response_model=EmbedResponse, tags=["embed"])
async def embed(
    body: EmbedRequest,
    response: Response,
    engine: InferenceEngine = Depends(get_engine),
    settings: Settings = Depends(get_settings),
) -> List[List[float]]:
    """Embed a string, a list of strings, or a batch of singles and pairs."""
    started = time.perf_counter()
    inputs = normalize_embed_input(body.inputs)
    _check_client_batch(len(as_sequences(inputs)), settings)
    normalize = settings.default_normalize if body.normalize is None else body.normalize
    results = await engine.embed_all(inputs, body.truncate, normalize)
    _set_timing_headers(response, results, started)
    return project_embeddings(results)


@router.post("/predict", response_model=PredictResponse, tags=["predict"])
async def predict(
    body: PredictRequest,
    response: Response,
    engine: InferenceEngine = Depends(get_engine),
    settings: Settings = Depends(get_settings),
):
    """Classify a string, a pair, or a batch of mixed singles and pairs."""
    started = time.perf_counter()
    inputs = normalize_predict_input(body.inputs)
    _check_client_batch(len(as_sequences(inputs)), settings)
    results = await engine.predict_all(inputs, body.truncate, body.raw_scores)
    _set_timing_headers(response, results, started)
    id2label = engine.model_type.id2label
    predictions = [project_predictions(result, id2label) for result in results]
    if isinstance(inputs, Batch):
        return predictions
    return predictions[0]


@router.post("/embeddings", response_model=OpenAICompatResponse, tags=["openai"])
@router.post("/v1/embeddings", response_model=OpenAICompatResponse, tags=["openai"])
async def openai_embed(
    body: OpenAICompatRequest,
    response: Response,
    engine: InferenceEngine = Depends(get_engine),
    settings: Settings = Depends(get_settings),
    model: ModelInfo = Depends(get_model_info),
) -> dict:
    """OpenAI-compatible embeddings; vectors are always normalized."""
    started = time.perf_counter()
    inputs = normalize_embed_input(body.input)
    _check_client_batch(len(as_sequences(inputs)), settings)
    results = await engine.embed_all(inputs, False, True)
    _set_timing_headers(response, results, started)
    return project_openai(results, body.model or model.model_id)
