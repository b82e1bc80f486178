from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, RootModel

ErrorType = Literal["Unhealthy", "Backend", "Overloaded", "Validation", "Tokenizer"]


class EmbedRequest(BaseModel):
    """Request body for ``/embed``.

    ``inputs`` is kept as raw JSON and parsed by the sequence normalizer:
    a string, a list of strings, or a batch of 1- and 2-string lists.
    """

    inputs: Any = Field(..., examples=["What is Deep Learning?"])
    truncate: bool = False
    normalize: Optional[bool] = Field(
        None, description="Defaults to the server's DEFAULT_NORMALIZE setting"
    )


class PredictRequest(BaseModel):
    """Request body for ``/predict``.

    ``inputs`` accepts a string, a pair ``[string, string]`` or a batch of
    mixed singles and pairs ``[[string], [string, string], ...]``.
    """

    inputs: Any = Field(..., examples=["I like you."])
    truncate: bool = False
    raw_scores: bool = False


class OpenAICompatRequest(BaseModel):
    input: Union[str, List[str]]
    model: Optional[str] = None
    user: Optional[str] = None


class EmbedResponse(RootModel[List[List[float]]]):
    pass


class Prediction(BaseModel):
    score: float
    label: str


PredictResponse = Union[List[Prediction], List[List[Prediction]]]


class OpenAICompatEmbedding(BaseModel):
    object: Literal["embedding"] = "embedding"
    embedding: List[float]
    index: int


class OpenAICompatUsage(BaseModel):
    prompt_tokens: int
    total_tokens: int


class OpenAICompatResponse(BaseModel):
    object: Literal["list"] = "list"
    data: List[OpenAICompatEmbedding]
    model: str
    usage: OpenAICompatUsage


class ErrorResponse(BaseModel):
    error: str
    error_type: ErrorType


class OpenAICompatErrorResponse(BaseModel):
    message: str
    code: int
    type: ErrorType


class HealthResponse(BaseModel):
    status: Literal["ok"] = "ok"


class InfoResponse(BaseModel):
    """Model and router parameters of the running server."""

    model_id: str
    revision: str
    model_dtype: str
    model_type: Dict[str, Dict[str, Any]]
    max_concurrent_requests: int
    max_input_length: int
    max_batch_tokens: int
    max_batch_requests: Optional[int] = None
    max_client_batch_size: int
    tokenization_workers: int
    version: str

    model_config = ConfigDict(protected_namespaces=())
