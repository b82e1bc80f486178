from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from embedgate.logging import get_logger

logger = get_logger(__name__)


class DType(str, Enum):
    """Numeric precision the compute backend runs at."""

    FLOAT32 = "float32"
    FLOAT16 = "float16"


class Pool(str, Enum):
    """Pooling applied to the last hidden state of embedding models."""

    CLS = "cls"
    MEAN = "mean"


class BackendKind(str, Enum):
    """Compute backends that can be selected at startup."""

    ONNX = "onnx"
    STUB = "stub"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _default_workers() -> int:
    return os.cpu_count() or 1


class Settings(BaseModel):
    """Runtime settings for the inference server."""

    model_id: str = env_field(
        "BAAI/bge-small-en-v1.5",
        "MODEL_ID",
        description="Hub repository id, or a local directory holding the artifacts",
    )
    revision: str = env_field("main", "REVISION")
    hf_api_token: str | None = env_field(None, "HF_API_TOKEN")
    huggingface_hub_cache: str | None = env_field(None, "HUGGINGFACE_HUB_CACHE")
    dtype: DType = env_field(DType.FLOAT32, "DTYPE")
    pooling: Pool | None = env_field(
        None,
        "POOLING",
        description="Overrides the pooling declared by the model artifacts",
    )
    backend: BackendKind = env_field(BackendKind.ONNX, "BACKEND")
    tokenization_workers: int = env_field(_default_workers(), "TOKENIZATION_WORKERS")
    max_concurrent_requests: int = env_field(512, "MAX_CONCURRENT_REQUESTS")
    max_batch_tokens: int = env_field(16384, "MAX_BATCH_TOKENS")
    max_batch_requests: int | None = env_field(
        None,
        "MAX_BATCH_REQUESTS",
        description="Upper bound on requests per batch; the backend limit still applies",
    )
    max_client_batch_size: int = env_field(32, "MAX_CLIENT_BATCH_SIZE")
    scratch_dir: str = env_field("/tmp/embedgate", "SCRATCH_DIR")
    default_normalize: bool = env_field(
        True,
        "DEFAULT_NORMALIZE",
        description="Whether embeddings are L2-normalized when a request omits `normalize`",
    )
    host: str = env_field("0.0.0.0", "HOST")
    port: int = env_field(3000, "PORT")

    model_config = ConfigDict(extra="ignore", protected_namespaces=())

    @classmethod
    def from_env(cls, **overrides: Any) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        merged.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**merged)

    @field_validator("dtype")
    @classmethod
    def _validate_dtype(cls, value: DType) -> DType:
        return DType(value)

    @field_validator("pooling")
    @classmethod
    def _validate_pooling(cls, value: Pool | None) -> Pool | None:
        if value is None:
            return None
        return Pool(value)

    @field_validator("backend")
    @classmethod
    def _validate_backend(cls, value: BackendKind) -> BackendKind:
        return BackendKind(value)

    @field_validator(
        "tokenization_workers",
        "max_concurrent_requests",
        "max_batch_tokens",
        "max_client_batch_size",
    )
    @classmethod
    def _ensure_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("max_batch_requests")
    @classmethod
    def _ensure_positive_optional(cls, value: int | None) -> int | None:
        if value is not None and value <= 0:
            raise ValueError("must be a positive integer")
        return value


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
