"""One-shot pipeline bootstrap.

The assembler walks a fixed sequence of states::

    unconfigured -> artifacts_resolving -> config_parsed -> tokenizer_ready
        -> backend_constructed -> health_checked -> ready

Any failure moves it to ``failed``, which is terminal. Nothing is retried;
the process has to restart to try again.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Optional, Set

from huggingface_hub import snapshot_download
from huggingface_hub.errors import (
    HfHubHTTPError,
    RepositoryNotFoundError,
    RevisionNotFoundError,
)

from embedgate.config import Pool, Settings
from embedgate.logging import get_logger
from embedgate.service.descriptor import (
    ModelDescriptor,
    RuntimeLimits,
    load_descriptor,
    resolve_limits,
)
from embedgate.service.errors import (
    BackendConstructionError,
    DescriptorError,
    DownloadError,
    HealthCheckError,
    StartupError,
)
from embedgate.service.infer import InferenceEngine
from embedgate.service.model_backend import (
    Backend,
    ClassifierModel,
    EmbeddingModel,
    ModelType,
    build_backend,
)
from embedgate.service.queue import Queue
from embedgate.service.tokenization import Tokenization
from embedgate.service.tokenizer_utils import load_tokenizer, patch_tokenizer

logger = get_logger(__name__)

ARTIFACT_PATTERNS = [
    "config.json",
    "tokenizer.json",
    "tokenizer_config.json",
    "special_tokens_map.json",
    "1_Pooling/config.json",
    "*.onnx",
    "*.onnx_data",
    "onnx/*",
]


class AssemblyState(str, Enum):
    UNCONFIGURED = "unconfigured"
    ARTIFACTS_RESOLVING = "artifacts_resolving"
    CONFIG_PARSED = "config_parsed"
    TOKENIZER_READY = "tokenizer_ready"
    BACKEND_CONSTRUCTED = "backend_constructed"
    HEALTH_CHECKED = "health_checked"
    READY = "ready"
    FAILED = "failed"


_NEXT: Dict[AssemblyState, AssemblyState] = {
    AssemblyState.UNCONFIGURED: AssemblyState.ARTIFACTS_RESOLVING,
    AssemblyState.ARTIFACTS_RESOLVING: AssemblyState.CONFIG_PARSED,
    AssemblyState.CONFIG_PARSED: AssemblyState.TOKENIZER_READY,
    AssemblyState.TOKENIZER_READY: AssemblyState.BACKEND_CONSTRUCTED,
    AssemblyState.BACKEND_CONSTRUCTED: AssemblyState.HEALTH_CHECKED,
    AssemblyState.HEALTH_CHECKED: AssemblyState.READY,
}

TERMINAL_STATES: Set[AssemblyState] = {AssemblyState.READY, AssemblyState.FAILED}

ArtifactSource = Callable[[str, str], Path]
BackendFactory = Callable[..., Backend]


class HubArtifactSource:
    """Fetch model artifacts from the Hugging Face Hub.

    A ``model_id`` naming an existing local directory is used as-is.
    """

    def __init__(
        self,
        *,
        token: Optional[str] = None,
        cache_dir: Optional[str] = None,
        allow_patterns: Optional[list] = None,
    ) -> None:
        self.token = token
        self.cache_dir = cache_dir
        self.allow_patterns = allow_patterns or ARTIFACT_PATTERNS

    def __call__(self, model_id: str, revision: str) -> Path:
        local = Path(model_id)
        if local.is_dir():
            logger.info("artifacts_local", path=str(local))
            return local
        logger.info("artifacts_download_started", model_id=model_id, revision=revision)
        try:
            path = snapshot_download(
                repo_id=model_id,
                revision=revision,
                token=self.token,
                cache_dir=self.cache_dir,
                allow_patterns=self.allow_patterns,
            )
        except RepositoryNotFoundError as exc:
            raise DownloadError(f"repository `{model_id}` not found") from exc
        except RevisionNotFoundError as exc:
            raise DownloadError(
                f"revision `{revision}` not found in repository `{model_id}`"
            ) from exc
        except HfHubHTTPError as exc:
            raise DownloadError(f"hub request failed: {exc}") from exc
        except Exception as exc:
            raise DownloadError(f"Could not download model artifacts: {exc}") from exc
        logger.info("artifacts_download_finished", model_id=model_id, path=str(path))
        return Path(path)


def read_pooling(model_root: Path) -> Pool:
    """Pooling declared by a sentence-transformers ``1_Pooling/config.json``.

    Defaults to CLS pooling when the file is absent.
    """
    path = Path(model_root) / "1_Pooling" / "config.json"
    if not path.is_file():
        return Pool.CLS
    try:
        config = json.loads(path.read_text())
    except (OSError, json.JSONDecodeError) as exc:
        raise DescriptorError(f"Failed to parse `1_Pooling/config.json`: {exc}") from exc
    if config.get("pooling_mode_cls_token"):
        return Pool.CLS
    if config.get("pooling_mode_mean_tokens"):
        return Pool.MEAN
    raise DescriptorError("`1_Pooling/config.json` declares an unsupported pooling mode")


def resolve_model_type(
    descriptor: ModelDescriptor, model_root: Path, pooling: Optional[Pool] = None
) -> ModelType:
    if descriptor.is_classifier:
        if not descriptor.id2label:
            raise DescriptorError("classifier `config.json` must declare `id2label`")
        return ClassifierModel(
            id2label=dict(descriptor.id2label),
            label2id=dict(descriptor.label2id or {}),
        )
    return EmbeddingModel(pooling=pooling or read_pooling(model_root))


@dataclass(frozen=True)
class ModelInfo:
    """Static facts about the assembled pipeline, reported by ``/info``."""

    model_id: str
    revision: str
    dtype: str
    model_type: ModelType
    limits: RuntimeLimits
    max_client_batch_size: int


class PipelineAssembler:
    """Builds the process-wide :class:`InferenceEngine` exactly once."""

    def __init__(
        self,
        settings: Settings,
        *,
        artifact_source: Optional[ArtifactSource] = None,
        backend_factory: BackendFactory = build_backend,
        backend_extra: Optional[dict] = None,
    ) -> None:
        self.settings = settings
        self.artifact_source = artifact_source or HubArtifactSource(
            token=settings.hf_api_token, cache_dir=settings.huggingface_hub_cache
        )
        self.backend_factory = backend_factory
        self.backend_extra = backend_extra
        self.state = AssemblyState.UNCONFIGURED
        self.failure: Optional[StartupError] = None
        self.info: Optional[ModelInfo] = None

    def _advance(self, target: AssemblyState) -> None:
        if _NEXT.get(self.state) != target:
            raise RuntimeError(f"invalid pipeline transition {self.state.value} -> {target.value}")
        logger.info("pipeline_state", previous=self.state.value, state=target.value)
        self.state = target

    def _fail(self, exc: StartupError) -> None:
        exc.state = self.state.value
        self.failure = exc
        logger.error(
            "pipeline_failed",
            state=self.state.value,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        self.state = AssemblyState.FAILED

    async def assemble(self) -> InferenceEngine:
        if self.state != AssemblyState.UNCONFIGURED:
            raise RuntimeError(
                f"pipeline assembly runs once per process (state: {self.state.value})"
            )
        try:
            return await self._assemble()
        except StartupError as exc:
            self._fail(exc)
            raise

    async def _assemble(self) -> InferenceEngine:
        settings = self.settings

        self._advance(AssemblyState.ARTIFACTS_RESOLVING)
        model_root = await asyncio.to_thread(
            self.artifact_source, settings.model_id, settings.revision
        )
        descriptor = load_descriptor(model_root)
        limits = resolve_limits(
            descriptor,
            tokenization_workers=settings.tokenization_workers,
            max_batch_tokens=settings.max_batch_tokens,
            max_batch_requests=settings.max_batch_requests,
            max_concurrent_requests=settings.max_concurrent_requests,
        )
        model_type = resolve_model_type(descriptor, model_root, settings.pooling)

        self._advance(AssemblyState.CONFIG_PARSED)
        tokenizer = patch_tokenizer(load_tokenizer(Path(model_root) / "tokenizer.json"))

        self._advance(AssemblyState.TOKENIZER_READY)
        try:
            backend = self.backend_factory(
                settings.backend,
                model_root,
                settings.dtype,
                model_type,
                settings.scratch_dir,
                self.backend_extra,
            )
        except BackendConstructionError:
            raise
        except Exception as exc:
            raise BackendConstructionError(f"Could not create backend: {exc}") from exc

        self._advance(AssemblyState.BACKEND_CONSTRUCTED)
        try:
            healthy = await backend.health()
        except Exception as exc:
            raise HealthCheckError(f"Model backend is not healthy: {exc}") from exc
        if not healthy:
            raise HealthCheckError("Model backend is not healthy")

        self._advance(AssemblyState.HEALTH_CHECKED)
        max_batch_requests = _smallest(limits.max_batch_requests, backend.max_batch_size)
        tokenization = Tokenization(
            limits.tokenization_workers,
            tokenizer,
            limits.max_input_length,
            limits.position_offset,
        )
        queue = Queue(limits.max_batch_tokens, max_batch_requests)
        engine = InferenceEngine(
            tokenization,
            queue,
            limits.max_concurrent_requests,
            backend,
            model_type,
        )
        engine.start()
        self.info = ModelInfo(
            model_id=settings.model_id,
            revision=settings.revision,
            dtype=settings.dtype.value,
            model_type=model_type,
            limits=limits,
            max_client_batch_size=settings.max_client_batch_size,
        )

        self._advance(AssemblyState.READY)
        logger.info(
            "pipeline_ready",
            model_id=settings.model_id,
            max_input_length=limits.max_input_length,
            max_batch_requests=max_batch_requests,
        )
        return engine


def _smallest(*values: Optional[int]) -> Optional[int]:
    present = [v for v in values if v is not None]
    return min(present) if present else None
