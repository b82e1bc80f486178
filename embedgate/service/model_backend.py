from __future__ import annotations

import asyncio
import importlib.util
import struct
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Union

from embedgate.config import BackendKind, DType, Pool
from embedgate.logging import get_logger
from embedgate.service.embeddings import DEFAULT_STUB_DIM, deterministic_embedding
from embedgate.service.errors import BackendConstructionError, BackendError
from embedgate.service.tokenization import Encoding

logger = get_logger(__name__)

_ORT_SPEC = importlib.util.find_spec("onnxruntime")
if _ORT_SPEC and importlib.util.find_spec("numpy"):
    import numpy as np  # pragma: no cover
    import onnxruntime as ort  # pragma: no cover
else:  # pragma: no cover - optional dependency absent
    np = None  # type: ignore
    ort = None  # type: ignore


@dataclass(frozen=True)
class EmbeddingModel:
    pooling: Pool


@dataclass(frozen=True)
class ClassifierModel:
    id2label: Dict[str, str]
    label2id: Dict[str, int] = field(default_factory=dict)

    @property
    def num_labels(self) -> int:
        return len(self.id2label)


ModelType = Union[EmbeddingModel, ClassifierModel]

_STRUCT_FORMATS = {DType.FLOAT32: "f", DType.FLOAT16: "e"}


def round_to_dtype(values: List[float], dtype: DType) -> List[float]:
    """Round values to what a backend running at ``dtype`` would return."""
    fmt = f"<{len(values)}{_STRUCT_FORMATS[DType(dtype)]}"
    return list(struct.unpack(fmt, struct.pack(fmt, *values)))



class Backend(Protocol):
    """Interface for compute backends.

    ``max_batch_size`` is the backend's own ceiling on requests per batch, or
    ``None`` when it has none.
    """

    max_batch_size: Optional[int]

    async def health(self) -> bool: ...

    async def embed(self, batch: List[Encoding]) -> List[List[float]]: ...

    async def predict(self, batch: List[Encoding]) -> List[List[float]]: ...


class StubBackend:
    """Deterministic backend that needs no weights.

    Vectors are hashed from token ids so identical inputs always yield
    identical results. Classifier logits are hashed the same way, one per
    label. Values are rounded to the configured precision.
    """

    def __init__(
        self,
        model_root: Path,
        dtype: DType,
        model_type: ModelType,
        scratch_dir: str,
        extra: Optional[dict] = None,
    ) -> None:
        extra = extra or {}
        self.model_root = Path(model_root)
        self.dtype = dtype
        self.model_type = model_type
        self.scratch_dir = scratch_dir
        self.dim = int(extra.get("dim", DEFAULT_STUB_DIM))
        self.max_batch_size = extra.get("max_batch_size")
        self.healthy = bool(extra.get("healthy", True))
        self.batches: List[int] = []

    async def health(self) -> bool:
        return self.healthy

    async def embed(self, batch: List[Encoding]) -> List[List[float]]:
        self.batches.append(len(batch))
        return [
            round_to_dtype(deterministic_embedding(e.input_ids, self.dim), self.dtype)
            for e in batch
        ]

    async def predict(self, batch: List[Encoding]) -> List[List[float]]:
        if not isinstance(self.model_type, ClassifierModel):
            raise BackendError("model is not a classifier")
        self.batches.append(len(batch))
        num_labels = self.model_type.num_labels
        results = []
        for encoding in batch:
            vec = deterministic_embedding(encoding.input_ids, max(num_labels, 1))
            logits = [v / 4.0 - 1.0 for v in vec[:num_labels]]
            results.append(round_to_dtype(logits, self.dtype))
        return results


# Weight files per precision, searched in order
ONNX_WEIGHTS = {
    DType.FLOAT32: ("model.onnx", "onnx/model.onnx"),
    DType.FLOAT16: ("model_fp16.onnx", "onnx/model_fp16.onnx"),
}


def find_onnx_weights(model_root: Path, dtype: DType) -> Path:
    """Locate the ONNX graph exported at ``dtype``.

    Raises:
        BackendConstructionError: if no graph for that precision exists.
    """
    candidates = ONNX_WEIGHTS[DType(dtype)]
    for name in candidates:
        candidate = Path(model_root) / name
        if candidate.is_file():
            return candidate
    raise BackendConstructionError(
        f"no {DType(dtype).value} ONNX weights found under {model_root} "
        f"(expected {' or '.join(candidates)})"
    )


class OnnxBackend:
    """ONNX Runtime backend for encoder models.

    Uses CUDA when the runtime exposes it and falls back to CPU. The session
    runs off the event loop; pooling (CLS or mean) is applied to the last
    hidden state unless the graph already returns pooled vectors.
    """

    def __init__(
        self,
        model_root: Path,
        dtype: DType,
        model_type: ModelType,
        scratch_dir: str,
        extra: Optional[dict] = None,
    ) -> None:
        if ort is None or np is None:
            raise BackendConstructionError(
                "onnxruntime is not installed; install the `onnx` extra"
            )
        self.model_root = Path(model_root)
        self.dtype = dtype
        self.model_type = model_type
        self.scratch_dir = scratch_dir
        self.max_batch_size: Optional[int] = (extra or {}).get("max_batch_size")
        model_path = find_onnx_weights(self.model_root, dtype)

        Path(scratch_dir).mkdir(parents=True, exist_ok=True)
        available = ort.get_available_providers()
        providers: List[Any] = []
        if "CUDAExecutionProvider" in available:
            providers.append(("CUDAExecutionProvider", {"device_id": 0}))
        providers.append("CPUExecutionProvider")

        sess_options = ort.SessionOptions()
        sess_options.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_ALL
        try:
            self.session = ort.InferenceSession(
                str(model_path), sess_options=sess_options, providers=providers
            )
        except Exception as exc:
            raise BackendConstructionError(f"Could not create ONNX session: {exc}") from exc
        self.input_names = {i.name for i in self.session.get_inputs()}
        active = self.session.get_providers()
        logger.info(
            "onnx_backend_created",
            model_path=str(model_path),
            provider=active[0] if active else "unknown",
            dtype=dtype.value,
        )

    def _feed(self, batch: List[Encoding]) -> Dict[str, Any]:
        width = max(len(e) for e in batch)
        shape = (len(batch), width)
        input_ids = np.zeros(shape, dtype=np.int64)
        type_ids = np.zeros(shape, dtype=np.int64)
        position_ids = np.zeros(shape, dtype=np.int64)
        attention_mask = np.zeros(shape, dtype=np.int64)
        for row, encoding in enumerate(batch):
            n = len(encoding)
            input_ids[row, :n] = encoding.input_ids
            type_ids[row, :n] = encoding.token_type_ids
            position_ids[row, :n] = encoding.position_ids
            attention_mask[row, :n] = 1
        candidates = {
            "input_ids": input_ids,
            "attention_mask": attention_mask,
            "token_type_ids": type_ids,
            "position_ids": position_ids,
        }
        return {name: value for name, value in candidates.items() if name in self.input_names}

    def _run(self, batch: List[Encoding]):
        feed = self._feed(batch)
        outputs = self.session.run(None, feed)
        return outputs[0].astype(np.float32), feed.get("attention_mask")

    def _pool(self, hidden, attention_mask) -> List[List[float]]:
        if hidden.ndim == 2:
            return hidden.tolist()
        pooling = self.model_type.pooling if isinstance(self.model_type, EmbeddingModel) else Pool.CLS
        if pooling == Pool.CLS or attention_mask is None:
            return hidden[:, 0].tolist()
        mask = attention_mask[..., None].astype(np.float32)
        summed = (hidden * mask).sum(axis=1)
        return (summed / np.clip(mask.sum(axis=1), 1e-9, None)).tolist()

    async def health(self) -> bool:
        probe = [Encoding(input_ids=[0], token_type_ids=[0], position_ids=[0])]
        try:
            hidden, _ = await asyncio.to_thread(self._run, probe)
        except Exception as exc:
            logger.warning("onnx_health_probe_failed", error=str(exc))
            return False
        return bool(np.isfinite(hidden).all())

    async def embed(self, batch: List[Encoding]) -> List[List[float]]:
        try:
            hidden, mask = await asyncio.to_thread(self._run, batch)
        except Exception as exc:
            raise BackendError(f"inference failed: {exc}") from exc
        return self._pool(hidden, mask)

    async def predict(self, batch: List[Encoding]) -> List[List[float]]:
        try:
            logits, _ = await asyncio.to_thread(self._run, batch)
        except Exception as exc:
            raise BackendError(f"inference failed: {exc}") from exc
        return logits.tolist()


BUILTIN_BACKENDS = {
    BackendKind.ONNX: OnnxBackend,
    BackendKind.STUB: StubBackend,
}


def build_backend(
    kind: BackendKind,
    model_root: Path,
    dtype: DType,
    model_type: ModelType,
    scratch_dir: str,
    extra: Optional[dict] = None,
) -> Backend:
    """Instantiate the compute backend selected in settings."""

    try:
        backend_cls = BUILTIN_BACKENDS[BackendKind(kind)]
    except (KeyError, ValueError) as exc:
        raise BackendConstructionError(f"unknown backend `{kind}`") from exc
    return backend_cls(model_root, dtype, model_type, scratch_dir, extra)
