from __future__ import annotations

import asyncio
import contextlib
import threading
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, TypeVar

from embedgate.logging import get_logger
from embedgate.service.embeddings import normalize_vector, sigmoid, softmax, validate_embedding
from embedgate.service.errors import (
    BackendError,
    InferError,
    OverloadedError,
    ValidationError,
)
from embedgate.service.model_backend import Backend, ClassifierModel, ModelType
from embedgate.service.queue import Entry, Queue
from embedgate.service.sequence import NormalizedInput, Sequence, as_sequences
from embedgate.service.tokenization import Encoding, Tokenization

logger = get_logger(__name__)

T = TypeVar("T")


class Permit:
    """Admission token for one in-flight sequence. Releasing twice is a no-op."""

    def __init__(self, engine: "InferenceEngine") -> None:
        self._engine = engine
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._engine._release_permits(1)

    def __enter__(self) -> "Permit":
        return self

    def __exit__(self, *exc_info) -> None:
        self.release()


@dataclass
class EmbeddingResult:
    results: List[float]
    prompt_tokens: int
    tokenization_ms: float
    queue_ms: float
    inference_ms: float


@dataclass
class ClassificationResult:
    results: List[float]
    prompt_tokens: int
    tokenization_ms: float
    queue_ms: float
    inference_ms: float


def _ms(seconds: float) -> float:
    return round(seconds * 1000.0, 3)


class InferenceEngine:
    """Process-wide composition of tokenizer, queue and compute backend.

    Built once by the pipeline assembler and shared by every request
    handler. The only mutable state is the permit counter and the queue.
    """

    def __init__(
        self,
        tokenization: Tokenization,
        queue: Queue,
        max_concurrent_requests: int,
        backend: Backend,
        model_type: ModelType,
    ) -> None:
        self.tokenization = tokenization
        self.queue = queue
        self.backend = backend
        self.model_type = model_type
        self.max_concurrent_requests = max_concurrent_requests
        self._available = max_concurrent_requests
        self._permit_lock = threading.Lock()
        self._batching_task: Optional[asyncio.Task] = None

    @property
    def is_classifier(self) -> bool:
        return isinstance(self.model_type, ClassifierModel)

    @property
    def available_permits(self) -> int:
        return self._available

    # -- lifecycle ---------------------------------------------------------

    def start(self) -> None:
        """Start the batching loop on the running event loop."""
        if self._batching_task is None or self._batching_task.done():
            self._batching_task = asyncio.get_running_loop().create_task(
                self._batching_loop(), name="embedgate-batching"
            )

    async def close(self) -> None:
        if self._batching_task is not None:
            self._batching_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._batching_task
            self._batching_task = None
        self.tokenization.shutdown()

    async def health(self) -> bool:
        try:
            return bool(await self.backend.health())
        except Exception as exc:
            logger.warning("backend_health_failed", error=str(exc))
            return False

    # -- permits -----------------------------------------------------------

    def try_acquire_permits(self, count: int) -> List[Permit]:
        """Take ``count`` permits at once or none at all.

        Raises:
            ValidationError: if ``count`` exceeds the concurrency ceiling, so
                the request could never be admitted.
            OverloadedError: if fewer than ``count`` permits are free.
        """
        if count > self.max_concurrent_requests:
            raise ValidationError(
                f"batch of {count} sequences exceeds max_concurrent_requests "
                f"({self.max_concurrent_requests})"
            )
        with self._permit_lock:
            if count > self._available:
                logger.warning(
                    "engine_overloaded",
                    requested=count,
                    available=self._available,
                    max_concurrent_requests=self.max_concurrent_requests,
                )
                raise OverloadedError("Model is overloaded")
            self._available -= count
        return [Permit(self) for _ in range(count)]

    def try_acquire_permit(self) -> Permit:
        return self.try_acquire_permits(1)[0]

    def _release_permits(self, count: int) -> None:
        with self._permit_lock:
            self._available = min(self.max_concurrent_requests, self._available + count)

    # -- batching ----------------------------------------------------------

    async def _batching_loop(self) -> None:
        while True:
            batch = await self.queue.next_batch()
            encodings = [entry.encoding for entry in batch]
            started = time.perf_counter()
            try:
                if self.is_classifier:
                    results = await self.backend.predict(encodings)
                else:
                    results = await self.backend.embed(encodings)
                if len(results) != len(batch):
                    raise BackendError(
                        f"backend returned {len(results)} results for a batch of {len(batch)}"
                    )
            except asyncio.CancelledError:
                for entry in batch:
                    if not entry.future.done():
                        entry.future.cancel()
                raise
            except Exception as exc:
                error = exc if isinstance(exc, InferError) else BackendError(str(exc))
                logger.error("batch_failed", size=len(batch), error=str(exc))
                for entry in batch:
                    if not entry.future.done():
                        entry.future.set_exception(error)
                continue
            finished = time.perf_counter()
            for entry, result in zip(batch, results):
                # a cancelled caller's result is dropped, never reassigned
                if not entry.future.done():
                    entry.future.set_result((result, entry.enqueued_at, started, finished))

    async def _run(self, encoding: Encoding):
        if self._batching_task is None:
            self.start()
        future = asyncio.get_running_loop().create_future()
        self.queue.append(Entry(encoding=encoding, future=future))
        return await future

    # -- request path ------------------------------------------------------

    async def embed(
        self,
        inputs: Sequence,
        truncate: bool,
        normalize: bool,
        permit: Permit,
    ) -> EmbeddingResult:
        """Embed one sequence. ``permit`` is released on every exit path."""
        try:
            if self.is_classifier:
                raise ValidationError("model is a classifier; use /predict instead")
            start = time.perf_counter()
            encoding = await self.tokenization.encode(inputs, truncate)
            tokenized = time.perf_counter()
            raw, enqueued, started, finished = await self._run(encoding)
            try:
                vector = validate_embedding(raw)
            except ValueError as exc:
                raise BackendError(str(exc)) from exc
            if normalize:
                vector = normalize_vector(vector)
            return EmbeddingResult(
                results=vector,
                prompt_tokens=len(encoding),
                tokenization_ms=_ms(tokenized - start),
                queue_ms=_ms(started - enqueued),
                inference_ms=_ms(finished - started),
            )
        finally:
            permit.release()

    async def predict(
        self,
        inputs: Sequence,
        truncate: bool,
        raw_scores: bool,
        permit: Permit,
    ) -> ClassificationResult:
        """Classify one sequence. ``permit`` is released on every exit path."""
        try:
            if not self.is_classifier:
                raise ValidationError("model is not a classifier; use /embed instead")
            start = time.perf_counter()
            encoding = await self.tokenization.encode(inputs, truncate)
            tokenized = time.perf_counter()
            raw, enqueued, started, finished = await self._run(encoding)
            try:
                scores = validate_embedding(raw, name="scores")
            except ValueError as exc:
                raise BackendError(str(exc)) from exc
            if not raw_scores:
                scores = sigmoid(scores) if len(scores) == 1 else softmax(scores)
            return ClassificationResult(
                results=scores,
                prompt_tokens=len(encoding),
                tokenization_ms=_ms(tokenized - start),
                queue_ms=_ms(started - enqueued),
                inference_ms=_ms(finished - started),
            )
        finally:
            permit.release()

    async def _gather(self, calls: List[Callable[[], Awaitable[T]]]) -> List[T]:
        tasks = [asyncio.ensure_future(call()) for call in calls]
        try:
            return list(await asyncio.gather(*tasks))
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def embed_all(
        self, inputs: NormalizedInput, truncate: bool, normalize: bool
    ) -> List[EmbeddingResult]:
        """Embed every sequence of a normalized input, in input order."""
        sequences = as_sequences(inputs)
        permits = self.try_acquire_permits(len(sequences))
        try:
            return await self._gather(
                [
                    lambda s=s, p=p: self.embed(s, truncate, normalize, p)
                    for s, p in zip(sequences, permits)
                ]
            )
        finally:
            # covers tasks cancelled before they ever ran
            for permit in permits:
                permit.release()

    async def predict_all(
        self, inputs: NormalizedInput, truncate: bool, raw_scores: bool
    ) -> List[ClassificationResult]:
        """Classify every sequence of a normalized input, in input order."""
        sequences = as_sequences(inputs)
        permits = self.try_acquire_permits(len(sequences))
        try:
            return await self._gather(
                [
                    lambda s=s, p=p: self.predict(s, truncate, raw_scores, p)
                    for s, p in zip(sequences, permits)
                ]
            )
        finally:
            for permit in permits:
                permit.release()


__all__ = [
    "Permit",
    "EmbeddingResult",
    "ClassificationResult",
    "InferenceEngine",
]
