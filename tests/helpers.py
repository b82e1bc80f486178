"""Builders shared across the test suite.

Model directories are written from in-memory ``tokenizers`` objects so no
test needs network access or real weights.
"""

import asyncio
import json
from pathlib import Path
from typing import List, Optional

from tokenizers import Tokenizer, models, normalizers, pre_tokenizers, processors

from embedgate.config import BackendKind, Settings
from embedgate.service.assembler import PipelineAssembler
from embedgate.service.embeddings import deterministic_embedding
from embedgate.service.model_backend import ClassifierModel
from embedgate.service.tokenization import Encoding

VOCAB = {
    "[PAD]": 0,
    "[UNK]": 1,
    "[CLS]": 2,
    "[SEP]": 3,
    "hello": 4,
    "world": 5,
    "what": 6,
    "is": 7,
    "deep": 8,
    "learning": 9,
    "?": 10,
    "i": 11,
    "like": 12,
    "you": 13,
    ".": 14,
}

BERT_CONFIG = {
    "architectures": ["BertModel"],
    "model_type": "bert",
    "max_position_embeddings": 512,
    "pad_token_id": 0,
}


def build_tokenizer(*, padding: bool = True) -> Tokenizer:
    tokenizer = Tokenizer(models.WordLevel(vocab=VOCAB, unk_token="[UNK]"))
    tokenizer.normalizer = normalizers.Lowercase()
    tokenizer.pre_tokenizer = pre_tokenizers.Whitespace()
    tokenizer.post_processor = processors.TemplateProcessing(
        single="[CLS] $A [SEP]",
        pair="[CLS] $A [SEP] $B:1 [SEP]:1",
        special_tokens=[("[CLS]", 2), ("[SEP]", 3)],
    )
    if padding:
        tokenizer.enable_padding(pad_id=0, pad_token="[PAD]")
    return tokenizer


def write_model_dir(
    path: Path,
    *,
    config: Optional[dict] = None,
    tokenizer: Optional[Tokenizer] = None,
) -> Path:
    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)
    (path / "config.json").write_text(json.dumps(config or BERT_CONFIG))
    (tokenizer or build_tokenizer()).save(str(path / "tokenizer.json"))
    return path


def make_settings(model_root: Path, **overrides) -> Settings:
    values = {
        "model_id": str(model_root),
        "backend": BackendKind.STUB,
        "tokenization_workers": 2,
        "max_concurrent_requests": 8,
        "max_batch_tokens": 1024,
        "scratch_dir": str(Path(model_root).parent / "scratch"),
    }
    values.update(overrides)
    return Settings(**values)


async def build_engine(settings: Settings, **assembler_kwargs):
    assembler = PipelineAssembler(settings, **assembler_kwargs)
    engine = await assembler.assemble()
    return assembler, engine


def stub_vector(token_ids: List[int]) -> List[float]:
    return deterministic_embedding(token_ids)


class GatedBackend:
    """Backend whose batches block until the test opens the gate."""

    def __init__(self, model_type=None, *, max_batch_size: Optional[int] = None):
        self.model_type = model_type
        self.max_batch_size = max_batch_size
        self.started = asyncio.Event()
        self.gate = asyncio.Event()
        self.batches: List[List[Encoding]] = []

    async def health(self) -> bool:
        return True

    async def _wait(self, batch: List[Encoding]) -> None:
        self.batches.append(batch)
        self.started.set()
        await self.gate.wait()

    async def embed(self, batch: List[Encoding]) -> List[List[float]]:
        await self._wait(batch)
        return [stub_vector(e.input_ids) for e in batch]

    async def predict(self, batch: List[Encoding]) -> List[List[float]]:
        await self._wait(batch)
        num_labels = self.model_type.num_labels if isinstance(self.model_type, ClassifierModel) else 1
        return [[float(i) for i in range(num_labels)] for _ in batch]


def gated_factory(backend: GatedBackend):
    def factory(kind, model_root, dtype, model_type, scratch_dir, extra=None):
        backend.model_type = model_type
        return backend

    return factory
