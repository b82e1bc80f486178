from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from embedgate.logging import get_logger
from embedgate.service.errors import DescriptorError

logger = get_logger(__name__)

# Architectures that reserve leading position ids for padding
POSITION_OFFSET_MODEL_TYPES = frozenset({"xlm-roberta", "camembert", "roberta"})


class ModelDescriptor(BaseModel):
    """Parsed ``config.json`` of a model repository."""

    architectures: List[str] = Field(default_factory=list)
    model_type: str
    max_position_embeddings: int = Field(
        gt=0, validation_alias=AliasChoices("max_position_embeddings", "n_positions")
    )
    pad_token_id: int = Field(ge=0)
    id2label: Optional[Dict[str, str]] = None
    label2id: Optional[Dict[str, int]] = None

    model_config = ConfigDict(extra="ignore", frozen=True, protected_namespaces=())

    @property
    def is_classifier(self) -> bool:
        # transformers writes default label maps into every config, so the
        # architecture name decides
        return bool(self.architectures) and self.architectures[0].endswith("Classification")


@dataclass(frozen=True)
class RuntimeLimits:
    """Limits derived from the descriptor and settings; never sent on the wire."""

    max_input_length: int
    position_offset: int
    tokenization_workers: int = 1
    max_batch_tokens: int = 16384
    max_batch_requests: Optional[int] = None
    max_concurrent_requests: int = 512


def parse_descriptor(raw: dict) -> ModelDescriptor:
    try:
        return ModelDescriptor.model_validate(raw)
    except PydanticValidationError as exc:
        raise DescriptorError(f"Failed to parse `config.json`: {exc}") from exc


def load_descriptor(model_root: Path) -> ModelDescriptor:
    """Read and parse ``config.json`` from the artifact directory."""
    config_path = Path(model_root) / "config.json"
    try:
        raw = json.loads(config_path.read_text())
    except FileNotFoundError as exc:
        raise DescriptorError("`config.json` not found") from exc
    except (OSError, json.JSONDecodeError) as exc:
        raise DescriptorError(f"Failed to read `config.json`: {exc}") from exc
    if not isinstance(raw, dict):
        raise DescriptorError("`config.json` must contain a JSON object")
    return parse_descriptor(raw)


def position_offset(descriptor: ModelDescriptor) -> int:
    if descriptor.model_type in POSITION_OFFSET_MODEL_TYPES:
        return descriptor.pad_token_id + 1
    return 0


def resolve_limits(
    descriptor: ModelDescriptor,
    *,
    tokenization_workers: int = 1,
    max_batch_tokens: int = 16384,
    max_batch_requests: Optional[int] = None,
    max_concurrent_requests: int = 512,
) -> RuntimeLimits:
    """Derive the runtime limits for a descriptor.

    Raises:
        DescriptorError: if the effective input length is not positive, or if
            a single maximal input could never fit in a batch.
    """
    offset = position_offset(descriptor)
    max_input_length = descriptor.max_position_embeddings - offset
    if max_input_length <= 0:
        raise DescriptorError(
            f"max_position_embeddings ({descriptor.max_position_embeddings}) leaves no room "
            f"for input after a position offset of {offset}"
        )
    if max_batch_tokens < max_input_length:
        raise DescriptorError(
            f"max_batch_tokens ({max_batch_tokens}) must be at least "
            f"max_input_length ({max_input_length})"
        )
    limits = RuntimeLimits(
        max_input_length=max_input_length,
        position_offset=offset,
        tokenization_workers=tokenization_workers,
        max_batch_tokens=max_batch_tokens,
        max_batch_requests=max_batch_requests,
        max_concurrent_requests=max_concurrent_requests,
    )
    logger.info(
        "runtime_limits_resolved",
        model_type=descriptor.model_type,
        max_input_length=max_input_length,
        position_offset=offset,
    )
    return limits
