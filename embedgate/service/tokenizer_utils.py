from __future__ import annotations

import copy
import json
from pathlib import Path
from typing import Any, List, Optional

from tokenizers import Tokenizer

from embedgate.logging import get_logger
from embedgate.service.errors import TokenizerLoadError

logger = get_logger(__name__)

# Prepend the metaspace marker only to the first word of each input
PREPEND_FIRST = "first"


def load_tokenizer(path: Path) -> Tokenizer:
    """Load a serialized fast tokenizer from ``tokenizer.json``."""

    path = Path(path)
    if not path.is_file():
        raise TokenizerLoadError(
            f"`{path.name}` not found; only fast tokenizers (tokenizer.json) are supported"
        )
    try:
        return Tokenizer.from_file(str(path))
    except Exception as exc:
        raise TokenizerLoadError(f"Failed to load `{path.name}`: {exc}") from exc


def _patch_metaspace(node: dict) -> dict:
    patched = dict(node)
    # legacy flag conflicts with an explicit scheme on deserialization
    patched.pop("add_prefix_space", None)
    patched["prepend_scheme"] = PREPEND_FIRST
    return patched


def _patch_pre_tokenizer(node: Optional[dict]) -> Optional[dict]:
    if not isinstance(node, dict):
        return node
    kind = node.get("type")
    if kind == "Metaspace":
        return _patch_metaspace(node)
    if kind == "Sequence":
        patched = dict(node)
        patched["pretokenizers"] = [
            _patch_metaspace(member)
            if isinstance(member, dict) and member.get("type") == "Metaspace"
            else member
            for member in node.get("pretokenizers", [])
        ]
        return patched
    return node


def patch_tokenizer_config(config: dict) -> dict:
    """Return a patched copy of a serialized tokenizer document.

    Padding is removed, and every Metaspace pre-tokenizer (top level or a
    direct member of a Sequence) is switched to prepend on the first word.
    """

    patched = copy.deepcopy(config)
    patched["padding"] = None
    patched["pre_tokenizer"] = _patch_pre_tokenizer(patched.get("pre_tokenizer"))
    return patched


def patch_tokenizer(tokenizer: Tokenizer) -> Tokenizer:
    """Return a new tokenizer with serving fixes applied; the input is untouched."""

    config = json.loads(tokenizer.to_str())
    patched = Tokenizer.from_str(json.dumps(patch_tokenizer_config(config)))
    logger.debug("tokenizer_patched", prepend_schemes=prepend_schemes(patched))
    return patched


def prepend_schemes(tokenizer: Tokenizer) -> List[Any]:
    """List the prepend scheme of every Metaspace pre-tokenizer, in order."""

    node = json.loads(tokenizer.to_str()).get("pre_tokenizer")
    if not isinstance(node, dict):
        return []
    members = node.get("pretokenizers", []) if node.get("type") == "Sequence" else [node]
    return [
        member.get("prepend_scheme")
        for member in members
        if isinstance(member, dict) and member.get("type") == "Metaspace"
    ]
