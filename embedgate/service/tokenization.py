from __future__ import annotations

import asyncio
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import List

from tokenizers import Tokenizer

from embedgate.logging import get_logger
from embedgate.service.errors import TokenizerError, ValidationError
from embedgate.service.sequence import Pair, Sequence, Single

logger = get_logger(__name__)


@dataclass(frozen=True)
class Encoding:
    """Token ids of one sequence, ready for the compute backend."""

    input_ids: List[int]
    token_type_ids: List[int]
    position_ids: List[int]

    def __len__(self) -> int:
        return len(self.input_ids)


class Tokenization:
    """Runs the tokenizer on a dedicated pool of worker threads.

    Two tokenizer instances are kept: one without truncation, used to reject
    over-long inputs, and one truncating to ``max_input_length`` for requests
    that opt into truncation. Neither is mutated after construction, so the
    workers share them freely.
    """

    def __init__(
        self,
        workers: int,
        tokenizer: Tokenizer,
        max_input_length: int,
        position_offset: int,
    ) -> None:
        self.workers = workers
        self.max_input_length = max_input_length
        self.position_offset = position_offset
        self._tokenizer = tokenizer
        self._truncating = Tokenizer.from_str(tokenizer.to_str())
        self._truncating.enable_truncation(max_input_length)
        self._executor = ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix="tokenization"
        )
        logger.info(
            "tokenization_started",
            workers=workers,
            max_input_length=max_input_length,
            position_offset=position_offset,
        )

    async def encode(self, sequence: Sequence, truncate: bool = False) -> Encoding:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            self._executor, self.encode_sync, sequence, truncate
        )

    def encode_sync(self, sequence: Sequence, truncate: bool = False) -> Encoding:
        if isinstance(sequence, Single):
            texts = (sequence.text,)
        elif isinstance(sequence, Pair):
            texts = (sequence.first, sequence.second)
        else:
            raise TypeError(f"unsupported sequence type {type(sequence).__name__}")

        tokenizer = self._truncating if truncate else self._tokenizer
        try:
            encoding = tokenizer.encode(*texts)
        except Exception as exc:
            raise TokenizerError(str(exc)) from exc

        num_tokens = len(encoding.ids)
        if num_tokens == 0:
            raise ValidationError("`inputs` cannot be empty")
        if num_tokens > self.max_input_length:
            raise ValidationError(
                f"`inputs` must have less than {self.max_input_length} tokens. "
                f"Given: {num_tokens}"
            )
        return Encoding(
            input_ids=list(encoding.ids),
            token_type_ids=list(encoding.type_ids),
            position_ids=list(
                range(self.position_offset, self.position_offset + num_tokens)
            ),
        )

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
