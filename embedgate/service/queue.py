from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, List, Optional

from embedgate.logging import get_logger
from embedgate.service.tokenization import Encoding

logger = get_logger(__name__)


@dataclass
class Entry:
    """A tokenized sequence waiting for a batch slot."""

    encoding: Encoding
    future: asyncio.Future
    enqueued_at: float = field(default_factory=time.perf_counter)

    @property
    def abandoned(self) -> bool:
        return self.future.done()


class Queue:
    """FIFO of pending entries, drained into size-bounded batches.

    A batch holds at most ``max_batch_tokens`` tokens and, when set,
    ``max_batch_requests`` entries. The first entry of a batch is always
    admitted. Entries whose future is already done (the caller was
    cancelled) are dropped without being computed.
    """

    def __init__(
        self,
        max_batch_tokens: int,
        max_batch_requests: Optional[int],
    ) -> None:
        self.max_batch_tokens = max_batch_tokens
        self.max_batch_requests = max_batch_requests
        self._entries: Deque[Entry] = deque()
        self._ready = asyncio.Event()

    def __len__(self) -> int:
        return len(self._entries)

    def append(self, entry: Entry) -> None:
        self._entries.append(entry)
        self._ready.set()

    def _take_batch(self) -> List[Entry]:
        batch: List[Entry] = []
        tokens = 0
        while self._entries:
            entry = self._entries[0]
            if entry.abandoned:
                self._entries.popleft()
                continue
            if batch and tokens + len(entry.encoding) > self.max_batch_tokens:
                break
            if self.max_batch_requests is not None and len(batch) >= self.max_batch_requests:
                break
            self._entries.popleft()
            batch.append(entry)
            tokens += len(entry.encoding)
        if not self._entries:
            self._ready.clear()
        return batch

    async def next_batch(self) -> List[Entry]:
        """Wait until at least one live entry is pending and return a batch."""

        while True:
            await self._ready.wait()
            batch = self._take_batch()
            if batch:
                logger.debug(
                    "batch_formed",
                    size=len(batch),
                    tokens=sum(len(e.encoding) for e in batch),
                    pending=len(self._entries),
                )
                return batch
