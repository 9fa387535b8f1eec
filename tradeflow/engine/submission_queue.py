"""Serialized blockchain submission channel.

Proof submissions spend the relayer account's nonce, so only one submission
call may be in flight per session. asyncio.Lock wakes waiters in FIFO order,
which admits trades in the order they became ready.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)


class SubmissionQueue:
    def __init__(self):
        self._lock = asyncio.Lock()
        self._waiting: list[str] = []
        self.active: str | None = None

    @property
    def depth(self) -> int:
        return len(self._waiting)

    @asynccontextmanager
    async def slot(self, trade_id: str):
        """Hold the submission channel for one trade."""
        self._waiting.append(trade_id)
        if self._lock.locked():
            logger.info(
                f"[{trade_id}] Queued for blockchain submission "
                f"(active={self.active}, waiting={self.depth})"
            )
        try:
            async with self._lock:
                self._waiting.remove(trade_id)
                self.active = trade_id
                try:
                    yield
                finally:
                    self.active = None
        finally:
            if trade_id in self._waiting:
                self._waiting.remove(trade_id)
