"""Per-conversation serialization of send operations."""

import asyncio
import contextlib
from typing import AsyncIterator, Dict

import structlog

logger = structlog.get_logger()


class ConversationLock:
    """
    FIFO lock keyed by conversation id.

    Work on one conversation runs one at a time in arrival order; different
    conversations never wait on each other. Locks are dropped once nobody
    holds or waits on them.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}
        self._sequence: Dict[str, int] = {}

    @contextlib.asynccontextmanager
    async def hold(self, conversation_id: str) -> AsyncIterator[int]:
        """Hold the conversation's slot; yields the request's sequence number."""
        lock = self._locks.setdefault(conversation_id, asyncio.Lock())
        self._waiters[conversation_id] = self._waiters.get(conversation_id, 0) + 1
        sequence = self._sequence.get(conversation_id, 0)
        self._sequence[conversation_id] = sequence + 1
        if lock.locked():
            logger.info("conversation_busy_queued", conversation_id=conversation_id, sequence=sequence)
        try:
            async with lock:
                yield sequence
        finally:
            self._waiters[conversation_id] -= 1
            if self._waiters[conversation_id] == 0:
                del self._waiters[conversation_id]
                del self._locks[conversation_id]
                del self._sequence[conversation_id]

    def is_busy(self, conversation_id: str) -> bool:
        lock = self._locks.get(conversation_id)
        return lock is not None and lock.locked()

    @property
    def active_conversations(self) -> int:
        return len(self._locks)
