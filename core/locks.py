"""
Per-conversation turn serialisation.

Two messages for the same conversation must never interleave; turns for
different conversations run concurrently. Locks are created on demand and
dropped once nobody holds or waits on them.
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator

import structlog

from core.errors import LockTimeoutError

logger = structlog.get_logger()


class ConversationLocks:
    def __init__(self, timeout_seconds: float = 30.0):
        self.timeout_seconds = timeout_seconds
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, conversation_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(conversation_id, asyncio.Lock())
        self._waiters[conversation_id] = self._waiters.get(conversation_id, 0) + 1
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=self.timeout_seconds)
            except asyncio.TimeoutError:
                logger.warning("conversation_lock_timeout", conversation_id=conversation_id,
                               timeout=self.timeout_seconds)
                raise LockTimeoutError(conversation_id, self.timeout_seconds)
            try:
                yield
            finally:
                lock.release()
        finally:
            self._waiters[conversation_id] -= 1
            if self._waiters[conversation_id] <= 0:
                self._waiters.pop(conversation_id, None)
                self._locks.pop(conversation_id, None)

    def is_locked(self, conversation_id: str) -> bool:
        lock = self._locks.get(conversation_id)
        return bool(lock and lock.locked())

    def __len__(self) -> int:
        return len(self._locks)
