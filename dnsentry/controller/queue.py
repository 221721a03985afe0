"""
Keyed work queue for the reconciliation workers.

A key is handed to at most one worker at a time. Adding a key that is being
processed marks it dirty; it is queued again once the worker is done.
"""

import asyncio
from collections import deque
from typing import Deque, Optional, Set


class QueueShutDown(Exception):
    """Raised by get() once the queue is shut down."""


class WorkQueue:
    """
    Deduplicating FIFO queue of object keys.
    """

    def __init__(self):
        self._queue: Deque[str] = deque()
        self._dirty: Set[str] = set()
        self._processing: Set[str] = set()
        self._ready = asyncio.Event()
        self._shutting_down = False

    def __len__(self) -> int:
        return len(self._queue)

    def add(self, key: str) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._ready.set()

    def get_nowait(self) -> Optional[str]:
        """Take the next key without waiting, or None if the queue is empty."""
        if not self._queue:
            return None
        key = self._queue.popleft()
        self._dirty.discard(key)
        self._processing.add(key)
        if not self._queue:
            self._ready.clear()
        return key

    async def get(self) -> str:
        """
        Wait for the next key.

        Raises:
            QueueShutDown: If the queue is shut down
        """
        while True:
            if self._shutting_down:
                raise QueueShutDown()
            key = self.get_nowait()
            if key is not None:
                return key
            await self._ready.wait()

    def done(self, key: str) -> None:
        """Mark a key as processed, queueing it again if it was added meanwhile."""
        self._processing.discard(key)
        if key in self._dirty:
            self._queue.append(key)
            self._ready.set()

    def pending(self) -> bool:
        return bool(self._queue or self._processing)

    def is_processing(self, key: str) -> bool:
        return key in self._processing

    def shut_down(self) -> None:
        self._shutting_down = True
        self._ready.set()
