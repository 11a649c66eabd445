"""
Bounded handoff between the batch assembler and the uploader.

A thin wrapper over ``asyncio.Queue`` that adds the close semantics a
channel needs: the producer closes it exactly once when it is done, and the
consumer sees ``None`` after the last batch. A consumer that dies can
``abandon()`` the handoff so a producer blocked on a full queue fails fast
instead of waiting forever.

Invariants:
    - At most ``capacity`` batches are buffered (backpressure to the source)
    - Batches are received in the order they were sent
    - receive() returns None only after close() and once the queue is empty
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Optional

from .batch import ArchiveBatch
from .errors import HandoffClosedError

logger = logging.getLogger(__name__)

_END_OF_STREAM = object()


class Handoff:
    """Single-producer/single-consumer queue of completed batches."""

    def __init__(self, capacity: int = 1) -> None:
        if capacity < 1:
            raise ValueError("handoff capacity must be at least 1")
        self.capacity = capacity
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=capacity + 1)
        self._slots = asyncio.Semaphore(capacity)
        self._closed = False
        self._exhausted = False
        self._abandoned = asyncio.Event()

    @property
    def closed(self) -> bool:
        """Whether the producer has closed the handoff."""
        return self._closed

    @property
    def abandoned(self) -> bool:
        """Whether the consumer has given up on the handoff."""
        return self._abandoned.is_set()

    def qsize(self) -> int:
        """Number of batches waiting to be received."""
        return self._queue.qsize() - (1 if self._closed and not self._exhausted else 0)

    async def send(self, batch: ArchiveBatch) -> None:
        """Send a batch, blocking while the handoff is full.

        Raises:
            HandoffClosedError: If the handoff was closed or abandoned
        """
        if self._closed:
            raise HandoffClosedError("cannot send on a closed handoff")
        if self._abandoned.is_set():
            raise HandoffClosedError("handoff abandoned by consumer")

        if self._slots.locked():
            await self._unless_abandoned(self._slots.acquire())
        else:
            await self._slots.acquire()
        self._queue.put_nowait(batch)

    async def receive(self) -> Optional[ArchiveBatch]:
        """Receive the next batch, or None once closed and drained."""
        if self._exhausted:
            return None

        item = await self._queue.get()
        if item is _END_OF_STREAM:
            self._exhausted = True
            return None

        self._slots.release()
        return item

    async def close(self) -> None:
        """Mark the end of the stream. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        # One spare queue slot is reserved for the marker, so this never blocks.
        self._queue.put_nowait(_END_OF_STREAM)
        logger.debug("Handoff closed", extra={"pending": self._queue.qsize() - 1})

    def abandon(self) -> None:
        """Stop accepting batches and discard anything buffered."""
        if self._abandoned.is_set():
            return
        self._abandoned.set()
        discarded = 0
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if item is _END_OF_STREAM:
                self._queue.put_nowait(item)
                break
            discarded += 1
            self._slots.release()
        if discarded:
            logger.warning("Handoff abandoned with pending batches", extra={"discarded": discarded})

    async def _unless_abandoned(self, awaitable: Awaitable[object]) -> None:
        operation = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._abandoned.wait())
        try:
            done, _ = await asyncio.wait(
                {operation, waiter}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            waiter.cancel()
            if not operation.done():
                operation.cancel()

        if operation in done:
            operation.result()
            if self._abandoned.is_set():
                self._slots.release()
                raise HandoffClosedError("handoff abandoned by consumer")
            return

        await asyncio.gather(operation, return_exceptions=True)
        if operation.done() and not operation.cancelled() and operation.exception() is None:
            self._slots.release()
        raise HandoffClosedError("handoff abandoned by consumer")
