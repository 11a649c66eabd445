"""
Cooperative cancellation token shared by the pipeline workers.

The token is a one-shot broadcast: once cancelled it stays cancelled and
every waiter observes the same reason. Blocking adapter calls are wrapped
with ``guard()`` so they are abandoned as soon as the token fires.

Example:
    >>> token = CancelToken()
    >>> ledger = await token.guard(source.fetch(seq))
    >>> token.cancel("received SIGTERM")
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Optional, TypeVar

from .errors import ExportCancelled

T = TypeVar("T")


class CancelToken:
    """One-shot cancellation signal built on ``asyncio.Event``."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        """Whether cancel() has been called."""
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        """Reason given to the first cancel() call."""
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        """Fire the token. Later calls keep the first reason."""
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()

    async def wait(self) -> None:
        """Block until the token fires."""
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        """Raise ExportCancelled if the token has fired."""
        if self._event.is_set():
            raise ExportCancelled(self._reason or "cancelled")

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the token fires first.

        Args:
            awaitable: Operation to run

        Returns:
            The operation's result

        Raises:
            ExportCancelled: If the token fires before the operation completes;
                the operation is cancelled
        """
        self.raise_if_cancelled()

        operation = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {operation, waiter}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            waiter.cancel()
            if not operation.done():
                operation.cancel()

        if operation in done:
            return operation.result()

        # Let the cancelled operation unwind; its outcome is superseded.
        await asyncio.gather(operation, return_exceptions=True)
        raise ExportCancelled(self._reason or "cancelled")
