"""Cooperative cancellation for task loops."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Optional, TypeVar

T = TypeVar("T")


class OperationCancelled(Exception):
    """The awaited operation was abandoned because the token was cancelled."""

    def __init__(self, reason: Optional[str] = None):
        super().__init__(reason or "cancelled")
        self.reason = reason


class CancellationToken:
    """Abort flag shared by one task loop and everything it awaits.

    The loop checks ``cancelled`` between phases; suspension points use
    ``race`` so an abort also interrupts a pending await.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: Optional[str] = None) -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise OperationCancelled(self.reason)

    async def wait(self) -> None:
        await self._event.wait()

    async def race(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the token fires first.

        Raises:
            OperationCancelled: The token fired; the awaitable has been cancelled
        """
        self.raise_if_cancelled()
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            waiter.cancel()
            raise
        if work.done():
            waiter.cancel()
            return work.result()

        work.cancel()
        await asyncio.gather(work, return_exceptions=True)
        raise OperationCancelled(self.reason)


__all__ = ["CancellationToken", "OperationCancelled"]
