from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from llamachat.errors import CancellationError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancelToken:
    """One-shot cancellation flag shared between a caller and its work."""

    def __init__(self, name: str = "") -> None:
        self.name = name
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        if not self._event.is_set():
            logger.debug(f"Cancel requested: {self.name or 'token'}")
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancellationError(f"{self.name or 'operation'} cancelled")

    async def wait(self) -> None:
        await self._event.wait()

    async def run(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the token fires first.

        When the token wins, the pending work is cancelled and
        ``CancellationError`` is raised.
        """
        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            self.raise_if_cancelled()
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            waiter.cancel()
        if work.done():
            return work.result()
        work.cancel()
        try:
            await work
        except asyncio.CancelledError:
            pass
        raise CancellationError(f"{self.name or 'operation'} cancelled")


class ExecutionQueue:
    """Runs submitted jobs one at a time in submission order.

    A job that fails does not stop later jobs. The token passed with a job
    is checked when the job reaches the head of the queue, so work that was
    queued but never started observes cancellation too.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._submitted = 0
        self._completed = 0

    @property
    def pending(self) -> int:
        return self._submitted - self._completed

    async def submit(
        self, work: Callable[[], Awaitable[T]], token: CancelToken | None = None
    ) -> T:
        if token is not None:
            token.raise_if_cancelled()
        self._submitted += 1
        ticket = self._submitted
        try:
            async with self._lock:
                if token is not None:
                    token.raise_if_cancelled()
                logger.debug(f"Execution queue running job #{ticket}")
                return await work()
        finally:
            self._completed += 1
