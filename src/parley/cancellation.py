import asyncio
from collections.abc import Awaitable
from typing import TypeVar

T = TypeVar("T")


class OperationCancelled(Exception):
    """Raised by :meth:`CancellationToken.guard` once the token is cancelled."""


class CancellationToken:
    """Cooperative cancellation flag shared by a session and its provider.

    Providers poll :attr:`cancelled` between chunks. The coordinator
    wraps every blocking read in :meth:`guard` so a read that never
    returns is still abandoned promptly.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    async def guard(self, awaitable: Awaitable[T], timeout: float | None = None) -> T:
        """Await *awaitable* unless the token is cancelled first.

        A result that is already available wins over a concurrent
        cancellation, so an event in flight is never lost.

        Raises:
            OperationCancelled: The token was cancelled first.
            asyncio.TimeoutError: *timeout* elapsed first.
        """
        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise OperationCancelled()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter}, timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        if self.cancelled:
            raise OperationCancelled()
        raise asyncio.TimeoutError()
