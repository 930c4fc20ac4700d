"""CancelToken — cooperative cancellation for in-flight queries."""

from __future__ import annotations

import asyncio

from layersync.wfs.errors import Cancelled


class CancelToken:
    """Abortable handle for one outstanding query.

    Tasks attached to the token are cancelled when the token is. A token
    cannot be reset; issue a new one for the next request.
    """

    def __init__(self, label: str = "") -> None:
        self.label = label
        self._cancelled = False
        self._tasks: set[asyncio.Future] = set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        for task in list(self._tasks):
            task.cancel()

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise Cancelled(f"Request cancelled: {self.label}" if self.label else "Request cancelled")

    def attach(self, task: asyncio.Future) -> None:
        self._tasks.add(task)
        if self._cancelled:
            task.cancel()

    def detach(self, task: asyncio.Future) -> None:
        self._tasks.discard(task)

    async def run(self, awaitable) -> object:
        """Await ``awaitable`` as a task bound to this token.

        Raises:
            Cancelled: if the token is (or becomes) cancelled before completion.
        """
        if self._cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            self.raise_if_cancelled()
        task = asyncio.ensure_future(awaitable)
        self.attach(task)
        try:
            return await task
        except asyncio.CancelledError:
            if self._cancelled:
                raise Cancelled(
                    f"Request cancelled: {self.label}" if self.label else "Request cancelled"
                ) from None
            raise
        finally:
            self.detach(task)

    def __repr__(self) -> str:
        return f"CancelToken(label={self.label!r}, cancelled={self._cancelled})"
