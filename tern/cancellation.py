"""Cooperative cancellation token threaded through one dispatch cycle."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from tern.errors import Cancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancelToken:
    """Idempotent cancellation flag with an awaitable and callbacks.

    Every suspension point in the dispatch loop either races against
    wait() or checks raise_if_cancelled() on wake.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._callbacks: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        if self._event.is_set():
            return
        self._event.set()
        for callback in self._callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Cancellation callback failed")
        self._callbacks.clear()

    def on_cancel(self, callback: Callable[[], None]) -> None:
        """Run callback on cancel, immediately if already cancelled."""
        if self._event.is_set():
            callback()
        else:
            self._callbacks.append(callback)

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise Cancelled()


async def run_cancellable(aw: Awaitable[T], token: CancelToken | None) -> T:
    """Await aw, aborting it with Cancelled as soon as token fires."""
    if token is None:
        return await aw
    token.raise_if_cancelled()
    task = asyncio.ensure_future(aw)
    waiter = asyncio.ensure_future(token.wait())
    try:
        await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        waiter.cancel()
    if task.done():
        return task.result()
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task
    raise Cancelled()
