"""Cooperative cancellation tokens.

A CancellationSource owns the signal; consumers receive its read-only
CancellationToken. Sources can be linked to a parent token so cancelling
a top-level analysis fans out to every subagent started under it.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from revu.errors import CancellationError

logger = logging.getLogger(__name__)

T = TypeVar("T")

Disposer = Callable[[], None]


class CancellationToken:
    """Read-only view of a cancellation signal."""

    def __init__(self, source: CancellationSource) -> None:
        self._source = source

    @property
    def is_cancelled(self) -> bool:
        return self._source.is_cancelled

    @property
    def timed_out(self) -> bool:
        return self._source.timed_out

    def raise_if_cancelled(self) -> None:
        if self._source.is_cancelled:
            raise CancellationError(timed_out=self._source.timed_out)

    def on_cancelled(self, callback: Callable[[], None]) -> Disposer:
        """Register callback; runs immediately if already cancelled."""
        return self._source._add_callback(callback)

    async def wait(self) -> None:
        await self._source._event.wait()

    async def race(self, awaitable: Awaitable[T]) -> T:
        """Await awaitable, raising CancellationError if the token fires first.

        The losing side is cancelled so no work outlives the token.
        """
        self.raise_if_cancelled()
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self.wait())
        try:
            done, _pending = await asyncio.wait(
                {work, waiter}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            waiter.cancel()
        if work in done:
            return work.result()
        work.cancel()
        raise CancellationError(timed_out=self._source.timed_out)


class CancellationSource:
    """Owner of a cancellation signal."""

    def __init__(self, parent: CancellationToken | None = None) -> None:
        self._event = asyncio.Event()
        self._callbacks: list[Callable[[], None]] = []
        self._timed_out = False
        self._timer: asyncio.TimerHandle | None = None
        self._unlink: Disposer | None = None
        self.token = CancellationToken(self)
        if parent is not None:
            self._unlink = parent.on_cancelled(self.cancel)

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def timed_out(self) -> bool:
        return self._timed_out

    def cancel(self) -> None:
        if self._event.is_set():
            return
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Cancellation callback failed")

    def cancel_after(self, seconds: float) -> None:
        """Cancel with timed_out=True unless disposed first."""
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(seconds, self._on_timeout)

    def _on_timeout(self) -> None:
        if not self.is_cancelled:
            self._timed_out = True
            self.cancel()

    def dispose(self) -> None:
        """Stop the timer and detach from the parent token."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._unlink is not None:
            self._unlink()
            self._unlink = None
        self._callbacks.clear()

    def _add_callback(self, callback: Callable[[], None]) -> Disposer:
        if self.is_cancelled:
            callback()
            return lambda: None
        self._callbacks.append(callback)

        def _remove() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return _remove


def none_token() -> CancellationToken:
    """A token that never fires."""
    return CancellationSource().token
