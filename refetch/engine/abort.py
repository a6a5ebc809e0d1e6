"""Cooperative cancellation for query functions.

Each fetch gets a fresh AbortController. ``Query.cancel()`` aborts it; query
functions that declare a ``signal`` parameter observe the AbortSignal and
give up by raising :class:`QueryAbortedError`, which is then routed through
normal error handling. Nothing is forcibly cancelled.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from typing import TypeVar

from refetch.errors import QueryAbortedError

T = TypeVar("T")


class AbortSignal:
    """Read side: ``aborted``, ``reason``, ``wait()``, ``raise_if_aborted()``."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None
        self._callbacks: list[Callable[[str], None]] = []

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    async def wait(self) -> str:
        await self._event.wait()
        return self._reason or "aborted"

    def raise_if_aborted(self) -> None:
        if self.aborted:
            raise QueryAbortedError(self._reason or "Query aborted")

    def add_listener(self, callback: Callable[[str], None]) -> None:
        if self.aborted:
            callback(self._reason or "aborted")
            return
        self._callbacks.append(callback)

    def _abort(self, reason: str) -> None:
        if self.aborted:
            return
        self._reason = reason
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback(reason)


class AbortController:
    """Write side: owns one AbortSignal."""

    def __init__(self) -> None:
        self.signal = AbortSignal()

    def abort(self, reason: str = "Query aborted") -> None:
        self.signal._abort(reason)


async def abortable(awaitable: Awaitable[T], signal: AbortSignal | None) -> T:
    """Await *awaitable*, giving up with QueryAbortedError if *signal* fires first."""
    if signal is None:
        return await awaitable
    if signal.aborted:
        if inspect.iscoroutine(awaitable):
            awaitable.close()
        signal.raise_if_aborted()

    work = asyncio.ensure_future(awaitable)
    aborted = asyncio.ensure_future(signal.wait())
    try:
        done, _ = await asyncio.wait({work, aborted}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        work.cancel()
        raise
    finally:
        aborted.cancel()
    if work in done:
        return work.result()
    work.cancel()
    raise QueryAbortedError(signal.reason or "Query aborted")
