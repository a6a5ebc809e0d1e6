"""Lifecycle promise broker — one-shot, leak-safe lifecycle futures.

Two tracks per query instance:

query-started
    Each time a new (non-retry, non-deduplicated) fetch starts, a fresh
    ``query_fulfilled`` future is armed and handed to
    ``on_query_started(params, query_fulfilled)``. The next ``success``
    resolves it with the instance's data signal; the next ``error`` rejects it
    with the stored error. Arming again while still pending cancels the old
    future.

cache-entry-added
    Once, at mount: ``on_cache_entry_added(params, cache_data_loaded,
    cache_data_removed)``. ``cache_data_loaded`` resolves on the first
    ``success``. On teardown ``cache_data_removed`` resolves and, if
    ``cache_data_loaded`` is still pending, it is rejected with
    :class:`CacheEntryRemovedError` instead of being left to dangle.

Every future sits in a PromiseSlot whose only resolving transition is
ARMED → SETTLED, so each future settles at most once.
"""

from __future__ import annotations

import asyncio
import enum
import inspect
from collections.abc import Callable
from typing import Any

import structlog

from refetch.engine.signal import Signal
from refetch.errors import CacheEntryRemovedError
from refetch.models.query import QueryStatus

logger = structlog.get_logger().bind(component="lifecycle")


class SlotState(str, enum.Enum):
    UNARMED = "unarmed"
    ARMED = "armed"
    SETTLED = "settled"


class PromiseSlot:
    """Holds at most one pending future."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._state = SlotState.UNARMED
        self._future: asyncio.Future | None = None

    @property
    def state(self) -> SlotState:
        return self._state

    @property
    def armed(self) -> bool:
        return self._state is SlotState.ARMED

    def arm(self) -> asyncio.Future:
        """Create a fresh pending future, cancelling a still-pending predecessor."""
        if self._future is not None and not self._future.done():
            self._future.cancel()
        self._future = asyncio.get_running_loop().create_future()
        self._state = SlotState.ARMED
        return self._future

    def resolve(self, value: Any) -> bool:
        future = self._take()
        if future is None:
            return False
        if not future.done():
            future.set_result(value)
        return True

    def reject(self, error: BaseException) -> bool:
        future = self._take()
        if future is None:
            return False
        if not future.done():
            future.set_exception(error)
        return True

    def cancel(self) -> bool:
        future = self._take()
        if future is None:
            return False
        return future.cancel()

    def _take(self) -> asyncio.Future | None:
        if self._state is not SlotState.ARMED:
            return None
        future, self._future = self._future, None
        self._state = SlotState.SETTLED
        return future

    def __repr__(self) -> str:
        return f"PromiseSlot({self.name!r}, {self._state.value})"


class LifecycleBroker:
    """Drives the two lifecycle tracks from the instance's signals."""

    def __init__(
        self,
        key: str,
        params: tuple[Any, ...],
        *,
        data: Signal[Any],
        error: Signal[BaseException | None],
        status: Signal[QueryStatus],
        fetch_started: Signal[bool],
        on_query_started: Callable[..., Any] | None = None,
        on_cache_entry_added: Callable[..., Any] | None = None,
    ) -> None:
        self.key = key
        self.params = params
        self._data = data
        self._error = error
        self._status = status
        self._fetch_started = fetch_started
        self._on_query_started = on_query_started
        self._on_cache_entry_added = on_cache_entry_added

        self.query_fulfilled = PromiseSlot("query_fulfilled")
        self.cache_data_loaded = PromiseSlot("cache_data_loaded")
        self.cache_data_removed = PromiseSlot("cache_data_removed")

        self._tasks: set[asyncio.Task] = set()
        self._unsubscribes = [
            fetch_started.subscribe(self._on_fetch_started),
            status.subscribe(self._on_status),
        ]
        self._torn_down = False

    def entry_added(self) -> None:
        """Fire the cache-entry-added track. Called once, at mount."""
        if self._on_cache_entry_added is None:
            return
        loaded = self.cache_data_loaded.arm()
        removed = self.cache_data_removed.arm()
        self._call(self._on_cache_entry_added, self.params, loaded, removed)

    def teardown(self) -> None:
        if self._torn_down:
            return
        self._torn_down = True
        for unsubscribe in self._unsubscribes:
            unsubscribe()
        self._unsubscribes.clear()

        if self.cache_data_loaded.armed:
            logger.debug("cache_data_loaded_rejected_on_removal", query_key=self.key)
            self.cache_data_loaded.reject(CacheEntryRemovedError())
        self.cache_data_removed.resolve(None)
        self.query_fulfilled.cancel()

    @property
    def pending_tasks(self) -> int:
        return len(self._tasks)

    # ── signal reactions ──────────────────────────────────────

    def _on_fetch_started(self, started: bool, was_started: bool) -> None:
        if not started or was_started:
            return
        if self._on_query_started is None:
            return
        fulfilled = self.query_fulfilled.arm()
        self._call(self._on_query_started, self.params, fulfilled)

    def _on_status(self, status: QueryStatus, previous: QueryStatus) -> None:
        if status is QueryStatus.SUCCESS:
            self.query_fulfilled.resolve(self._data)
            self.cache_data_loaded.resolve(self._data)
            self._fetch_started.set(False)
        elif status is QueryStatus.ERROR:
            error = self._error.get()
            if error is not None:
                self.query_fulfilled.reject(error)
                self._fetch_started.set(False)

    # ── hook invocation ───────────────────────────────────────

    def _call(self, hook: Callable[..., Any], *args: Any) -> None:
        result = hook(*args)
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._hook_done)

    def _hook_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            # Hook errors belong to the host, not the engine
            task.get_loop().call_exception_handler({
                "message": f"lifecycle hook for query {self.key!r} raised",
                "exception": exc,
                "task": task,
            })
