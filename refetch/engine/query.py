"""Query orchestrator — one live instance of a query for one set of params.

A Query ties the pieces together:

    QueryStateMachine   idle / fetching / success / error, published on ``status``
    Retry policy        decides whether and when a failed fetch runs again
    CacheBucket         cross-parameter results shared with every instance of the key
    LifecycleBroker     query-started / cache-entry-added futures
    RefetchScheduler    focus, reconnect, interval and mount triggers

State is published through signals of the client's ReactiveContainer
(``data``, ``error``, ``status``, ``updated_at``) and every multi-signal
update is committed in one batch, so subscribers never observe a torn state.

Concurrency: at most one fetch runs per instance. ``active_fetch`` is set
synchronously before the first await; any trigger that arrives while it is
set gets the same task back.
"""

from __future__ import annotations

import asyncio
import inspect
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog

from refetch.engine.abort import AbortController, AbortSignal
from refetch.engine.lease import Lease
from refetch.engine.lifecycle import LifecycleBroker
from refetch.engine.machine import MachineEvent, QueryStateMachine
from refetch.engine.retry import get_retry_delay, should_retry
from refetch.engine.scheduler import RefetchScheduler
from refetch.models.events import QueryEvent
from refetch.models.query import (
    CacheEntry,
    MergeContext,
    QueryDefinition,
    QueryOptions,
    QueryState,
    QueryStatus,
)
from refetch.tools.broadcast import InvalidateMessage, QueryUpdatedMessage
from refetch.tools.persistence import persist_signal
from refetch.utils import clock

if TYPE_CHECKING:
    from refetch.engine.client import QueryClient

logger = structlog.get_logger().bind(component="query")


@dataclass
class QueryControl:
    """Mutable per-instance bookkeeping that is never published."""

    abort: AbortController | None = None
    has_fetched_once: bool = False
    is_retry: bool = False
    retry_timer: asyncio.TimerHandle | None = None
    retry_waiter: asyncio.Future | None = None
    failure_count: int = 0
    active_fetch: asyncio.Task | None = None
    fetch_id: str = field(default_factory=lambda: str(uuid.uuid4()))


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


def _chain(source: asyncio.Future, target: asyncio.Future) -> None:
    """Settle *target* with *source*'s outcome once it completes."""

    def copy(done: asyncio.Future) -> None:
        if target.done():
            return
        if done.cancelled():
            target.set_result(None)
        elif done.exception() is not None:
            target.set_exception(done.exception())
        else:
            target.set_result(done.result())

    source.add_done_callback(copy)


def consume_background(future: asyncio.Future) -> None:
    """Mark a fire-and-forget fetch's exception as retrieved.

    The error is already stored on the query's error signal; awaiting the
    future elsewhere still raises it.
    """
    if not future.cancelled() and future.exception() is not None:
        logger.debug("background_fetch_failed", error=str(future.exception()))


class Query:
    """A live query instance.

    Created and reference counted by :class:`~refetch.engine.client.QueryClient`;
    torn down ``ttl`` ms after the last :meth:`release`.
    """

    def __init__(
        self,
        key: str,
        cache_key: str,
        definition: QueryDefinition,
        options: QueryOptions,
        client: QueryClient,
        tags: frozenset[str] = frozenset(),
    ) -> None:
        self.key = key
        self.cache_key = cache_key
        self.definition = definition
        self.options = options
        self.tags = tags
        self._client = client
        self._container = client.container
        self._log = logger.bind(query_key=key, cache_key=cache_key)

        container = client.container
        self.data = container.signal(options.resolve_initial_data())
        self.error = container.signal(None)
        self.status = container.signal(QueryStatus.IDLE)
        self.updated_at = container.signal(None)
        self.was_triggered = container.signal(options.suspense or not options.lazy)
        self.fetch_started = container.signal(False)
        self._view = container.mapped({
            "data": self.data,
            "error": self.error,
            "status": self.status,
            "last_updated": self.updated_at,
        })

        self._machine = QueryStateMachine()
        self._control = QueryControl()
        self._bucket = client.cache.acquire(key, options.ttl)
        self.lease = Lease(f"query:{cache_key}", options.ttl, self.destroy)
        self.lifecycle = LifecycleBroker(
            key,
            definition.params,
            data=self.data,
            error=self.error,
            status=self.status,
            fetch_started=self.fetch_started,
            on_query_started=options.on_query_started,
            on_cache_entry_added=options.on_cache_entry_added,
        )
        self.scheduler = RefetchScheduler(
            self,
            options,
            container=container,
            focus=client.focus,
            online=client.online,
        )
        self._unsubscribes: list[Callable[[], None]] = [
            container.effect(self._show_placeholder, [self.status], synchronous=True),
        ]
        self._initial_fetch: asyncio.Future | None = None
        self._mounted = False
        self._destroyed = False

    # ── projections ───────────────────────────────────────────

    @property
    def params(self) -> tuple[Any, ...]:
        return self.definition.params

    @property
    def state(self) -> QueryState:
        return QueryState.build(
            self.status.get(),
            self.data.get(),
            self.error.get(),
            self.updated_at.get(),
        )

    @property
    def is_enabled(self) -> bool:
        return bool(self.was_triggered.get() and self.options.enabled and self.definition.enabled)

    @property
    def is_fetching(self) -> bool:
        return self.status.get() is QueryStatus.FETCHING

    @property
    def has_fetched_once(self) -> bool:
        return self._control.has_fetched_once

    @property
    def last_updated(self) -> int | None:
        return self.updated_at.get()

    @property
    def failure_count(self) -> int:
        return self._control.failure_count

    @property
    def active_fetch(self) -> asyncio.Task | None:
        return self._control.active_fetch

    @property
    def retry_pending(self) -> bool:
        return self._control.retry_timer is not None

    @property
    def promise(self) -> asyncio.Future | None:
        """The initial fetch, exposed under ``suspense`` for the host to await."""
        return self._initial_fetch

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    def subscribe(self, listener: Callable[[QueryState], None]) -> Callable[[], None]:
        """Call ``listener(state)`` once per committed change."""
        return self._view.subscribe(lambda _snapshot: listener(self.state))

    # ── public operations ─────────────────────────────────────

    def fetch(self) -> asyncio.Future:
        """Trigger the query and return the in-flight (or newly started) fetch.

        On an instance that already settled this starts a fresh attempt and
        keeps the displayed data until it resolves.
        """
        self.was_triggered.set(True)
        control = self._control
        if control.active_fetch is not None:
            return control.active_fetch
        with self._container.batch():
            if not self._destroyed and self.status.get() in (QueryStatus.SUCCESS, QueryStatus.ERROR):
                self._send(MachineEvent.INVALIDATE)
            future = self._run()
        return future

    def refetch(self) -> asyncio.Future:
        """Re-activate (lazy queries included) and invalidate in one batch."""
        with self._container.batch():
            self.was_triggered.set(True)
            future = self._invalidate(rearm_lazy=False)
        return future

    def invalidate(self, broadcast: bool = True) -> asyncio.Future:
        """Drop the cached result and fetch again if the query is enabled.

        SWR queries keep showing their data while the refetch runs; others
        clear it. Lazy queries go back to waiting for an explicit fetch().
        """
        return self._invalidate(broadcast=broadcast)

    def cancel(self) -> None:
        """Abort the in-flight fetch's signal. State is left to the fetch to settle."""
        abort = self._control.abort
        if abort is None or abort.signal.aborted:
            return
        abort.abort()
        self._emit("cancel")
        self._trace("fetch_cancelled")

    def acquire(self) -> Query:
        self.lease.acquire()
        return self

    def release(self) -> None:
        """Drop one reference. Teardown follows ``ttl`` ms after the last one."""
        self.lease.release()

    # ── mount / teardown ──────────────────────────────────────

    def mount(self) -> None:
        if self._mounted:
            return
        self._mounted = True
        self._client.registry.register(self, self.tags)
        self.lifecycle.entry_added()
        self.scheduler.start()
        if self.options.persist:
            self._unsubscribes.append(
                persist_signal(self.data, self._client.storage, f"refetch:{self.cache_key}")
            )
        if self.is_enabled:
            future = self._run()
            future.add_done_callback(consume_background)
            if self.options.suspense:
                self._initial_fetch = future
        self._trace("mounted", enabled=self.is_enabled)

    def destroy(self) -> None:
        """Tear the instance down now. Safe to call more than once."""
        if self._destroyed:
            return
        self._destroyed = True
        self.lease.expire()

        self._clear_retry_timer()
        self.scheduler.stop()
        if self._control.abort is not None:
            self._control.abort.abort("Query torn down")
        self.lifecycle.teardown()
        self._client.registry.unregister(self)
        self._client.cache.release(self._bucket)
        for unsubscribe in self._unsubscribes:
            unsubscribe()
        self._unsubscribes.clear()
        self._view.close()
        self._emit("teardown")
        self._client._forget(self)
        self._log.debug("query_torn_down")

    # ── fetch execution ───────────────────────────────────────

    def _run(self, is_retry: bool = False) -> asyncio.Future:
        loop = asyncio.get_running_loop()
        control = self._control
        if not is_retry:
            self._clear_retry_timer()

        if self._destroyed or not self.is_enabled:
            future = loop.create_future()
            future.set_result(None)
            return future

        with self._container.batch():
            self.error.set(None)
            if not is_retry:
                self._send(MachineEvent.REQUEST)
        control.has_fetched_once = True

        if control.active_fetch is not None:
            self._trace("fetch_deduplicated")
            return control.active_fetch

        if not is_retry:
            control.failure_count = 0
            control.fetch_id = str(uuid.uuid4())
            self.fetch_started.set(True)

        control.abort = AbortController()
        task = loop.create_task(self._execute(control.abort.signal, is_retry))
        control.active_fetch = task
        return task

    async def _execute(self, signal: AbortSignal, is_retry: bool) -> Any:
        control = self._control
        task = asyncio.current_task()
        started = time.monotonic()
        self._emit("fetch_start", payload={"retry": is_retry, "failure_count": control.failure_count})
        self._trace("fetch_started", retry=is_retry)
        try:
            try:
                if self.definition.accepts_signal:
                    result = await self.definition.query_fn(signal=signal)
                else:
                    result = await self.definition.query_fn()
            except Exception as exc:
                return await self._on_failure(exc, started)
            return await self._on_success(result, started)
        finally:
            if control.active_fetch is task:
                control.active_fetch = None

    async def _on_success(self, result: Any, started: float) -> Any:
        control = self._control
        options = self.options
        params = self.definition.params

        control.failure_count = 0
        self._clear_retry_timer()
        timestamp = clock.now_ms()

        data = result
        if options.on_success is not None:
            replaced = await _maybe_await(options.on_success(result, params))
            if replaced is not None:
                data = replaced

        if options.merge is not None:
            previous = self._bucket.get_cache(self.cache_key)
            data = options.merge(previous, data, MergeContext(params=params, timestamp=timestamp))
        self._bucket.set_cache(
            self.cache_key,
            CacheEntry(data=data, params=params, timestamp=timestamp),
        )

        with self._container.batch():
            self.data.set(data)
            self.updated_at.set(timestamp)
            self._send(MachineEvent.FETCH_SUCCESSFUL)

        duration = round((time.monotonic() - started) * 1000, 2)
        self._emit("fetch_success", duration_ms=duration)
        self._trace("fetch_succeeded", duration_ms=duration)
        if options.broadcast and self._client.channel is not None:
            self._client.channel.post_message(QueryUpdatedMessage(query_key=self.cache_key, data=data))

        if options.on_settled is not None:
            await _maybe_await(options.on_settled(data, None, params))
        return data

    async def _on_failure(self, exc: Exception, started: float) -> Any:
        control = self._control
        options = self.options
        params = self.definition.params

        if self._destroyed:
            # Torn down mid-flight: settle without retrying or running callbacks
            with self._container.batch():
                self.error.set(exc)
                self._send(MachineEvent.FETCH_FAILED)
            self._trace("fetch_failed_after_teardown", error=str(exc))
            return None

        control.failure_count += 1
        retries_spent = control.failure_count - 1
        if should_retry(retries_spent, exc, options.retry, options.max_retries):
            return await self._park_retry(exc, retries_spent)

        with self._container.batch():
            self.error.set(exc)
            self._send(MachineEvent.FETCH_FAILED)

        duration = round((time.monotonic() - started) * 1000, 2)
        self._emit("fetch_error", error=str(exc), duration_ms=duration,
                   payload={"failure_count": control.failure_count})
        self._log.warning("query_failed", error=str(exc), failure_count=control.failure_count)

        error: BaseException = exc
        if options.on_error is not None:
            replaced = await _maybe_await(options.on_error(exc, params))
            if isinstance(replaced, BaseException):
                error = replaced
                self.error.set(error)
        if options.on_settled is not None:
            await _maybe_await(options.on_settled(None, error, params))

        if options.should_throw:
            raise error
        return None

    async def _park_retry(self, exc: Exception, retries_spent: int) -> Any:
        """Wait out the backoff, then hand over to the continuation fetch."""
        control = self._control
        options = self.options
        loop = asyncio.get_running_loop()

        delay = get_retry_delay(retries_spent, options.retry_delay, options.delay_unit, options.max_retry_delay)
        self._send(MachineEvent.RETRY)
        waiter = loop.create_future()
        control.retry_waiter = waiter
        control.retry_timer = loop.call_later(delay / 1000, self._fire_retry)

        self._emit("retry_scheduled", error=str(exc),
                   payload={"failure_count": control.failure_count, "delay_ms": delay})
        self._log.info("retry_scheduled", failure_count=control.failure_count, delay_ms=delay, error=str(exc))
        return await waiter

    def _fire_retry(self) -> None:
        control = self._control
        waiter = control.retry_waiter
        control.retry_timer = None
        control.retry_waiter = None
        control.active_fetch = None
        if self._destroyed:
            if waiter is not None and not waiter.done():
                waiter.set_result(None)
            return

        control.is_retry = True
        try:
            future = self._invalidate(from_retry=True)
        finally:
            control.is_retry = False
        if waiter is not None and not waiter.done():
            _chain(future, waiter)

    def _clear_retry_timer(self) -> None:
        control = self._control
        if control.retry_timer is not None:
            control.retry_timer.cancel()
            control.retry_timer = None
        waiter, control.retry_waiter = control.retry_waiter, None
        if waiter is not None:
            # The parked task resolves to None and no longer counts as in flight
            control.active_fetch = None
            if not waiter.done():
                waiter.set_result(None)

    def _invalidate(
        self,
        *,
        from_retry: bool = False,
        rearm_lazy: bool = True,
        broadcast: bool = True,
    ) -> asyncio.Future:
        with self._container.batch():
            self._send(MachineEvent.INVALIDATE)
            if not from_retry:
                self._clear_retry_timer()
                if not self.options.swr:
                    self.data.set(None)
                self._bucket.set_cache(self.cache_key, None)
                if rearm_lazy and self.options.lazy:
                    self.was_triggered.set(False)

        if not from_retry:
            self._emit("invalidate")
            self._trace("invalidated", swr=self.options.swr)
            channel = self._client.channel
            if broadcast and self.options.broadcast and channel is not None:
                channel.post_message(InvalidateMessage(query_key=self.cache_key))
        return self._run(is_retry=from_retry)

    def _send(self, event: MachineEvent) -> None:
        if self._machine.send(event):
            self.status.set(self._machine.state)

    def _show_placeholder(self) -> None:
        if self.status.get() is not QueryStatus.FETCHING:
            return
        if not (self.options.swr and self.options.merge is not None):
            return
        previous = self._bucket.get_cache(self.cache_key)
        if isinstance(previous, CacheEntry):
            self.data.set(previous.data)

    # ── observability ─────────────────────────────────────────

    def _emit(self, event_type: str, **fields: Any) -> None:
        self._client.events.emit(QueryEvent(
            fetch_id=self._control.fetch_id,
            event_type=event_type,
            query_key=self.key,
            cache_key=self.cache_key,
            **fields,
        ))

    def _trace(self, event: str, **kw: Any) -> None:
        if self.options.debug:
            self._log.debug(event, status=self.status.get().value, **kw)

    def __repr__(self) -> str:
        return f"Query({self.cache_key!r}, status={self.status.get().value!r})"
