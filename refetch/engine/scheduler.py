"""Refetch scheduler — automatic refetch on focus, reconnect, interval and mount.

All triggers funnel into :meth:`RefetchScheduler.attempt_refetch`:

    1. skip if the query is disabled
    2. skip if the query is lazy and has never fetched
    3. stale = last_updated is set and now - last_updated > stale_time
    4. refetch only if stale and not already fetching

Interval ticks bypass the staleness check (the interval already bounds how
often they fire) but keep the other gates, and are skipped while the host is
unfocused unless ``refetch_interval_in_background`` is set.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any, Protocol

import structlog

from refetch.engine.environment import FocusManager, OnlineManager
from refetch.engine.signal import ReactiveContainer
from refetch.models.query import QueryOptions
from refetch.utils import clock

logger = structlog.get_logger().bind(component="scheduler")


class RefetchTarget(Protocol):
    """What the scheduler needs to know about (and do to) a query."""

    key: str

    @property
    def is_enabled(self) -> bool: ...

    @property
    def has_fetched_once(self) -> bool: ...

    @property
    def is_fetching(self) -> bool: ...

    @property
    def last_updated(self) -> int | None: ...

    def refetch(self) -> asyncio.Future: ...


class RefetchScheduler:
    """Per-instance wiring of the automatic refetch triggers."""

    def __init__(
        self,
        target: RefetchTarget,
        options: QueryOptions,
        *,
        container: ReactiveContainer,
        focus: FocusManager,
        online: OnlineManager,
    ) -> None:
        self.target = target
        self.options = options
        self._container = container
        self._focus = focus
        self._online = online
        self._unsubscribes: list[Callable[[], None]] = []
        self._interval_timer: asyncio.TimerHandle | None = None
        self._running = False
        self._log = logger.bind(query_key=target.key)

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        if self.options.refetch_on_focus:
            self._unsubscribes.append(self._focus.on_focus(self.attempt_refetch))
        if self.options.refetch_on_reconnect:
            self._unsubscribes.append(self._online.subscribe(self._on_online_change))
        if self.options.interval_ms is not None:
            self._schedule_tick()
            self._trace("interval_armed", interval_ms=self.options.interval_ms)

    def stop(self) -> None:
        self._running = False
        for unsubscribe in self._unsubscribes:
            unsubscribe()
        self._unsubscribes.clear()
        if self._interval_timer is not None:
            self._interval_timer.cancel()
            self._interval_timer = None

    def attempt_refetch(self, reason: str) -> bool:
        """Refetch if enabled, not lazy-unfetched, stale and idle. Returns True if triggered."""
        target = self.target
        if not target.is_enabled:
            self._trace("refetch_skipped", reason=reason, why="disabled")
            return False
        if self.options.lazy and not target.has_fetched_once:
            self._trace("refetch_skipped", reason=reason, why="lazy_never_fetched")
            return False

        last_updated = target.last_updated
        elapsed = clock.elapsed_ms(last_updated)
        is_stale = elapsed is not None and elapsed > self.options.stale_time
        if is_stale and not target.is_fetching:
            self._trigger(reason)
            return True

        self._trace("refetch_skipped", reason=reason, stale=is_stale, fetching=target.is_fetching)
        return False

    # ── triggers ──────────────────────────────────────────────

    def _on_online_change(self, online: bool, was_online: bool) -> None:
        if online and not was_online:
            self.attempt_refetch("reconnect")

    def _schedule_tick(self) -> None:
        interval = self.options.interval_ms
        if interval is None or not self._running:
            return
        loop = asyncio.get_running_loop()
        self._interval_timer = loop.call_later(interval / 1000, self._tick)

    def _tick(self) -> None:
        self._interval_timer = None
        self._schedule_tick()
        target = self.target

        if not self.options.refetch_interval_in_background and not self._focus.is_focused:
            self._trace("interval_skipped", why="background")
            return
        if self.options.lazy and not target.has_fetched_once:
            self._trace("interval_skipped", why="lazy_never_fetched")
            return
        if target.is_enabled and not target.is_fetching:
            self._trigger("interval")
        else:
            self._trace("interval_skipped", why="disabled_or_fetching")

    def _trigger(self, reason: str) -> None:
        self._trace("refetch_triggered", reason=reason)
        with self._container.batch():
            future = self.target.refetch()
        future.add_done_callback(self._consume)

    def _consume(self, future: asyncio.Future) -> None:
        # The error already lives on the query's error signal
        if not future.cancelled() and future.exception() is not None:
            self._log.debug("background_refetch_failed", error=str(future.exception()))

    def _trace(self, event: str, **kw: Any) -> None:
        if self.options.debug:
            self._log.debug(event, **kw)
