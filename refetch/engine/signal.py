"""Reactive container — signals, batched notification, effects.

The engine never talks to a UI framework. Each query publishes its state
through small observable cells (``Signal``) that any host can subscribe to.
All cells of one client share a ``ReactiveContainer`` so multi-signal updates
can be committed atomically:

    with container.batch():
        data.set(result)
        status.set(QueryStatus.SUCCESS)
    # subscribers run once, here, and see both values

Notification rules:
    - outside a batch, listeners run synchronously inside ``set()``
    - inside a batch, each changed signal notifies once when the outermost
      batch exits, with the value it had when the batch started as ``old``
    - a signal set back to its starting value within a batch does not notify
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from typing import Any, Generic, TypeVar

T = TypeVar("T")

Listener = Callable[[Any, Any], None]


class ReactiveContainer:
    """Owns the batch depth and the queue of deferred notifications."""

    def __init__(self) -> None:
        self._depth = 0
        self._pending: dict[Any, Callable[[], None]] = {}

    def signal(self, initial: T) -> Signal[T]:
        return Signal(self, initial)

    def mapped(self, mapping: Mapping[str, Signal[Any]]) -> MappedSignal:
        return MappedSignal(self, mapping)

    @property
    def batching(self) -> bool:
        return self._depth > 0

    @contextmanager
    def batch(self) -> Iterator[None]:
        """Defer notifications until the outermost batch exits."""
        self._depth += 1
        try:
            yield
        finally:
            self._depth -= 1
            if self._depth == 0:
                self._flush()

    def run_batched(self, fn: Callable[[], T]) -> T:
        """Call *fn* inside a batch and return its result."""
        with self.batch():
            return fn()

    def effect(
        self,
        fn: Callable[[], Callable[[], None] | None],
        deps: list[Signal[Any]],
        synchronous: bool = False,
    ) -> Callable[[], None]:
        """Run *fn* now and again whenever a dependency changes.

        *fn* may return a cleanup callable, invoked before the next run and on
        dispose. Synchronous effects run inline with the notification;
        otherwise reruns are coalesced onto the running event loop.
        Returns a dispose function.
        """
        return _Effect(self, fn, deps, synchronous).start()

    def _enqueue(self, key: Any, callback: Callable[[], None]) -> None:
        if self._depth == 0:
            callback()
        else:
            # First change wins: it captured the pre-batch value
            self._pending.setdefault(key, callback)

    def _flush(self) -> None:
        # Stay in batching mode so notifications raised while draining coalesce
        self._depth += 1
        try:
            while self._pending:
                key = _next_key(self._pending)
                callback = self._pending.pop(key)
                callback()
        finally:
            self._depth -= 1


def _next_key(pending: dict[Any, Callable[[], None]]) -> Any:
    # Views snapshot last, after signal and effect writes have settled
    for key in pending:
        if not (isinstance(key, tuple) and key[0] == "mapped"):
            return key
    return next(iter(pending))


class Signal(Generic[T]):
    """A mutable observable cell: ``get`` / ``set`` / ``update`` / ``subscribe``."""

    def __init__(self, container: ReactiveContainer, initial: T) -> None:
        self._container = container
        self._value = initial
        self._listeners: list[Listener] = []

    def get(self) -> T:
        return self._value

    def set(self, value: T) -> None:
        old = self._value
        if value is old:
            return
        self._value = value
        self._container._enqueue(id(self), lambda: self._deliver(old))

    def update(self, fn: Callable[[T], T]) -> None:
        """Set the value to ``fn(current)``."""
        self.set(fn(self._value))

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call ``listener(new, old)`` on every change. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def _deliver(self, old: T) -> None:
        new = self._value
        if new is old:
            return
        for listener in list(self._listeners):
            listener(new, old)

    def __repr__(self) -> str:
        return f"Signal({self._value!r})"


class MappedSignal:
    """Read-only view over several named signals.

    ``get()`` returns a dict snapshot; subscribers are notified once per batch
    no matter how many of the underlying signals changed.
    """

    def __init__(self, container: ReactiveContainer, mapping: Mapping[str, Signal[Any]]) -> None:
        self._container = container
        self._signals = dict(mapping)
        self._listeners: list[Callable[[dict[str, Any]], None]] = []
        self._unsubscribes = [
            sig.subscribe(self._on_child_change) for sig in self._signals.values()
        ]

    def get(self) -> dict[str, Any]:
        return {name: sig.get() for name, sig in self._signals.items()}

    def subscribe(self, listener: Callable[[dict[str, Any]], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def close(self) -> None:
        for unsubscribe in self._unsubscribes:
            unsubscribe()
        self._unsubscribes.clear()
        self._listeners.clear()

    def _on_child_change(self, new: Any, old: Any) -> None:
        self._container._enqueue(("mapped", id(self)), self._emit)

    def _emit(self) -> None:
        snapshot = self.get()
        for listener in list(self._listeners):
            listener(snapshot)


class _Effect:
    def __init__(
        self,
        container: ReactiveContainer,
        fn: Callable[[], Callable[[], None] | None],
        deps: list[Signal[Any]],
        synchronous: bool,
    ) -> None:
        self._container = container
        self._fn = fn
        self._deps = deps
        self._synchronous = synchronous
        self._cleanup: Callable[[], None] | None = None
        self._unsubscribes: list[Callable[[], None]] = []
        self._scheduled = False
        self._disposed = False

    def start(self) -> Callable[[], None]:
        self._unsubscribes = [dep.subscribe(self._on_change) for dep in self._deps]
        self._run()
        return self.dispose

    def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        for unsubscribe in self._unsubscribes:
            unsubscribe()
        self._unsubscribes.clear()
        if self._cleanup is not None:
            cleanup, self._cleanup = self._cleanup, None
            cleanup()

    def _on_change(self, new: Any, old: Any) -> None:
        if self._synchronous:
            self._container._enqueue(("effect", id(self)), self._run)
            return
        if self._scheduled:
            return
        self._scheduled = True
        asyncio.get_running_loop().call_soon(self._run_scheduled)

    def _run_scheduled(self) -> None:
        self._scheduled = False
        self._run()

    def _run(self) -> None:
        if self._disposed:
            return
        if self._cleanup is not None:
            cleanup, self._cleanup = self._cleanup, None
            cleanup()
        result = self._fn()
        if callable(result):
            self._cleanup = result
