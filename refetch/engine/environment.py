"""Host environment observables — focus/visibility and online status.

The engine has no window or navigator. Whatever hosts it (a desktop shell, a
TUI, a test) reports focus and connectivity changes here, and the refetch
scheduler of every query subscribes.
"""

from __future__ import annotations

from collections.abc import Callable

import structlog

from refetch.engine.signal import ReactiveContainer, Signal

logger = structlog.get_logger().bind(component="environment")


class OnlineManager:
    """Shared online/offline observable. Reconnect = False → True."""

    def __init__(self, container: ReactiveContainer, online: bool = True) -> None:
        self.online: Signal[bool] = container.signal(online)

    @property
    def is_online(self) -> bool:
        return self.online.get()

    def set_online(self, online: bool) -> None:
        if online != self.online.get():
            logger.info("app_online" if online else "app_offline")
        self.online.set(bool(online))

    def subscribe(self, listener: Callable[[bool, bool], None]) -> Callable[[], None]:
        return self.online.subscribe(listener)


class FocusManager:
    """Window focus + tab visibility.

    ``focused`` tracks whether the host currently has focus (used to skip
    interval refetches in the background). Focus and visibility events are
    broadcast to ``on_focus`` listeners with the event name as the reason.
    """

    def __init__(self, container: ReactiveContainer, focused: bool = True) -> None:
        self.focused: Signal[bool] = container.signal(focused)
        self._listeners: list[Callable[[str], None]] = []

    @property
    def is_focused(self) -> bool:
        return self.focused.get()

    def focus(self) -> None:
        """The host window gained focus."""
        self.focused.set(True)
        self._emit("focus")

    def blur(self) -> None:
        """The host window lost focus (no refetch event)."""
        self.focused.set(False)

    def visibility_changed(self, visible: bool) -> None:
        """The host tab became visible or hidden."""
        self.focused.set(bool(visible))
        self._emit("visibilitychange")

    def on_focus(self, listener: Callable[[str], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def _emit(self, reason: str) -> None:
        for listener in list(self._listeners):
            listener(reason)
