"""Centralised wall-clock helpers — single source of truth for 'now'.

Staleness checks, cache-entry timestamps and ``last_updated`` all read the
time from here, so tests can freeze or advance it by patching one function.

Usage:
    from refetch.utils import clock
    clock.now_ms()
"""

from __future__ import annotations

import time


def now_ms() -> int:
    """Milliseconds since the epoch (the unit used by every query timestamp)."""
    return int(time.time() * 1000)


def elapsed_ms(since: int | None) -> int | None:
    """Milliseconds elapsed since *since*, or None if *since* is None."""
    if since is None:
        return None
    return now_ms() - since
