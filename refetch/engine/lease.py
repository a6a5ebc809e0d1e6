"""Lease — reference counting with TTL-delayed disposal.

Query instances and cache buckets both live as long as someone holds them,
plus ``ttl`` milliseconds of grace after the last holder lets go:

    ttl is None  → never expires on its own
    ttl <= 0     → disposed as soon as the count reaches zero
    ttl > 0      → disposed ttl ms later unless re-acquired first
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable

import structlog

logger = structlog.get_logger().bind(component="lease")


class Lease:
    """Ref-counted lifetime that calls ``on_expire`` once when it lapses."""

    def __init__(
        self,
        name: str,
        ttl: int | None,
        on_expire: Callable[[], None],
    ) -> None:
        self.name = name
        self.ttl = ttl
        self._on_expire = on_expire
        self._count = 0
        self._timer: asyncio.TimerHandle | None = None
        self._expired = False

    @property
    def count(self) -> int:
        return self._count

    @property
    def expired(self) -> bool:
        return self._expired

    @property
    def pending_expiry(self) -> bool:
        return self._timer is not None

    def acquire(self) -> None:
        if self._expired:
            raise RuntimeError(f"lease {self.name!r} already expired")
        self._count += 1
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
            logger.debug("lease_expiry_cancelled", lease=self.name)

    def release(self) -> None:
        if self._count == 0 or self._expired:
            return
        self._count -= 1
        if self._count > 0:
            return
        if self.ttl is None:
            return
        if self.ttl <= 0:
            self.expire()
            return
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.ttl / 1000, self.expire)
        logger.debug("lease_expiry_scheduled", lease=self.name, ttl_ms=self.ttl)

    def expire(self) -> None:
        """Dispose now, regardless of holders."""
        if self._expired:
            return
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._expired = True
        self._count = 0
        self._on_expire()
