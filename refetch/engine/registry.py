"""Tag-based invalidation registry.

Live query instances register their tags on creation and unregister on
teardown, so the registry only ever holds what is alive:

    registry.invalidate({"authenticated"})   # e.g. on logout

Every instance is also registered under its base key and its cache key, which
lets callers invalidate "all pages of todos" or "exactly todos::[2]" the same
way they invalidate a tag.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from typing import Any, Protocol

import structlog

from refetch.engine.query import consume_background
from refetch.engine.signal import ReactiveContainer

logger = structlog.get_logger().bind(component="registry")


class Invalidatable(Protocol):
    def invalidate(self) -> Any: ...


class TagRegistry:
    """Maps tags to the live instances that carry them."""

    def __init__(self) -> None:
        self._targets: dict[int, Invalidatable] = {}
        self._tags: dict[int, frozenset[str]] = {}
        self._by_tag: dict[str, set[int]] = {}

    def register(self, target: Invalidatable, tags: Iterable[str]) -> None:
        ident = id(target)
        if ident in self._targets:
            self.unregister(target)
        frozen = frozenset(tags)
        self._targets[ident] = target
        self._tags[ident] = frozen
        for tag in frozen:
            self._by_tag.setdefault(tag, set()).add(ident)

    def unregister(self, target: Invalidatable) -> None:
        ident = id(target)
        if self._targets.pop(ident, None) is None:
            return
        for tag in self._tags.pop(ident, frozenset()):
            holders = self._by_tag.get(tag)
            if holders is None:
                continue
            holders.discard(ident)
            if not holders:
                del self._by_tag[tag]

    def find(self, tags: str | Iterable[str]) -> list[Invalidatable]:
        """Live targets carrying any of *tags*, in registration order."""
        wanted = {tags} if isinstance(tags, str) else set(tags)
        idents: set[int] = set()
        for tag in wanted:
            idents |= self._by_tag.get(tag, set())
        return [t for ident, t in self._targets.items() if ident in idents]

    def tags_for(self, target: Invalidatable) -> frozenset[str]:
        return self._tags.get(id(target), frozenset())

    def invalidate(
        self,
        tags: str | Iterable[str],
        container: ReactiveContainer | None = None,
    ) -> int:
        """Invalidate every live target carrying any of *tags*. Returns the count."""
        matches = self.find(tags)
        logger.info("invalidate_tags", tags=sorted({tags} if isinstance(tags, str) else set(tags)), matches=len(matches))
        if container is None:
            for target in matches:
                _invalidate(target)
        else:
            with container.batch():
                for target in matches:
                    _invalidate(target)
        return len(matches)

    @property
    def size(self) -> int:
        return len(self._targets)

    @property
    def tag_count(self) -> int:
        return len(self._by_tag)

    def __len__(self) -> int:
        return len(self._targets)


def _invalidate(target: Invalidatable) -> None:
    result = target.invalidate()
    if isinstance(result, asyncio.Future):
        result.add_done_callback(consume_background)
