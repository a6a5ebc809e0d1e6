"""Unit tests for refetch.engine.registry — tag-based invalidation."""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

import pytest

from refetch.engine.query import consume_background
from refetch.engine.registry import TagRegistry
from refetch.engine.signal import ReactiveContainer
from refetch.models.query import query_executor


class Target:
    def __init__(self, name: str) -> None:
        self.name = name
        self.invalidations = 0

    def invalidate(self) -> None:
        self.invalidations += 1


class TestTagRegistry:

    def test_invalidate_matches_any_tag(self):
        registry = TagRegistry()
        profile, feed, other = Target("profile"), Target("feed"), Target("other")
        registry.register(profile, {"authenticated", "profile"})
        registry.register(feed, {"authenticated"})
        registry.register(other, {"public"})

        assert registry.invalidate({"authenticated"}) == 2
        assert (profile.invalidations, feed.invalidations, other.invalidations) == (1, 1, 0)

    def test_single_string_tag(self):
        registry = TagRegistry()
        target = Target("t")
        registry.register(target, {"todos"})
        assert registry.find("todos") == [target]

    def test_target_invalidated_once_even_with_several_matching_tags(self):
        registry = TagRegistry()
        target = Target("t")
        registry.register(target, {"a", "b"})
        registry.invalidate(["a", "b"])
        assert target.invalidations == 1

    def test_unregister_empties_registry(self):
        registry = TagRegistry()
        targets = [Target(str(i)) for i in range(3)]
        for target in targets:
            registry.register(target, {"shared", target.name})
        assert registry.size == 3
        for target in targets:
            registry.unregister(target)
        assert registry.size == 0
        assert registry.tag_count == 0
        assert registry.find("shared") == []

    def test_reregister_replaces_tags(self):
        registry = TagRegistry()
        target = Target("t")
        registry.register(target, {"old"})
        registry.register(target, {"new"})
        assert registry.find("old") == []
        assert registry.tags_for(target) == frozenset({"new"})
        assert len(registry) == 1

    def test_invalidate_inside_batch(self):
        container = ReactiveContainer()
        sig = container.signal(0)
        seen = []
        sig.subscribe(lambda new, old: seen.append(new))

        class SignalTarget:
            def invalidate(self):
                sig.update(lambda n: n + 1)

        registry = TagRegistry()
        registry.register(SignalTarget(), {"x"})
        registry.register(SignalTarget(), {"x"})
        registry.invalidate("x", container)
        # Both updates committed together
        assert seen == [2]

    def test_returned_futures_are_consumed(self):
        future = MagicMock(spec=asyncio.Future)

        class FutureTarget:
            def invalidate(self):
                return future

        registry = TagRegistry()
        registry.register(FutureTarget(), {"x"})
        registry.invalidate("x")
        future.add_done_callback.assert_called_once_with(consume_background)

    @pytest.mark.asyncio
    async def test_failed_refetch_error_is_retrieved(self, client, counting_fetcher):
        fetcher = counting_fetcher(fail_times=2)
        query = client.query("strict", lambda: query_executor(fetcher), throw_on_error=True, tags=["t"])()
        with pytest.raises(RuntimeError):
            await query.fetch()

        assert client.invalidate_tags("t") == 1
        refetch = query.active_fetch
        await asyncio.wait([refetch])
        assert isinstance(refetch.exception(), RuntimeError)
        assert fetcher.calls == 2
