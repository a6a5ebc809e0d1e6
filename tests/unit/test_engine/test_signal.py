"""Unit tests for refetch.engine.signal — signals, batching, effects."""

from __future__ import annotations

import asyncio

import pytest

from refetch.engine.signal import ReactiveContainer


@pytest.fixture
def container():
    return ReactiveContainer()


class TestSignal:

    def test_set_notifies_with_new_and_old(self, container):
        sig = container.signal(1)
        seen = []
        sig.subscribe(lambda new, old: seen.append((new, old)))
        sig.set(2)
        assert sig.get() == 2
        assert seen == [(2, 1)]

    def test_same_value_does_not_notify(self, container):
        value = object()
        sig = container.signal(value)
        seen = []
        sig.subscribe(lambda new, old: seen.append(new))
        sig.set(value)
        assert seen == []

    def test_update_applies_function(self, container):
        sig = container.signal([1])
        sig.update(lambda items: [*items, 2])
        assert sig.get() == [1, 2]

    def test_unsubscribe(self, container):
        sig = container.signal(0)
        seen = []
        unsubscribe = sig.subscribe(lambda new, old: seen.append(new))
        unsubscribe()
        sig.set(1)
        assert seen == []
        assert sig.listener_count == 0


class TestBatch:

    def test_notifications_deferred_until_exit(self, container):
        a, b = container.signal("a0"), container.signal("b0")
        seen = []
        a.subscribe(lambda new, old: seen.append(("a", new, b.get())))
        with container.batch():
            a.set("a1")
            b.set("b1")
            assert seen == []
        # The listener sees both writes
        assert seen == [("a", "a1", "b1")]

    def test_one_notification_per_signal_with_pre_batch_old(self, container):
        sig = container.signal("start")
        seen = []
        sig.subscribe(lambda new, old: seen.append((new, old)))
        with container.batch():
            sig.set("x")
            sig.set("y")
        assert seen == [("y", "start")]

    def test_set_back_to_start_value_is_silent(self, container):
        start = object()
        sig = container.signal(start)
        seen = []
        sig.subscribe(lambda new, old: seen.append(new))
        with container.batch():
            sig.set(object())
            sig.set(start)
        assert seen == []

    def test_nested_batches_flush_once_at_outermost(self, container):
        sig = container.signal(0)
        seen = []
        sig.subscribe(lambda new, old: seen.append(new))
        with container.batch():
            with container.batch():
                sig.set(1)
            assert seen == []
            assert container.batching
        assert seen == [1]
        assert not container.batching

    def test_run_batched_returns_result(self, container):
        sig = container.signal(0)
        assert container.run_batched(lambda: sig.set(5) or "done") == "done"
        assert sig.get() == 5


class TestMappedSignal:

    def test_notifies_once_per_batch(self, container):
        a, b = container.signal(1), container.signal(2)
        view = container.mapped({"a": a, "b": b})
        snapshots = []
        view.subscribe(snapshots.append)
        with container.batch():
            a.set(10)
            b.set(20)
        assert snapshots == [{"a": 10, "b": 20}]
        assert view.get() == {"a": 10, "b": 20}

    def test_listener_writes_coalesce_into_one_view_update(self, container):
        source = container.signal(0)
        doubled, tripled = container.signal(0), container.signal(0)

        def fan_out(new, old):
            doubled.set(new * 2)
            tripled.set(new * 3)

        source.subscribe(fan_out)
        view = container.mapped({"doubled": doubled, "tripled": tripled})
        snapshots = []
        view.subscribe(snapshots.append)
        with container.batch():
            source.set(1)
        assert snapshots == [{"doubled": 2, "tripled": 3}]
        assert not container.batching

    def test_view_snapshot_includes_synchronous_effect_writes(self, container):
        status, data = container.signal("idle"), container.signal(None)

        def placeholder():
            if status.get() == "fetching":
                data.set("previous")

        container.effect(placeholder, [status], synchronous=True)
        view = container.mapped({"status": status, "data": data})
        snapshots = []
        view.subscribe(snapshots.append)
        with container.batch():
            status.set("fetching")
        assert snapshots == [{"status": "fetching", "data": "previous"}]

    def test_close_detaches(self, container):
        a = container.signal(1)
        view = container.mapped({"a": a})
        view.close()
        assert a.listener_count == 0


class TestEffect:

    def test_synchronous_effect_runs_now_and_on_change(self, container):
        sig = container.signal(1)
        runs = []
        container.effect(lambda: runs.append(sig.get()), [sig], synchronous=True)
        sig.set(2)
        assert runs == [1, 2]

    def test_cleanup_runs_before_rerun_and_on_dispose(self, container):
        sig = container.signal(1)
        log = []

        def fn():
            value = sig.get()
            log.append(f"run {value}")
            return lambda: log.append(f"cleanup {value}")

        dispose = container.effect(fn, [sig], synchronous=True)
        sig.set(2)
        dispose()
        sig.set(3)
        assert log == ["run 1", "cleanup 1", "run 2", "cleanup 2"]

    @pytest.mark.asyncio
    async def test_async_effect_coalesces_changes(self, container):
        sig = container.signal(0)
        runs = []
        container.effect(lambda: runs.append(sig.get()), [sig])
        sig.set(1)
        sig.set(2)
        assert runs == [0]
        await asyncio.sleep(0)
        assert runs == [0, 2]
