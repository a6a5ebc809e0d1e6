"""Unit tests for refetch.engine.cache_store and refetch.engine.lease.

Tests cover:
  - CacheBucket get/set semantics (entry / None / MISSING)
  - Bucket sharing per base key
  - TTL-delayed disposal and cancellation by re-acquisition
"""

from __future__ import annotations

import asyncio

import pytest
from pydantic import ValidationError

from refetch.engine.cache_store import QueryCacheStore
from refetch.engine.lease import Lease
from refetch.models.query import MISSING, CacheEntry


class TestCacheBucket:

    def test_never_written_key_is_missing(self):
        bucket = QueryCacheStore().get("todos")
        assert bucket.get_cache("todos::[1]") is MISSING
        assert not bucket.get_cache("todos::[1]")

    def test_invalidated_key_is_none(self):
        bucket = QueryCacheStore().get("todos")
        bucket.set_cache("todos::[1]", None)
        assert bucket.get_cache("todos::[1]") is None

    def test_last_writer_wins(self):
        bucket = QueryCacheStore().get("todos")
        bucket.set_cache("k", CacheEntry(data=[1], params=(1,), timestamp=1))
        bucket.set_cache("k", CacheEntry(data=[2], params=(2,), timestamp=2))
        entry = bucket.get_cache("k")
        assert entry.data == [2]
        assert entry.params == (2,)
        assert bucket.keys() == ["k"]

    def test_entries_are_immutable(self):
        entry = CacheEntry(data=[1], params=(), timestamp=1)
        with pytest.raises(ValidationError):
            entry.data = [2]


class TestQueryCacheStore:

    def test_one_bucket_per_base_key(self):
        store = QueryCacheStore()
        assert store.get("todos") is store.get("todos")
        assert store.get("todos") is not store.get("users")
        assert sorted(store.bucket_ids()) == ["todos", "users"]

    def test_peek_does_not_create(self):
        store = QueryCacheStore()
        assert store.peek("todos") is None
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_bucket_dropped_after_ttl(self):
        store = QueryCacheStore()
        bucket = store.acquire("todos", ttl=10)
        store.release(bucket)
        assert store.peek("todos") is bucket
        await asyncio.sleep(0.05)
        assert store.peek("todos") is None

    @pytest.mark.asyncio
    async def test_reacquire_cancels_removal(self):
        store = QueryCacheStore()
        bucket = store.acquire("todos", ttl=20)
        store.release(bucket)
        assert store.acquire("todos") is bucket
        await asyncio.sleep(0.05)
        assert store.peek("todos") is bucket

    def test_zero_ttl_drops_immediately(self):
        store = QueryCacheStore()
        bucket = store.acquire("todos", ttl=0)
        store.release(bucket)
        assert store.peek("todos") is None

    def test_clear(self):
        store = QueryCacheStore()
        store.acquire("a", ttl=None)
        store.acquire("b", ttl=None)
        store.clear()
        assert len(store) == 0


class TestLease:

    def test_none_ttl_never_expires(self):
        expired = []
        lease = Lease("x", None, lambda: expired.append(True))
        lease.acquire()
        lease.release()
        assert expired == []
        assert not lease.expired

    def test_holders_keep_it_alive(self):
        expired = []
        lease = Lease("x", 0, lambda: expired.append(True))
        lease.acquire()
        lease.acquire()
        lease.release()
        assert expired == []
        lease.release()
        assert expired == [True]

    def test_expire_runs_once(self):
        expired = []
        lease = Lease("x", 0, lambda: expired.append(True))
        lease.expire()
        lease.expire()
        assert expired == [True]

    def test_acquire_after_expiry_raises(self):
        lease = Lease("x", 0, lambda: None)
        lease.expire()
        with pytest.raises(RuntimeError):
            lease.acquire()

    @pytest.mark.asyncio
    async def test_pending_expiry_flag(self):
        lease = Lease("x", 10, lambda: None)
        lease.acquire()
        lease.release()
        assert lease.pending_expiry
        await asyncio.sleep(0.05)
        assert lease.expired
        assert not lease.pending_expiry
