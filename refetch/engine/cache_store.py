"""Cross-parameter cache store.

One bucket per base key, shared by every live instance of that key whatever
its params. A bucket maps ``cache_key → CacheEntry | None``:

    CacheEntry  last successful (merged) result for the key
    None        explicitly invalidated, no data
    MISSING     (returned by get_cache) never written

This is what lets paginated instances (same base key, different page param,
same serialized cache key) merge into each other's last result.

Buckets are reference counted by their instances and dropped ``ttl`` ms after
the last instance releases them; there is no per-entry TTL.
"""

from __future__ import annotations

from typing import Any

import structlog

from refetch.engine.lease import Lease
from refetch.models.query import MISSING, CacheEntry

logger = structlog.get_logger().bind(component="cache_store")


class CacheBucket:
    """Handle on one base key's entries."""

    def __init__(self, bucket_id: str, ttl: int | None, on_expire) -> None:
        self.bucket_id = bucket_id
        self._entries: dict[str, CacheEntry | None] = {}
        self.lease = Lease(f"bucket:{bucket_id}", ttl, on_expire)

    def get_cache(self, cache_key: str) -> CacheEntry | None | Any:
        """Entry for *cache_key*; ``None`` if invalidated, ``MISSING`` if never set."""
        return self._entries.get(cache_key, MISSING)

    def set_cache(self, cache_key: str, entry: CacheEntry | None) -> None:
        """Replace the entry for *cache_key* (last writer wins)."""
        self._entries[cache_key] = entry

    def keys(self) -> list[str]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        return f"CacheBucket({self.bucket_id!r}, keys={len(self._entries)}, refs={self.lease.count})"


class QueryCacheStore:
    """Registry of cache buckets, created lazily per base key."""

    def __init__(self) -> None:
        self._buckets: dict[str, CacheBucket] = {}

    def get(self, bucket_id: str, ttl: int | None = None) -> CacheBucket:
        """Existing bucket for *bucket_id*, or a new one governed by *ttl*."""
        bucket = self._buckets.get(bucket_id)
        if bucket is None:
            bucket = CacheBucket(bucket_id, ttl, lambda: self._drop(bucket_id))
            self._buckets[bucket_id] = bucket
            logger.debug("bucket_created", bucket=bucket_id, ttl_ms=ttl)
        return bucket

    def acquire(self, bucket_id: str, ttl: int | None = None) -> CacheBucket:
        bucket = self.get(bucket_id, ttl)
        bucket.lease.acquire()
        return bucket

    def release(self, bucket: CacheBucket) -> None:
        bucket.lease.release()

    def peek(self, bucket_id: str) -> CacheBucket | None:
        return self._buckets.get(bucket_id)

    def bucket_ids(self) -> list[str]:
        return list(self._buckets)

    def clear(self) -> None:
        for bucket in list(self._buckets.values()):
            bucket.lease.expire()
        self._buckets.clear()

    def __len__(self) -> int:
        return len(self._buckets)

    def _drop(self, bucket_id: str) -> None:
        bucket = self._buckets.pop(bucket_id, None)
        if bucket is not None:
            logger.debug("bucket_expired", bucket=bucket_id, keys=len(bucket))
