"""refetch engine — the moving parts behind a query instance.

    retry        should_retry / get_retry_delay (exponential backoff)
    machine      idle / fetching / success / error transitions
    signal       ReactiveContainer, Signal, batch(), effects
    lease        ref-counted TTL disposal
    cache_store  cross-parameter cache buckets
    lifecycle    query-started / cache-entry-added futures
    environment  focus and online observables
    scheduler    focus / reconnect / interval / mount refetch
    registry     tag-based invalidation
    query        the per-instance orchestrator
    client       QueryClient and QueryTemplate
"""

from .client import QueryClient, QueryTemplate, get_default_client, invalidate_tag, set_default_client
from .query import Query

__all__ = [
    "Query",
    "QueryClient",
    "QueryTemplate",
    "get_default_client",
    "invalidate_tag",
    "set_default_client",
]
