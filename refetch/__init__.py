"""refetch — asyncio query cache and lifecycle engine.

    from refetch import QueryClient, query_executor

    client = QueryClient()
    user = client.query("user", lambda uid: query_executor(load_user, (uid,)))
    data = await user(42).fetch()
"""

__version__ = "0.1.0"

from .engine import Query, QueryClient, QueryTemplate, get_default_client, invalidate_tag
from .models.query import MISSING, CacheEntry, QueryOptions, QueryState, QueryStatus, query_executor

__all__ = [
    "__version__",
    "Query",
    "QueryClient",
    "QueryTemplate",
    "get_default_client",
    "invalidate_tag",
    "MISSING",
    "CacheEntry",
    "QueryOptions",
    "QueryState",
    "QueryStatus",
    "query_executor",
]
