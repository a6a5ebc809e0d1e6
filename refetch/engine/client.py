"""Query client — the shared home of every query instance.

One client owns what its queries share: the reactive container, the
cross-parameter cache store, the tag registry, the focus/online managers,
the optional cross-tab channel and storage, and the event bus.

    client = QueryClient()
    todos = client.query(
        "todos",
        lambda page: query_executor(fetch_page, (page,)),
        stale_time=5_000,
        retry=2,
    )

    page = todos(0)          # get-or-create the instance for params (0,)
    await page.fetch()
    page.release()           # torn down ttl ms after the last release

Instances are keyed by (base key, params); their cache key is
``"<key>::<serialized params>"`` and decides which cache slot they share.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Iterable
from typing import Any

import structlog

from refetch.engine.cache_store import QueryCacheStore
from refetch.engine.environment import FocusManager, OnlineManager
from refetch.engine.query import Query, consume_background
from refetch.engine.registry import TagRegistry
from refetch.engine.signal import ReactiveContainer
from refetch.errors import QueryKeySerializationError
from refetch.models.events import QueryEventBus
from refetch.models.query import QueryDefaults, QueryDefinition, QueryOptions
from refetch.tools.broadcast import BroadcastChannel, InvalidateMessage, RefetchMessage
from refetch.tools.persistence import MemoryStorage, SyncStorage

logger = structlog.get_logger().bind(component="client")

QueryFactory = Callable[..., QueryDefinition]


class QueryTemplate:
    """A query key plus its factory and options; call it with params to get an instance."""

    def __init__(self, client: QueryClient, key: str, factory: QueryFactory, options: QueryOptions) -> None:
        self.client = client
        self.key = key
        self.factory = factory
        self.options = options

    def __call__(self, *params: Any) -> Query:
        return self.client._get_or_create(self, params)

    def peek(self, *params: Any) -> Query | None:
        """The live instance for *params*, without acquiring or creating it."""
        return self.client._instances.get((self.key, _params_id(params)))

    def invalidate(self) -> int:
        """Invalidate every live instance of this key."""
        return self.client.invalidate_key(self.key)

    def __repr__(self) -> str:
        return f"QueryTemplate({self.key!r})"


def _params_id(params: tuple[Any, ...]) -> str:
    try:
        return json.dumps(list(params), sort_keys=True, default=repr)
    except (TypeError, ValueError):
        return repr(params)


class QueryClient:
    """Owns the shared state of a set of queries.

    Args:
        defaults:  Option defaults for every template (``QueryDefaults.from_settings()``).
        channel:   Cross-tab channel used by queries with ``broadcast=True``.
        storage:   Storage used by queries with ``persist=True`` (in-memory by default).
        events:    Event bus receiving the fetch lifecycle trail.
    """

    def __init__(
        self,
        defaults: QueryDefaults | None = None,
        *,
        container: ReactiveContainer | None = None,
        cache: QueryCacheStore | None = None,
        registry: TagRegistry | None = None,
        online: OnlineManager | None = None,
        focus: FocusManager | None = None,
        channel: BroadcastChannel | None = None,
        storage: SyncStorage | None = None,
        events: QueryEventBus | None = None,
    ) -> None:
        self.container = container if container is not None else ReactiveContainer()
        self.defaults = defaults if defaults is not None else QueryDefaults.from_settings()
        self.cache = cache if cache is not None else QueryCacheStore()
        self.registry = registry if registry is not None else TagRegistry()
        self.online = online if online is not None else OnlineManager(self.container)
        self.focus = focus if focus is not None else FocusManager(self.container)
        self.channel = channel
        self.storage = storage if storage is not None else MemoryStorage()
        self.events = events if events is not None else QueryEventBus()
        self._instances: dict[tuple[str, str], Query] = {}
        self._channel_unsubscribe = channel.subscribe(self._on_message) if channel is not None else None

    def query(self, key: str, factory: QueryFactory, **options: Any) -> QueryTemplate:
        """Declare a query. Unset options fall back to the client defaults."""
        resolved = QueryOptions.model_validate({**self.defaults.model_dump(), **options})
        return QueryTemplate(self, key, factory, resolved)

    def cache_key_for(self, key: str, definition: QueryDefinition, options: QueryOptions) -> str:
        """``"<key>::<serialized>"``; the bare key if serialisation fails."""
        serializer = options.serialize_query_params
        try:
            if serializer is not None:
                serialized = serializer(definition)
            else:
                serialized = json.dumps(list(definition.params))
        except (TypeError, ValueError, QueryKeySerializationError) as exc:
            logger.warning("cache_key_serialization_failed", query_key=key, error=str(exc))
            return key
        return f"{key}::{serialized}"

    @property
    def live_queries(self) -> list[Query]:
        return list(self._instances.values())

    def invalidate_tags(self, tags: str | Iterable[str]) -> int:
        """Invalidate every live instance carrying any of *tags*. Returns the count."""
        return self.registry.invalidate(tags, self.container)

    def invalidate_key(self, key: str) -> int:
        """Invalidate every live instance of base key (or cache key) *key*."""
        return self.registry.invalidate(key, self.container)

    def dispose(self) -> None:
        """Drop the cache and tear down every instance."""
        # Buckets go first so instance teardown needs no TTL timers
        self.cache.clear()
        for query in list(self._instances.values()):
            query.destroy()
        if self._channel_unsubscribe is not None:
            self._channel_unsubscribe()
            self._channel_unsubscribe = None
        logger.debug("client_disposed")

    # ── instances ─────────────────────────────────────────────

    def _get_or_create(self, template: QueryTemplate, params: tuple[Any, ...]) -> Query:
        ident = (template.key, _params_id(params))
        query = self._instances.get(ident)
        if query is not None and not query.destroyed:
            query.acquire()
            if template.options.refetch_on_mount:
                query.scheduler.attempt_refetch("mount")
            return query

        definition = template.factory(*params)
        options = template.options
        cache_key = self.cache_key_for(template.key, definition, options)
        tags = frozenset(
            set(definition.tags)
            | options.resolve_tags(definition.params)
            | {template.key, cache_key}
        )
        query = Query(template.key, cache_key, definition, options, self, tags)
        self._instances[ident] = query
        query.acquire()
        query.mount()
        logger.debug("query_created", query_key=template.key, cache_key=cache_key, tags=sorted(tags))
        return query

    def _forget(self, query: Query) -> None:
        for ident, live in list(self._instances.items()):
            if live is query:
                del self._instances[ident]

    def _on_message(self, message: Any) -> None:
        if not isinstance(message, (InvalidateMessage, RefetchMessage)):
            logger.debug("broadcast_ignored", type=getattr(message, "type", None))
            return
        targets = [q for q in self._instances.values() if q.cache_key == message.query_key]
        with self.container.batch():
            for query in targets:
                if isinstance(message, InvalidateMessage):
                    future = query.invalidate(broadcast=False)
                else:
                    future = query.refetch()
                future.add_done_callback(consume_background)
        logger.debug("broadcast_applied", type=message.type, query_key=message.query_key, matches=len(targets))


_default_client: QueryClient | None = None


def get_default_client() -> QueryClient:
    """Process-wide client for code that does not manage its own."""
    global _default_client
    if _default_client is None:
        _default_client = QueryClient()
    return _default_client


def set_default_client(client: QueryClient | None) -> None:
    global _default_client
    _default_client = client


def invalidate_tag(tags: str | Iterable[str]) -> int:
    """Invalidate live instances of the default client carrying any of *tags*."""
    return get_default_client().invalidate_tags(tags)
