"""Query data model — definitions, options, cache entries and state projections.

A query is described in two layers:

    QueryDefinition — what to fetch: the async ``query_fn`` bound to one set of
                      params. Produced by the template factory for every
                      parameterisation, never mutated afterwards.
    QueryOptions    — how to fetch it: retries, staleness, refetch triggers,
                      caching and lifecycle callbacks. Shared by every instance
                      of a template; unset defaults come from QueryDefaults.

Everything time-related is expressed in integer milliseconds.
"""

from __future__ import annotations

import enum
import inspect
from collections.abc import Awaitable, Callable, Iterable
from typing import Any, Final

from pydantic import BaseModel, ConfigDict, Field


class _Missing:
    """Marker for a cache key that was never written (distinct from ``None``)."""

    _instance: _Missing | None = None

    def __new__(cls) -> _Missing:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "MISSING"


MISSING: Final = _Missing()


class QueryStatus(str, enum.Enum):
    """The four states of the query state machine."""

    IDLE = "idle"
    FETCHING = "fetching"
    SUCCESS = "success"
    ERROR = "error"


class QueryDefinition(BaseModel):
    """One parameterisation of a query: the fetch function and its params.

    ``query_fn`` may declare a ``signal`` parameter to receive the instance's
    :class:`~refetch.engine.query.AbortSignal`; otherwise it is called bare.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    query_fn: Callable[..., Awaitable[Any]]
    params: tuple[Any, ...] = Field(default_factory=tuple)
    enabled: bool = True
    tags: frozenset[str] = Field(default_factory=frozenset)

    @property
    def accepts_signal(self) -> bool:
        try:
            return "signal" in inspect.signature(self.query_fn).parameters
        except (TypeError, ValueError):
            return False


def query_executor(
    fetcher: Callable[..., Awaitable[Any]],
    params: Iterable[Any] = (),
    enabled: bool = True,
    tags: Iterable[str] = (),
) -> QueryDefinition:
    """Bind *fetcher* to *params* and wrap the result in a QueryDefinition.

    The abort signal is forwarded as ``signal=`` when *fetcher* accepts it.
    """
    params = tuple(params)
    try:
        wants_signal = "signal" in inspect.signature(fetcher).parameters
    except (TypeError, ValueError):
        wants_signal = False

    if wants_signal:
        async def query_fn(signal):
            return await fetcher(*params, signal=signal)
    else:
        async def query_fn():
            return await fetcher(*params)

    return QueryDefinition(
        query_fn=query_fn,
        params=params,
        enabled=enabled,
        tags=frozenset(tags),
    )


class CacheEntry(BaseModel):
    """Last successful (merged) result stored under one cache key.

    Immutable: a new fetch replaces the entry, it never edits it in place.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    data: Any
    params: tuple[Any, ...] = Field(default_factory=tuple)
    timestamp: int = Field(description="Fulfilment time in epoch ms")


class MergeContext(BaseModel):
    """Extra arguments handed to the ``merge`` callback."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    params: tuple[Any, ...]
    timestamp: int


class QueryState(BaseModel):
    """Read-only projection of one query instance."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    data: Any = None
    error: BaseException | None = None
    status: QueryStatus = QueryStatus.IDLE
    is_idle: bool = True
    is_fetching: bool = False
    is_success: bool = False
    is_error: bool = False
    is_loading: bool = False
    last_updated: int | None = None

    @classmethod
    def build(
        cls,
        status: QueryStatus,
        data: Any,
        error: BaseException | None,
        last_updated: int | None,
    ) -> QueryState:
        return cls(
            data=data,
            error=error,
            status=status,
            is_idle=status is QueryStatus.IDLE,
            is_fetching=status is QueryStatus.FETCHING,
            is_success=status is QueryStatus.SUCCESS,
            is_error=status is QueryStatus.ERROR,
            is_loading=status is QueryStatus.FETCHING and data is None,
            last_updated=last_updated,
        )


RetryPredicate = Callable[[int, BaseException], bool]
RetryOption = bool | int | RetryPredicate | None
RetryDelayOption = int | float | Callable[[int], float] | None


class QueryDefaults(BaseModel):
    """Defaults shared by every query of a client.

    Mirrors ``RefetchSettings``; a client built without explicit defaults uses
    :meth:`from_settings`.
    """

    enabled: bool = True
    lazy: bool = False
    suspense: bool = False
    swr: bool = True
    stale_time: int = 0
    ttl: int | None = 1000
    retry: bool | int = False
    max_retries: int = 3
    delay_unit: int = 1000
    max_retry_delay: int = 30000
    refetch_on_mount: bool = True
    refetch_on_focus: bool = True
    refetch_on_reconnect: bool = True
    refetch_interval_in_background: bool = False
    broadcast: bool = False
    debug: bool = False

    @classmethod
    def from_settings(cls, settings=None) -> QueryDefaults:
        if settings is None:
            from refetch.config import settings
        return cls.model_validate(
            {name: getattr(settings, name) for name in cls.model_fields if hasattr(settings, name)}
        )


class QueryOptions(QueryDefaults):
    """Full per-template configuration.

    Lifecycle callbacks:
        on_success(data, params)          -> replacement data or None (sync/async)
        on_error(error, params)           -> replacement error or None (sync/async)
        on_settled(data, error, params)   -> None (sync/async)
        merge(prev_entry, new_data, ctx)  -> merged data; prev_entry is a
                                             CacheEntry, None (invalidated) or
                                             MISSING (never fetched)
        on_query_started(params, query_fulfilled)
        on_cache_entry_added(params, cache_data_loaded, cache_data_removed)
    """

    model_config = ConfigDict(arbitrary_types_allowed=True, extra="forbid")

    retry: RetryOption = False
    retry_delay: RetryDelayOption = None
    refetch_interval: int | None = None
    throw_on_error: bool | None = None
    persist: bool = False
    initial_data: Any = None
    serialize_query_params: Callable[[QueryDefinition], str] | None = None
    tags: list[str] | Callable[[tuple[Any, ...]], Iterable[str]] | None = None
    merge: Callable[[Any, Any, MergeContext], Any] | None = None
    on_success: Callable[..., Any] | None = None
    on_error: Callable[..., Any] | None = None
    on_settled: Callable[..., Any] | None = None
    on_query_started: Callable[..., Any] | None = None
    on_cache_entry_added: Callable[..., Any] | None = None

    @property
    def should_throw(self) -> bool:
        """Errors propagate out of fetch(); on by default under suspense."""
        if self.throw_on_error is None:
            return self.suspense
        return self.throw_on_error

    @property
    def interval_ms(self) -> int | None:
        if not self.refetch_interval or self.refetch_interval <= 0:
            return None
        return int(self.refetch_interval)

    def resolve_initial_data(self) -> Any:
        if callable(self.initial_data):
            return self.initial_data()
        return self.initial_data

    def resolve_tags(self, params: tuple[Any, ...]) -> set[str]:
        if self.tags is None:
            return set()
        if callable(self.tags):
            return set(self.tags(params))
        return set(self.tags)
