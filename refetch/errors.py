"""Exception types raised by the refetch engine."""

from __future__ import annotations


class RefetchError(Exception):
    """Base class for every error the engine raises itself."""


class QueryAbortedError(RefetchError):
    """A fetch observed its abort signal and gave up."""

    def __init__(self, reason: str = "Query aborted") -> None:
        super().__init__(reason)
        self.reason = reason


class CacheEntryRemovedError(RefetchError):
    """``cache_data_loaded`` was still pending when its instance was torn down.

    Hooks awaiting ``cache_data_loaded`` may catch this and ignore it.
    """

    def __init__(self) -> None:
        super().__init__("Promise never resolved before cacheEntryRemoved.")


class QueryKeySerializationError(RefetchError):
    """Query params could not be serialised into a cache key."""


class QueryHTTPError(RefetchError):
    """Non-2xx response returned to an HTTP query function."""

    def __init__(self, status_code: int, url: str) -> None:
        super().__init__(f"HTTP error! status: {status_code}")
        self.status_code = status_code
        self.url = url
