"""Unit-test conftest — fake fetchers, client fixtures, and async helpers.

All fixtures here are available to every test under tests/unit/ without import.
"""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from refetch.engine.client import QueryClient
from refetch.models.events import QueryEventBus
from refetch.models.query import QueryDefaults


# ─────────────────────────────────────────────────────────────────────────────
# CountingFetcher: configurable fake query function
# ─────────────────────────────────────────────────────────────────────────────

class CountingFetcher:
    """Async fetcher that records every call.

    Args:
        result:     Value returned on success. A callable is called with the
                    params and its return value is used instead.
        fail_times: The first N calls raise ``error``.
        error:      Exception raised while failing (default: RuntimeError).
        delay:      Seconds to sleep before answering.
    """

    def __init__(
        self,
        result: Any = "ok",
        *,
        fail_times: int = 0,
        error: Exception | None = None,
        delay: float = 0.0,
    ) -> None:
        self.result = result
        self.fail_times = fail_times
        self.error = error
        self.delay = delay
        # Call log for assertion
        self.calls: int = 0
        self.params_seen: list[tuple] = []

    async def __call__(self, *params: Any) -> Any:
        self.calls += 1
        self.params_seen.append(params)
        if self.delay > 0:
            await asyncio.sleep(self.delay)
        if self.calls <= self.fail_times:
            raise self.error or RuntimeError(f"boom #{self.calls}")
        if callable(self.result):
            return self.result(*params)
        return self.result


class GatedFetcher:
    """Async fetcher that blocks until ``release()`` is called."""

    def __init__(self, result: Any = "gated") -> None:
        self.result = result
        self.calls = 0
        self._gate = asyncio.Event()

    def release(self) -> None:
        self._gate.set()

    async def __call__(self, *params: Any) -> Any:
        self.calls += 1
        await self._gate.wait()
        return self.result


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

def make_client(**defaults: Any) -> QueryClient:
    """A client with library defaults (not env-derived) and an in-memory event bus."""
    return QueryClient(
        QueryDefaults(**defaults),
        events=QueryEventBus(persist=False),
    )


async def drain(rounds: int = 5) -> None:
    """Let call_soon callbacks and freshly created tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


# ─────────────────────────────────────────────────────────────────────────────
# Fixtures
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def client():
    """A fresh QueryClient, disposed after the test."""
    qc = make_client()
    yield qc
    qc.dispose()


@pytest.fixture
def fetcher():
    """A CountingFetcher that succeeds immediately with "ok"."""
    return CountingFetcher()


@pytest.fixture
def event_bus():
    """A fresh in-memory QueryEventBus for each test."""
    return QueryEventBus(persist=False)


@pytest.fixture
def make_query_client():
    """Factory for clients with custom defaults; every client is disposed afterwards."""
    created: list[QueryClient] = []

    def factory(**defaults: Any) -> QueryClient:
        qc = make_client(**defaults)
        created.append(qc)
        return qc

    yield factory
    for qc in created:
        qc.dispose()


@pytest.fixture
def counting_fetcher():
    """The CountingFetcher class, for tests that need custom behaviour."""
    return CountingFetcher


@pytest.fixture
def gated_fetcher():
    """A GatedFetcher; call ``.release()`` to let pending calls finish."""
    return GatedFetcher()


@pytest.fixture
def settle():
    """``await settle()`` lets queued callbacks and new tasks run."""
    return drain
