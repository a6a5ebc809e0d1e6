"""Query event trail — observability for the fetch lifecycle.

Every fetch an instance starts gets a ``fetch_id``; the start, retries,
settlement, invalidations and teardown of that fetch each produce a
QueryEvent. The QueryEventBus collects them in memory and, when persistence
is on, appends them to ``<trace_dir>/<fetch_id>.jsonl`` so ``refetch trace``
works across processes.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import structlog
from pydantic import BaseModel, Field

logger = structlog.get_logger().bind(component="events")


class QueryEvent(BaseModel):
    """A single event in a query's lifecycle."""

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    fetch_id: str = Field(
        description="Ties this event to one fetch (including its retries)"
    )
    event_type: str = Field(
        description="Type: fetch_start, fetch_success, fetch_error, retry_scheduled, "
        "invalidate, cancel, teardown"
    )
    query_key: str = Field(description="Base key of the emitting query")
    cache_key: str = Field(default="", description="Serialized cache key of the instance")
    payload: dict[str, Any] = Field(
        default_factory=dict,
        description="Event-specific data: params, failure counts, delays, previews",
    )
    error: str = Field(default="", description="Error message if this is an error event")
    duration_ms: float = Field(default=0.0, description="Duration of the fetch, if applicable")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class QueryTrace(BaseModel):
    """All events sharing one fetch_id, in time order."""

    fetch_id: str
    events: list[QueryEvent] = Field(default_factory=list)
    query_keys: list[str] = Field(default_factory=list)
    total_duration_ms: float = 0.0
    success: bool = True
    started_at: datetime | None = None
    completed_at: datetime | None = None


class QueryEventBus:
    """In-memory event bus with optional JSONL persistence.

    Args:
        trace_dir: Where persisted traces go (defaults to settings.trace_dir).
        persist:   Append each event to ``<trace_dir>/<fetch_id>.jsonl``.
        max_events: In-memory cap; oldest events are dropped first.
    """

    def __init__(
        self,
        trace_dir: Path | None = None,
        persist: bool = False,
        max_events: int = 5000,
    ) -> None:
        if trace_dir is None:
            from refetch.config import settings
            trace_dir = settings.trace_dir
        self._events: list[QueryEvent] = []
        self._trace_dir = trace_dir
        self._persist = persist
        self._max_events = max_events
        self._listeners: list[Callable[[QueryEvent], None]] = []

    def emit(self, event: QueryEvent) -> None:
        """Emit an event — stores in memory, notifies listeners, appends to trace file."""
        self._events.append(event)
        if len(self._events) > self._max_events:
            del self._events[: len(self._events) - self._max_events]
        for listener in list(self._listeners):
            listener(event)
        if self._persist:
            self._write_to_file(event)

    def subscribe(self, listener: Callable[[QueryEvent], None]) -> Callable[[], None]:
        """Call *listener(event)* for every future event. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _write_to_file(self, event: QueryEvent) -> None:
        """Append event as a JSON line to the fetch_id trace file."""
        try:
            self._trace_dir.mkdir(parents=True, exist_ok=True)
            trace_file = self._trace_dir / f"{event.fetch_id}.jsonl"
            with trace_file.open("a", encoding="utf-8") as f:
                f.write(event.model_dump_json() + "\n")
        except OSError as exc:
            # Never break a fetch because of tracing
            logger.warning("trace_write_failed", fetch_id=event.fetch_id, error=str(exc))

    def get_trace(self, fetch_id: str) -> QueryTrace:
        """Assemble a full trace — checks memory first, then disk."""
        events = [e for e in self._events if e.fetch_id == fetch_id]

        if not events:
            events = self._load_from_file(fetch_id)

        events.sort(key=lambda e: e.timestamp)
        trace = QueryTrace(
            fetch_id=fetch_id,
            events=events,
            query_keys=sorted({e.query_key for e in events}),
        )

        if events:
            trace.started_at = events[0].timestamp
            trace.completed_at = events[-1].timestamp
            total = (trace.completed_at - trace.started_at).total_seconds() * 1000
            trace.total_duration_ms = round(total, 2)
            trace.success = not any(e.error for e in events)

        return trace

    def _load_from_file(self, fetch_id: str) -> list[QueryEvent]:
        """Load events from a persisted JSONL trace file."""
        trace_file = self._trace_dir / f"{fetch_id}.jsonl"
        if not trace_file.exists():
            return []
        events = []
        try:
            with trace_file.open("r", encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if line:
                        events.append(QueryEvent.model_validate_json(line))
        except (OSError, ValueError) as exc:
            logger.warning("trace_read_failed", fetch_id=fetch_id, error=str(exc))
        return events

    def list_traces(self, limit: int = 20) -> list[str]:
        """List recent fetch IDs from persisted trace files (newest first)."""
        if not self._trace_dir.exists():
            return []
        files = sorted(
            self._trace_dir.glob("*.jsonl"),
            key=lambda f: f.stat().st_mtime,
            reverse=True,
        )
        return [f.stem for f in files[:limit]]

    def events_for(self, query_key: str) -> list[QueryEvent]:
        """In-memory events emitted by one base key (or cache key)."""
        return [e for e in self._events if query_key in (e.query_key, e.cache_key)]

    def clear(self) -> None:
        """Clear in-memory events (does not delete files)."""
        self._events.clear()

    @property
    def event_count(self) -> int:
        return len(self._events)
