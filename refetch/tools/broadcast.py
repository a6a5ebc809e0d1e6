"""Cross-tab channel — query/mutation sync messages between clients.

A BroadcastChannel connects clients that share a channel name. The engine
works without one; when a query has ``broadcast=True`` its client posts
``invalidate`` on user invalidation and ``queryUpdated`` on success, and
applies incoming ``invalidate`` / ``refetch`` messages to its live instances.

Messages are pydantic models discriminated on ``type`` and cross the channel
as plain JSON-compatible dicts, so any transport that can move a dict (a
process-local hub, a socket, a message broker) can implement the protocol.

    LocalBroadcastChannel — in-process hub keyed by channel name. Like the
                            browser primitive, a channel never receives its
                            own messages and delivery is asynchronous.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Annotated, Any, ClassVar, Literal, Protocol, Union

import structlog
from pydantic import BaseModel, Field, TypeAdapter, ValidationError
from pydantic_core import PydanticSerializationError

logger = structlog.get_logger().bind(component="broadcast")

CHANNEL_NAME = "refetch_query_sync"


class InvalidateMessage(BaseModel):
    type: Literal["invalidate"] = "invalidate"
    query_key: str


class RefetchMessage(BaseModel):
    type: Literal["refetch"] = "refetch"
    query_key: str


class QueryUpdatedMessage(BaseModel):
    type: Literal["queryUpdated"] = "queryUpdated"
    query_key: str
    data: Any = None


class MutationSuccessMessage(BaseModel):
    type: Literal["mutationSuccess"] = "mutationSuccess"
    mutation_key: str
    data: Any = None
    variables: Any = None


class MutationErrorMessage(BaseModel):
    type: Literal["mutationError"] = "mutationError"
    mutation_key: str
    error: str | None = None
    variables: Any = None


QueryBroadcastMessage = Annotated[
    Union[
        InvalidateMessage,
        RefetchMessage,
        QueryUpdatedMessage,
        MutationSuccessMessage,
        MutationErrorMessage,
    ],
    Field(discriminator="type"),
]

_message_adapter: TypeAdapter[QueryBroadcastMessage] = TypeAdapter(QueryBroadcastMessage)


def parse_message(raw: dict[str, Any] | str | bytes) -> QueryBroadcastMessage:
    """Validate a wire payload (dict or JSON) into a message model."""
    if isinstance(raw, (str, bytes)):
        return _message_adapter.validate_json(raw)
    return _message_adapter.validate_python(raw)


class BroadcastChannel(Protocol):
    def post_message(self, message: BaseModel) -> None: ...

    def subscribe(self, listener: Callable[[Any], None]) -> Callable[[], None]: ...

    def close(self) -> None: ...


class LocalBroadcastChannel:
    """In-process BroadcastChannel: every open channel with the same name is a peer."""

    _hubs: ClassVar[dict[str, list[LocalBroadcastChannel]]] = {}

    def __init__(self, name: str = CHANNEL_NAME) -> None:
        self.name = name
        self._listeners: list[Callable[[Any], None]] = []
        self._closed = False
        self._hubs.setdefault(name, []).append(self)
        logger.debug("channel_connected", channel=name)

    @property
    def closed(self) -> bool:
        return self._closed

    def post_message(self, message: BaseModel) -> None:
        if self._closed:
            logger.warning("channel_closed_post_dropped", channel=self.name, type=getattr(message, "type", "?"))
            return
        try:
            payload = message.model_dump(mode="json")
        except PydanticSerializationError as exc:
            logger.error("channel_post_failed", channel=self.name, error=str(exc))
            return

        for peer in list(self._hubs.get(self.name, [])):
            if peer is self or peer._closed:
                continue
            peer._schedule(payload)

    def subscribe(self, listener: Callable[[Any], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._listeners.clear()
        peers = self._hubs.get(self.name, [])
        if self in peers:
            peers.remove(self)
        if not peers:
            self._hubs.pop(self.name, None)
        logger.debug("channel_closed", channel=self.name)

    def _schedule(self, payload: dict[str, Any]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._receive(payload)
            return
        loop.call_soon(self._receive, payload)

    def _receive(self, payload: dict[str, Any]) -> None:
        if self._closed:
            return
        try:
            message = parse_message(payload)
        except ValidationError as exc:
            logger.warning("channel_message_invalid", channel=self.name, error=str(exc))
            return
        for listener in list(self._listeners):
            listener(message)
