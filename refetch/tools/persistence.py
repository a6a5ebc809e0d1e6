"""Persistence adapter — keep a query's displayed data across sessions.

Storage is a small synchronous key/value protocol, deliberately shaped like
browser ``localStorage``. A query with ``persist=True`` seeds its data signal
from storage at mount and writes every change back; ``None`` removes the item.

Storage failures never break a query: they are logged and the query behaves
as if nothing had been persisted.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Callable
from pathlib import Path
from typing import Any, Protocol

import structlog

from refetch.engine.signal import Signal

logger = structlog.get_logger().bind(component="persistence")


class SyncStorage(Protocol):
    def get_item(self, key: str) -> Any: ...

    def set_item(self, key: str, value: Any) -> None: ...

    def remove_item(self, key: str) -> None: ...


class MemoryStorage:
    """Process-local storage. Values are JSON round-tripped like the file backend."""

    def __init__(self) -> None:
        self._items: dict[str, str] = {}

    def get_item(self, key: str) -> Any:
        raw = self._items.get(key)
        return None if raw is None else json.loads(raw)

    def set_item(self, key: str, value: Any) -> None:
        self._items[key] = json.dumps(value)

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)

    def __len__(self) -> int:
        return len(self._items)


class JsonFileStorage:
    """One JSON file per key under *directory*.

    File names are a hash of the key, so arbitrary cache keys are safe; the
    original key is stored alongside the value.
    """

    def __init__(self, directory: Path | None = None, prefix: str = "refetch") -> None:
        if directory is None:
            from refetch.config import settings
            directory = settings.persist_dir
        self.directory = Path(directory)
        self.prefix = prefix

    def _path(self, key: str) -> Path:
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()[:32]
        return self.directory / f"{self.prefix}-{digest}.json"

    def get_item(self, key: str) -> Any:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            record = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("storage_read_failed", key=key, error=str(exc))
            return None
        return record.get("value")

    def set_item(self, key: str, value: Any) -> None:
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            self._path(key).write_text(json.dumps({"key": key, "value": value}), encoding="utf-8")
        except (OSError, TypeError, ValueError) as exc:
            logger.warning("storage_write_failed", key=key, error=str(exc))

    def remove_item(self, key: str) -> None:
        try:
            self._path(key).unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("storage_remove_failed", key=key, error=str(exc))


def persist_signal(signal: Signal[Any], storage: SyncStorage, key: str) -> Callable[[], None]:
    """Seed *signal* from *storage* and mirror later changes into it.

    A stored value only replaces the signal's current value when one exists.
    Returns the unsubscribe function.
    """
    try:
        stored = storage.get_item(key)
    except (OSError, TypeError, ValueError) as exc:
        logger.warning("storage_seed_failed", key=key, error=str(exc))
        stored = None
    if stored is not None:
        signal.set(stored)
        logger.debug("storage_seeded", key=key)

    def write_back(value: Any, _old: Any) -> None:
        try:
            if value is None:
                storage.remove_item(key)
            else:
                storage.set_item(key, value)
        except (OSError, TypeError, ValueError) as exc:
            logger.warning("storage_write_failed", key=key, error=str(exc))

    return signal.subscribe(write_back)
