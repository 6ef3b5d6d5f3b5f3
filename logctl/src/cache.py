from __future__ import annotations

import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any


class InvalidKeyError(ValueError):
    """Raised when a cache key is not of the form ``name`` or ``namespace/name``."""


@dataclass(frozen=True)
class DeletedFinalStateUnknown:
    """Tombstone for an object that vanished while the watch was disconnected.

    A relist can only tell that the object is gone, not what it looked like
    when it was deleted, so delete handlers receive the last cached state
    wrapped in this record.
    """

    key: str
    obj: Any


def meta_namespace_key(obj: Any) -> str:
    """Return the ``namespace/name`` key for an object (``name`` when cluster-scoped)."""
    if isinstance(obj, DeletedFinalStateUnknown):
        return obj.key

    metadata = getattr(obj, "metadata", None)
    name = getattr(metadata, "name", None)
    if not name:
        raise InvalidKeyError("object has no metadata.name")
    namespace = getattr(metadata, "namespace", None)
    if namespace:
        return f"{namespace}/{name}"
    return name


def split_meta_namespace_key(key: str) -> tuple[str, str]:
    """Split a cache key into ``(namespace, name)``; namespace is empty for cluster scope."""
    if not isinstance(key, str):
        raise InvalidKeyError(f"unexpected key type {type(key).__name__}")

    parts = key.split("/")
    if len(parts) == 1:
        namespace, name = "", parts[0]
    elif len(parts) == 2:
        namespace, name = parts
    else:
        raise InvalidKeyError(f"unexpected key format: {key!r}")

    if not name:
        raise InvalidKeyError(f"unexpected key format: {key!r}")
    return namespace, name


class Indexer:
    """Thread-safe, key-addressed store of the last observed object per key.

    The informer is the only writer; workers read concurrently.  Objects are
    stored as delivered by the API and must be treated as read-only by
    readers.
    """

    def __init__(self, key_func: Callable[[Any], str] = meta_namespace_key) -> None:
        self.key_func = key_func
        self._items: dict[str, Any] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def add(self, obj: Any) -> tuple[str, Any | None]:
        """Insert or overwrite *obj*; return its key and the previous object."""
        key = self.key_func(obj)
        with self._lock:
            previous = self._items.get(key)
            self._items[key] = obj
        return key, previous

    def delete(self, obj: Any) -> tuple[str, Any | None]:
        key = self.key_func(obj)
        with self._lock:
            previous = self._items.pop(key, None)
        return key, previous

    def get_by_key(self, key: str) -> tuple[Any | None, bool]:
        """Return ``(object, exists)``.

        Raises :class:`InvalidKeyError` for malformed keys, which callers must
        treat as a failure distinct from "not found".
        """
        split_meta_namespace_key(key)
        with self._lock:
            if key in self._items:
                return self._items[key], True
        return None, False

    def list(self) -> list[Any]:
        with self._lock:
            return list(self._items.values())

    def replace(self, objs: Iterable[Any]) -> tuple[dict[str, Any], dict[str, Any]]:
        """Atomically swap the contents for a fresh listing.

        Returns ``(previous, removed)``: the full pre-replace contents and the
        subset of keys absent from the new listing.
        """
        fresh = {self.key_func(obj): obj for obj in objs}
        with self._lock:
            previous = self._items
            self._items = fresh
        removed = {key: obj for key, obj in previous.items() if key not in fresh}
        return previous, removed
