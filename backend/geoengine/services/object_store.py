"""Byte storage for raw uploaded files.

Uploads are written once under a generated key and read back by the
ingestion pipeline. ``LocalObjectStore`` keeps files under
``settings.storage_dir``; keys resolving outside that root are refused.
"""

from __future__ import annotations

import pathlib
import shutil
import tempfile
import threading
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from geoengine.core import config


class ObjectNotFoundError(KeyError):
    """Raised when a key has no stored object."""


class ObjectStoreProtocol(Protocol):
    def put(self, key: str, data: bytes) -> None: ...

    def get(self, key: str) -> bytes: ...


class LocalObjectStore(ObjectStoreProtocol):
    """Filesystem object store rooted at the configured storage directory."""

    def __init__(self, settings: config.Settings) -> None:
        self.root = settings.storage_dir.resolve()

    def put(self, key: str, data: bytes) -> None:
        """Write ``data`` atomically under ``key``.

        Args:
            key: Object key, may contain ``/`` separators.
            data: Bytes to store.

        Raises:
            ValueError: If the key escapes the storage root.
        """
        target = self._path(key)
        target.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            delete=False,
            dir=target.parent,
        ) as tmp:
            tmp.write(data)
            tmp.flush()

        shutil.move(tmp.name, target)

    def get(self, key: str) -> bytes:
        path = self._path(key)
        if not path.is_file():
            raise ObjectNotFoundError(key)
        return path.read_bytes()

    def _path(self, key: str) -> pathlib.Path:
        target = (self.root / key).resolve()
        if not target.is_relative_to(self.root) or target == self.root:
            raise ValueError(f"Invalid object key: {key!r}")
        return target


class InMemoryObjectStore(ObjectStoreProtocol):
    def __init__(self) -> None:
        self._objects: dict[str, bytes] = {}
        self._lock = threading.Lock()

    def put(self, key: str, data: bytes) -> None:
        with self._lock:
            self._objects[key] = bytes(data)

    def get(self, key: str) -> bytes:
        try:
            return self._objects[key]
        except KeyError:
            raise ObjectNotFoundError(key) from None
