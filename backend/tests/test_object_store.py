"""Tests for the filesystem and in-memory object stores."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from geoengine.core import config
from geoengine.services import object_store

if TYPE_CHECKING:
    import pathlib


def _local(tmp_path: pathlib.Path) -> object_store.LocalObjectStore:
    return object_store.LocalObjectStore(
        config.Settings(storage_dir=tmp_path / "objects")
    )


def test_local_store_round_trip(tmp_path: pathlib.Path) -> None:
    """Test put then get returns the same bytes from nested keys."""
    store = _local(tmp_path)
    store.put("uploads/u1/depots.csv", b"name,lat,lng\n")
    assert store.get("uploads/u1/depots.csv") == b"name,lat,lng\n"
    assert (tmp_path / "objects" / "uploads" / "u1" / "depots.csv").is_file()


def test_local_store_overwrites(tmp_path: pathlib.Path) -> None:
    store = _local(tmp_path)
    store.put("a.bin", b"one")
    store.put("a.bin", b"two")
    assert store.get("a.bin") == b"two"
    leftovers = [
        p.name for p in (tmp_path / "objects").iterdir() if p.name != "a.bin"
    ]
    assert leftovers == []


@pytest.mark.parametrize("key", ["../escape.csv", "a/../../escape", ""])
def test_local_store_rejects_keys_outside_root(
    tmp_path: pathlib.Path,
    key: str,
) -> None:
    """Test keys resolving outside the storage root are refused."""
    store = _local(tmp_path)
    with pytest.raises(ValueError, match="Invalid object key"):
        store.put(key, b"x")


def test_local_store_missing_key(tmp_path: pathlib.Path) -> None:
    with pytest.raises(object_store.ObjectNotFoundError):
        _local(tmp_path).get("uploads/missing.csv")


def test_in_memory_store() -> None:
    store = object_store.InMemoryObjectStore()
    store.put("k", bytearray(b"data"))
    assert store.get("k") == b"data"
    with pytest.raises(object_store.ObjectNotFoundError):
        store.get("other")
