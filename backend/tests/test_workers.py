"""Tests for the ingestion worker pool.

See Also:
    - backend/geoengine/services/workers.py for the implementation.
"""

from __future__ import annotations

import asyncio
import threading
from typing import TYPE_CHECKING

import pytest

from geoengine.core import config
from geoengine.db import database
from geoengine.db import models as db_models
from geoengine.services import ingest_vector, object_store, workers

if TYPE_CHECKING:
    import pathlib

POINTS = b'{"type": "MultiPoint", "coordinates": [[1, 1], [2, 2]]}'


def _pipeline(tmp_path: pathlib.Path) -> ingest_vector.IngestionPipeline:
    return ingest_vector.IngestionPipeline(
        config.Settings(
            storage_dir=tmp_path / "objects",
            scratch_dir=tmp_path / "scratch",
        ),
        database.in_memory_stores(),
        object_store.InMemoryObjectStore(),
    )


def _register(
    pipeline: ingest_vector.IngestionPipeline,
    upload_id: str,
) -> None:
    key = f"uploads/{upload_id}/points.geojson"
    pipeline.object_store.put(key, POINTS)
    pipeline.stores.uploads.add(
        db_models.Upload(
            id=upload_id,
            file_key=key,
            file_name="points.geojson",
            file_size=len(POINTS),
        )
    )


def test_submit_processes_and_notifies(tmp_path: pathlib.Path) -> None:
    """Queued uploads reach a terminal state and fire the callback."""
    pipeline = _pipeline(tmp_path)
    for upload_id in ("u1", "u2", "u3"):
        _register(pipeline, upload_id)
    seen: list[tuple[str, db_models.UploadStatus]] = []

    async def on_status(upload: db_models.Upload) -> None:
        seen.append((upload.id, upload.status))

    async def scenario() -> None:
        pool = workers.IngestionWorkerPool(pipeline, 2, on_status=on_status)
        await pool.start()
        assert pool.running
        for upload_id in ("u1", "u2", "u3"):
            await pool.submit(upload_id)
        await pool.join()
        await pool.stop()
        assert not pool.running

    asyncio.run(scenario())

    assert sorted(seen) == [
        ("u1", db_models.UploadStatus.PROCESSED),
        ("u2", db_models.UploadStatus.PROCESSED),
        ("u3", db_models.UploadStatus.PROCESSED),
    ]


def test_sync_callback_supported(tmp_path: pathlib.Path) -> None:
    pipeline = _pipeline(tmp_path)
    _register(pipeline, "u1")
    seen: list[str] = []

    async def scenario() -> None:
        pool = workers.IngestionWorkerPool(
            pipeline, on_status=lambda upload: seen.append(upload.id)
        )
        await pool.start()
        await pool.submit("u1")
        await pool.join()
        await pool.stop()

    asyncio.run(scenario())
    assert seen == ["u1"]


def test_cancel_queued_upload(tmp_path: pathlib.Path) -> None:
    """An upload cancelled while queued ends FAILED with the message."""
    pipeline = _pipeline(tmp_path)
    _register(pipeline, "blocker")
    _register(pipeline, "victim")
    gate = threading.Event()
    original_run = pipeline.run

    def gated_run(
        upload_id: str,
        cancel_event: threading.Event | None = None,
    ) -> db_models.Upload:
        if upload_id == "blocker":
            gate.wait(timeout=5)
        return original_run(upload_id, cancel_event)

    pipeline.run = gated_run  # type: ignore[method-assign]

    async def scenario() -> None:
        pool = workers.IngestionWorkerPool(pipeline, workers=1)
        await pool.start()
        await pool.submit("blocker")
        await pool.submit("victim")
        assert pool.cancel("victim")
        gate.set()
        await pool.join()
        assert not pool.cancel("victim")
        await pool.stop()

    asyncio.run(scenario())

    victim = pipeline.stores.uploads.get("victim")
    blocker = pipeline.stores.uploads.get("blocker")
    assert victim is not None and blocker is not None
    assert victim.status is db_models.UploadStatus.FAILED
    assert victim.message == ingest_vector.CANCELLED_MESSAGE
    assert blocker.status is db_models.UploadStatus.PROCESSED


def test_cancel_unknown_upload(tmp_path: pathlib.Path) -> None:
    pool = workers.IngestionWorkerPool(_pipeline(tmp_path))
    assert not pool.cancel("nope")


def test_submit_before_start_raises(tmp_path: pathlib.Path) -> None:
    pool = workers.IngestionWorkerPool(_pipeline(tmp_path))
    with pytest.raises(RuntimeError, match="not running"):
        asyncio.run(pool.submit("u1"))


def test_crashing_pipeline_marks_upload_failed(
    tmp_path: pathlib.Path,
) -> None:
    """Unexpected errors fail the upload instead of killing the worker."""
    pipeline = _pipeline(tmp_path)
    _register(pipeline, "u1")
    _register(pipeline, "u2")

    def exploding_run(
        upload_id: str,
        cancel_event: threading.Event | None = None,
    ) -> db_models.Upload:
        if upload_id == "u1":
            raise ZeroDivisionError("boom")
        return ingest_vector.IngestionPipeline.run(
            pipeline, upload_id, cancel_event
        )

    pipeline.run = exploding_run  # type: ignore[method-assign]

    async def scenario() -> None:
        pool = workers.IngestionWorkerPool(pipeline, workers=1)
        await pool.start()
        await pool.submit("u1")
        await pool.submit("u2")
        await pool.join()
        await pool.stop()

    asyncio.run(scenario())

    first = pipeline.stores.uploads.get("u1")
    second = pipeline.stores.uploads.get("u2")
    assert first is not None and second is not None
    assert first.status is db_models.UploadStatus.FAILED
    assert first.message == "boom"
    assert second.status is db_models.UploadStatus.PROCESSED


def test_unknown_upload_is_skipped(tmp_path: pathlib.Path) -> None:
    seen: list[str] = []

    async def scenario() -> None:
        pool = workers.IngestionWorkerPool(
            _pipeline(tmp_path), on_status=lambda u: seen.append(u.id)
        )
        await pool.start()
        await pool.submit("ghost")
        await pool.join()
        await pool.stop()

    asyncio.run(scenario())
    assert seen == []
