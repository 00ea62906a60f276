"""Background worker pool for upload processing.

Upload ids go into an ``asyncio.Queue``; each worker task pulls one id at
a time and runs the synchronous ingestion pipeline in a thread. Every job
carries a ``threading.Event``: cancelling sets it, and the pipeline either
fails the upload before starting or stops between batches, in both cases
with the message ``Processing cancelled``. When a job ends, the status
callback receives the upload in its terminal state.
"""

from __future__ import annotations

import asyncio
import inspect
import threading
from typing import TYPE_CHECKING, Any

from loguru import logger

from geoengine.db import models as db_models
from geoengine.services import ingest_vector

if TYPE_CHECKING:
    from collections.abc import Callable


class IngestionWorkerPool:
    """Runs queued uploads through an ``IngestionPipeline``.

    Example:
        >>> pool = IngestionWorkerPool(pipeline, workers=2)
        >>> await pool.start()
        >>> await pool.submit(upload.id)
        >>> await pool.join()
        >>> await pool.stop()
    """

    def __init__(
        self,
        pipeline: ingest_vector.IngestionPipeline,
        workers: int = 2,
        on_status: Callable[[db_models.Upload], Any] | None = None,
    ) -> None:
        self.pipeline = pipeline
        self.workers = max(1, workers)
        self.on_status = on_status
        self._queue: asyncio.Queue[str] | None = None
        self._tasks: list[asyncio.Task[None]] = []
        self._cancel_events: dict[str, threading.Event] = {}

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    async def start(self) -> None:
        if self._tasks:
            return
        self._queue = asyncio.Queue()
        self._tasks = [
            asyncio.create_task(self._worker(), name=f"ingest-worker-{i}")
            for i in range(self.workers)
        ]
        logger.info("Started {} ingestion workers", self.workers)

    async def submit(self, upload_id: str) -> None:
        """Queue an upload for processing.

        Raises:
            RuntimeError: If the pool has not been started.
        """
        if self._queue is None:
            raise RuntimeError("Worker pool is not running")
        self._cancel_events[upload_id] = threading.Event()
        await self._queue.put(upload_id)

    def cancel(self, upload_id: str) -> bool:
        """Request cancellation of a queued or running upload.

        Returns:
            False if the upload is not known to the pool.
        """
        event = self._cancel_events.get(upload_id)
        if event is None:
            return False
        event.set()
        logger.info("Cancellation requested for upload {}", upload_id)
        return True

    async def join(self) -> None:
        """Wait until every queued upload has been processed."""
        if self._queue is not None:
            await self._queue.join()

    async def stop(self) -> None:
        """Cancel outstanding jobs, drain the queue and stop the workers."""
        if self._queue is None:
            return
        for event in self._cancel_events.values():
            event.set()
        await self._queue.join()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        self._queue = None
        logger.info("Stopped ingestion workers")

    async def _worker(self) -> None:
        assert self._queue is not None
        queue = self._queue
        while True:
            upload_id = await queue.get()
            try:
                upload = await self._run(upload_id)
                if upload is not None:
                    await self._notify(upload)
            finally:
                self._cancel_events.pop(upload_id, None)
                queue.task_done()

    async def _run(self, upload_id: str) -> db_models.Upload | None:
        event = self._cancel_events.setdefault(upload_id, threading.Event())
        try:
            return await asyncio.to_thread(self.pipeline.run, upload_id, event)
        except asyncio.CancelledError:
            event.set()
            raise
        except ingest_vector.UploadNotFoundError:
            logger.error("Upload {} not found", upload_id)
            return None
        except Exception as exc:  # noqa: BLE001
            logger.exception("Upload {} crashed", upload_id)
            return self._mark_failed(upload_id, str(exc) or type(exc).__name__)

    def _mark_failed(
        self,
        upload_id: str,
        message: str,
    ) -> db_models.Upload | None:
        uploads = self.pipeline.stores.uploads
        upload = uploads.get(upload_id)
        if upload is None or upload.is_terminal:
            return upload
        upload.transition(db_models.UploadStatus.FAILED, message)
        return uploads.save(upload)

    async def _notify(self, upload: db_models.Upload) -> None:
        if self.on_status is None:
            return
        try:
            result = self.on_status(upload)
            if inspect.isawaitable(result):
                await result
        except Exception:  # noqa: BLE001
            logger.exception("Status callback failed for upload {}", upload.id)
