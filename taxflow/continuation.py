"""
Ways to start another runner invocation without waiting for it.

The runner only needs ``trigger(batch_id)``. Production wiring enqueues a
message for the worker process; the thread trigger keeps everything in one
process for local runs.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from typing import Any, Protocol

from taxflow.queue_backend import QUEUE_INGEST, QUEUE_SYNC

logger = logging.getLogger(__name__)

SYNC_BATCH_KIND = "sync_batch"
QUEUE_DRAIN_KIND = "queue_drain"


class ContinuationTrigger(Protocol):
    def trigger(self, batch_id: str) -> None:
        ...


class QueueContinuationTrigger:
    def __init__(self, queue_backend: Any, *, queue_name: str = QUEUE_SYNC) -> None:
        self.queue_backend = queue_backend
        self.queue_name = queue_name

    def trigger(self, batch_id: str) -> None:
        self.queue_backend.enqueue(
            queue_name=self.queue_name,
            payload={"kind": SYNC_BATCH_KIND, "batch_id": batch_id},
        )
        logger.info("sync_continuation_enqueued batch_id=%s", batch_id)


class ThreadContinuationTrigger:
    def __init__(self, run_fn: Callable[[str], Any], *, executor: Executor | None = None) -> None:
        self._run_fn = run_fn
        self._executor = executor or ThreadPoolExecutor(max_workers=1, thread_name_prefix="sync-continuation")

    def trigger(self, batch_id: str) -> Future:
        future = self._executor.submit(self._run_fn, batch_id)
        future.add_done_callback(lambda f: self._log_failure(batch_id, f))
        return future

    @staticmethod
    def _log_failure(batch_id: str, future: Future) -> None:
        exc = future.exception()
        if exc is not None:
            logger.warning("sync_continuation_failed batch_id=%s error=%s", batch_id, type(exc).__name__)


class DrainContinuationTrigger:
    """Requests an ingestion queue drain through the worker queue."""

    def __init__(self, queue_backend: Any, *, queue_name: str = QUEUE_INGEST) -> None:
        self.queue_backend = queue_backend
        self.queue_name = queue_name

    def trigger(self, owner_id: str | None = None) -> None:
        self.queue_backend.enqueue(
            queue_name=self.queue_name,
            payload={"kind": QUEUE_DRAIN_KIND, "owner_id": owner_id},
        )
        logger.info("queue_drain_enqueued owner_id=%s", owner_id)
