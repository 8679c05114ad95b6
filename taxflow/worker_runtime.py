from __future__ import annotations

import logging
import os
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from taxflow.pipeline_config import _env_int
from taxflow.queue_backend import QUEUE_INGEST, QUEUE_SYNC

logger = logging.getLogger(__name__)

MessageHandler = Callable[[dict[str, Any]], Any]


@dataclass
class WorkerRunStats:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    acked: int = 0
    unhandled: int = 0

    def add(self, other: "WorkerRunStats") -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.acked += other.acked
        self.unhandled += other.unhandled

    def as_dict(self) -> dict[str, int]:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "acked": self.acked,
            "unhandled": self.unhandled,
        }


class WorkerRuntime:
    """Resident loop that hands queued sync and drain requests to their handlers."""

    def __init__(
        self,
        *,
        queue_backend: Any,
        handlers: Mapping[str, MessageHandler],
        max_messages_per_iteration: int = 20,
        poll_interval_ms: int = 200,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.queue_backend = queue_backend
        self.handlers = dict(handlers)
        self.queue_names = list(self.handlers)
        self.max_messages_per_iteration = max(1, int(max_messages_per_iteration))
        self.poll_interval_ms = max(1, int(poll_interval_ms))
        self._sleep = sleep

    def _process_message(self, *, queue_name: str, stats: WorkerRunStats) -> bool:
        msg = self.queue_backend.dequeue(queue_name=queue_name)
        if msg is None:
            return False
        stats.processed += 1
        handler = self.handlers.get(queue_name)
        if handler is None:
            self.queue_backend.ack(message_id=msg.message_id)
            stats.acked += 1
            stats.unhandled += 1
            return True
        try:
            handler(msg.payload)
        except Exception as exc:
            # keep the loop alive; the message is not redelivered
            logger.warning(
                "worker_handler_failed queue=%s message_id=%s error=%s",
                queue_name,
                msg.message_id,
                type(exc).__name__,
            )
            stats.failed += 1
        else:
            stats.succeeded += 1
        self.queue_backend.ack(message_id=msg.message_id)
        stats.acked += 1
        return True

    def run_once(self) -> WorkerRunStats:
        stats = WorkerRunStats()
        progressed = True
        while progressed and stats.processed < self.max_messages_per_iteration:
            progressed = False
            for queue_name in self.queue_names:
                if stats.processed >= self.max_messages_per_iteration:
                    break
                if self._process_message(queue_name=queue_name, stats=stats):
                    progressed = True
        return stats

    def run_forever(self, *, stop_after_iterations: int | None = None) -> WorkerRunStats:
        aggregate = WorkerRunStats()
        iterations = 0
        while True:
            current = self.run_once()
            aggregate.add(current)
            iterations += 1
            if stop_after_iterations is not None and iterations >= max(1, stop_after_iterations):
                break
            if current.processed == 0:
                self._sleep(self.poll_interval_ms / 1000.0)
        return aggregate


def create_worker_runtime_from_env(
    *,
    queue_backend: Any,
    sync_handler: MessageHandler,
    ingest_handler: MessageHandler,
    environ: Mapping[str, str] | None = None,
) -> WorkerRuntime:
    env = os.environ if environ is None else environ
    return WorkerRuntime(
        queue_backend=queue_backend,
        handlers={QUEUE_SYNC: sync_handler, QUEUE_INGEST: ingest_handler},
        max_messages_per_iteration=_env_int(env, "WORKER_MAX_MESSAGES_PER_ITERATION", default=20, minimum=1),
        poll_interval_ms=_env_int(env, "WORKER_POLL_INTERVAL_MS", default=200, minimum=1),
    )
