from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from typing import Any

from taxflow.db.postgres import PostgresTxRunner
from taxflow.models import QueueItem, SyncJob
from taxflow.object_storage import ObjectStorageBackend, create_object_storage_from_env
from taxflow.repositories import (
    InMemoryClientAccessRepository,
    InMemoryQueueItemsRepository,
    InMemoryRecordsRepository,
    InMemorySyncJobsRepository,
    PostgresClientAccessRepository,
    PostgresQueueItemsRepository,
    PostgresRecordsRepository,
    PostgresSyncJobsRepository,
)
from taxflow.runtime_profile import true_stack_required

logger = logging.getLogger(__name__)


class PipelineStore:
    """Bundle of the repositories the pipeline reads and writes."""

    backend_name = "memory"

    def __init__(self, *, object_storage: ObjectStorageBackend | None = None) -> None:
        self.queue_item_rows: dict[str, QueueItem] = {}
        self.sync_job_rows: dict[str, SyncJob] = {}
        self.abandoned_batches: set[str] = set()
        self.access_grants: dict[str, set[str]] = {}
        self.record_rows: dict[str, dict[str, Any]] = {}
        self.queue_items: Any = InMemoryQueueItemsRepository(self.queue_item_rows)
        self.sync_jobs: Any = InMemorySyncJobsRepository(self.sync_job_rows, self.abandoned_batches)
        self.client_access: Any = InMemoryClientAccessRepository(self.access_grants)
        self.records: Any = InMemoryRecordsRepository(self.record_rows)
        self.object_storage = object_storage or create_object_storage_from_env(os.environ)

    def reset(self) -> None:
        self.queue_item_rows.clear()
        self.sync_job_rows.clear()
        self.abandoned_batches.clear()
        self.access_grants.clear()
        self.record_rows.clear()
        reset_fn = getattr(self.object_storage, "reset", None)
        if callable(reset_fn):
            reset_fn()


class PostgresPipelineStore(PipelineStore):
    """Same surface, rows live in PostgreSQL; reset only clears process-local state."""

    backend_name = "postgres"

    def __init__(self, *, dsn: str, object_storage: ObjectStorageBackend | None = None) -> None:
        super().__init__(object_storage=object_storage)
        tx_runner = PostgresTxRunner(dsn)
        self.queue_items = PostgresQueueItemsRepository(tx_runner=tx_runner)
        self.sync_jobs = PostgresSyncJobsRepository(tx_runner=tx_runner)
        self.client_access = PostgresClientAccessRepository(tx_runner=tx_runner)
        self.records = PostgresRecordsRepository(tx_runner=tx_runner)


def create_store_from_env(environ: Mapping[str, str] | None = None) -> PipelineStore:
    env = os.environ if environ is None else environ
    backend = env.get("TAXFLOW_STORE_BACKEND", "memory").strip().lower() or "memory"
    if backend == "memory":
        if true_stack_required(env):
            raise RuntimeError("TAXFLOW_STORE_BACKEND must be postgres when TAXFLOW_REQUIRE_TRUESTACK=true")
        return PipelineStore()
    if backend == "postgres":
        try:
            return PostgresPipelineStore(dsn=env.get("POSTGRES_DSN", ""))
        except (RuntimeError, ValueError) as exc:
            if true_stack_required(env):
                raise
            logger.warning("store_backend_fallback backend=postgres error=%s", exc)
            return PipelineStore()
    raise RuntimeError(f"unsupported store backend: {backend}")


store = create_store_from_env()
