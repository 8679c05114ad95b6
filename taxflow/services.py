from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from taxflow.batch_processor import BatchProcessor
from taxflow.continuation import DrainContinuationTrigger, QueueContinuationTrigger
from taxflow.deduplication import DuplicateCleaner
from taxflow.extraction import ExtractionService, create_extraction_service_from_env
from taxflow.ingestion import DrainSummary, IngestionService, QueueDrainer
from taxflow.pipeline_config import PipelineConfig
from taxflow.progress import ProgressAggregator
from taxflow.store import PipelineStore
from taxflow.sync_client import create_sync_client_from_env
from taxflow.sync_runner import RunBatchResult, SyncJobRunner
from taxflow.sync_scheduler import SyncJobScheduler

logger = logging.getLogger(__name__)


@dataclass
class PipelineServices:
    config: PipelineConfig
    store: PipelineStore
    queue_backend: Any
    processor: BatchProcessor
    ingestion: IngestionService
    drainer: QueueDrainer
    drain_trigger: DrainContinuationTrigger
    scheduler: SyncJobScheduler
    runner: SyncJobRunner
    progress: ProgressAggregator
    cleaner: DuplicateCleaner

    def handle_sync_message(self, payload: dict[str, Any]) -> RunBatchResult | None:
        batch_id = str(payload.get("batch_id") or "").strip()
        if not batch_id:
            logger.warning("sync_message_without_batch payload_kind=%s", payload.get("kind"))
            return None
        return self.runner.run_batch(batch_id, self.config.sync_wall_clock_budget_s)

    def handle_ingest_message(self, payload: dict[str, Any]) -> DrainSummary:
        owner_id = payload.get("owner_id") or None
        return self.drainer.drain(owner_id=owner_id)


def build_services(
    *,
    store: PipelineStore,
    queue_backend: Any,
    config: PipelineConfig | None = None,
    extractor: ExtractionService | None = None,
    sync_client: Any = None,
    sleep: Callable[[float], None] = time.sleep,
) -> PipelineServices:
    cfg = config or PipelineConfig.from_env()
    processor = BatchProcessor(
        extractor or create_extraction_service_from_env(),
        concurrency_limit=cfg.concurrency_limit,
        max_retries=cfg.max_retries,
        retry_delay_s=cfg.retry_delay_s,
        retry_delay_max_s=cfg.retry_delay_max_s,
        chunk_delay_s=cfg.chunk_delay_s,
        sleep=sleep,
    )
    sync_trigger = QueueContinuationTrigger(queue_backend)
    return PipelineServices(
        config=cfg,
        store=store,
        queue_backend=queue_backend,
        processor=processor,
        ingestion=IngestionService(
            store.queue_items,
            max_file_bytes=cfg.max_file_bytes,
            max_files_per_call=cfg.max_files_per_call,
            allowed_media_types=cfg.allowed_media_types,
            retention_days=cfg.queue_retention_days,
        ),
        drainer=QueueDrainer(
            store.queue_items,
            processor,
            store.records,
            fetch_size=cfg.queue_fetch_size,
            max_items_per_run=cfg.queue_max_items_per_run,
            asset_storage=store.object_storage,
        ),
        drain_trigger=DrainContinuationTrigger(queue_backend),
        scheduler=SyncJobScheduler(store.sync_jobs, store.client_access, sync_trigger),
        runner=SyncJobRunner(
            store.sync_jobs,
            sync_client or create_sync_client_from_env(),
            sync_trigger,
            fetch_limit=cfg.sync_fetch_limit,
            safety_margin_ratio=cfg.sync_safety_margin_ratio,
            mode=cfg.sync_default_mode,
        ),
        progress=ProgressAggregator(store.sync_jobs),
        cleaner=DuplicateCleaner(store.records, store.object_storage),
    )
