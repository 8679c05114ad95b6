from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from typing import Any, TypeVar

from taxflow.confidence_gate import admission_status, evaluate, parse_document_date
from taxflow.errors import UpstreamError
from taxflow.extraction import ExtractionService
from taxflow.models import QUEUE_ERROR, QUEUE_PROCESSING, GateResult, QueueItem, utcnow_iso

logger = logging.getLogger(__name__)

T = TypeVar("T")

ProgressCallback = Callable[[QueueItem], None]


def chunk(items: Sequence[T], size: int) -> list[list[T]]:
    step = max(1, int(size))
    return [list(items[i : i + step]) for i in range(0, len(items), step)]


class BatchProcessor:
    """Bounded-concurrency extraction with per-item retries and a confidence gate.

    Chunks run strictly one after another. Inside a chunk every item has its
    own worker thread, so at most ``concurrency_limit`` extractions are in
    flight at any time.
    """

    def __init__(
        self,
        extractor: ExtractionService,
        *,
        concurrency_limit: int = 5,
        max_retries: int = 3,
        retry_delay_s: float = 1.0,
        retry_delay_max_s: float = 30.0,
        chunk_delay_s: float = 0.5,
        gate: Callable[[dict[str, Any]], GateResult] = evaluate,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], str] = utcnow_iso,
    ) -> None:
        self.extractor = extractor
        self.concurrency_limit = max(1, int(concurrency_limit))
        self.max_retries = max(0, int(max_retries))
        self.retry_delay_s = max(0.0, float(retry_delay_s))
        self.retry_delay_max_s = max(self.retry_delay_s, float(retry_delay_max_s))
        self.chunk_delay_s = max(0.0, float(chunk_delay_s))
        self._gate = gate
        self._sleep = sleep
        self._clock = clock
        self._progress_lock = threading.Lock()

    def backoff_s(self, failed_attempts: int) -> float:
        n = max(1, int(failed_attempts))
        return min(self.retry_delay_max_s, self.retry_delay_s * (2 ** (n - 1)))

    def process_batch(
        self,
        items: Sequence[QueueItem],
        on_progress: ProgressCallback | None = None,
    ) -> list[QueueItem]:
        def emit(item: QueueItem) -> None:
            if on_progress is None:
                return
            snapshot = replace(item, warnings=list(item.warnings))
            try:
                with self._progress_lock:
                    on_progress(snapshot)
            except Exception as exc:
                # progress sinks are best effort; the result list is authoritative
                logger.warning(
                    "batch_progress_failed item_id=%s status=%s error=%s",
                    snapshot.id,
                    snapshot.status,
                    type(exc).__name__,
                )

        results: list[QueueItem] = []
        groups = chunk(items, self.concurrency_limit)
        for index, group in enumerate(groups):
            if index > 0 and self.chunk_delay_s > 0:
                self._sleep(self.chunk_delay_s)
            logger.info("batch_chunk_start index=%s size=%s total_chunks=%s", index, len(group), len(groups))
            with ThreadPoolExecutor(max_workers=len(group)) as pool:
                working = [replace(item, warnings=list(item.warnings)) for item in group]
                futures = [pool.submit(self._process_item, item, emit) for item in working]
                for item, future in zip(working, futures):
                    try:
                        results.append(future.result())
                    except Exception as exc:
                        logger.warning("batch_item_crashed item_id=%s error=%s", item.id, type(exc).__name__)
                        results.append(self._fail(item, str(exc) or type(exc).__name__, emit))
        return results

    def _process_item(self, item: QueueItem, emit: ProgressCallback) -> QueueItem:
        item.status = QUEUE_PROCESSING
        item.started_at = self._clock()
        item.error_message = None
        emit(item)

        last_error = ""
        for attempt in range(1, self.max_retries + 2):
            if attempt > 1:
                delay = self.backoff_s(attempt - 1)
                emit(replace(item, warnings=[*item.warnings, f"retry {attempt - 1}/{self.max_retries}: {last_error}"]))
                self._sleep(delay)
            item.attempts = attempt
            try:
                fields = self.extractor.extract(item.payload)
            except UpstreamError as exc:
                last_error = f"{exc.code}: {exc.message}"
                if not exc.retryable:
                    return self._fail(item, last_error, emit)
                logger.warning("extraction_retryable_failure item_id=%s attempt=%s code=%s", item.id, attempt, exc.code)
                continue
            except Exception as exc:
                last_error = str(exc) or type(exc).__name__
                logger.warning(
                    "extraction_unexpected_failure item_id=%s attempt=%s error=%s",
                    item.id,
                    attempt,
                    type(exc).__name__,
                )
                continue
            return self._finish(item, fields, emit)
        return self._fail(item, last_error, emit)

    def _finish(self, item: QueueItem, fields: dict[str, Any], emit: ProgressCallback) -> QueueItem:
        result = self._gate(fields)
        item.extracted_fields = dict(fields)
        item.confidence = result.confidence
        item.warnings = list(result.warnings)
        item.status = admission_status(result)
        item.error_message = None if result.admitted else (result.warnings[0] if result.warnings else None)
        payment_date = parse_document_date(fields.get("payment_date"))
        item.fiscal_year = payment_date.year if payment_date else int(self._clock()[:4])
        item.completed_at = self._clock()
        emit(item)
        return item

    def _fail(self, item: QueueItem, message: str, emit: ProgressCallback) -> QueueItem:
        item.status = QUEUE_ERROR
        item.error_message = message
        item.completed_at = self._clock()
        emit(item)
        return item
