from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from taxflow.batch_processor import BatchProcessor
from taxflow.deduplication import find_existing_duplicate
from taxflow.errors import ApiError
from taxflow.models import (
    QUEUE_COMPLETED,
    QUEUE_ERROR,
    QUEUE_NEEDS_REVIEW,
    QUEUE_PROCESSING,
    QUEUE_STATUSES,
    QUEUE_TERMINAL_STATUSES,
    DocumentPayload,
    QueueItem,
    new_id,
    utcnow_iso,
)
from taxflow.object_storage import ObjectStorageBackend
from taxflow.pipeline_config import DEFAULT_ALLOWED_MEDIA_TYPES

logger = logging.getLogger(__name__)

REJECT_TOO_MANY_FILES = "too_many_files"
REJECT_UNSUPPORTED_TYPE = "unsupported_type"
REJECT_EMPTY = "empty"
REJECT_OVERSIZE = "oversize"

DEFAULT_INCOME_CATEGORY = "B"


@dataclass
class IngestionReceipt:
    accepted: int = 0
    rejected: list[dict[str, str]] = field(default_factory=list)
    item_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class DrainSummary:
    claimed: int = 0
    completed: int = 0
    needs_review: int = 0
    errors: int = 0
    skipped: int = 0
    admitted: int = 0
    admission_errors: int = 0
    duplicates: int = 0
    capped: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def queue_stats(items: Sequence[QueueItem]) -> dict[str, int]:
    stats = {status: 0 for status in QUEUE_STATUSES}
    for item in items:
        stats[item.status] = stats.get(item.status, 0) + 1
    stats["total"] = len(items)
    return stats


def _require_target(target_id: str) -> str:
    clean = (target_id or "").strip()
    if not clean:
        raise ApiError(
            code="QUEUE_TARGET_REQUIRED",
            message="target_id is required",
            error_class="validation",
            retryable=False,
            http_status=400,
        )
    return clean


class IngestionService:
    def __init__(
        self,
        queue_items: Any,
        *,
        max_file_bytes: int = 5 * 1024 * 1024,
        max_files_per_call: int = 500,
        allowed_media_types: Sequence[str] = DEFAULT_ALLOWED_MEDIA_TYPES,
        retention_days: int = 7,
        clock: Callable[[], str] = utcnow_iso,
    ) -> None:
        self.queue_items = queue_items
        self.max_file_bytes = max(1, int(max_file_bytes))
        self.max_files_per_call = max(1, int(max_files_per_call))
        self.allowed_media_types = frozenset(allowed_media_types)
        self.retention_days = max(1, int(retention_days))
        self._clock = clock

    def _rejection_reason(self, index: int, document: DocumentPayload) -> str | None:
        if index >= self.max_files_per_call:
            return REJECT_TOO_MANY_FILES
        if document.media_type not in self.allowed_media_types:
            return REJECT_UNSUPPORTED_TYPE
        if document.size == 0:
            return REJECT_EMPTY
        if document.size > self.max_file_bytes:
            return REJECT_OVERSIZE
        return None

    def enqueue(
        self,
        *,
        owner_id: str,
        target_id: str,
        documents: Sequence[DocumentPayload],
    ) -> IngestionReceipt:
        target = _require_target(target_id)
        receipt = IngestionReceipt()
        accepted: list[QueueItem] = []
        for index, document in enumerate(documents):
            reason = self._rejection_reason(index, document)
            if reason is not None:
                receipt.rejected.append({"filename": document.filename, "reason": reason})
                continue
            accepted.append(
                QueueItem(
                    id=new_id("qi"),
                    owner_id=owner_id,
                    target_id=target,
                    payload=document,
                    created_at=self._clock(),
                )
            )
        if accepted:
            self.queue_items.create_many(items=accepted)
        receipt.accepted = len(accepted)
        receipt.item_ids = [item.id for item in accepted]
        if receipt.rejected:
            logger.warning(
                "ingestion_documents_rejected owner_id=%s target_id=%s rejected=%s",
                owner_id,
                target,
                len(receipt.rejected),
            )
        return receipt

    def remove_item(self, *, owner_id: str, item_id: str) -> None:
        item = self.queue_items.get(item_id=item_id, owner_id=owner_id)
        if item is None:
            raise ApiError(
                code="QUEUE_ITEM_NOT_FOUND",
                message="queue item not found",
                error_class="validation",
                retryable=False,
                http_status=404,
            )
        if item.status == QUEUE_PROCESSING:
            raise ApiError(
                code="QUEUE_ITEM_BUSY",
                message="queue item is being processed",
                error_class="business_rule",
                retryable=True,
                http_status=409,
            )
        self.queue_items.delete(item_id=item_id, owner_id=owner_id)

    def clear_finished(self, *, owner_id: str, target_id: str | None = None) -> int:
        return self.queue_items.delete_where_status(
            owner_id=owner_id,
            statuses=QUEUE_TERMINAL_STATUSES,
            target_id=target_id,
        )

    def purge_expired(self, *, now: datetime | None = None) -> int:
        current = now or datetime.now(UTC)
        cutoff = (current - timedelta(days=self.retention_days)).isoformat()
        removed = 0
        for item in self.queue_items.list_finished_before(cutoff_iso=cutoff):
            if self.queue_items.delete(item_id=item.id, owner_id=item.owner_id):
                removed += 1
        return removed


def build_withholding_record(item: QueueItem, *, file_path: str | None = None) -> dict[str, Any]:
    fields = dict(item.extracted_fields or {})
    return {
        "id": new_id("wh"),
        "owner_id": item.owner_id,
        "target_id": item.target_id,
        "source_item_id": item.id,
        "status": "draft",
        "beneficiary_nif": fields.get("beneficiary_nif"),
        "beneficiary_name": fields.get("beneficiary_name"),
        "beneficiary_address": fields.get("beneficiary_address"),
        "income_category": fields.get("income_category") or DEFAULT_INCOME_CATEGORY,
        "gross_amount": fields.get("gross_amount"),
        "exempt_amount": fields.get("exempt_amount") or 0,
        "dispensed_amount": fields.get("dispensed_amount") or 0,
        "withholding_rate": fields.get("withholding_rate"),
        "withholding_amount": fields.get("withholding_amount") or 0,
        "payment_date": fields.get("payment_date") or (item.completed_at or utcnow_iso())[:10],
        "document_reference": fields.get("document_reference") or item.payload.filename,
        "atcud": fields.get("atcud"),
        "supplier_nif": fields.get("supplier_nif"),
        "document_number": fields.get("document_number"),
        "document_date": fields.get("document_date"),
        "fiscal_year": item.fiscal_year,
        "confidence": item.confidence,
        "file_path": file_path,
        "created_at": item.completed_at or utcnow_iso(),
    }


class QueueDrainer:
    """Claims pending queue rows and runs them through the batch processor until none remain."""

    def __init__(
        self,
        queue_items: Any,
        processor: BatchProcessor,
        records: Any,
        *,
        fetch_size: int = 50,
        max_items_per_run: int = 500,
        asset_storage: ObjectStorageBackend | None = None,
        clock: Callable[[], str] = utcnow_iso,
    ) -> None:
        self.queue_items = queue_items
        self.processor = processor
        self.records = records
        self.fetch_size = max(1, int(fetch_size))
        self.max_items_per_run = max(1, int(max_items_per_run))
        self.asset_storage = asset_storage
        self._clock = clock

    def _persist(self, snapshot: QueueItem) -> None:
        self.queue_items.save(item=snapshot)

    def drain(self, owner_id: str | None = None) -> DrainSummary:
        summary = DrainSummary()
        while True:
            room = self.max_items_per_run - summary.claimed
            if room <= 0:
                summary.capped = True
                break
            candidates = self.queue_items.list_pending(limit=min(self.fetch_size, room), owner_id=owner_id)
            if not candidates:
                break
            claimed: list[QueueItem] = []
            for candidate in candidates:
                row = self.queue_items.claim(item_id=candidate.id, started_at=self._clock())
                if row is None:
                    summary.skipped += 1
                    continue
                claimed.append(row)
            if not claimed:
                continue
            summary.claimed += len(claimed)
            logger.info("queue_drain_round owner_id=%s claimed=%s", owner_id, len(claimed))
            for item in self.processor.process_batch(claimed, on_progress=self._persist):
                self._settle(item)
                self._account(item, summary)
        if summary.capped:
            logger.warning("queue_drain_capped owner_id=%s max_items=%s", owner_id, self.max_items_per_run)
        return summary

    def _settle(self, item: QueueItem) -> None:
        """Re-write a terminal result whose progress save did not land."""
        try:
            stored = self.queue_items.get(item_id=item.id)
            if stored is not None and stored.status == QUEUE_PROCESSING and item.status in QUEUE_TERMINAL_STATUSES:
                self._persist(item)
        except Exception as exc:
            logger.warning("queue_item_settle_failed item_id=%s error=%s", item.id, type(exc).__name__)

    def _account(self, item: QueueItem, summary: DrainSummary) -> None:
        if item.status == QUEUE_NEEDS_REVIEW:
            summary.needs_review += 1
            return
        if item.status == QUEUE_ERROR:
            summary.errors += 1
            return
        if item.status != QUEUE_COMPLETED:
            return
        summary.completed += 1
        try:
            admitted = self._admit(item)
        except Exception as exc:
            summary.admission_errors += 1
            logger.warning("record_admission_failed item_id=%s error=%s", item.id, type(exc).__name__)
            return
        if admitted is None:
            summary.duplicates += 1
        else:
            summary.admitted += 1

    def _admit(self, item: QueueItem) -> dict[str, Any] | None:
        record = build_withholding_record(item)
        existing = self.records.list_for_owner(owner_id=item.owner_id, target_id=item.target_id)
        match = find_existing_duplicate(record, existing)
        if match is not None:
            # The queue row stays completed; only the downstream insert is suppressed.
            item.warnings = [*item.warnings, f"not imported: {match.reason}"]
            self._persist(item)
            logger.info("record_duplicate_skipped item_id=%s existing_id=%s", item.id, match.existing_id)
            return None
        if self.asset_storage is not None:
            record["file_path"] = self.asset_storage.put_object(
                owner_id=item.owner_id,
                object_id=item.id,
                filename=item.payload.filename or item.id,
                content_bytes=item.payload.data,
                content_type=item.payload.media_type,
            )
        return self.records.insert(record=record)
