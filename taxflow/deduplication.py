"""
Duplicate detection over downstream records.

Two records are duplicates when they share a key: the ATCUD code when the
record has one, else supplier tax id + document number + document date.
Equal amounts alone never make a duplicate.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Mapping, Sequence
from concurrent.futures import Executor, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any

from taxflow.models import CONFIRMED_RECORD_STATUSES, DuplicateGroup
from taxflow.object_storage import ObjectStorageBackend

logger = logging.getLogger(__name__)


def _clean(value: Any) -> str:
    return str(value).strip() if value is not None else ""


def dedup_key(record: Mapping[str, Any]) -> str | None:
    atcud = _clean(record.get("atcud"))
    if atcud:
        return f"atcud:{atcud}"
    supplier_nif = _clean(record.get("supplier_nif"))
    document_number = _clean(record.get("document_number"))
    document_date = _clean(record.get("document_date"))
    if supplier_nif and document_number and document_date:
        return f"doc:{supplier_nif}|{document_number}|{document_date}"
    return None


def _member_order(record: Mapping[str, Any]) -> tuple[str, str]:
    return (_clean(record.get("created_at")), _clean(record.get("id")))


def _choose_keep(members: Sequence[Mapping[str, Any]]) -> str:
    for member in members:
        if member.get("status") in CONFIRMED_RECORD_STATUSES:
            return _clean(member["id"])
    return _clean(members[0]["id"])


def find_duplicates(records: Iterable[Mapping[str, Any]]) -> list[DuplicateGroup]:
    grouped: dict[str, list[dict[str, Any]]] = {}
    for record in records:
        key = dedup_key(record)
        if key is None:
            continue
        grouped.setdefault(key, []).append(dict(record))

    groups: list[DuplicateGroup] = []
    for key, members in grouped.items():
        if len(members) < 2:
            continue
        ordered = sorted(members, key=_member_order)
        groups.append(DuplicateGroup(key=key, members=ordered, keep_id=_choose_keep(ordered)))
    return groups


@dataclass(frozen=True)
class Resolution:
    keep_id: str
    delete_ids: list[str]


def resolve(group: DuplicateGroup) -> Resolution:
    keep_id = _choose_keep(group.members)
    return Resolution(keep_id=keep_id, delete_ids=[_clean(m["id"]) for m in group.members if _clean(m["id"]) != keep_id])


@dataclass(frozen=True)
class DuplicateMatch:
    existing_id: str
    key: str
    reason: str


def find_existing_duplicate(
    candidate: Mapping[str, Any],
    records: Iterable[Mapping[str, Any]],
) -> DuplicateMatch | None:
    """Pre-insert check: return the stored record the candidate would duplicate."""
    key = dedup_key(candidate)
    if key is None:
        return None
    for record in sorted((dict(r) for r in records), key=_member_order):
        if _clean(record.get("id")) == _clean(candidate.get("id")):
            continue
        if dedup_key(record) != key:
            continue
        if key.startswith("atcud:"):
            reason = f"duplicate ATCUD {_clean(candidate.get('atcud'))}"
        else:
            reason = (
                f"document {_clean(candidate.get('document_number'))} from supplier "
                f"{_clean(candidate.get('supplier_nif'))} dated {_clean(candidate.get('document_date'))} already exists"
            )
        return DuplicateMatch(existing_id=_clean(record["id"]), key=key, reason=reason)
    return None


@dataclass
class CleanupReport:
    deleted_ids: list[str] = field(default_factory=list)
    assets_scheduled: int = 0
    cleanup_errors: list[dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "deleted_ids": list(self.deleted_ids),
            "deleted": len(self.deleted_ids),
            "assets_scheduled": self.assets_scheduled,
        }


class DuplicateCleaner:
    """Deletes non-keep records, then removes their stored files without waiting."""

    def __init__(
        self,
        records: Any,
        asset_storage: ObjectStorageBackend | None,
        *,
        executor: Executor | None = None,
    ) -> None:
        self.records = records
        self.asset_storage = asset_storage
        self._executor = executor
        self._lock = threading.Lock()
        self._pending: list[Future] = []

    @property
    def executor(self) -> Executor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="asset-cleanup")
        return self._executor

    def delete(self, *, owner_id: str, resolutions: Sequence[Resolution]) -> CleanupReport:
        ids: list[str] = []
        for resolution in resolutions:
            ids.extend(x for x in resolution.delete_ids if x != resolution.keep_id and x not in ids)
        report = CleanupReport()
        if not ids:
            return report

        deleted = self.records.delete_many(owner_id=owner_id, record_ids=ids)
        report.deleted_ids = [_clean(row["id"]) for row in deleted]

        if self.asset_storage is None:
            return report
        for row in deleted:
            path = _clean(row.get("file_path"))
            if not path:
                continue
            future = self.executor.submit(self._remove_asset, path, report)
            report.assets_scheduled += 1
            with self._lock:
                self._pending.append(future)
        return report

    def _remove_asset(self, storage_uri: str, report: CleanupReport) -> None:
        try:
            self.asset_storage.delete_object(storage_uri=storage_uri)
        except Exception as exc:
            logger.warning("asset_cleanup_failed storage_uri=%s error=%s", storage_uri, type(exc).__name__)
            with self._lock:
                report.cleanup_errors.append({"storage_uri": storage_uri, "error": str(exc) or type(exc).__name__})

    def wait_for_cleanup(self, timeout: float | None = None) -> None:
        with self._lock:
            pending, self._pending = self._pending, []
        wait(pending, timeout=timeout)
