from __future__ import annotations

import json
import re
import threading
from dataclasses import replace
from typing import Any

from taxflow.db.postgres import PostgresTxRunner
from taxflow.models import (
    QUEUE_PENDING,
    QUEUE_PROCESSING,
    QUEUE_TERMINAL_STATUSES,
    DocumentPayload,
    QueueItem,
)


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


def _copy(item: QueueItem) -> QueueItem:
    fields = dict(item.extracted_fields) if item.extracted_fields is not None else None
    return replace(item, warnings=list(item.warnings), extracted_fields=fields)


def _sort_key(item: QueueItem) -> str:
    return item.created_at


class InMemoryQueueItemsRepository:
    def __init__(self, items: dict[str, QueueItem]) -> None:
        self._items = items
        self._lock = threading.RLock()

    def create_many(self, *, items: list[QueueItem]) -> list[QueueItem]:
        with self._lock:
            for item in items:
                self._items[item.id] = _copy(item)
        return [_copy(item) for item in items]

    def get(self, *, item_id: str, owner_id: str | None = None) -> QueueItem | None:
        with self._lock:
            row = self._items.get(item_id)
            if row is None:
                return None
            if owner_id is not None and row.owner_id != owner_id:
                return None
            return _copy(row)

    def list_for_owner(self, *, owner_id: str, target_id: str | None = None) -> list[QueueItem]:
        with self._lock:
            rows = [
                _copy(x)
                for x in self._items.values()
                if x.owner_id == owner_id and (target_id is None or x.target_id == target_id)
            ]
        return sorted(rows, key=_sort_key)

    def list_pending(self, *, limit: int, owner_id: str | None = None) -> list[QueueItem]:
        with self._lock:
            rows = [
                _copy(x)
                for x in self._items.values()
                if x.status == QUEUE_PENDING and (owner_id is None or x.owner_id == owner_id)
            ]
        rows.sort(key=_sort_key)
        return rows[: max(0, int(limit))]

    def claim(self, *, item_id: str, started_at: str) -> QueueItem | None:
        """Move a row from pending to processing; None when another runner got there first."""
        with self._lock:
            row = self._items.get(item_id)
            if row is None or row.status != QUEUE_PENDING:
                return None
            row.status = QUEUE_PROCESSING
            row.started_at = started_at
            return _copy(row)

    def save(self, *, item: QueueItem) -> QueueItem | None:
        with self._lock:
            row = self._items.get(item.id)
            if row is None:
                return None
            if row.is_terminal and not item.is_terminal:
                return _copy(row)
            self._items[item.id] = _copy(item)
            return _copy(item)

    def delete(self, *, item_id: str, owner_id: str) -> bool:
        with self._lock:
            row = self._items.get(item_id)
            if row is None or row.owner_id != owner_id:
                return False
            del self._items[item_id]
            return True

    def delete_where_status(
        self,
        *,
        owner_id: str,
        statuses: frozenset[str] | set[str],
        target_id: str | None = None,
    ) -> int:
        with self._lock:
            doomed = [
                x.id
                for x in self._items.values()
                if x.owner_id == owner_id
                and x.status in statuses
                and (target_id is None or x.target_id == target_id)
            ]
            for item_id in doomed:
                del self._items[item_id]
        return len(doomed)

    def list_finished_before(self, *, cutoff_iso: str) -> list[QueueItem]:
        with self._lock:
            rows = [
                _copy(x)
                for x in self._items.values()
                if x.is_terminal and (x.completed_at or x.created_at) < cutoff_iso
            ]
        return sorted(rows, key=_sort_key)


_COLUMNS = (
    "id, owner_id, target_id, filename, media_type, payload, status, extracted_fields, confidence, "
    "warnings, error_message, attempts, fiscal_year, created_at, started_at, completed_at"
)


def _iso(value: Any) -> str | None:
    if value is None:
        return None
    return value.isoformat() if hasattr(value, "isoformat") else str(value)


def _row_to_item(row: Any) -> QueueItem:
    return QueueItem(
        id=str(row[0]),
        owner_id=str(row[1]),
        target_id=str(row[2]),
        payload=DocumentPayload(data=bytes(row[5] or b""), media_type=str(row[4]), filename=str(row[3] or "")),
        status=str(row[6]),
        extracted_fields=row[7] if isinstance(row[7], dict) else None,
        confidence=float(row[8]) if row[8] is not None else None,
        warnings=list(row[9]) if isinstance(row[9], list) else [],
        error_message=row[10],
        attempts=int(row[11] or 0),
        fiscal_year=int(row[12]) if row[12] is not None else None,
        created_at=_iso(row[13]) or "",
        started_at=_iso(row[14]),
        completed_at=_iso(row[15]),
    )


class PostgresQueueItemsRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "queue_items") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    def create_many(self, *, items: list[QueueItem]) -> list[QueueItem]:
        sql = f"""
            INSERT INTO {self._table_name} ({_COLUMNS})
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s::jsonb, %s, %s::jsonb, %s, %s, %s, %s, %s, %s)
        """

        def _op(conn: Any) -> list[QueueItem]:
            with conn.cursor() as cur:
                for item in items:
                    cur.execute(
                        sql,
                        (
                            item.id,
                            item.owner_id,
                            item.target_id,
                            item.payload.filename,
                            item.payload.media_type,
                            item.payload.data,
                            item.status,
                            json.dumps(item.extracted_fields, ensure_ascii=True, sort_keys=True),
                            item.confidence,
                            json.dumps(item.warnings, ensure_ascii=True),
                            item.error_message,
                            item.attempts,
                            item.fiscal_year,
                            item.created_at,
                            item.started_at,
                            item.completed_at,
                        ),
                    )
            return [_copy(item) for item in items]

        return self._tx_runner.run_in_tx(fn=_op)

    def get(self, *, item_id: str, owner_id: str | None = None) -> QueueItem | None:
        sql = f"SELECT {_COLUMNS} FROM {self._table_name} WHERE id = %s"
        params: list[Any] = [item_id]
        if owner_id is not None:
            sql += " AND owner_id = %s"
            params.append(owner_id)

        def _op(conn: Any) -> QueueItem | None:
            with conn.cursor() as cur:
                cur.execute(sql + " LIMIT 1", tuple(params))
                row = cur.fetchone()
            return _row_to_item(row) if row is not None else None

        return self._tx_runner.run_in_tx(fn=_op)

    def list_for_owner(self, *, owner_id: str, target_id: str | None = None) -> list[QueueItem]:
        sql = f"SELECT {_COLUMNS} FROM {self._table_name} WHERE owner_id = %s"
        params: list[Any] = [owner_id]
        if target_id is not None:
            sql += " AND target_id = %s"
            params.append(target_id)
        sql += " ORDER BY created_at ASC, id ASC"

        def _op(conn: Any) -> list[QueueItem]:
            with conn.cursor() as cur:
                cur.execute(sql, tuple(params))
                rows = cur.fetchall()
            return [_row_to_item(r) for r in rows]

        return self._tx_runner.run_in_tx(owner_id=owner_id, fn=_op)

    def list_pending(self, *, limit: int, owner_id: str | None = None) -> list[QueueItem]:
        sql = f"SELECT {_COLUMNS} FROM {self._table_name} WHERE status = %s"
        params: list[Any] = [QUEUE_PENDING]
        if owner_id is not None:
            sql += " AND owner_id = %s"
            params.append(owner_id)
        sql += " ORDER BY created_at ASC, id ASC LIMIT %s"
        params.append(max(0, int(limit)))

        def _op(conn: Any) -> list[QueueItem]:
            with conn.cursor() as cur:
                cur.execute(sql, tuple(params))
                rows = cur.fetchall()
            return [_row_to_item(r) for r in rows]

        return self._tx_runner.run_in_tx(fn=_op)

    def claim(self, *, item_id: str, started_at: str) -> QueueItem | None:
        sql = f"""
            UPDATE {self._table_name}
            SET status = %s, started_at = %s
            WHERE id = %s AND status = %s
            RETURNING {_COLUMNS}
        """

        def _op(conn: Any) -> QueueItem | None:
            with conn.cursor() as cur:
                cur.execute(sql, (QUEUE_PROCESSING, started_at, item_id, QUEUE_PENDING))
                row = cur.fetchone()
            return _row_to_item(row) if row is not None else None

        return self._tx_runner.run_in_tx(fn=_op)

    def save(self, *, item: QueueItem) -> QueueItem | None:
        sql = f"""
            UPDATE {self._table_name}
            SET status = %s, extracted_fields = %s::jsonb, confidence = %s, warnings = %s::jsonb,
                error_message = %s, attempts = %s, fiscal_year = %s, started_at = %s, completed_at = %s
            WHERE id = %s
        """
        params: list[Any] = [
            item.status,
            json.dumps(item.extracted_fields, ensure_ascii=True, sort_keys=True),
            item.confidence,
            json.dumps(item.warnings, ensure_ascii=True),
            item.error_message,
            item.attempts,
            item.fiscal_year,
            item.started_at,
            item.completed_at,
            item.id,
        ]
        if not item.is_terminal:
            # a progress snapshot never moves a finished row backwards
            sql += " AND NOT (status = ANY(%s))"
            params.append(sorted(QUEUE_TERMINAL_STATUSES))

        def _op(conn: Any) -> QueueItem | None:
            with conn.cursor() as cur:
                cur.execute(sql, tuple(params))
                updated = cur.rowcount
            return _copy(item) if updated else None

        return self._tx_runner.run_in_tx(fn=_op)

    def delete(self, *, item_id: str, owner_id: str) -> bool:
        sql = f"DELETE FROM {self._table_name} WHERE id = %s AND owner_id = %s"

        def _op(conn: Any) -> bool:
            with conn.cursor() as cur:
                cur.execute(sql, (item_id, owner_id))
                return cur.rowcount > 0

        return self._tx_runner.run_in_tx(owner_id=owner_id, fn=_op)

    def delete_where_status(
        self,
        *,
        owner_id: str,
        statuses: frozenset[str] | set[str],
        target_id: str | None = None,
    ) -> int:
        sql = f"DELETE FROM {self._table_name} WHERE owner_id = %s AND status = ANY(%s)"
        params: list[Any] = [owner_id, sorted(statuses)]
        if target_id is not None:
            sql += " AND target_id = %s"
            params.append(target_id)

        def _op(conn: Any) -> int:
            with conn.cursor() as cur:
                cur.execute(sql, tuple(params))
                return int(cur.rowcount)

        return self._tx_runner.run_in_tx(owner_id=owner_id, fn=_op)

    def list_finished_before(self, *, cutoff_iso: str) -> list[QueueItem]:
        sql = f"""
            SELECT {_COLUMNS} FROM {self._table_name}
            WHERE status = ANY(%s) AND COALESCE(completed_at, created_at) < %s
            ORDER BY created_at ASC, id ASC
        """

        def _op(conn: Any) -> list[QueueItem]:
            with conn.cursor() as cur:
                cur.execute(sql, (sorted(QUEUE_TERMINAL_STATUSES), cutoff_iso))
                rows = cur.fetchall()
            return [_row_to_item(r) for r in rows]

        return self._tx_runner.run_in_tx(fn=_op)
