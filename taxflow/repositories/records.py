from __future__ import annotations

import json
import re
import threading
from typing import Any

from taxflow.db.postgres import PostgresTxRunner

_COLUMN_FIELDS = ("id", "owner_id", "target_id", "status", "file_path", "created_at")


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


class InMemoryRecordsRepository:
    """Downstream withholding and document records, keyed by id."""

    def __init__(self, records: dict[str, dict[str, Any]]) -> None:
        self._records = records
        self._lock = threading.RLock()

    def insert(self, *, record: dict[str, Any]) -> dict[str, Any]:
        row = dict(record)
        with self._lock:
            self._records[str(row["id"])] = row
        return dict(row)

    def get(self, *, record_id: str, owner_id: str | None = None) -> dict[str, Any] | None:
        with self._lock:
            row = self._records.get(record_id)
            if row is None:
                return None
            if owner_id is not None and row.get("owner_id") != owner_id:
                return None
            return dict(row)

    def list_for_owner(self, *, owner_id: str, target_id: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            rows = [
                dict(x)
                for x in self._records.values()
                if x.get("owner_id") == owner_id and (target_id is None or x.get("target_id") == target_id)
            ]
        return sorted(rows, key=lambda x: str(x.get("created_at") or ""))

    def delete_many(self, *, owner_id: str, record_ids: list[str]) -> list[dict[str, Any]]:
        deleted: list[dict[str, Any]] = []
        with self._lock:
            for record_id in record_ids:
                row = self._records.get(record_id)
                if row is None or row.get("owner_id") != owner_id:
                    continue
                deleted.append(self._records.pop(record_id))
        return deleted


def _row_to_record(row: Any) -> dict[str, Any]:
    data = row[6] if isinstance(row[6], dict) else {}
    record = dict(data)
    created_at = row[5]
    record.update(
        {
            "id": str(row[0]),
            "owner_id": str(row[1]),
            "target_id": row[2],
            "status": row[3],
            "file_path": row[4],
            "created_at": created_at.isoformat() if hasattr(created_at, "isoformat") else created_at,
        }
    )
    return record


class PostgresRecordsRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "withholding_records") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    def insert(self, *, record: dict[str, Any]) -> dict[str, Any]:
        payload = dict(record)
        data = {k: v for k, v in payload.items() if k not in _COLUMN_FIELDS}
        sql = f"""
            INSERT INTO {self._table_name} (id, owner_id, target_id, status, file_path, created_at, data)
            VALUES (%s, %s, %s, %s, %s, %s, %s::jsonb)
        """

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        payload["id"],
                        payload["owner_id"],
                        payload.get("target_id"),
                        payload.get("status", "draft"),
                        payload.get("file_path"),
                        payload.get("created_at"),
                        json.dumps(data, ensure_ascii=True, sort_keys=True, default=str),
                    ),
                )
            return payload

        return self._tx_runner.run_in_tx(owner_id=str(payload["owner_id"]), fn=_op)

    def get(self, *, record_id: str, owner_id: str | None = None) -> dict[str, Any] | None:
        sql = f"""
            SELECT id, owner_id, target_id, status, file_path, created_at, data
            FROM {self._table_name} WHERE id = %s
        """
        params: list[Any] = [record_id]
        if owner_id is not None:
            sql += " AND owner_id = %s"
            params.append(owner_id)

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql + " LIMIT 1", tuple(params))
                row = cur.fetchone()
            return _row_to_record(row) if row is not None else None

        return self._tx_runner.run_in_tx(fn=_op)

    def list_for_owner(self, *, owner_id: str, target_id: str | None = None) -> list[dict[str, Any]]:
        sql = f"""
            SELECT id, owner_id, target_id, status, file_path, created_at, data
            FROM {self._table_name} WHERE owner_id = %s
        """
        params: list[Any] = [owner_id]
        if target_id is not None:
            sql += " AND target_id = %s"
            params.append(target_id)
        sql += " ORDER BY created_at ASC, id ASC"

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, tuple(params))
                rows = cur.fetchall()
            return [_row_to_record(r) for r in rows]

        return self._tx_runner.run_in_tx(owner_id=owner_id, fn=_op)

    def delete_many(self, *, owner_id: str, record_ids: list[str]) -> list[dict[str, Any]]:
        if not record_ids:
            return []
        sql = f"""
            DELETE FROM {self._table_name}
            WHERE owner_id = %s AND id = ANY(%s)
            RETURNING id, owner_id, target_id, status, file_path, created_at, data
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, (owner_id, list(record_ids)))
                rows = cur.fetchall()
            return [_row_to_record(r) for r in rows]

        return self._tx_runner.run_in_tx(owner_id=owner_id, fn=_op)
