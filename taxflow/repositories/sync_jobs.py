from __future__ import annotations

import re
import threading
from dataclasses import replace
from typing import Any

from taxflow.db.postgres import PostgresTxRunner
from taxflow.models import JOB_PENDING, JOB_PROCESSING, SYNC_JOB_STATUSES, SyncJob


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


def _empty_counts() -> dict[str, int]:
    return {status: 0 for status in SYNC_JOB_STATUSES}


class InMemorySyncJobsRepository:
    def __init__(self, jobs: dict[str, SyncJob], abandoned: set[str] | None = None) -> None:
        self._jobs = jobs
        self._abandoned = abandoned if abandoned is not None else set()
        self._lock = threading.RLock()

    def create_batch(self, *, jobs: list[SyncJob]) -> list[SyncJob]:
        with self._lock:
            for job in jobs:
                if job.id in self._jobs:
                    raise ValueError(f"duplicate sync job id: {job.id}")
            for job in jobs:
                self._jobs[job.id] = replace(job)
        return [replace(job) for job in jobs]

    def get(self, *, job_id: str) -> SyncJob | None:
        with self._lock:
            row = self._jobs.get(job_id)
            return replace(row) if row is not None else None

    def list_batch(self, *, batch_id: str) -> list[SyncJob]:
        with self._lock:
            rows = [replace(x) for x in self._jobs.values() if x.batch_id == batch_id]
        return sorted(rows, key=lambda x: x.created_at)

    def list_pending(self, *, batch_id: str, limit: int) -> list[SyncJob]:
        rows = [x for x in self.list_batch(batch_id=batch_id) if x.status == JOB_PENDING]
        return rows[: max(0, int(limit))]

    def count_by_status(self, *, batch_id: str) -> dict[str, int]:
        counts = _empty_counts()
        with self._lock:
            for job in self._jobs.values():
                if job.batch_id == batch_id:
                    counts[job.status] = counts.get(job.status, 0) + 1
        return counts

    def claim(self, *, job_id: str, started_at: str) -> SyncJob | None:
        with self._lock:
            row = self._jobs.get(job_id)
            if row is None or row.status != JOB_PENDING:
                return None
            row.status = JOB_PROCESSING
            row.started_at = started_at
            return replace(row)

    def finish(
        self,
        *,
        job_id: str,
        status: str,
        completed_at: str,
        units_synced: int = 0,
        error_message: str | None = None,
    ) -> SyncJob | None:
        """Apply a terminal status; only a processing row accepts it."""
        with self._lock:
            row = self._jobs.get(job_id)
            if row is None or row.status != JOB_PROCESSING:
                return None
            row.status = status
            row.completed_at = completed_at
            row.units_synced = max(0, int(units_synced))
            row.error_message = error_message
            return replace(row)

    def mark_abandoned(self, *, batch_id: str) -> None:
        with self._lock:
            self._abandoned.add(batch_id)

    def is_abandoned(self, *, batch_id: str) -> bool:
        with self._lock:
            return batch_id in self._abandoned

    def clear_abandoned(self, *, batch_id: str) -> None:
        with self._lock:
            self._abandoned.discard(batch_id)


_COLUMNS = (
    "id, batch_id, target_id, requested_by, period, status, error_message, units_synced, "
    "created_at, started_at, completed_at"
)


def _iso(value: Any) -> str | None:
    if value is None:
        return None
    return value.isoformat() if hasattr(value, "isoformat") else str(value)


def _row_to_job(row: Any) -> SyncJob:
    return SyncJob(
        id=str(row[0]),
        batch_id=str(row[1]),
        target_id=str(row[2]),
        requested_by=str(row[3]),
        period=int(row[4]),
        status=str(row[5]),
        error_message=row[6],
        units_synced=int(row[7] or 0),
        created_at=_iso(row[8]) or "",
        started_at=_iso(row[9]),
        completed_at=_iso(row[10]),
    )


class PostgresSyncJobsRepository:
    def __init__(
        self,
        *,
        tx_runner: PostgresTxRunner,
        table_name: str = "sync_jobs",
        abandon_table_name: str = "sync_batch_abandons",
    ) -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)
        self._abandon_table = _validate_identifier(abandon_table_name)

    def create_batch(self, *, jobs: list[SyncJob]) -> list[SyncJob]:
        sql = f"""
            INSERT INTO {self._table_name} ({_COLUMNS})
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        """

        def _op(conn: Any) -> list[SyncJob]:
            with conn.cursor() as cur:
                cur.executemany(
                    sql,
                    [
                        (
                            job.id,
                            job.batch_id,
                            job.target_id,
                            job.requested_by,
                            job.period,
                            job.status,
                            job.error_message,
                            job.units_synced,
                            job.created_at,
                            job.started_at,
                            job.completed_at,
                        )
                        for job in jobs
                    ],
                )
            return [replace(job) for job in jobs]

        return self._tx_runner.run_in_tx(fn=_op)

    def get(self, *, job_id: str) -> SyncJob | None:
        sql = f"SELECT {_COLUMNS} FROM {self._table_name} WHERE id = %s LIMIT 1"

        def _op(conn: Any) -> SyncJob | None:
            with conn.cursor() as cur:
                cur.execute(sql, (job_id,))
                row = cur.fetchone()
            return _row_to_job(row) if row is not None else None

        return self._tx_runner.run_in_tx(fn=_op)

    def list_batch(self, *, batch_id: str) -> list[SyncJob]:
        sql = f"SELECT {_COLUMNS} FROM {self._table_name} WHERE batch_id = %s ORDER BY created_at ASC, id ASC"

        def _op(conn: Any) -> list[SyncJob]:
            with conn.cursor() as cur:
                cur.execute(sql, (batch_id,))
                rows = cur.fetchall()
            return [_row_to_job(r) for r in rows]

        return self._tx_runner.run_in_tx(fn=_op)

    def list_pending(self, *, batch_id: str, limit: int) -> list[SyncJob]:
        sql = f"""
            SELECT {_COLUMNS} FROM {self._table_name}
            WHERE batch_id = %s AND status = %s
            ORDER BY created_at ASC, id ASC
            LIMIT %s
        """

        def _op(conn: Any) -> list[SyncJob]:
            with conn.cursor() as cur:
                cur.execute(sql, (batch_id, JOB_PENDING, max(0, int(limit))))
                rows = cur.fetchall()
            return [_row_to_job(r) for r in rows]

        return self._tx_runner.run_in_tx(fn=_op)

    def count_by_status(self, *, batch_id: str) -> dict[str, int]:
        sql = f"SELECT status, COUNT(*) FROM {self._table_name} WHERE batch_id = %s GROUP BY status"

        def _op(conn: Any) -> dict[str, int]:
            counts = _empty_counts()
            with conn.cursor() as cur:
                cur.execute(sql, (batch_id,))
                for status, count in cur.fetchall():
                    counts[str(status)] = int(count)
            return counts

        return self._tx_runner.run_in_tx(fn=_op)

    def claim(self, *, job_id: str, started_at: str) -> SyncJob | None:
        sql = f"""
            UPDATE {self._table_name}
            SET status = %s, started_at = %s
            WHERE id = %s AND status = %s
            RETURNING {_COLUMNS}
        """

        def _op(conn: Any) -> SyncJob | None:
            with conn.cursor() as cur:
                cur.execute(sql, (JOB_PROCESSING, started_at, job_id, JOB_PENDING))
                row = cur.fetchone()
            return _row_to_job(row) if row is not None else None

        return self._tx_runner.run_in_tx(fn=_op)

    def finish(
        self,
        *,
        job_id: str,
        status: str,
        completed_at: str,
        units_synced: int = 0,
        error_message: str | None = None,
    ) -> SyncJob | None:
        sql = f"""
            UPDATE {self._table_name}
            SET status = %s, completed_at = %s, units_synced = %s, error_message = %s
            WHERE id = %s AND status = %s
            RETURNING {_COLUMNS}
        """

        def _op(conn: Any) -> SyncJob | None:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (status, completed_at, max(0, int(units_synced)), error_message, job_id, JOB_PROCESSING),
                )
                row = cur.fetchone()
            return _row_to_job(row) if row is not None else None

        return self._tx_runner.run_in_tx(fn=_op)

    def mark_abandoned(self, *, batch_id: str) -> None:
        sql = f"INSERT INTO {self._abandon_table} (batch_id, abandoned_at) VALUES (%s, now()) ON CONFLICT DO NOTHING"

        def _op(conn: Any) -> None:
            with conn.cursor() as cur:
                cur.execute(sql, (batch_id,))

        self._tx_runner.run_in_tx(fn=_op)

    def is_abandoned(self, *, batch_id: str) -> bool:
        sql = f"SELECT 1 FROM {self._abandon_table} WHERE batch_id = %s LIMIT 1"

        def _op(conn: Any) -> bool:
            with conn.cursor() as cur:
                cur.execute(sql, (batch_id,))
                return cur.fetchone() is not None

        return self._tx_runner.run_in_tx(fn=_op)

    def clear_abandoned(self, *, batch_id: str) -> None:
        sql = f"DELETE FROM {self._abandon_table} WHERE batch_id = %s"

        def _op(conn: Any) -> None:
            with conn.cursor() as cur:
                cur.execute(sql, (batch_id,))

        self._tx_runner.run_in_tx(fn=_op)
