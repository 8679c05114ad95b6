from __future__ import annotations

import re
import threading
from typing import Any

from taxflow.db.postgres import PostgresTxRunner


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


class InMemoryClientAccessRepository:
    """Caller to target relation; a caller may only act on targets granted here."""

    def __init__(self, grants: dict[str, set[str]]) -> None:
        self._grants = grants
        self._lock = threading.RLock()

    def grant(self, *, caller_id: str, target_id: str) -> None:
        with self._lock:
            self._grants.setdefault(caller_id, set()).add(target_id)

    def authorized_targets(self, *, caller_id: str, target_ids: list[str]) -> set[str]:
        with self._lock:
            allowed = set(self._grants.get(caller_id, set()))
        return {x for x in target_ids if x in allowed}


class PostgresClientAccessRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "client_accountants") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    def grant(self, *, caller_id: str, target_id: str) -> None:
        sql = f"""
            INSERT INTO {self._table_name} (accountant_id, client_id)
            VALUES (%s, %s)
            ON CONFLICT DO NOTHING
        """

        def _op(conn: Any) -> None:
            with conn.cursor() as cur:
                cur.execute(sql, (caller_id, target_id))

        self._tx_runner.run_in_tx(owner_id=caller_id, fn=_op)

    def authorized_targets(self, *, caller_id: str, target_ids: list[str]) -> set[str]:
        if not target_ids:
            return set()
        sql = f"""
            SELECT client_id FROM {self._table_name}
            WHERE accountant_id = %s AND client_id = ANY(%s)
        """

        def _op(conn: Any) -> set[str]:
            with conn.cursor() as cur:
                cur.execute(sql, (caller_id, list(target_ids)))
                return {str(row[0]) for row in cur.fetchall()}

        return self._tx_runner.run_in_tx(owner_id=caller_id, fn=_op)
