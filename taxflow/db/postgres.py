from __future__ import annotations

from collections.abc import Callable
from typing import Any


def _import_psycopg() -> Any:
    try:
        import psycopg  # type: ignore
    except ImportError as exc:
        raise RuntimeError("psycopg is required for PostgreSQL backends; install psycopg[binary]") from exc
    return psycopg


class PostgresTxRunner:
    """Run callback logic in one PostgreSQL transaction, optionally scoped to an owner session."""

    def __init__(self, dsn: str) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must not be empty")
        self._dsn = dsn.strip()

    def run_in_tx(
        self,
        *,
        fn: Callable[[Any], Any],
        owner_id: str | None = None,
    ) -> Any:
        if owner_id is not None and not owner_id.strip():
            raise ValueError("owner_id must not be empty")

        psycopg = _import_psycopg()
        with psycopg.connect(self._dsn) as conn:
            if owner_id is not None:
                with conn.cursor() as cur:
                    cur.execute("SELECT set_config('app.current_owner', %s, true)", (owner_id,))
            result = fn(conn)
            conn.commit()
            return result
