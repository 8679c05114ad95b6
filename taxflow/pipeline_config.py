from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field

DEFAULT_ALLOWED_MEDIA_TYPES = (
    "application/pdf",
    "image/jpeg",
    "image/png",
    "image/gif",
    "image/webp",
)


def _env_int(env: Mapping[str, str], name: str, *, default: int, minimum: int = 0) -> int:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_float(
    env: Mapping[str, str],
    name: str,
    *,
    default: float,
    minimum: float = 0.0,
    maximum: float = 1.0,
) -> float:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return max(minimum, min(maximum, value))


def _split_csv(raw: str) -> list[str]:
    return [x.strip() for x in raw.split(",") if x.strip()]


@dataclass
class PipelineConfig:
    concurrency_limit: int = 5
    max_retries: int = 3
    retry_delay_ms: int = 1000
    retry_delay_max_ms: int = 30000
    chunk_delay_ms: int = 500
    queue_fetch_size: int = 50
    queue_max_items_per_run: int = 500
    max_file_bytes: int = 5 * 1024 * 1024
    max_files_per_call: int = 500
    allowed_media_types: tuple[str, ...] = field(default=DEFAULT_ALLOWED_MEDIA_TYPES)
    sync_fetch_limit: int = 5
    sync_wall_clock_budget_ms: int = 50000
    sync_safety_margin_ratio: float = 0.1
    sync_default_mode: str = "both"
    queue_retention_days: int = 7

    @property
    def retry_delay_s(self) -> float:
        return self.retry_delay_ms / 1000.0

    @property
    def retry_delay_max_s(self) -> float:
        return self.retry_delay_max_ms / 1000.0

    @property
    def chunk_delay_s(self) -> float:
        return self.chunk_delay_ms / 1000.0

    @property
    def sync_wall_clock_budget_s(self) -> float:
        return self.sync_wall_clock_budget_ms / 1000.0

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "PipelineConfig":
        env = os.environ if environ is None else environ
        media_raw = str(env.get("INGEST_ALLOWED_MEDIA_TYPES", "")).strip()
        media_types = tuple(_split_csv(media_raw)) or DEFAULT_ALLOWED_MEDIA_TYPES
        return cls(
            concurrency_limit=_env_int(env, "BATCH_CONCURRENCY_LIMIT", default=5, minimum=1),
            max_retries=_env_int(env, "BATCH_MAX_RETRIES", default=3, minimum=0),
            retry_delay_ms=_env_int(env, "BATCH_RETRY_DELAY_MS", default=1000, minimum=0),
            retry_delay_max_ms=_env_int(env, "BATCH_RETRY_DELAY_MAX_MS", default=30000, minimum=0),
            chunk_delay_ms=_env_int(env, "BATCH_CHUNK_DELAY_MS", default=500, minimum=0),
            queue_fetch_size=_env_int(env, "QUEUE_FETCH_SIZE", default=50, minimum=1),
            queue_max_items_per_run=_env_int(env, "QUEUE_MAX_ITEMS_PER_RUN", default=500, minimum=1),
            max_file_bytes=_env_int(env, "INGEST_MAX_FILE_BYTES", default=5 * 1024 * 1024, minimum=1),
            max_files_per_call=_env_int(env, "INGEST_MAX_FILES_PER_CALL", default=500, minimum=1),
            allowed_media_types=media_types,
            sync_fetch_limit=_env_int(env, "SYNC_FETCH_LIMIT", default=5, minimum=1),
            sync_wall_clock_budget_ms=_env_int(env, "SYNC_WALL_CLOCK_BUDGET_MS", default=50000, minimum=1),
            sync_safety_margin_ratio=_env_float(
                env,
                "SYNC_SAFETY_MARGIN_RATIO",
                default=0.1,
                minimum=0.0,
                maximum=0.9,
            ),
            sync_default_mode=str(env.get("SYNC_DEFAULT_MODE", "both")).strip() or "both",
            queue_retention_days=_env_int(env, "QUEUE_RETENTION_DAYS", default=7, minimum=1),
        )
