from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from taxflow.continuation import ContinuationTrigger
from taxflow.errors import ApiError
from taxflow.models import SyncJob, new_id, utcnow_iso

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScheduleReceipt:
    batch_id: str
    total_jobs: int
    period: int
    dropped_target_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "total_jobs": self.total_jobs,
            "period": self.period,
            "dropped_target_ids": list(self.dropped_target_ids),
        }


def _normalize_ids(target_ids: Sequence[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for raw in target_ids:
        clean = str(raw or "").strip()
        if not clean or clean in seen:
            continue
        seen.add(clean)
        out.append(clean)
    return out


class SyncJobScheduler:
    def __init__(
        self,
        sync_jobs: Any,
        client_access: Any,
        trigger: ContinuationTrigger,
        *,
        clock: Callable[[], str] = utcnow_iso,
    ) -> None:
        self.sync_jobs = sync_jobs
        self.client_access = client_access
        self.trigger = trigger
        self._clock = clock

    def schedule(
        self,
        caller_id: str,
        target_ids: Sequence[str],
        period: int | None = None,
    ) -> ScheduleReceipt:
        requested = _normalize_ids(target_ids)
        allowed = self.client_access.authorized_targets(caller_id=caller_id, target_ids=requested)
        authorized = [x for x in requested if x in allowed]
        dropped = [x for x in requested if x not in allowed]
        if not authorized:
            raise ApiError(
                code="SYNC_NO_AUTHORIZED_TARGETS",
                message="no valid targets found for caller",
                error_class="authorization",
                retryable=False,
                http_status=400,
            )

        created_at = self._clock()
        effective_period = int(period) if period is not None else int(created_at[:4])
        batch_id = f"batch_{uuid.uuid4().hex}"
        jobs = [
            SyncJob(
                id=new_id("sj"),
                batch_id=batch_id,
                target_id=target_id,
                requested_by=caller_id,
                period=effective_period,
                created_at=created_at,
            )
            for target_id in authorized
        ]
        self.sync_jobs.create_batch(jobs=jobs)
        if dropped:
            logger.warning("sync_targets_dropped caller_id=%s dropped=%s", caller_id, len(dropped))

        try:
            self.trigger.trigger(batch_id)
        except Exception as exc:
            # jobs stay pending; a later run or reschedule picks them up
            logger.warning("sync_trigger_failed batch_id=%s error=%s", batch_id, type(exc).__name__)

        return ScheduleReceipt(
            batch_id=batch_id,
            total_jobs=len(jobs),
            period=effective_period,
            dropped_target_ids=dropped,
        )
