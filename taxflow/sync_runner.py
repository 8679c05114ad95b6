from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass
from typing import Any

from taxflow.continuation import ContinuationTrigger
from taxflow.models import JOB_COMPLETED, JOB_ERROR, JOB_PENDING, SyncJob, SyncOutcome, utcnow_iso

logger = logging.getLogger(__name__)


@dataclass
class RunBatchResult:
    batch_id: str
    processed: int = 0
    errors: int = 0
    remaining: int = 0
    has_more: bool = False
    continued: bool = False
    elapsed_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class SyncJobRunner:
    """Processes a slice of a sync batch per invocation and re-triggers itself while work remains.

    ``processed`` counts every job this invocation finished, ``errors`` the
    subset that ended in error. Claiming stops once the elapsed time reaches
    the budget minus the safety margin, so an in-flight call still has room
    to finish before the host cuts the invocation off.
    """

    def __init__(
        self,
        sync_jobs: Any,
        client: Any,
        trigger: ContinuationTrigger,
        *,
        fetch_limit: int = 5,
        safety_margin_ratio: float = 0.1,
        mode: str = "both",
        clock: Callable[[], float] = time.monotonic,
        now_iso: Callable[[], str] = utcnow_iso,
    ) -> None:
        self.sync_jobs = sync_jobs
        self.client = client
        self.trigger = trigger
        self.fetch_limit = max(1, int(fetch_limit))
        self.safety_margin_ratio = min(0.9, max(0.0, float(safety_margin_ratio)))
        self.mode = mode
        self._clock = clock
        self._now_iso = now_iso

    def abandon(self, batch_id: str) -> None:
        # Stored with the jobs so every process running this batch sees it.
        self.sync_jobs.mark_abandoned(batch_id=batch_id)
        logger.warning("sync_batch_abandoned batch_id=%s", batch_id)

    def is_abandoned(self, batch_id: str) -> bool:
        return self.sync_jobs.is_abandoned(batch_id=batch_id)

    def _call(self, job: SyncJob) -> SyncOutcome:
        try:
            return self.client.sync(job.target_id, job.period, self.mode)
        except Exception as exc:
            logger.warning("sync_call_raised job_id=%s error=%s", job.id, type(exc).__name__)
            return SyncOutcome.transport_failure(str(exc) or type(exc).__name__)

    def _run_job(self, job: SyncJob, result: RunBatchResult) -> None:
        claimed = self.sync_jobs.claim(job_id=job.id, started_at=self._now_iso())
        if claimed is None:
            return
        outcome = self._call(claimed)
        if outcome.ok:
            finished = self.sync_jobs.finish(
                job_id=claimed.id,
                status=JOB_COMPLETED,
                completed_at=self._now_iso(),
                units_synced=outcome.units_synced,
            )
        else:
            logger.warning(
                "sync_job_failed job_id=%s target_id=%s kind=%s",
                claimed.id,
                claimed.target_id,
                outcome.kind,
            )
            finished = self.sync_jobs.finish(
                job_id=claimed.id,
                status=JOB_ERROR,
                completed_at=self._now_iso(),
                error_message=outcome.message or outcome.kind,
            )
        if finished is None:
            return
        result.processed += 1
        if finished.status == JOB_ERROR:
            result.errors += 1

    def run_batch(self, batch_id: str, wall_clock_budget_s: float = 50.0) -> RunBatchResult:
        started = self._clock()
        budget_s = max(0.0, float(wall_clock_budget_s))
        claim_cutoff_s = budget_s * (1.0 - self.safety_margin_ratio)
        result = RunBatchResult(batch_id=batch_id)

        if not self.is_abandoned(batch_id):
            for job in self.sync_jobs.list_pending(batch_id=batch_id, limit=self.fetch_limit):
                if self.is_abandoned(batch_id):
                    break
                if self._clock() - started >= claim_cutoff_s:
                    logger.info("sync_runner_budget_reached batch_id=%s", batch_id)
                    break
                self._run_job(job, result)

        counts = self.sync_jobs.count_by_status(batch_id=batch_id)
        elapsed_s = self._clock() - started
        result.remaining = int(counts.get(JOB_PENDING, 0))
        result.has_more = result.remaining > 0
        result.elapsed_ms = int(elapsed_s * 1000)
        abandoned = self.is_abandoned(batch_id)
        if abandoned and not result.has_more:
            self.sync_jobs.clear_abandoned(batch_id=batch_id)

        if result.has_more and elapsed_s < budget_s and not abandoned:
            try:
                self.trigger.trigger(batch_id)
                result.continued = True
            except Exception as exc:
                logger.warning("sync_continuation_trigger_failed batch_id=%s error=%s", batch_id, type(exc).__name__)
        logger.info(
            "sync_runner_done batch_id=%s processed=%s errors=%s remaining=%s continued=%s",
            batch_id,
            result.processed,
            result.errors,
            result.remaining,
            result.continued,
        )
        return result
