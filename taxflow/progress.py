from __future__ import annotations

import time
from collections.abc import Callable, Iterator
from typing import Any

from taxflow.models import JOB_COMPLETED, JOB_ERROR, JOB_PENDING, JOB_PROCESSING, BatchProgress


class ProgressAggregator:
    """Batch counts read fresh from the job rows on every call."""

    def __init__(self, sync_jobs: Any) -> None:
        self.sync_jobs = sync_jobs

    def progress(self, batch_id: str) -> BatchProgress | None:
        jobs = self.sync_jobs.list_batch(batch_id=batch_id)
        if not jobs:
            return None
        snapshot = BatchProgress(batch_id=batch_id, total=len(jobs))
        for job in jobs:
            if job.status == JOB_PENDING:
                snapshot.pending += 1
            elif job.status == JOB_PROCESSING:
                snapshot.processing += 1
            elif job.status == JOB_COMPLETED:
                snapshot.completed += 1
                snapshot.units_synced += int(job.units_synced or 0)
            elif job.status == JOB_ERROR:
                snapshot.errors += 1
        return snapshot


class BatchPoller:
    """Fixed-interval poll of one batch until nothing is pending or processing."""

    def __init__(
        self,
        fetch: Callable[[], BatchProgress | None],
        *,
        interval_s: float = 3.0,
        sleep: Callable[[float], None] = time.sleep,
        max_polls: int | None = None,
    ) -> None:
        self._fetch = fetch
        self.interval_s = max(0.0, float(interval_s))
        self._sleep = sleep
        self.max_polls = max_polls
        self._stopped = False

    def reset(self) -> None:
        self._stopped = True

    def poll(self) -> Iterator[BatchProgress]:
        self._stopped = False
        polls = 0
        while not self._stopped:
            snapshot = self._fetch()
            polls += 1
            if snapshot is None:
                return
            yield snapshot
            if snapshot.is_done or self._stopped:
                return
            if self.max_polls is not None and polls >= self.max_polls:
                return
            self._sleep(self.interval_s)
