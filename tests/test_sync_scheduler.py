from __future__ import annotations

import pytest

from taxflow.errors import ApiError
from taxflow.repositories import InMemoryClientAccessRepository, InMemorySyncJobsRepository
from taxflow.sync_scheduler import SyncJobScheduler


class RecordingTrigger:
    def __init__(self, fail: bool = False):
        self.batches: list[str] = []
        self.fail = fail

    def trigger(self, batch_id: str) -> None:
        self.batches.append(batch_id)
        if self.fail:
            raise RuntimeError("queue offline")


def _scheduler(trigger=None):
    access = InMemoryClientAccessRepository({})
    access.grant(caller_id="acct_1", target_id="client_a")
    access.grant(caller_id="acct_1", target_id="client_b")
    jobs = InMemorySyncJobsRepository({})
    scheduler = SyncJobScheduler(jobs, access, trigger or RecordingTrigger(), clock=lambda: "2026-10-19T09:00:00+00:00")
    return scheduler, jobs


def test_unauthorized_targets_are_dropped():
    trigger = RecordingTrigger()
    scheduler, jobs = _scheduler(trigger)
    receipt = scheduler.schedule("acct_1", ["client_a", "client_x", "client_b"])

    assert receipt.total_jobs == 2
    assert receipt.dropped_target_ids == ["client_x"]
    assert receipt.period == 2026
    assert receipt.batch_id.startswith("batch_")
    created = jobs.list_batch(batch_id=receipt.batch_id)
    assert sorted(j.target_id for j in created) == ["client_a", "client_b"]
    assert {j.status for j in created} == {"pending"}
    assert {j.requested_by for j in created} == {"acct_1"}
    assert trigger.batches == [receipt.batch_id]


def test_ids_are_normalized_and_period_kept():
    scheduler, jobs = _scheduler()
    receipt = scheduler.schedule("acct_1", [" client_a ", "client_a", "", "client_b"], period=2025)
    assert receipt.total_jobs == 2
    assert {j.period for j in jobs.list_batch(batch_id=receipt.batch_id)} == {2025}


def test_no_authorized_targets_raises_and_creates_nothing():
    trigger = RecordingTrigger()
    scheduler, jobs = _scheduler(trigger)
    with pytest.raises(ApiError) as exc:
        scheduler.schedule("acct_1", ["client_x"])
    assert exc.value.code == "SYNC_NO_AUTHORIZED_TARGETS"
    assert exc.value.error_class == "authorization"
    assert trigger.batches == []
    assert jobs.count_by_status(batch_id="anything")["pending"] == 0


def test_trigger_failure_does_not_fail_scheduling():
    scheduler, jobs = _scheduler(RecordingTrigger(fail=True))
    receipt = scheduler.schedule("acct_1", ["client_a"])
    assert jobs.count_by_status(batch_id=receipt.batch_id)["pending"] == 1


def test_each_schedule_gets_a_fresh_batch():
    scheduler, _ = _scheduler()
    first = scheduler.schedule("acct_1", ["client_a"])
    second = scheduler.schedule("acct_1", ["client_a"])
    assert first.batch_id != second.batch_id
