from __future__ import annotations

from conftest import good_fields, json_document
from taxflow.queue_backend import QUEUE_INGEST, QUEUE_SYNC, InMemoryQueueBackend
from taxflow.worker_runtime import WorkerRuntime, create_worker_runtime_from_env


def test_run_once_dispatches_by_queue_and_acks():
    q = InMemoryQueueBackend()
    seen: list[tuple[str, dict]] = []
    runtime = WorkerRuntime(
        queue_backend=q,
        handlers={
            QUEUE_SYNC: lambda p: seen.append(("sync", p)),
            QUEUE_INGEST: lambda p: seen.append(("ingest", p)),
        },
    )
    q.enqueue(queue_name=QUEUE_SYNC, payload={"batch_id": "b1"})
    q.enqueue(queue_name=QUEUE_INGEST, payload={"owner_id": "acct_1"})
    q.enqueue(queue_name=QUEUE_SYNC, payload={"batch_id": "b2"})

    stats = runtime.run_once()
    assert stats.as_dict() == {"processed": 3, "succeeded": 3, "failed": 0, "acked": 3, "unhandled": 0}
    assert seen == [("sync", {"batch_id": "b1"}), ("ingest", {"owner_id": "acct_1"}), ("sync", {"batch_id": "b2"})]


def test_handler_failure_is_counted_and_loop_continues():
    q = InMemoryQueueBackend()

    def explode(_payload):
        raise RuntimeError("boom")

    runtime = WorkerRuntime(queue_backend=q, handlers={QUEUE_SYNC: explode})
    q.enqueue(queue_name=QUEUE_SYNC, payload={"batch_id": "b1"})
    q.enqueue(queue_name=QUEUE_SYNC, payload={"batch_id": "b2"})

    stats = runtime.run_once()
    assert stats.failed == 2
    assert stats.acked == 2
    assert q.pending_count(queue_name=QUEUE_SYNC) == 0


def test_run_once_honours_message_budget():
    q = InMemoryQueueBackend()
    runtime = WorkerRuntime(queue_backend=q, handlers={QUEUE_SYNC: lambda _p: None}, max_messages_per_iteration=2)
    for i in range(5):
        q.enqueue(queue_name=QUEUE_SYNC, payload={"batch_id": f"b{i}"})
    assert runtime.run_once().processed == 2
    assert q.pending_count(queue_name=QUEUE_SYNC) == 3


def test_run_forever_sleeps_only_when_idle():
    q = InMemoryQueueBackend()
    sleeps: list[float] = []
    runtime = WorkerRuntime(
        queue_backend=q,
        handlers={QUEUE_SYNC: lambda _p: None},
        poll_interval_ms=250,
        sleep=sleeps.append,
    )
    q.enqueue(queue_name=QUEUE_SYNC, payload={"batch_id": "b1"})
    stats = runtime.run_forever(stop_after_iterations=3)
    assert stats.processed == 1
    assert sleeps == [0.25]


def test_worker_wiring_runs_sync_continuations_and_drains(pipeline, sync_client):
    access = pipeline.store.client_access
    for i in range(7):
        access.grant(caller_id="acct_1", target_id=f"client_{i}")
    receipt = pipeline.scheduler.schedule("acct_1", [f"client_{i}" for i in range(7)])
    pipeline.ingestion.enqueue(owner_id="acct_1", target_id="client_0", documents=[json_document(good_fields())])
    pipeline.drain_trigger.trigger(owner_id="acct_1")

    runtime = create_worker_runtime_from_env(
        queue_backend=pipeline.queue_backend,
        sync_handler=pipeline.handle_sync_message,
        ingest_handler=pipeline.handle_ingest_message,
        environ={"WORKER_MAX_MESSAGES_PER_ITERATION": "10"},
    )
    stats = runtime.run_forever(stop_after_iterations=1)

    assert stats.processed == 3
    assert stats.failed == 0
    progress = pipeline.progress.progress(receipt.batch_id)
    assert progress.completed == 7
    assert progress.is_done is True
    assert len(sync_client.calls) == 7
    assert len(pipeline.store.records.list_for_owner(owner_id="acct_1")) == 1
