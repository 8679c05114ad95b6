from __future__ import annotations

import pytest

from conftest import local_storage
from taxflow.object_storage import S3ObjectStorage, create_object_storage_from_env
from taxflow.pipeline_config import DEFAULT_ALLOWED_MEDIA_TYPES, PipelineConfig
from taxflow.services import build_services
from taxflow.store import PipelineStore, PostgresPipelineStore, create_store_from_env


def test_pipeline_config_defaults():
    cfg = PipelineConfig.from_env({})
    assert cfg.concurrency_limit == 5
    assert cfg.max_retries == 3
    assert cfg.retry_delay_s == 1.0
    assert cfg.retry_delay_max_s == 30.0
    assert cfg.chunk_delay_s == 0.5
    assert cfg.sync_fetch_limit == 5
    assert cfg.sync_wall_clock_budget_s == 50.0
    assert cfg.allowed_media_types == DEFAULT_ALLOWED_MEDIA_TYPES


def test_pipeline_config_reads_and_clamps_env():
    cfg = PipelineConfig.from_env(
        {
            "BATCH_CONCURRENCY_LIMIT": "0",
            "BATCH_MAX_RETRIES": "nope",
            "BATCH_RETRY_DELAY_MS": "250",
            "SYNC_SAFETY_MARGIN_RATIO": "5",
            "INGEST_ALLOWED_MEDIA_TYPES": "application/pdf, image/png",
            "SYNC_DEFAULT_MODE": "withholdings",
        }
    )
    assert cfg.concurrency_limit == 1
    assert cfg.max_retries == 3
    assert cfg.retry_delay_ms == 250
    assert cfg.sync_safety_margin_ratio == 0.9
    assert cfg.allowed_media_types == ("application/pdf", "image/png")
    assert cfg.sync_default_mode == "withholdings"


def test_store_factory_backends(tmp_path):
    env = {"OBJECT_STORAGE_ROOT": str(tmp_path)}
    assert isinstance(create_store_from_env(env), PipelineStore)

    fallback = create_store_from_env({**env, "TAXFLOW_STORE_BACKEND": "postgres", "POSTGRES_DSN": ""})
    assert fallback.backend_name == "memory"

    with pytest.raises(ValueError):
        create_store_from_env({**env, "TAXFLOW_STORE_BACKEND": "postgres", "TAXFLOW_REQUIRE_TRUESTACK": "true"})
    with pytest.raises(RuntimeError):
        create_store_from_env({**env, "TAXFLOW_REQUIRE_TRUESTACK": "true"})
    with pytest.raises(RuntimeError, match="unsupported store backend"):
        create_store_from_env({**env, "TAXFLOW_STORE_BACKEND": "mongo"})


def test_postgres_store_wires_postgres_repositories(tmp_path):
    s = PostgresPipelineStore(dsn="postgresql://localhost/taxflow", object_storage=local_storage(tmp_path))
    assert s.backend_name == "postgres"
    assert type(s.sync_jobs).__name__ == "PostgresSyncJobsRepository"
    assert type(s.queue_items).__name__ == "PostgresQueueItemsRepository"


def test_store_reset_clears_rows_and_objects(tmp_path):
    storage = create_object_storage_from_env({"OBJECT_STORAGE_ROOT": str(tmp_path)})
    s = PipelineStore(object_storage=storage)
    s.client_access.grant(caller_id="a", target_id="t")
    uri = storage.put_object(owner_id="a", object_id="o1", filename="x.pdf", content_bytes=b"1")
    s.reset()
    assert s.client_access.authorized_targets(caller_id="a", target_ids=["t"]) == set()
    with pytest.raises(FileNotFoundError):
        storage.get_object(storage_uri=uri)


def test_s3_storage_uses_boto3_client(monkeypatch):
    calls: list[tuple[str, dict]] = []

    class FakeS3:
        def put_object(self, **kwargs):
            calls.append(("put", kwargs))

        def get_object(self, **kwargs):
            calls.append(("get", kwargs))
            return {"Body": type("B", (), {"read": lambda self: b"data"})()}

        def delete_object(self, **kwargs):
            calls.append(("delete", kwargs))

    class FakeSession:
        def __init__(self, **kwargs):
            pass

        def client(self, *args, **kwargs):
            return FakeS3()

    boto3 = pytest.importorskip("boto3")
    monkeypatch.setattr(boto3.session, "Session", FakeSession)
    storage = create_object_storage_from_env(
        {"TAXFLOW_OBJECT_STORAGE_BACKEND": "s3", "OBJECT_STORAGE_BUCKET": "docs", "OBJECT_STORAGE_PREFIX": "tenant"}
    )
    assert isinstance(storage, S3ObjectStorage)
    uri = storage.put_object(owner_id="acct 1", object_id="qi_1", filename="a b.pdf", content_bytes=b"x")
    assert uri == "object://s3/docs/tenant/owners/acct_1/documents/qi_1/a_b.pdf"
    assert storage.get_object(storage_uri=uri) == b"data"
    assert storage.delete_object(storage_uri=uri) is True
    assert [c[0] for c in calls] == ["put", "get", "delete"]


def test_build_services_uses_injected_collaborators(pipeline, sync_client):
    assert pipeline.runner.client is sync_client
    assert pipeline.drainer.asset_storage is pipeline.store.object_storage
    assert pipeline.config.retry_delay_ms == 0


def test_build_services_defaults_to_unconfigured_sync_client(tmp_path, monkeypatch):
    monkeypatch.delenv("SYNC_ENDPOINT_URL", raising=False)
    from taxflow.queue_backend import InMemoryQueueBackend

    services = build_services(
        store=PipelineStore(object_storage=create_object_storage_from_env({"OBJECT_STORAGE_ROOT": str(tmp_path)})),
        queue_backend=InMemoryQueueBackend(),
        config=PipelineConfig(),
    )
    assert services.runner.client.sync("client_a", 2026).kind == "application_failure"
