import json
import pathlib
import sys
import threading

import pytest
from fastapi.testclient import TestClient

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from taxflow.extraction import MockExtractionService
from taxflow.main import create_app, queue_backend
from taxflow.models import DocumentPayload, SyncOutcome
from taxflow.object_storage import LocalObjectStorage, ObjectStorageConfig
from taxflow.pipeline_config import PipelineConfig
from taxflow.queue_backend import InMemoryQueueBackend
from taxflow.services import build_services
from taxflow.store import PipelineStore, store

VALID_NIF = "123456789"
OTHER_VALID_NIF = "501234560"


def good_fields(**overrides):
    fields = {
        "beneficiary_nif": VALID_NIF,
        "beneficiary_name": "Maria Silva",
        "income_category": "B",
        "gross_amount": 1000.0,
        "withholding_rate": 25.0,
        "withholding_amount": 250.0,
        "payment_date": "2026-03-15",
        "document_reference": "FR 2026/14",
    }
    fields.update(overrides)
    return fields


def json_document(fields, *, filename="receipt.pdf", media_type="application/pdf") -> DocumentPayload:
    return DocumentPayload(data=json.dumps(fields).encode("utf-8"), media_type=media_type, filename=filename)


def local_storage(root: pathlib.Path) -> LocalObjectStorage:
    return LocalObjectStorage(
        config=ObjectStorageConfig(
            backend="local",
            bucket="taxflow",
            root=str(root),
            prefix="",
            endpoint="",
            region="",
            access_key="",
            secret_key="",
            force_path_style=True,
        )
    )


class FakeSyncClient:
    def __init__(self, outcomes=None, *, default=None):
        self.outcomes = dict(outcomes or {})
        self.default = default or SyncOutcome.success(units_synced=3, http_status=200)
        self.calls = []
        self._lock = threading.Lock()

    def sync(self, target_id, period, mode="both"):
        with self._lock:
            self.calls.append((target_id, period, mode))
        outcome = self.outcomes.get(target_id, self.default)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@pytest.fixture(autouse=True)
def reset_store(monkeypatch: pytest.MonkeyPatch):
    for name in ("JWT_SHARED_SECRET", "JWT_ISSUER", "JWT_AUDIENCE", "JWT_REQUIRED_CLAIMS"):
        monkeypatch.delenv(name, raising=False)
    store.reset()
    if hasattr(queue_backend, "reset"):
        queue_backend.reset()
    yield


@pytest.fixture
def sync_client() -> FakeSyncClient:
    return FakeSyncClient()


@pytest.fixture
def pipeline(tmp_path: pathlib.Path, sync_client: FakeSyncClient):
    return build_services(
        store=PipelineStore(object_storage=local_storage(tmp_path / "object_store")),
        queue_backend=InMemoryQueueBackend(),
        config=PipelineConfig(retry_delay_ms=0, chunk_delay_ms=0),
        extractor=MockExtractionService(),
        sync_client=sync_client,
        sleep=lambda _s: None,
    )


class CallerClient:
    """TestClient that sends x-caller-id on public API calls unless told otherwise."""

    def __init__(self, client: TestClient, *, caller_id: str):
        self._client = client
        self.caller_id = caller_id

    def request(self, method: str, url: str, **kwargs):
        headers = dict(kwargs.pop("headers", {}) or {})
        if url.startswith("/api/v1/") and "x-caller-id" not in headers:
            headers["x-caller-id"] = self.caller_id
        return self._client.request(method, url, headers=headers, **kwargs)

    def __getattr__(self, name: str):
        return getattr(self._client, name)

    def get(self, url: str, **kwargs):
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs):
        return self.request("POST", url, **kwargs)

    def delete(self, url: str, **kwargs):
        return self.request("DELETE", url, **kwargs)


@pytest.fixture
def client(pipeline) -> CallerClient:
    return CallerClient(TestClient(create_app(pipeline)), caller_id="acct_1")
