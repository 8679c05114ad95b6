from __future__ import annotations

import io
import json
from urllib import error

import pytest

from taxflow.sync_client import (
    SyncEndpointClient,
    UnconfiguredSyncClient,
    create_sync_client_from_env,
    interpret_sync_body,
)


class _Response:
    def __init__(self, status: int, body: str):
        self.status = status
        self._body = body.encode("utf-8")

    def read(self) -> bytes:
        return self._body

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False


class _Opener:
    def __init__(self, outcome):
        self.outcome = outcome
        self.requests = []

    def __call__(self, req, timeout=None):
        self.requests.append((req, timeout))
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


def _client(outcome, **kwargs):
    opener = _Opener(outcome)
    return SyncEndpointClient("https://sync.test/run", opener=opener, **kwargs), opener


def test_posts_target_period_and_mode_with_bearer_token():
    client, opener = _client(_Response(200, json.dumps({"success": True, "unitsSynced": 4})), token="tkn", timeout_s=9)
    outcome = client.sync("client_1", 2026, "both")

    assert outcome.ok is True
    assert outcome.units_synced == 4
    req, timeout = opener.requests[0]
    assert timeout == 9
    assert req.get_method() == "POST"
    assert req.get_header("Authorization") == "Bearer tkn"
    assert json.loads(req.data) == {"mode": "both", "period": 2026, "targetId": "client_1"}


def test_ok_status_with_success_false_is_an_application_failure():
    client, _ = _client(_Response(200, json.dumps({"success": False, "error": "portal login failed"})))
    outcome = client.sync("client_1", 2026)
    assert outcome.kind == "application_failure"
    assert outcome.message == "portal login failed"
    assert outcome.http_status == 200


def test_missing_configuration_is_an_application_failure():
    body = {"success": True, "unitsSynced": 0, "missingConfiguration": {"password": True, "nif": False}}
    outcome = interpret_sync_body(body, http_status=200)
    assert outcome.kind == "application_failure"
    assert outcome.message == "missing configuration: password"


def test_legacy_unit_counters_are_read():
    assert interpret_sync_body({"success": True, "invoicesProcessed": "7"}).units_synced == 7
    assert interpret_sync_body({"success": True, "count": 2}).units_synced == 2
    assert interpret_sync_body({"success": True}).units_synced == 0


def test_http_error_is_a_transport_failure_with_body_snippet():
    body = io.BytesIO(("x" * 500).encode("utf-8"))
    exc = error.HTTPError("https://sync.test/run", 502, "Bad Gateway", {}, body)
    client, _ = _client(exc)
    outcome = client.sync("client_1", 2026)
    assert outcome.kind == "transport_failure"
    assert outcome.http_status == 502
    assert outcome.message == "HTTP 502: " + "x" * 200


@pytest.mark.parametrize("exc", [error.URLError("connection refused"), TimeoutError("timed out")])
def test_network_errors_are_transport_failures(exc):
    client, _ = _client(exc)
    assert client.sync("client_1", 2026).kind == "transport_failure"


def test_non_json_body_is_an_application_failure():
    client, _ = _client(_Response(200, "<html>ok</html>"))
    assert client.sync("client_1", 2026).kind == "application_failure"


def test_factory_without_url_returns_unconfigured_client():
    client = create_sync_client_from_env({})
    assert isinstance(client, UnconfiguredSyncClient)
    assert client.sync("client_1", 2026).kind == "application_failure"

    configured = create_sync_client_from_env({"SYNC_ENDPOINT_URL": "https://sync.test", "SYNC_ENDPOINT_TIMEOUT_S": "5"})
    assert isinstance(configured, SyncEndpointClient)
    assert configured.timeout_s == 5.0
