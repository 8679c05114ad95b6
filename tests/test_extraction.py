from __future__ import annotations

from types import SimpleNamespace

import httpx
import openai
import pytest

from conftest import good_fields, json_document
from taxflow.errors import UpstreamError
from taxflow.extraction import (
    ExtractionConfig,
    MockExtractionService,
    OpenAIExtractionService,
    create_extraction_service_from_env,
    normalize_extraction,
    parse_json_object,
)
from taxflow.models import DocumentPayload


class _FakeCompletions:
    def __init__(self, outcome):
        self.outcome = outcome
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        if isinstance(self.outcome, Exception):
            raise self.outcome
        message = SimpleNamespace(content=self.outcome)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def _client(outcome):
    completions = _FakeCompletions(outcome)
    return SimpleNamespace(chat=SimpleNamespace(completions=completions)), completions


def _service(outcome):
    fake, completions = _client(outcome)
    return OpenAIExtractionService(ExtractionConfig(model="test-model"), client=fake), completions


def test_parse_json_object_strips_fences_and_prose():
    assert parse_json_object('```json\n{"a": 1}\n```') == {"a": 1}
    assert parse_json_object('Here you go: {"a": {"b": 2}} thanks') == {"a": {"b": 2}}
    with pytest.raises(UpstreamError) as exc:
        parse_json_object("no json here")
    assert exc.value.code == "EXTRACTION_RESPONSE_INVALID"
    assert exc.value.retryable is True


def test_normalize_extraction_rules():
    data = normalize_extraction({"beneficiary_nif": "123456789", "exempt_amount": None})
    assert data["exempt_amount"] == 0
    assert data["dispensed_amount"] == 0

    with pytest.raises(UpstreamError) as not_doc:
        normalize_extraction({"not_invoice": True, "reason": "bank statement"})
    assert not_doc.value.retryable is False
    assert not_doc.value.message == "bank statement"

    with pytest.raises(UpstreamError) as cancelled:
        normalize_extraction({"anulado": True, "gross_amount": 10})
    assert cancelled.value.code == "EXTRACTION_DOCUMENT_CANCELLED"
    assert cancelled.value.error_class == "permanent"

    with pytest.raises(UpstreamError) as missing:
        normalize_extraction({"beneficiary_name": "x"})
    assert missing.value.retryable is True


def test_openai_service_sends_image_and_parses_response():
    service, completions = _service('{"beneficiary_nif": "123456789", "gross_amount": 100}')
    payload = DocumentPayload(data=b"\x89PNG", media_type="image/png", filename="a.png")
    data = service.extract(payload)
    assert data["gross_amount"] == 100
    call = completions.calls[0]
    assert call["model"] == "test-model"
    parts = call["messages"][0]["content"]
    assert parts[1]["image_url"]["url"].startswith("data:image/png;base64,")


def test_openai_service_rejects_unsupported_media_without_calling():
    service, completions = _service("{}")
    with pytest.raises(UpstreamError) as exc:
        service.extract(DocumentPayload(data=b"x", media_type="text/plain"))
    assert exc.value.code == "EXTRACTION_MEDIA_UNSUPPORTED"
    assert exc.value.retryable is False
    assert completions.calls == []


def test_openai_service_empty_content_is_retryable():
    service, _ = _service("")
    with pytest.raises(UpstreamError) as exc:
        service.extract(DocumentPayload(data=b"x", media_type="application/pdf"))
    assert exc.value.code == "EXTRACTION_RESPONSE_EMPTY"
    assert exc.value.retryable is True


@pytest.mark.parametrize(
    ("error", "retryable"),
    [
        (openai.APIConnectionError(request=httpx.Request("POST", "https://api.test/v1")), True),
        (openai.APITimeoutError(request=httpx.Request("POST", "https://api.test/v1")), True),
        (
            openai.AuthenticationError(
                "bad key",
                response=httpx.Response(401, request=httpx.Request("POST", "https://api.test/v1")),
                body=None,
            ),
            False,
        ),
        (
            openai.RateLimitError(
                "slow down",
                response=httpx.Response(429, request=httpx.Request("POST", "https://api.test/v1")),
                body=None,
            ),
            True,
        ),
    ],
)
def test_openai_sdk_errors_are_classified(error, retryable):
    service, _ = _service(error)
    with pytest.raises(UpstreamError) as exc:
        service.extract(DocumentPayload(data=b"x", media_type="application/pdf"))
    assert exc.value.retryable is retryable


def test_mock_service_reads_embedded_json():
    data = MockExtractionService().extract(json_document(good_fields()))
    assert data["beneficiary_nif"] == "123456789"


def test_factory_selects_provider():
    assert isinstance(create_extraction_service_from_env({}), MockExtractionService)
    svc = create_extraction_service_from_env({"EXTRACTION_PROVIDER": "openai", "LLM_MODEL": "m1"})
    assert isinstance(svc, OpenAIExtractionService)
    assert svc.config.model == "m1"
    with pytest.raises(ValueError):
        create_extraction_service_from_env({"EXTRACTION_PROVIDER": "other"})
