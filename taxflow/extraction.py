"""
Document field extraction through an OpenAI-compatible vision model.

Configuration via environment variables:
  EXTRACTION_PROVIDER   = openai | mock                (default: mock)
  LLM_MODEL             = gpt-4o-mini
  OPENAI_API_KEY        = sk-...
  OPENAI_BASE_URL       = https://api.openai.com/v1   (or any compatible endpoint)
  EXTRACTION_TIMEOUT_S  = 60
"""

from __future__ import annotations

import json
import logging
import os
import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Protocol

from taxflow.errors import UpstreamError
from taxflow.models import DocumentPayload
from taxflow.pipeline_config import DEFAULT_ALLOWED_MEDIA_TYPES

logger = logging.getLogger(__name__)

REQUIRED_ANY_OF = ("beneficiary_nif", "gross_amount")

EXTRACTION_PROMPT = """Read this Portuguese receipt or tax document and return the withholding data as JSON.

Reject documents that cannot be processed:
1. Portal listings or screenshots with several documents in a table. Answer ONLY with
   {"not_invoice": true, "reason": "<why>", "confidence": 0}
2. Cancelled documents (watermark or status "ANULADO", "CANCELADO", "REVOGADO"). Answer ONLY with
   {"anulado": true, "confidence": 100}
Copies ("Segunda Via", "Duplicado", "Cópia") are valid and must be processed normally.

For service invoices, gross_amount is the base subject to withholding, not the invoice total.
Check that gross_amount * withholding_rate / 100 is within 1 EUR of withholding_amount and
recompute gross_amount from the withheld value when it is not.

Format:
{
  "beneficiary_nif": "9-digit tax id of the payee",
  "beneficiary_name": "payee name",
  "beneficiary_address": "payee address if visible",
  "income_category": "A, B, E, F, G, H or R",
  "gross_amount": decimal gross amount subject to withholding,
  "exempt_amount": decimal exempt amount,
  "dispensed_amount": decimal amount dispensed from withholding,
  "withholding_rate": rate in percent,
  "withholding_amount": decimal amount withheld,
  "payment_date": "YYYY-MM-DD",
  "document_reference": "document number without FR, FT or RG prefixes",
  "atcud": "ATCUD code if printed, e.g. ABCD1234-15",
  "confidence": number from 0 to 100
}

Use null for fields you cannot identify. Answer ONLY with the JSON object."""

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


class ExtractionService(Protocol):
    def extract(self, payload: DocumentPayload) -> dict[str, Any]:
        ...


def parse_json_object(text: str) -> dict[str, Any]:
    """Return the first well-formed JSON object in a model response."""
    cleaned = _FENCE_RE.sub("", (text or "").strip()).strip()
    decoder = json.JSONDecoder()
    idx = cleaned.find("{")
    while idx != -1:
        try:
            value, _ = decoder.raw_decode(cleaned, idx)
        except json.JSONDecodeError:
            idx = cleaned.find("{", idx + 1)
            continue
        if isinstance(value, dict):
            return value
        idx = cleaned.find("{", idx + 1)
    raise UpstreamError(
        code="EXTRACTION_RESPONSE_INVALID",
        message="model response did not contain a JSON object",
        retryable=True,
    )


def normalize_extraction(raw: dict[str, Any]) -> dict[str, Any]:
    if raw.get("not_invoice") is True:
        raise UpstreamError(
            code="EXTRACTION_NOT_A_DOCUMENT",
            message=str(raw.get("reason") or "document is a listing, not a single receipt"),
            retryable=False,
        )
    if raw.get("anulado") is True:
        raise UpstreamError(
            code="EXTRACTION_DOCUMENT_CANCELLED",
            message="document is cancelled and cannot be processed",
            retryable=False,
        )
    if not any(raw.get(name) for name in REQUIRED_ANY_OF):
        raise UpstreamError(
            code="EXTRACTION_FIELDS_MISSING",
            message="essential fields not found in model response",
            retryable=True,
        )
    data = dict(raw)
    data.setdefault("exempt_amount", 0)
    data.setdefault("dispensed_amount", 0)
    if data["exempt_amount"] is None:
        data["exempt_amount"] = 0
    if data["dispensed_amount"] is None:
        data["dispensed_amount"] = 0
    return data


def _ensure_supported(payload: DocumentPayload, supported: tuple[str, ...]) -> None:
    if payload.media_type not in supported:
        raise UpstreamError(
            code="EXTRACTION_MEDIA_UNSUPPORTED",
            message=f"media type {payload.media_type!r} is not supported",
            retryable=False,
        )


@dataclass
class ExtractionConfig:
    model: str = "gpt-4o-mini"
    api_key: str = ""
    base_url: str = ""
    timeout_s: float = 60.0
    max_tokens: int = 1000
    temperature: float = 0.0

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "ExtractionConfig":
        env = os.environ if environ is None else environ
        try:
            timeout_s = float(str(env.get("EXTRACTION_TIMEOUT_S", "60")).strip() or "60")
        except ValueError:
            timeout_s = 60.0
        return cls(
            model=str(env.get("LLM_MODEL", "gpt-4o-mini")).strip() or "gpt-4o-mini",
            api_key=str(env.get("OPENAI_API_KEY", "")).strip(),
            base_url=str(env.get("OPENAI_BASE_URL", "")).strip(),
            timeout_s=max(1.0, timeout_s),
        )


def _create_client(config: ExtractionConfig):
    try:
        import openai
    except ImportError:
        raise RuntimeError("openai package is required. Install with: pip install openai")

    kwargs: dict[str, Any] = {"timeout": config.timeout_s, "max_retries": 0}
    if config.api_key:
        kwargs["api_key"] = config.api_key
    if config.base_url:
        kwargs["base_url"] = config.base_url
    return openai.OpenAI(**kwargs)


def _map_sdk_error(exc: Exception) -> UpstreamError:
    import openai

    if isinstance(exc, (openai.RateLimitError, openai.APITimeoutError, openai.APIConnectionError)):
        return UpstreamError(code="EXTRACTION_UPSTREAM_UNAVAILABLE", message=str(exc), retryable=True)
    if isinstance(exc, openai.InternalServerError):
        return UpstreamError(code="EXTRACTION_UPSTREAM_UNAVAILABLE", message=str(exc), retryable=True)
    if isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return UpstreamError(code="EXTRACTION_UPSTREAM_UNAUTHORIZED", message=str(exc), retryable=False)
    if isinstance(exc, openai.BadRequestError):
        return UpstreamError(code="EXTRACTION_REQUEST_REJECTED", message=str(exc), retryable=False)
    if isinstance(exc, openai.APIStatusError):
        return UpstreamError(
            code="EXTRACTION_UPSTREAM_ERROR",
            message=str(exc),
            retryable=exc.status_code >= 500,
        )
    return UpstreamError(code="EXTRACTION_UPSTREAM_ERROR", message=str(exc), retryable=True)


class OpenAIExtractionService:
    def __init__(
        self,
        config: ExtractionConfig | None = None,
        *,
        client: Any = None,
        supported_media_types: tuple[str, ...] = DEFAULT_ALLOWED_MEDIA_TYPES,
    ) -> None:
        self.config = config or ExtractionConfig.from_env()
        self._client = client
        self.supported_media_types = supported_media_types

    @property
    def client(self):
        if self._client is None:
            self._client = _create_client(self.config)
        return self._client

    def _messages(self, payload: DocumentPayload) -> list[dict[str, Any]]:
        return [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": EXTRACTION_PROMPT},
                    {"type": "image_url", "image_url": {"url": payload.as_data_url()}},
                ],
            }
        ]

    def extract(self, payload: DocumentPayload) -> dict[str, Any]:
        _ensure_supported(payload, self.supported_media_types)
        try:
            response = self.client.chat.completions.create(
                model=self.config.model,
                messages=self._messages(payload),
                temperature=self.config.temperature,
                max_tokens=self.config.max_tokens,
            )
        except UpstreamError:
            raise
        except Exception as exc:
            mapped = _map_sdk_error(exc)
            logger.warning(
                "extraction_call_failed model=%s code=%s retryable=%s",
                self.config.model,
                mapped.code,
                mapped.retryable,
            )
            raise mapped from exc

        choices = getattr(response, "choices", None) or []
        content = choices[0].message.content if choices else None
        if not content:
            raise UpstreamError(
                code="EXTRACTION_RESPONSE_EMPTY",
                message="model returned an empty response",
                retryable=True,
            )
        return normalize_extraction(parse_json_object(content))


class MockExtractionService:
    """Reads the extraction result straight from JSON embedded in the document bytes."""

    def __init__(self, *, supported_media_types: tuple[str, ...] = DEFAULT_ALLOWED_MEDIA_TYPES) -> None:
        self.supported_media_types = supported_media_types

    def extract(self, payload: DocumentPayload) -> dict[str, Any]:
        _ensure_supported(payload, self.supported_media_types)
        text = payload.data.decode("utf-8", errors="ignore")
        return normalize_extraction(parse_json_object(text))


def create_extraction_service_from_env(environ: Mapping[str, str] | None = None) -> ExtractionService:
    env = os.environ if environ is None else environ
    provider = str(env.get("EXTRACTION_PROVIDER", "mock")).strip().lower() or "mock"
    if provider == "mock":
        return MockExtractionService()
    if provider == "openai":
        return OpenAIExtractionService(ExtractionConfig.from_env(env))
    raise ValueError(f"unsupported EXTRACTION_PROVIDER: {provider}")
