from __future__ import annotations

import json
import logging
import os
from collections.abc import Callable, Mapping
from typing import Any
from urllib import error, request

from taxflow.models import SyncOutcome

logger = logging.getLogger(__name__)

ERROR_SNIPPET_CHARS = 200


def _legacy_units(body: Mapping[str, Any]) -> int:
    for key in ("unitsSynced", "invoicesProcessed", "count"):
        value = body.get(key)
        if value:
            try:
                return int(value)
            except (TypeError, ValueError):
                continue
    return 0


def interpret_sync_body(body: Any, *, http_status: int | None = None) -> SyncOutcome:
    """Classify a 2xx response body; transport success alone is never success."""
    if not isinstance(body, dict):
        return SyncOutcome.application_failure("sync response body is not a JSON object", http_status=http_status)
    if body.get("success") is not True:
        message = body.get("error") or body.get("message") or "sync returned success=false"
        return SyncOutcome.application_failure(str(message), http_status=http_status)
    missing = body.get("missingConfiguration") or body.get("missingConfig")
    if isinstance(missing, dict):
        missing_keys = [str(k) for k, v in missing.items() if v]
        if missing_keys:
            return SyncOutcome.application_failure(
                f"missing configuration: {', '.join(missing_keys)}",
                http_status=http_status,
            )
    return SyncOutcome.success(units_synced=_legacy_units(body), http_status=http_status)


class SyncEndpointClient:
    def __init__(
        self,
        url: str,
        *,
        token: str = "",
        timeout_s: float = 60.0,
        opener: Callable[..., Any] = request.urlopen,
    ) -> None:
        if not url.strip():
            raise ValueError("SYNC_ENDPOINT_URL must not be empty")
        self.url = url.strip()
        self.token = token
        self.timeout_s = timeout_s
        self._opener = opener

    def _build_request(self, payload: dict[str, Any]) -> request.Request:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        body = json.dumps(payload, ensure_ascii=True, sort_keys=True).encode("utf-8")
        return request.Request(self.url, data=body, method="POST", headers=headers)

    def sync(self, target_id: str, period: int, mode: str = "both") -> SyncOutcome:
        req = self._build_request({"targetId": target_id, "period": period, "mode": mode})
        try:
            with self._opener(req, timeout=self.timeout_s) as resp:
                status = int(getattr(resp, "status", 200))
                raw = resp.read().decode("utf-8", errors="replace")
        except error.HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace")[:ERROR_SNIPPET_CHARS] if exc.fp else ""
            logger.warning("sync_http_error target_id=%s status=%s", target_id, exc.code)
            return SyncOutcome.transport_failure(f"HTTP {exc.code}: {detail}", http_status=exc.code)
        except (error.URLError, TimeoutError) as exc:
            reason = getattr(exc, "reason", exc)
            logger.warning("sync_transport_error target_id=%s reason=%s", target_id, reason)
            return SyncOutcome.transport_failure(f"transport error: {reason}")

        if not 200 <= status < 300:
            return SyncOutcome.transport_failure(f"HTTP {status}: {raw[:ERROR_SNIPPET_CHARS]}", http_status=status)
        try:
            body = json.loads(raw)
        except json.JSONDecodeError:
            return SyncOutcome.application_failure("sync response body is not valid JSON", http_status=status)
        return interpret_sync_body(body, http_status=status)


class UnconfiguredSyncClient:
    """Stand-in used when no endpoint is configured; every job ends in error."""

    def sync(self, target_id: str, period: int, mode: str = "both") -> SyncOutcome:
        return SyncOutcome.application_failure("sync endpoint not configured")


def create_sync_client_from_env(
    environ: Mapping[str, str] | None = None,
) -> SyncEndpointClient | UnconfiguredSyncClient:
    env = os.environ if environ is None else environ
    if not str(env.get("SYNC_ENDPOINT_URL", "")).strip():
        logger.warning("sync_endpoint_unconfigured")
        return UnconfiguredSyncClient()
    try:
        timeout_s = float(str(env.get("SYNC_ENDPOINT_TIMEOUT_S", "60")).strip() or "60")
    except ValueError:
        timeout_s = 60.0
    return SyncEndpointClient(
        str(env.get("SYNC_ENDPOINT_URL", "")),
        token=str(env.get("SYNC_ENDPOINT_TOKEN", "")).strip(),
        timeout_s=max(1.0, timeout_s),
    )
