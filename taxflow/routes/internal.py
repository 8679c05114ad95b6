from __future__ import annotations

from fastapi import APIRouter, Header, Query, Request
from pydantic import BaseModel

from taxflow.errors import ApiError
from taxflow.routes._deps import services_from_request, trace_id_from_request
from taxflow.schemas import success_envelope

router = APIRouter(prefix="/api/v1/internal", tags=["internal"])


class ClientAccessGrantRequest(BaseModel):
    caller_id: str
    target_ids: list[str]


def _require_internal_debug(x_internal_debug: str | None) -> None:
    if x_internal_debug != "true":
        raise ApiError(
            code="AUTH_FORBIDDEN",
            message="internal endpoint forbidden",
            error_class="security_sensitive",
            retryable=False,
            http_status=403,
        )


@router.post("/sync/batches/{batch_id}/run")
def internal_run_sync_batch(
    batch_id: str,
    request: Request,
    budget_ms: int | None = Query(default=None, ge=1),
    x_internal_debug: str | None = Header(default=None, alias="x-internal-debug"),
):
    _require_internal_debug(x_internal_debug)
    services = services_from_request(request)
    budget_s = budget_ms / 1000.0 if budget_ms is not None else services.config.sync_wall_clock_budget_s
    result = services.runner.run_batch(batch_id, budget_s)
    return success_envelope(result.to_dict(), trace_id_from_request(request))


@router.post("/queue/drain")
def internal_drain_queue(
    request: Request,
    owner_id: str | None = Query(default=None),
    x_internal_debug: str | None = Header(default=None, alias="x-internal-debug"),
):
    _require_internal_debug(x_internal_debug)
    summary = services_from_request(request).drainer.drain(owner_id=owner_id)
    return success_envelope(summary.to_dict(), trace_id_from_request(request))


@router.post("/queue/purge-expired")
def internal_purge_expired(
    request: Request,
    x_internal_debug: str | None = Header(default=None, alias="x-internal-debug"),
):
    _require_internal_debug(x_internal_debug)
    removed = services_from_request(request).ingestion.purge_expired()
    return success_envelope({"removed": removed}, trace_id_from_request(request))


@router.post("/client-access")
def internal_grant_client_access(
    payload: ClientAccessGrantRequest,
    request: Request,
    x_internal_debug: str | None = Header(default=None, alias="x-internal-debug"),
):
    _require_internal_debug(x_internal_debug)
    access = services_from_request(request).store.client_access
    for target_id in payload.target_ids:
        access.grant(caller_id=payload.caller_id, target_id=target_id)
    return success_envelope(
        {"caller_id": payload.caller_id, "granted": len(payload.target_ids)},
        trace_id_from_request(request),
    )
