from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from taxflow.errors import ApiError
from taxflow.routes._deps import caller_id_from_request, services_from_request, trace_id_from_request
from taxflow.schemas import ScheduleSyncRequest, success_envelope

router = APIRouter(prefix="/api/v1/sync", tags=["sync"])


def _batch_not_found() -> ApiError:
    return ApiError(
        code="BATCH_NOT_FOUND",
        message="sync batch not found",
        error_class="validation",
        retryable=False,
        http_status=404,
    )


def _require_batch_owner(request: Request, batch_id: str) -> list:
    jobs = services_from_request(request).store.sync_jobs.list_batch(batch_id=batch_id)
    if not jobs:
        raise _batch_not_found()
    caller_id = caller_id_from_request(request)
    if all(job.requested_by != caller_id for job in jobs):
        # another caller's batch is reported as missing
        raise _batch_not_found()
    return jobs


@router.post("/schedule")
def schedule_sync(payload: ScheduleSyncRequest, request: Request):
    services = services_from_request(request)
    receipt = services.scheduler.schedule(
        caller_id_from_request(request),
        payload.target_ids,
        period=payload.period,
    )
    return JSONResponse(
        status_code=202,
        content=success_envelope(receipt.to_dict(), trace_id_from_request(request), message="scheduled"),
    )


@router.get("/batches/{batch_id}/status")
def get_batch_status(batch_id: str, request: Request):
    _require_batch_owner(request, batch_id)
    snapshot = services_from_request(request).progress.progress(batch_id)
    if snapshot is None:
        raise _batch_not_found()
    return success_envelope(snapshot.to_dict(), trace_id_from_request(request))


@router.get("/batches/{batch_id}/jobs")
def list_batch_jobs(batch_id: str, request: Request):
    jobs = _require_batch_owner(request, batch_id)
    return success_envelope(
        {"batch_id": batch_id, "items": [job.to_dict() for job in jobs], "total": len(jobs)},
        trace_id_from_request(request),
    )


@router.post("/batches/{batch_id}/reset")
def reset_batch(batch_id: str, request: Request):
    _require_batch_owner(request, batch_id)
    services_from_request(request).runner.abandon(batch_id)
    return success_envelope({"batch_id": batch_id, "abandoned": True}, trace_id_from_request(request))
