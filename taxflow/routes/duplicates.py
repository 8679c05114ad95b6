from __future__ import annotations

from fastapi import APIRouter, Body, Query, Request

from taxflow.deduplication import find_duplicates, resolve
from taxflow.routes._deps import caller_id_from_request, services_from_request, trace_id_from_request
from taxflow.schemas import ResolveDuplicatesRequest, success_envelope

router = APIRouter(prefix="/api/v1/records", tags=["records"])


@router.get("/duplicates")
def list_duplicates(request: Request, target_id: str | None = Query(default=None)):
    records = services_from_request(request).store.records.list_for_owner(
        owner_id=caller_id_from_request(request),
        target_id=target_id,
    )
    groups = find_duplicates(records)
    return success_envelope(
        {"groups": [group.to_dict() for group in groups], "total": len(groups)},
        trace_id_from_request(request),
    )


@router.post("/duplicates/resolve")
def resolve_duplicates(
    request: Request,
    payload: ResolveDuplicatesRequest | None = Body(default=None),
):
    caller_id = caller_id_from_request(request)
    services = services_from_request(request)
    target_id = payload.target_id if payload else None
    records = services.store.records.list_for_owner(owner_id=caller_id, target_id=target_id)
    resolutions = [resolve(group) for group in find_duplicates(records)]
    report = services.cleaner.delete(owner_id=caller_id, resolutions=resolutions)
    data = report.to_dict()
    data["groups"] = len(resolutions)
    return success_envelope(data, trace_id_from_request(request))
