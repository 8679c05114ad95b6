from __future__ import annotations

import mimetypes

from fastapi import APIRouter, Body, File, Form, Query, Request, UploadFile
from fastapi.responses import JSONResponse

from taxflow.ingestion import queue_stats
from taxflow.models import DocumentPayload
from taxflow.routes._deps import caller_id_from_request, services_from_request, trace_id_from_request
from taxflow.schemas import ClearFinishedRequest, success_envelope

router = APIRouter(prefix="/api/v1/queue", tags=["queue"])


def _media_type(file: UploadFile) -> str:
    content_type = (file.content_type or "").split(";", maxsplit=1)[0].strip().lower()
    if content_type and content_type != "application/octet-stream":
        return content_type
    guessed, _ = mimetypes.guess_type(file.filename or "")
    return guessed or content_type or "application/octet-stream"


@router.post("/items")
async def enqueue_items(
    request: Request,
    target_id: str = Form(...),
    files: list[UploadFile] = File(...),
):
    documents = []
    for file in files:
        documents.append(
            DocumentPayload(
                data=await file.read(),
                media_type=_media_type(file),
                filename=file.filename or "upload.bin",
            )
        )
    receipt = services_from_request(request).ingestion.enqueue(
        owner_id=caller_id_from_request(request),
        target_id=target_id,
        documents=documents,
    )
    return JSONResponse(
        status_code=202,
        content=success_envelope(receipt.to_dict(), trace_id_from_request(request), message="queued"),
    )


@router.get("/items")
def list_items(request: Request, target_id: str | None = Query(default=None)):
    items = services_from_request(request).store.queue_items.list_for_owner(
        owner_id=caller_id_from_request(request),
        target_id=target_id,
    )
    return success_envelope(
        {"items": [item.to_dict() for item in items], "total": len(items)},
        trace_id_from_request(request),
    )


@router.get("/stats")
def get_stats(request: Request, target_id: str | None = Query(default=None)):
    items = services_from_request(request).store.queue_items.list_for_owner(
        owner_id=caller_id_from_request(request),
        target_id=target_id,
    )
    return success_envelope(queue_stats(items), trace_id_from_request(request))


@router.delete("/items/{item_id}")
def delete_item(item_id: str, request: Request):
    services_from_request(request).ingestion.remove_item(
        owner_id=caller_id_from_request(request),
        item_id=item_id,
    )
    return success_envelope({"item_id": item_id, "deleted": True}, trace_id_from_request(request))


@router.post("/clear-finished")
def clear_finished(request: Request, payload: ClearFinishedRequest | None = Body(default=None)):
    removed = services_from_request(request).ingestion.clear_finished(
        owner_id=caller_id_from_request(request),
        target_id=payload.target_id if payload else None,
    )
    return success_envelope({"removed": removed}, trace_id_from_request(request))


@router.post("/process")
def process_queue(request: Request):
    caller_id = caller_id_from_request(request)
    services = services_from_request(request)
    services.drain_trigger.trigger(owner_id=caller_id)
    return JSONResponse(
        status_code=202,
        content=success_envelope({"owner_id": caller_id, "queued": True}, trace_id_from_request(request)),
    )
