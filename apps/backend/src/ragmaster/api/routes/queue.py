"""
Queue API routes.

POST   /api/v1/queue/upload                — validate and enqueue files, auto-start a run
POST   /api/v1/queue/start                 — start a run in the background
GET    /api/v1/queue                       — status snapshot (with stuck-state recovery)
GET    /api/v1/queue/calls                 — recent model gateway calls + per-model counts
POST   /api/v1/queue/cancel                — stop after the current batch
POST   /api/v1/queue/clear                 — drop every item
POST   /api/v1/queue/force-unlock          — operator reset of the run lock
DELETE /api/v1/queue/items/{item_id}       — remove a non-processing item
GET    /api/v1/queue/items/{item_id}/download — structured result as a JSON attachment
"""

import json
import logging
from typing import Any
from urllib.parse import quote

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile, status
from fastapi.responses import Response
from pydantic import BaseModel, Field

from ragmaster.agents.gateway import CallRecord, ModelGateway
from ragmaster.api.dependencies import (
    get_app_settings,
    get_engine,
    get_model_gateway,
    get_upload_limits,
)
from ragmaster.api.models import ErrorDetail, MessageResponse
from ragmaster.config.settings import Settings
from ragmaster.ingestion.validation import (
    UploadLimits,
    UploadRejected,
    check_request_limits,
    decode_content,
    validate_file,
)
from ragmaster.runtime.queue import (
    ItemBusyError,
    ItemNotFoundError,
    ItemNotReadyError,
    QueueEngine,
    QueueSnapshot,
)

router = APIRouter(prefix="/api/v1/queue", tags=["queue"])
log = logging.getLogger(__name__)


def attachment_header(filename: str) -> str:
    """Content-Disposition for a download; non-ASCII names go in the RFC 5987 `filename*` form."""
    fallback = "".join(
        c if c.isascii() and c.isprintable() and c not in '"\\' else "_" for c in filename
    )
    return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(filename, safe='')}"


# ── Request / Response models ─────────────────────────────────────────────────

class AcceptedFile(BaseModel):
    id: str
    filename: str
    size: int


class UploadResponse(BaseModel):
    files_added: int
    queue_size: int
    files: list[AcceptedFile]
    errors: list[str] = Field(default_factory=list)
    run_started: bool = False


class StartResponse(BaseModel):
    started: bool
    message: str


class GatewayCallsResponse(BaseModel):
    call_counts: dict[str, int]
    recent: list[CallRecord]


# ── Routes ────────────────────────────────────────────────────────────────────

@router.post(
    "/upload",
    response_model=UploadResponse,
    summary="Upload documents",
    description=(
        "Validates queue capacity, total size, per-file size and extension, then "
        "enqueues every acceptable file.  Rejected files are listed in `errors`.  "
        "A run is started in the background when auto_start is enabled."
    ),
    responses={400: {"model": ErrorDetail, "description": "Upload breaks a queue limit"}},
)
async def upload_files(
    files: list[UploadFile] = File(...),
    engine: QueueEngine = Depends(get_engine),
    limits: UploadLimits = Depends(get_upload_limits),
    settings: Settings = Depends(get_app_settings),
) -> UploadResponse:
    payloads = [(f.filename or "unnamed", await f.read()) for f in files]

    try:
        check_request_limits(
            queued_count=len(engine.items),
            queued_bytes=engine.total_size(),
            incoming_sizes=[len(raw) for _, raw in payloads],
            limits=limits,
        )
    except UploadRejected as exc:
        log.info("Upload rejected: %s (%s)", exc.reason, exc.details)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.reason) from exc

    accepted: list[AcceptedFile] = []
    errors: list[str] = []
    for filename, raw in payloads:
        problem = validate_file(filename, len(raw), limits)
        if problem:
            log.info("Rejected %s", problem)
            errors.append(problem)
            continue
        item = engine.enqueue(filename, decode_content(raw), len(raw))
        accepted.append(AcceptedFile(id=item.id, filename=item.filename, size=item.original_size))

    run_started = False
    if accepted and settings.auto_start:
        run_started = engine.start_run(trigger="upload")

    log.info("Upload complete: %d file(s) added, %d rejected.", len(accepted), len(errors))
    return UploadResponse(
        files_added=len(accepted),
        queue_size=len(engine.items),
        files=accepted,
        errors=errors,
        run_started=run_started,
    )


@router.post(
    "/start",
    response_model=StartResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Start processing the queue",
    responses={400: {"model": ErrorDetail, "description": "Nothing pending"}},
)
async def start_queue(engine: QueueEngine = Depends(get_engine)) -> StartResponse:
    pending = engine.counts().pending
    if pending == 0:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No pending files in queue")

    started = engine.start_run(trigger="api")
    return StartResponse(
        started=started,
        message=f"Started processing {pending} files" if started else "Queue is already processing",
    )


@router.get("", response_model=QueueSnapshot, summary="Queue status")
async def queue_status(engine: QueueEngine = Depends(get_engine)) -> QueueSnapshot:
    return engine.status()


@router.get("/calls", response_model=GatewayCallsResponse, summary="Model gateway call log")
async def gateway_calls(
    limit: int = 50,
    gateway: ModelGateway = Depends(get_model_gateway),
) -> GatewayCallsResponse:
    return GatewayCallsResponse(call_counts=gateway.call_counts, recent=gateway.recent_calls(limit))


@router.post("/cancel", response_model=MessageResponse, summary="Cancel the active run")
async def cancel_queue(engine: QueueEngine = Depends(get_engine)) -> MessageResponse:
    engine.cancel()
    return MessageResponse(message="Queue processing will stop after the current batch")


@router.post("/clear", response_model=MessageResponse, summary="Remove every item")
async def clear_queue(engine: QueueEngine = Depends(get_engine)) -> MessageResponse:
    cleared = engine.clear()
    return MessageResponse(message=f"Cleared {cleared} files from queue")


@router.post("/force-unlock", response_model=MessageResponse, summary="Reset the run lock")
async def force_unlock(engine: QueueEngine = Depends(get_engine)) -> MessageResponse:
    was_running = engine.force_unlock()
    return MessageResponse(message=f"Processing flag reset (was: {was_running})")


@router.delete(
    "/items/{item_id}",
    response_model=MessageResponse,
    summary="Remove one item",
    responses={
        404: {"model": ErrorDetail, "description": "Unknown item"},
        409: {"model": ErrorDetail, "description": "Item is processing"},
    },
)
async def remove_item(item_id: str, engine: QueueEngine = Depends(get_engine)) -> MessageResponse:
    try:
        item = engine.remove(item_id)
    except ItemNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="File not found") from exc
    except ItemBusyError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Cannot remove file currently being processed",
        ) from exc
    return MessageResponse(message=f"Removed {item.filename}")


@router.get(
    "/items/{item_id}/download",
    summary="Download a completed result",
    responses={
        400: {"model": ErrorDetail, "description": "Item not completed"},
        404: {"model": ErrorDetail, "description": "Unknown item"},
    },
)
async def download_item(item_id: str, engine: QueueEngine = Depends(get_engine)) -> Response:
    try:
        payload: dict[str, Any] = engine.download(item_id)
    except ItemNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="File not found") from exc
    except ItemNotReadyError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="File not yet processed"
        ) from exc

    return Response(
        content=json.dumps(payload, indent=2),
        media_type="application/json",
        headers={"Content-Disposition": attachment_header(f"{payload['filename']}.chunks.json")},
    )
